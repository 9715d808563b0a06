"""Shared fixtures: tmp-path backed stores and a small two-section audit."""

import io
import os
import tempfile
from datetime import datetime

os.environ.setdefault("STOREAUDIT_DATA_DIR", tempfile.mkdtemp(prefix="storeaudit-tests-"))
os.environ.pop("DATABASE_URL", None)
os.environ.pop("OBJECT_STORAGE_URL", None)

import pytest
from PIL import Image

from storeaudit.actions import complete_audit
from storeaudit.db import FileDocumentStore
from storeaudit.drafts import DraftStore
from storeaudit.offline import OfflineMediaQueue
from storeaudit.storage import FileObjectStorage

AUDIT_ID = "audit-1"
COMPLETED_AT = datetime(2026, 10, 15, 9, 30)  # Thursday


class UnreachableStore(FileDocumentStore):
    """Document store on the far side of a dead network link."""

    def get_audit(self, audit_id):
        raise ConnectionError("no network")

    def replace_audit(self, audit):
        raise ConnectionError("no network")


def make_answer(question_id, question_type="yes_no", answer="", max_points=10, **extra):
    record = {
        "questionId": question_id,
        "questionText": f"Question {question_id}",
        "questionType": question_type,
        "answer": answer,
        "selectedOptions": [],
        "options": [],
        "earnedPoints": 0,
        "maxPoints": max_points,
        "originalMaxPoints": max_points,
        "photoRequired": False,
        "actionPhotoRequired": False,
        "notes": [],
        "photos": [],
    }
    record.update(extra)
    return record


def make_audit(sections=None, audit_id=AUDIT_ID, status="in_progress"):
    """Defaults: Cleanliness (yes, no) and Safety (no, photo evidence required).
    Failing answers sit at (0, 1) and (1, 0)."""
    if sections is None:
        sections = [
            ("Cleanliness", [make_answer("q1", answer="yes"), make_answer("q2", answer="no")]),
            ("Safety", [make_answer("q3", answer="no", max_points=5, actionPhotoRequired=True)]),
        ]
    return {
        "id": audit_id,
        "auditTypeId": "type-1",
        "auditTypeName": "Monthly store check",
        "storeId": "store-7",
        "storeName": "Downtown",
        "auditorId": "auditor-1",
        "auditorName": "Auditor",
        "status": status,
        "sections": [
            {"sectionId": f"sec-{i}", "sectionName": name, "order": i, "answers": answers}
            for i, (name, answers) in enumerate(sections)
        ],
        "totalScore": 0,
        "maxScore": sum(a.get("maxPoints") or 0 for _, answers in sections for a in answers),
        "allActionsResolved": False,
        "actionDeadline": None,
        "completedAt": None,
        "startedAt": "2026-10-15T08:00:00",
        "createdAt": "2026-10-15T08:00:00",
        "updatedAt": "2026-10-15T08:00:00",
    }


def jpeg_bytes(size=(640, 480), color=(200, 30, 30)):
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="JPEG")
    return buf.getvalue()


@pytest.fixture
def store(tmp_path):
    return FileDocumentStore(tmp_path / "db.json")


@pytest.fixture
def storage(tmp_path):
    return FileObjectStorage(tmp_path / "uploads", base_url="/api/uploads")


@pytest.fixture
def drafts(tmp_path):
    return DraftStore(tmp_path / "drafts.json")


@pytest.fixture
def queue(tmp_path):
    return OfflineMediaQueue(tmp_path / "offline")


@pytest.fixture
def completed(store):
    """Completed sample audit, already persisted."""
    audit = complete_audit(make_audit(), now=COMPLETED_AT)
    store.replace_audit(audit)
    return audit


@pytest.fixture
def submission():
    return {
        f"{AUDIT_ID}:0:1": {"note": "  Floor cleaned  ", "evidence": []},
        f"{AUDIT_ID}:1:0": {"note": "Extinguisher replaced",
                            "evidence": [{"id": "e1", "state": "confirmed", "url": "/api/uploads/x.jpg"}]},
    }
