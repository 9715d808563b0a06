"""
StoreAudit — Corrective Action API
Thin HTTP layer over the action workflow, scoring and evidence pipeline.
Every write reads the authoritative audit, applies one operation and replaces
the whole document.
"""

import json
import os

from fastapi import FastAPI, UploadFile, File, Form, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse

from storeaudit import media
from storeaudit.actions import (
    ACTION_TABS, ActionValidationError, AuditIncomplete, InvalidTransition,
    apply_transition, approve_action, complete_audit, drafts_from_items,
    last_submission_at, reject_action, revert_approval, revert_rejection,
    store_response_days, submit_store_actions, summarize_actions, filter_audits_by_tab,
    sync_actions_after_edit,
)
from storeaudit.config import VERSION
from storeaudit.db import AuditNotFound, get_store
from storeaudit.deadline import audit_deadline_status
from storeaudit.offline import OfflineMediaQueue
from storeaudit.records import RecordError, backfill_from_catalog, diff_answers
from storeaudit.scoring import recompute_scores, set_answer
from storeaudit.storage import FileObjectStorage, StorageError, default_storage

app = FastAPI(title="StoreAudit Corrective Actions", version=VERSION)
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_credentials=True, allow_methods=["*"], allow_headers=["*"])

storage = default_storage()
offline_queue = OfflineMediaQueue()


# ============================================================
# HELPERS
# ============================================================
def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, (AuditNotFound, RecordError)):
        return HTTPException(404, str(e).strip("'"))
    if isinstance(e, ActionValidationError):
        return HTTPException(400, {"message": str(e), "problems": e.problems})
    if isinstance(e, AuditIncomplete):
        return HTTPException(400, {"message": str(e), "sections": e.sections})
    if isinstance(e, (StorageError, media.MediaUploadError)):
        return HTTPException(502, str(e))
    return HTTPException(400, str(e))


_HANDLED = (AuditNotFound, RecordError, ValueError, StorageError, media.MediaUploadError)


def _load_audit(audit_id: str) -> dict:
    """Fetch an audit, self-healing legacy answers from the question catalog."""
    store = get_store()
    audit = store.get_audit(audit_id)
    if backfill_from_catalog(audit, store.question_catalog()):
        recompute_scores(audit)
        audit = store.replace_audit(audit)
    return audit


def _audit_view(audit: dict) -> dict:
    return {
        **audit,
        "deadlineStatus": audit_deadline_status(audit),
        "actionSummary": summarize_actions(audit),
    }


def _transition(audit_id: str, fn, *args, **kwargs) -> dict:
    try:
        return apply_transition(get_store(), audit_id, fn, *args, **kwargs)
    except _HANDLED as e:
        raise _http_error(e)


# ============================================================
# ROUTES
# ============================================================
@app.get("/api/health")
async def health():
    return {"status": "ok", "product": "StoreAudit", "storage": type(storage).__name__, "version": VERSION}


@app.get("/api/audits/{audit_id}")
async def get_audit(audit_id: str):
    try:
        return _audit_view(_load_audit(audit_id))
    except _HANDLED as e:
        raise _http_error(e)


@app.post("/api/audits/{audit_id}/answers/{section_index}/{answer_index}")
async def update_answer(audit_id: str, section_index: int, answer_index: int,
                        answer: str = Form(""), selected_options: str = Form(None)):
    """Auditor answer, or an admin edit of a completed audit. Returns the score
    changes so the caller can notify the store."""
    try:
        selected = json.loads(selected_options) if selected_options else None
    except json.JSONDecodeError:
        raise HTTPException(400, "Invalid JSON in selected_options")
    store = get_store()
    try:
        original = _load_audit(audit_id)
        if original.get("status") == "cancelled":
            raise InvalidTransition(f"Audit {audit_id} is cancelled")
        edited = set_answer(json.loads(json.dumps(original)), section_index, answer_index, answer, selected)
        sync_actions_after_edit(edited)
        store.replace_audit(edited)
    except _HANDLED as e:
        raise _http_error(e)
    changes = diff_answers(original, edited)
    if changes and original.get("status") == "completed":
        print(f"[Actions] Completed audit {audit_id} edited: {len(changes)} change(s)")
    return {"success": True, "audit": _audit_view(edited), "changes": changes}


@app.post("/api/audits/{audit_id}/complete")
async def complete(audit_id: str):
    return {"success": True, "audit": _audit_view(_transition(audit_id, complete_audit))}


@app.get("/api/audits/{audit_id}/actions")
async def action_summary(audit_id: str):
    try:
        audit = _load_audit(audit_id)
    except _HANDLED as e:
        raise _http_error(e)
    last = last_submission_at(audit)
    return {
        "auditId": audit_id,
        "summary": summarize_actions(audit),
        "deadline": audit.get("actionDeadline"),
        "deadlineStatus": audit_deadline_status(audit),
        "allActionsResolved": bool(audit.get("allActionsResolved")),
        "storeResponseDays": store_response_days(audit),
        "lastSubmissionAt": last.isoformat() if last else None,
    }


@app.get("/api/actions")
async def list_actions(tab: str = "pending_store"):
    if tab not in ACTION_TABS:
        raise HTTPException(400, f"Invalid tab. Must be one of: {list(ACTION_TABS)}")
    audits = filter_audits_by_tab(get_store().list_audits(), tab)
    return {"tab": tab, "count": len(audits), "audits": [
        {"id": a["id"], "storeName": a.get("storeName"), "auditTypeName": a.get("auditTypeName"),
         "completedAt": a.get("completedAt"), "totalScore": a.get("totalScore"),
         "deadlineStatus": audit_deadline_status(a), "summary": summarize_actions(a)}
        for a in audits]}


@app.post("/api/audits/{audit_id}/actions/submit")
async def submit_actions(audit_id: str, items: str = Form(...), by: str = Form("store")):
    """Bulk store submission. `items` is a JSON list of
    {sectionIndex, answerIndex, note, images[]}; images must already be uploaded."""
    try:
        parsed = json.loads(items)
    except json.JSONDecodeError:
        raise HTTPException(400, "Invalid JSON in items parameter")
    if not isinstance(parsed, list):
        raise HTTPException(400, "items must be a JSON list")
    try:
        drafts = drafts_from_items(audit_id, parsed)
    except (KeyError, TypeError, ValueError):
        raise HTTPException(400, "Every item needs integer sectionIndex and answerIndex")
    return {"success": True, "audit": _audit_view(_transition(audit_id, submit_store_actions, drafts, by=by))}


@app.post("/api/audits/{audit_id}/actions/{section_index}/{answer_index}/approve")
async def approve(audit_id: str, section_index: int, answer_index: int, by: str = Form("admin")):
    audit = _transition(audit_id, approve_action, section_index, answer_index, by=by)
    return {"success": True, "audit": _audit_view(audit)}


@app.post("/api/audits/{audit_id}/actions/{section_index}/{answer_index}/reject")
async def reject(audit_id: str, section_index: int, answer_index: int,
                 reason: str = Form(...), by: str = Form("admin")):
    audit = _transition(audit_id, reject_action, section_index, answer_index, reason, by=by)
    return {"success": True, "audit": _audit_view(audit)}


@app.post("/api/audits/{audit_id}/actions/{section_index}/{answer_index}/revert-rejection")
async def undo_rejection(audit_id: str, section_index: int, answer_index: int, by: str = Form("admin")):
    audit = _transition(audit_id, revert_rejection, section_index, answer_index, by=by)
    return {"success": True, "audit": _audit_view(audit)}


@app.post("/api/audits/{audit_id}/actions/{section_index}/{answer_index}/revert-approval")
async def undo_approval(audit_id: str, section_index: int, answer_index: int, by: str = Form("admin")):
    audit = _transition(audit_id, revert_approval, section_index, answer_index, by=by)
    return {"success": True, "audit": _audit_view(audit)}


@app.post("/api/audits/{audit_id}/actions/{section_index}/{answer_index}/photos")
async def upload_photo(audit_id: str, section_index: int, answer_index: int, file: UploadFile = File(...)):
    data = await file.read()
    if not data:
        raise HTTPException(400, "Empty file")
    try:
        url = await media.upload_evidence(get_store(), storage, audit_id, section_index, answer_index,
                                          file.filename or "photo.jpg", data, file.content_type)
    except _HANDLED as e:
        raise _http_error(e)
    return {"success": True, "url": url}


@app.delete("/api/audits/{audit_id}/actions/{section_index}/{answer_index}/photos")
async def delete_photo(audit_id: str, section_index: int, answer_index: int, url: str):
    try:
        audit = await media.delete_store_image(get_store(), storage, audit_id, section_index, answer_index, url)
    except _HANDLED as e:
        raise _http_error(e)
    return {"success": True, "audit": _audit_view(audit)}


@app.get("/api/offline/pending")
async def pending_offline_media(audit_id: str = None):
    entries = offline_queue.list_pending(audit_id)
    return {"count": len(entries), "media": entries}


@app.get("/api/uploads/{key:path}")
async def serve_upload(key: str):
    """Serve evidence stored by the local file backend."""
    if not isinstance(storage, FileObjectStorage):
        raise HTTPException(404, "Uploads are served by the object store")
    if ".." in key.split("/") or "\\" in key:
        raise HTTPException(400, "Invalid key")
    fp = storage.root / key
    if not fp.resolve().is_relative_to(storage.root.resolve()):
        raise HTTPException(403, "Access denied")
    if not fp.exists():
        raise HTTPException(404, "File not found")
    mt = {".jpg": "image/jpeg", ".jpeg": "image/jpeg", ".png": "image/png",
          ".webp": "image/webp", ".heic": "image/heic"}.get(fp.suffix.lower(), "application/octet-stream")
    return FileResponse(fp, media_type=mt)


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    print(f"Starting StoreAudit v{VERSION} on port {port}")
    print(f"Evidence storage: {type(storage).__name__}")
    uvicorn.run(app, host="0.0.0.0", port=port)
