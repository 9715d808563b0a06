"""
StoreAudit — Records Module

Audit record shape, answer-kind dispatch and record normalization.

Answer kinds form a closed set (config.ANSWER_TYPES):
  yes_no | multiple_choice | checkbox | rating    — scored
  number | date | short_text                      — informational (0 / 0)

Every consumer asks answer_kind() instead of reading "questionType" directly,
so an unknown kind fails loudly here rather than being scored as zero somewhere
downstream.

Also covers:
  - building a fresh in-progress audit from the question catalog
  - self-healing legacy answers that are missing question metadata
  - diffing two versions of an audit for "audit edited" notifications
"""

import copy
import uuid
from datetime import datetime

from storeaudit.config import (
    ANSWER_TYPES, INFORMATIONAL_TYPES, DEFAULT_ANSWER_TYPE, DEFAULT_RATING_MAX,
    ANSWER_NO, ANSWER_EXEMPT,
)


class RecordError(ValueError):
    """Malformed audit record: unknown answer kind, bad section/answer index."""


def now_iso() -> str:
    return datetime.now().isoformat()


def parse_ts(value):
    """ISO string / datetime / None → datetime or None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


# ============================================================
# ANSWER KINDS
# ============================================================
def answer_kind(answer: dict) -> str:
    kind = answer.get("questionType") or DEFAULT_ANSWER_TYPE
    if kind not in ANSWER_TYPES:
        raise RecordError(f"Unknown answer kind '{kind}' for question {answer.get('questionId')}")
    return kind


def is_informational(answer: dict) -> bool:
    return answer_kind(answer) in INFORMATIONAL_TYPES


def is_exempt(answer: dict) -> bool:
    return answer.get("answer") == ANSWER_EXEMPT


def is_answered(answer: dict) -> bool:
    value = answer.get("answer")
    if value is None:
        return False
    return str(value).strip() != ""


def is_failing(answer: dict) -> bool:
    """An answer needs a corrective action: a "no", or a checkbox short of full marks."""
    if not is_answered(answer) or is_exempt(answer):
        return False
    kind = answer_kind(answer)
    if kind == "yes_no":
        return answer.get("answer") == ANSWER_NO
    if kind == "checkbox":
        return float(answer.get("earnedPoints") or 0) < float(answer.get("maxPoints") or 0)
    return False


# ============================================================
# NAVIGATION
# ============================================================
def get_section(audit: dict, section_index: int) -> dict:
    sections = audit.get("sections") or []
    if not 0 <= section_index < len(sections):
        raise RecordError(f"Section {section_index} not found in audit {audit.get('id')}")
    return sections[section_index]


def get_answer(audit: dict, section_index: int, answer_index: int) -> dict:
    answers = get_section(audit, section_index).get("answers") or []
    if not 0 <= answer_index < len(answers):
        raise RecordError(f"Answer {section_index}/{answer_index} not found in audit {audit.get('id')}")
    return answers[answer_index]


def iter_answers(audit: dict):
    """Yield (section_index, answer_index, section, answer) in document order."""
    for s_idx, section in enumerate(audit.get("sections") or []):
        for a_idx, answer in enumerate(section.get("answers") or []):
            yield s_idx, a_idx, section, answer


def iter_failing(audit: dict):
    for s_idx, a_idx, section, answer in iter_answers(audit):
        if is_failing(answer):
            yield s_idx, a_idx, section, answer


def question_label(answer: dict) -> str:
    return answer.get("questionText") or answer.get("questionId") or "?"


# ============================================================
# AUDIT CONSTRUCTION (from the question catalog)
# ============================================================
def max_points_for_question(question: dict) -> float:
    """multiple_choice is worth its best option; everything else uses the configured max."""
    points = question.get("maxPoints") or 0
    options = question.get("options") or []
    if question.get("type") == "multiple_choice" and options:
        points = max(o.get("points", 0) for o in options)
    return points


def new_answer(question: dict) -> dict:
    max_points = max_points_for_question(question)
    answer = {
        "questionId": question["id"],
        "questionText": question.get("text") or "",
        "questionType": question.get("type") or DEFAULT_ANSWER_TYPE,
        "maxPoints": max_points,
        "originalMaxPoints": max_points,
        "photoRequired": bool(question.get("photoRequired")),
        "actionPhotoRequired": bool(question.get("actionPhotoRequired")),
        "selectedOptions": [],
        "answer": "",
        "earnedPoints": 0,
        "notes": [],
        "photos": [],
    }
    if question.get("options"):
        answer["options"] = copy.deepcopy(question["options"])
    if question.get("ratingMax"):
        answer["ratingMax"] = question["ratingMax"]
    answer_kind(answer)
    return answer


def build_audit(audit_type: dict, sections: list, questions: dict, store: dict, auditor: dict) -> dict:
    """Create an in-progress audit.

    `sections` are catalog sections ({id, name, order, questionIds}); `questions`
    maps question id → catalog question. Missing questions are skipped.
    """
    audit_sections = []
    for section in sorted(sections, key=lambda s: s.get("order", 0)):
        qs = [questions[qid] for qid in section.get("questionIds", []) if qid in questions]
        qs.sort(key=lambda q: q.get("order", 0))
        audit_sections.append({
            "sectionId": section["id"],
            "sectionName": section.get("name") or "",
            "order": section.get("order", 0),
            "answers": [new_answer(q) for q in qs],
        })

    if not any(s["answers"] for s in audit_sections):
        raise RecordError(f"Audit type '{audit_type.get('name')}' has no questions")

    now = now_iso()
    return {
        "id": str(uuid.uuid4()),
        "auditTypeId": audit_type["id"],
        "auditTypeName": audit_type.get("name") or "",
        "storeId": store["id"],
        "storeName": store.get("name") or "",
        "auditorId": auditor["id"],
        "auditorName": auditor.get("name") or "",
        "status": "in_progress",
        "sections": audit_sections,
        "totalScore": 0,
        "maxScore": sum(a["maxPoints"] for s in audit_sections for a in s["answers"]),
        "allActionsResolved": False,
        "actionDeadline": None,
        "completedAt": None,
        "startedAt": now,
        "createdAt": now,
        "updatedAt": now,
    }


# ============================================================
# LEGACY BACKFILL
# ============================================================
_ANSWER_DEFAULTS = {
    "questionText": "",
    "questionType": DEFAULT_ANSWER_TYPE,
    "photoRequired": False,
    "actionPhotoRequired": False,
    "selectedOptions": [],
    "answer": "",
    "earnedPoints": 0,
    "maxPoints": 0,
    "notes": [],
    "photos": [],
}


def backfill_answer(answer: dict, question: dict = None) -> list:
    """Fill missing question metadata in place. Returns the names of fields filled."""
    filled = []
    if question:
        from_catalog = {
            "questionText": question.get("text"),
            "questionType": question.get("type"),
            "photoRequired": question.get("photoRequired"),
            "actionPhotoRequired": question.get("actionPhotoRequired"),
            "options": question.get("options"),
            "ratingMax": question.get("ratingMax"),
        }
        for key, value in from_catalog.items():
            if answer.get(key) is None and value is not None:
                answer[key] = copy.deepcopy(value)
                filled.append(key)
        if answer.get("maxPoints") is None:
            answer["maxPoints"] = 0 if is_exempt(answer) else max_points_for_question(question)
            filled.append("maxPoints")

    for key, value in _ANSWER_DEFAULTS.items():
        if answer.get(key) is None:
            answer[key] = copy.deepcopy(value)
            filled.append(key)

    if answer.get("originalMaxPoints") is None:
        original = answer.get("maxPoints") or 0
        if is_exempt(answer) and question:
            original = max_points_for_question(question)
        answer["originalMaxPoints"] = original
        filled.append("originalMaxPoints")

    if answer_kind(answer) == "rating" and not answer.get("ratingMax"):
        answer["ratingMax"] = DEFAULT_RATING_MAX
        filled.append("ratingMax")
    return filled


def backfill_from_catalog(audit: dict, catalog: dict) -> int:
    """Self-heal legacy answers from the current question catalog (id → question).
    Returns the number of answers that needed repair."""
    repaired = 0
    for s_idx, a_idx, section, answer in iter_answers(audit):
        filled = backfill_answer(answer, catalog.get(answer.get("questionId")))
        if filled:
            repaired += 1
            print(f"[Records] Backfilled {', '.join(filled)} on {audit.get('id')} {s_idx}/{a_idx}")
    return repaired


# ============================================================
# EDIT DIFF
# ============================================================
def diff_answers(original: dict, edited: dict) -> list:
    """List answer/score changes between two versions of an audit.
    Sections and answers are matched by id, falling back to name/text."""
    changes = []
    for section in edited.get("sections") or []:
        orig_section = next(
            (s for s in original.get("sections") or []
             if s.get("sectionId") == section.get("sectionId") or s.get("sectionName") == section.get("sectionName")),
            None)
        if not orig_section:
            continue
        for answer in section.get("answers") or []:
            orig = next(
                (a for a in orig_section.get("answers") or []
                 if a.get("questionId") == answer.get("questionId") or a.get("questionText") == answer.get("questionText")),
                None)
            if not orig:
                continue
            answer_changed = (answer.get("answer") or "") != (orig.get("answer") or "")
            score_changed = answer.get("earnedPoints") != orig.get("earnedPoints")
            if answer_changed or score_changed:
                changes.append({
                    "sectionName": section.get("sectionName"),
                    "questionId": answer.get("questionId"),
                    "questionText": answer.get("questionText"),
                    "oldAnswer": orig.get("answer") or "",
                    "newAnswer": answer.get("answer") or "",
                    "oldScore": orig.get("earnedPoints"),
                    "newScore": answer.get("earnedPoints"),
                })
    return changes
