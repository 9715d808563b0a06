"""
StoreAudit — Corrective Action Workflow

Architecture:
  When an audit is completed, every failing answer gets an embedded actionData
  record. The store answers it (note + photo evidence), an administrator
  approves or rejects, and either decision can be reverted by the admin.

Action Lifecycle:
  PENDING_STORE → PENDING_ADMIN → APPROVED
        ↑              ↑   ↓          │
        └── REJECTED ←─┘   └──────────┘ (admin revert)
            (store resubmits / admin reverts rejection)

Persistence:
  Every transition here is a pure function over the audit dict. The caller
  writes the result back with ONE full-document replace (apply_transition).
  There is no concurrency token: two admins acting on different answers of
  the same audit race, and the later replace silently wins.

allActionsResolved:
  Derived audit-level flag. Approve sets it to "every failing answer approved";
  reject and both reverts force it to False.
"""

import copy
from datetime import datetime

from storeaudit.config import (
    ACTION_STATUSES, DEFAULT_ACTION_STATUS, STORE_EDITABLE_STATUSES,
)
from storeaudit.deadline import calculate_deadline, business_days_between
from storeaudit.records import (
    get_answer, iter_failing, is_answered,
    question_label, now_iso, parse_ts,
)
from storeaudit.scoring import recompute_scores


class InvalidTransition(ValueError):
    pass


class AuditIncomplete(ValueError):
    def __init__(self, sections: list):
        self.sections = sections
        super().__init__(f"Every question must be answered in: {', '.join(sections)}")


class ActionValidationError(ValueError):
    """Store submission refused. `problems` lists {questionId, questionText, reason}."""

    def __init__(self, problems: list):
        self.problems = problems
        detail = "; ".join(f"{p['questionText']}: {p['reason']}" for p in problems)
        super().__init__(f"Cannot submit actions — {detail}")


# ============================================================
# STATUS TRANSITIONS
# ============================================================
ALLOWED_TRANSITIONS = {
    "pending_store": ["pending_admin"],
    "pending_admin": ["approved", "rejected"],
    "rejected":      ["pending_admin"],   # store resubmits, or admin reverts
    "approved":      ["pending_admin"],   # admin reverts
}


def action_status(answer: dict) -> str:
    """Missing or unknown status is read as pending_store."""
    status = (answer.get("actionData") or {}).get("status")
    return status if status in ACTION_STATUSES else DEFAULT_ACTION_STATUS


def new_action_data(now: str = None) -> dict:
    return {
        "status": DEFAULT_ACTION_STATUS,
        "storeNote": "",
        "storeImages": [],
        "adminNote": None,
        "submittedAt": None,
        "approvedAt": None,
        "rejectedAt": None,
        "resolvedAt": None,
        "photoUploadedAt": None,
        "history": [
            {"status": DEFAULT_ACTION_STATUS, "at": now or now_iso(), "by": "system", "reason": "Action created"}
        ],
    }


def _ensure_action_data(answer: dict) -> dict:
    data = answer.get("actionData")
    if not isinstance(data, dict):
        data = new_action_data()
        answer["actionData"] = data
    data["status"] = action_status(answer)
    data.setdefault("storeImages", [])
    data.setdefault("history", [])
    return data


def _transition(answer: dict, new_status: str, by: str, reason: str = "") -> dict:
    data = _ensure_action_data(answer)
    current = data["status"]
    if new_status not in ALLOWED_TRANSITIONS.get(current, []):
        raise InvalidTransition(
            f"Cannot move '{question_label(answer)}' from '{current}' to '{new_status}'. "
            f"Allowed: {ALLOWED_TRANSITIONS.get(current, [])}")
    data["status"] = new_status
    data["history"].append({"status": new_status, "at": now_iso(), "by": by, "reason": reason})
    return data


def all_actions_approved(audit: dict) -> bool:
    return all(action_status(answer) == "approved" for _, _, _, answer in iter_failing(audit))


# ============================================================
# AUDIT COMPLETION
# ============================================================
def incomplete_sections(audit: dict) -> list:
    """Sections with some, but not all, questions answered."""
    names = []
    for section in audit.get("sections") or []:
        answers = section.get("answers") or []
        answered = [a for a in answers if is_answered(a)]
        if answered and len(answered) < len(answers):
            names.append(section.get("sectionName") or section.get("sectionId"))
    return names


def complete_audit(audit: dict, now: datetime = None) -> dict:
    """Finalize an in-progress audit and open an action for every failing answer."""
    if audit.get("status") != "in_progress":
        raise InvalidTransition(f"Audit {audit.get('id')} is '{audit.get('status')}', not in progress")
    missing = incomplete_sections(audit)
    if missing:
        raise AuditIncomplete(missing)

    updated = copy.deepcopy(audit)
    recompute_scores(updated)
    completed_at = now or datetime.now()
    stamp = completed_at.isoformat()

    failing = 0
    for _, _, _, answer in iter_failing(updated):
        answer["actionData"] = new_action_data(stamp)
        failing += 1

    updated["status"] = "completed"
    updated["completedAt"] = stamp
    updated["actionDeadline"] = calculate_deadline(completed_at).isoformat()
    updated["allActionsResolved"] = failing == 0
    updated["updatedAt"] = stamp
    print(f"[Actions] Audit {updated.get('id')} completed — score {updated['totalScore']}, {failing} action(s) opened")
    return updated


def sync_actions_after_edit(audit: dict, now: str = None) -> int:
    """After an answer of a completed audit is edited: open an action for every
    failing answer that has none and recompute allActionsResolved. In place;
    returns the number of actions opened."""
    if audit.get("status") != "completed":
        return 0
    opened = 0
    for _, _, _, answer in iter_failing(audit):
        if not isinstance(answer.get("actionData"), dict):
            answer["actionData"] = new_action_data(now)
            answer["actionData"]["history"][0]["reason"] = "Action created after edit"
            opened += 1
    audit["allActionsResolved"] = all_actions_approved(audit)
    if opened:
        print(f"[Actions] Audit {audit.get('id')} edited after completion, {opened} action(s) opened")
    return opened


# ============================================================
# STORE SUBMISSION
# ============================================================
def draft_key(audit_id: str, section_index: int, answer_index: int) -> str:
    return f"{audit_id}:{section_index}:{answer_index}"


def confirmed_urls(draft: dict) -> list:
    return [e["url"] for e in (draft or {}).get("evidence", []) if e.get("state") == "confirmed"]


def pending_items(draft: dict) -> list:
    return [e for e in (draft or {}).get("evidence", []) if e.get("state") != "confirmed"]


def drafts_from_items(audit_id: str, items: list) -> dict:
    """Build submit drafts from already-uploaded evidence:
    [{sectionIndex, answerIndex, note, images[]}] → {draft_key: draft}."""
    drafts = {}
    for item in items:
        key = draft_key(audit_id, int(item["sectionIndex"]), int(item["answerIndex"]))
        drafts[key] = {
            "note": item.get("note") or "",
            "evidence": [{"id": f"url-{i}", "state": "confirmed", "url": url}
                         for i, url in enumerate(item.get("images") or [])],
        }
    return drafts


def eligible_for_store(audit: dict) -> list:
    """(section_index, answer_index, answer) the store still owes a response for."""
    return [(s, a, answer) for s, a, _, answer in iter_failing(audit)
            if action_status(answer) in STORE_EDITABLE_STATUSES]


def validate_store_submission(audit: dict, drafts: dict) -> list:
    problems = []
    for s_idx, a_idx, answer in eligible_for_store(audit):
        draft = drafts.get(draft_key(audit["id"], s_idx, a_idx)) or {}

        def problem(reason):
            problems.append({"questionId": answer.get("questionId"),
                             "questionText": question_label(answer),
                             "sectionIndex": s_idx, "answerIndex": a_idx,
                             "reason": reason})

        if not (draft.get("note") or "").strip():
            problem("a note is required")
        if pending_items(draft):
            problem("photo uploads are still pending")
        if answer.get("actionPhotoRequired") and not confirmed_urls(draft):
            problem("at least one photo is required")
    return problems


def submit_store_actions(audit: dict, drafts: dict, by: str = "store") -> dict:
    """Bulk submit: all eligible answers go to pending_admin together, or none do.

    `drafts` maps draft_key() → {note, evidence[]}. The final evidence list is the
    draft's confirmed URLs; pending uploads block the submission.
    """
    eligible = eligible_for_store(audit)
    if not eligible:
        raise InvalidTransition(f"Audit {audit.get('id')} has no actions awaiting the store")
    problems = validate_store_submission(audit, drafts)
    if problems:
        raise ActionValidationError(problems)

    updated = copy.deepcopy(audit)
    now = now_iso()
    for s_idx, a_idx, _ in eligible:
        answer = get_answer(updated, s_idx, a_idx)
        draft = drafts[draft_key(audit["id"], s_idx, a_idx)]
        data = _transition(answer, "pending_admin", by, "Store submitted corrective action")
        data["storeNote"] = draft["note"].strip()
        data["storeImages"] = confirmed_urls(draft)
        data["submittedAt"] = now
        data.pop("rejectedSubmission", None)
    updated["updatedAt"] = now
    return updated


# ============================================================
# ADMIN DECISIONS
# ============================================================
def reject_action(audit: dict, section_index: int, answer_index: int, reason: str, by: str = "admin") -> dict:
    if not (reason or "").strip():
        raise ValueError("A rejection reason is required")
    updated = copy.deepcopy(audit)
    answer = get_answer(updated, section_index, answer_index)
    data = _transition(answer, "rejected", by, reason.strip())
    data["adminNote"] = reason.strip()
    data["rejectedAt"] = now_iso()
    data["rejectedSubmission"] = {
        "storeNote": data.get("storeNote") or "",
        "storeImages": list(data.get("storeImages") or []),
    }
    updated["allActionsResolved"] = False
    updated["updatedAt"] = data["rejectedAt"]
    return updated


def approve_action(audit: dict, section_index: int, answer_index: int, by: str = "admin") -> dict:
    updated = copy.deepcopy(audit)
    answer = get_answer(updated, section_index, answer_index)
    data = _transition(answer, "approved", by, "Approved")
    now = now_iso()
    data["approvedAt"] = now
    data["resolvedAt"] = now
    updated["allActionsResolved"] = all_actions_approved(updated)
    updated["updatedAt"] = now
    return updated


def revert_rejection(audit: dict, section_index: int, answer_index: int, by: str = "admin") -> dict:
    updated = copy.deepcopy(audit)
    answer = get_answer(updated, section_index, answer_index)
    if action_status(answer) != "rejected":
        raise InvalidTransition(f"'{question_label(answer)}' is not rejected")
    data = _transition(answer, "pending_admin", by, "Rejection reverted")
    previous = data.pop("rejectedSubmission", None)
    if previous:
        data["storeNote"] = previous.get("storeNote") or ""
        data["storeImages"] = list(previous.get("storeImages") or [])
    data["adminNote"] = None
    data["rejectedAt"] = None
    updated["allActionsResolved"] = False
    updated["updatedAt"] = now_iso()
    return updated


def revert_approval(audit: dict, section_index: int, answer_index: int, by: str = "admin") -> dict:
    updated = copy.deepcopy(audit)
    answer = get_answer(updated, section_index, answer_index)
    if action_status(answer) != "approved":
        raise InvalidTransition(f"'{question_label(answer)}' is not approved")
    data = _transition(answer, "pending_admin", by, "Approval reverted")
    data["approvedAt"] = None
    data["resolvedAt"] = None
    updated["allActionsResolved"] = False
    updated["updatedAt"] = now_iso()
    return updated


def apply_transition(store, audit_id: str, transition, *args, **kwargs) -> dict:
    """Read the authoritative audit, apply one transition, replace the whole document."""
    audit = store.get_audit(audit_id)
    updated = transition(audit, *args, **kwargs)
    store.replace_audit(updated)
    print(f"[Actions] {transition.__name__} on {audit_id}")
    return updated


# ============================================================
# ACTION DASHBOARD METRICS
# ============================================================
def summarize_actions(audit: dict) -> dict:
    counts = {status: 0 for status in ACTION_STATUSES}
    for _, _, _, answer in iter_failing(audit):
        counts[action_status(answer)] += 1
    total = sum(counts.values())

    if total == 0:
        label = "none"
    elif counts["approved"] == total:
        label = "approved"
    elif counts["rejected"] > 0:
        label = "awaiting_correction"
    elif counts["pending_admin"] > 0:
        label = "awaiting_approval"
    elif counts["pending_store"] == total:
        label = "no_response"
    else:
        label = "awaiting_store"

    return {"total": total, "byStatus": counts, "label": label}


ACTION_TABS = ("pending_store", "pending_admin", "approved")


def filter_audits_by_tab(audits: list, tab: str) -> list:
    """Completed audits with at least one action, filtered for an admin list tab.
    Newest completion first."""
    if tab not in ACTION_TABS:
        raise ValueError(f"Unknown tab '{tab}'. Must be one of: {ACTION_TABS}")
    matched = []
    for audit in audits:
        if audit.get("status") != "completed":
            continue
        statuses = [action_status(a) for _, _, _, a in iter_failing(audit)]
        if not statuses:
            continue
        if tab == "pending_store" and any(s in STORE_EDITABLE_STATUSES for s in statuses):
            matched.append(audit)
        elif tab == "pending_admin" and "pending_admin" in statuses:
            matched.append(audit)
        elif tab == "approved" and all(s == "approved" for s in statuses):
            matched.append(audit)
    matched.sort(key=lambda a: a.get("completedAt") or "", reverse=True)
    return matched


def _submission_times(audit: dict) -> list:
    times = []
    for _, _, _, answer in iter_failing(audit):
        submitted = parse_ts((answer.get("actionData") or {}).get("submittedAt"))
        if submitted:
            times.append(submitted)
    return times


def last_submission_at(audit: dict):
    times = _submission_times(audit)
    return max(times) if times else None


def store_response_days(audit: dict):
    """Business days from completion to the store's first submission."""
    completed = parse_ts(audit.get("completedAt"))
    times = _submission_times(audit)
    if not completed or not times:
        return None
    return business_days_between(completed, min(times))
