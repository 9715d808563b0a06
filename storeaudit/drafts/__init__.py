"""
StoreAudit — Local Draft Store
Per-device working copy of the store's corrective-action responses.

Key:   "{auditId}:{sectionIndex}:{answerIndex}"
Value: {note, evidence[], updatedAt}

Evidence items:
  pending   {id, state:"pending", fileName, queued, error, uploadedUrl}
  confirmed {id, state:"confirmed", url}

A pending item has no durable URL yet (uploading, failed, or waiting in the
offline queue). Confirmed items mirror the server's storeImages and are
replaced wholesale by the reconciliation merge.
"""
import copy
import json
import uuid
from datetime import datetime
from pathlib import Path


def new_draft(note: str = "", urls: list = None) -> dict:
    return {
        "note": note or "",
        "evidence": [confirmed_item(u) for u in urls or []],
        "updatedAt": datetime.now().isoformat(),
    }


def confirmed_item(url: str) -> dict:
    return {"id": f"url-{uuid.uuid5(uuid.NAMESPACE_URL, url).hex[:12]}", "state": "confirmed", "url": url}


def pending_item(file_name: str, item_id: str = None, queued: bool = False) -> dict:
    return {
        "id": item_id or f"pending-{uuid.uuid4().hex[:12]}",
        "state": "pending",
        "fileName": file_name,
        "queued": queued,
        "error": None,
        "uploadedUrl": None,
    }


class DraftStore:
    """Dict of drafts, optionally persisted to a JSON file after every change.
    path=None keeps the drafts in memory only."""

    def __init__(self, path: Path = None):
        self.path = Path(path) if path else None
        self.drafts = self._load()

    def _load(self) -> dict:
        if self.path and self.path.exists():
            try:
                with open(self.path) as f:
                    return json.load(f)
            except (json.JSONDecodeError, IOError) as e:
                print(f"[Drafts] Could not read {self.path.name} ({e}), starting empty")
        return {}

    def save(self):
        if self.path:
            with open(self.path, "w") as f:
                json.dump(self.drafts, f, indent=2, default=str)

    # ── whole drafts ──
    def get(self, key: str):
        draft = self.drafts.get(key)
        return copy.deepcopy(draft) if draft is not None else None

    def put(self, key: str, draft: dict) -> dict:
        self.drafts[key] = copy.deepcopy(draft)
        self.save()
        return draft

    def delete(self, key: str):
        if self.drafts.pop(key, None) is not None:
            self.save()

    def for_audit(self, audit_id: str) -> dict:
        prefix = f"{audit_id}:"
        return {k: copy.deepcopy(v) for k, v in self.drafts.items() if k.startswith(prefix)}

    def clear_audit(self, audit_id: str) -> int:
        keys = [k for k in self.drafts if k.startswith(f"{audit_id}:")]
        for k in keys:
            del self.drafts[k]
        if keys:
            self.save()
        return len(keys)

    # ── field edits ──
    def _draft(self, key: str) -> dict:
        if key not in self.drafts:
            self.drafts[key] = new_draft()
        return self.drafts[key]

    def _touch(self, draft: dict):
        draft["updatedAt"] = datetime.now().isoformat()
        self.save()

    def _item(self, key: str, item_id: str) -> dict:
        for item in self._draft(key)["evidence"]:
            if item["id"] == item_id:
                return item
        raise KeyError(f"No evidence item {item_id} in draft {key}")

    def set_note(self, key: str, note: str) -> dict:
        draft = self._draft(key)
        draft["note"] = note
        self._touch(draft)
        return copy.deepcopy(draft)

    def add_pending(self, key: str, file_name: str, item_id: str = None, queued: bool = False) -> dict:
        draft = self._draft(key)
        item = pending_item(file_name, item_id, queued)
        draft["evidence"].append(item)
        self._touch(draft)
        return copy.deepcopy(item)

    def update_pending(self, key: str, item_id: str, **fields) -> dict:
        item = self._item(key, item_id)
        item.update(fields)
        self._touch(self._draft(key))
        return copy.deepcopy(item)

    def confirm(self, key: str, item_id: str, url: str) -> dict:
        """Replace a pending entry, in place, by its durable URL.
        If a snapshot already brought that URL in, the pending entry is just dropped."""
        draft = self._draft(key)
        existing = next((e for e in draft["evidence"]
                         if e.get("state") == "confirmed" and e.get("url") == url), None)
        for i, item in enumerate(draft["evidence"]):
            if item["id"] == item_id:
                if existing is not None:
                    draft["evidence"].pop(i)
                    self._touch(draft)
                    return copy.deepcopy(existing)
                draft["evidence"][i] = {"id": item_id, "state": "confirmed", "url": url}
                self._touch(draft)
                return copy.deepcopy(draft["evidence"][i])
        raise KeyError(f"No evidence item {item_id} in draft {key}")

    def remove_item(self, key: str, item_id: str):
        draft = self.drafts.get(key)
        if not draft:
            return None
        for i, item in enumerate(draft["evidence"]):
            if item["id"] == item_id:
                removed = draft["evidence"].pop(i)
                self._touch(draft)
                return removed
        return None

    def find_item(self, key: str, item_id: str):
        draft = self.drafts.get(key) or {}
        return next((copy.deepcopy(e) for e in draft.get("evidence", []) if e.get("id") == item_id), None)
