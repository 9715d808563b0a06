"""
StoreAudit — Reconciliation & Action Session
Keeps a device's local drafts in step with the authoritative audit record.

Merge rule, per failing answer still owned by the store (pending_store /
rejected) whose server record carries a note or at least one image:

  no local draft     → adopt the server note + images as the draft
  local draft exists → evidence = server storeImages (as confirmed items)
                                  + every local pending item, untouched
                       note     = local note, unless it is empty

Re-applying an unchanged snapshot changes nothing. Confirmed evidence
converges across devices (URLs added or deleted elsewhere show up here).
Two devices holding different non-empty notes are NOT reconciled: each
keeps its own text until one of them submits.

ActionSession is the per-screen controller: snapshots in, render model out.
It holds no process-wide state; everything it needs is passed in.
"""
import asyncio
import copy

from storeaudit import media
from storeaudit.actions import (
    action_status, apply_transition, draft_key, pending_items, submit_store_actions,
    summarize_actions, validate_store_submission, InvalidTransition,
)
from storeaudit.config import STORE_EDITABLE_STATUSES
from storeaudit.deadline import audit_deadline_status
from storeaudit.drafts import confirmed_item, new_draft
from storeaudit.records import get_answer, iter_failing, question_label, now_iso


# ============================================================
# MERGE ENGINE
# ============================================================
def _has_server_draft(action_data: dict) -> bool:
    return bool((action_data.get("storeNote") or "").strip() or action_data.get("storeImages"))


def merge_answer_draft(local, action_data: dict) -> dict:
    """Pure merge of one local draft (or None) with the server's actionData."""
    server_note = action_data.get("storeNote") or ""
    server_images = list(action_data.get("storeImages") or [])
    if local is None:
        return new_draft(server_note, server_images)

    known_ids = {e["url"]: e["id"] for e in local.get("evidence", []) if e.get("state") == "confirmed"}
    confirmed = []
    for url in server_images:
        item = confirmed_item(url)
        if url in known_ids:
            item["id"] = known_ids[url]
        confirmed.append(item)

    merged = copy.deepcopy(local)
    merged["evidence"] = confirmed + pending_items(local)
    if not merged.get("note"):
        merged["note"] = server_note
    return merged


def reconcile_snapshot(audit: dict, drafts) -> list:
    """Fold an incoming server snapshot into the draft store. Returns changed keys."""
    changed = []
    for s_idx, a_idx, _, answer in iter_failing(audit):
        if action_status(answer) not in STORE_EDITABLE_STATUSES:
            continue
        data = answer.get("actionData") or {}
        if not _has_server_draft(data):
            continue
        key = draft_key(audit["id"], s_idx, a_idx)
        local = drafts.get(key)
        merged = merge_answer_draft(local, data)
        if local is None or merged["note"] != local.get("note") or merged["evidence"] != local.get("evidence"):
            drafts.put(key, merged)
            changed.append(key)
    if changed:
        print(f"[Sync] {len(changed)} draft(s) updated from audit {audit['id']}")
    return changed


def save_store_note(store, audit_id: str, section_index: int, answer_index: int, note: str) -> dict:
    """Write the draft note into the server record (read-modify-write, full replace)."""
    audit = store.get_audit(audit_id)
    answer = get_answer(audit, section_index, answer_index)
    if action_status(answer) not in STORE_EDITABLE_STATUSES:
        raise InvalidTransition(f"'{question_label(answer)}' is '{action_status(answer)}'; the note is locked")
    answer.setdefault("actionData", {})["storeNote"] = note
    audit["updatedAt"] = now_iso()
    return store.replace_audit(audit)


# ============================================================
# ACTION SESSION (controller / view model)
# ============================================================
class ActionSession:
    """One open corrective-action screen for one audit on one device."""

    def __init__(self, audit_id: str, store, storage, drafts, queue=None,
                 online: bool = True, autosave_delay: float = 1.5, by: str = "store"):
        self.audit_id = audit_id
        self.store = store
        self.storage = storage
        self.drafts = drafts
        self.queue = queue
        self.online = online
        self.autosave_delay = autosave_delay
        self.by = by
        self.audit = None
        self.errors = {}
        self.closed = False
        self._tasks = set()
        self._autosave = {}
        self._unsaved_notes = set()

    # ── snapshot in ──
    def apply_snapshot(self, audit: dict) -> list:
        if audit.get("id") != self.audit_id:
            raise ValueError(f"Snapshot for {audit.get('id')} applied to session of {self.audit_id}")
        self.audit = copy.deepcopy(audit)
        return reconcile_snapshot(self.audit, self.drafts)

    def refresh(self) -> list:
        return self.apply_snapshot(self.store.get_audit(self.audit_id))

    # ── render model out ──
    def render(self, today=None) -> dict:
        if self.audit is None:
            raise RuntimeError("No snapshot applied yet")
        drafts = self.drafts.for_audit(self.audit_id)
        items = []
        for s_idx, a_idx, section, answer in iter_failing(self.audit):
            key = draft_key(self.audit_id, s_idx, a_idx)
            data = answer.get("actionData") or {}
            status = action_status(answer)
            editable = status in STORE_EDITABLE_STATUSES
            draft = drafts.get(key) if editable else None
            if draft:
                evidence = draft.get("evidence", [])
                note = draft.get("note", "")
            else:
                evidence = [confirmed_item(u) for u in data.get("storeImages") or []]
                note = data.get("storeNote") or ""
            items.append({
                "key": key,
                "sectionIndex": s_idx,
                "answerIndex": a_idx,
                "sectionName": section.get("sectionName"),
                "questionId": answer.get("questionId"),
                "questionText": question_label(answer),
                "status": status,
                "editable": editable,
                "photoRequired": bool(answer.get("actionPhotoRequired")),
                "note": note,
                "evidence": evidence,
                "uploading": sum(1 for e in evidence if e.get("state") == "pending" and not e.get("queued")),
                "queued": sum(1 for e in evidence if e.get("queued")),
                "adminNote": data.get("adminNote"),
                "error": self.errors.get(key),
            })

        problems = validate_store_submission(self.audit, drafts)
        editable_count = sum(1 for i in items if i["editable"])
        return {
            "auditId": self.audit_id,
            "storeName": self.audit.get("storeName"),
            "totalScore": self.audit.get("totalScore"),
            "actionDeadline": self.audit.get("actionDeadline"),
            "deadlineStatus": audit_deadline_status(self.audit, today),
            "summary": summarize_actions(self.audit),
            "online": self.online,
            "items": items,
            "problems": problems,
            "canSubmit": editable_count > 0 and not problems,
        }

    # ── background work ──
    async def _run(self, coro):
        if self.closed:
            coro.close()
            raise RuntimeError("Session is closed")
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        try:
            return await task
        finally:
            self._tasks.discard(task)

    # ── notes ──
    def set_note(self, section_index: int, answer_index: int, note: str) -> dict:
        """Local edit; schedules a debounced save of the note to the server record
        when called inside a running event loop. Offline edits are saved by
        set_online(True)."""
        key = draft_key(self.audit_id, section_index, answer_index)
        draft = self.drafts.set_note(key, note)
        if not self.online:
            self._unsaved_notes.add((section_index, answer_index))
            return draft
        if self.autosave_delay is not None and not self.closed:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                return draft
            previous = self._autosave.pop(key, None)
            if previous:
                previous.cancel()
            task = loop.create_task(self._autosave_later(section_index, answer_index))
            self._autosave[key] = task
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return draft

    async def _autosave_later(self, section_index: int, answer_index: int):
        await asyncio.sleep(self.autosave_delay)
        key = draft_key(self.audit_id, section_index, answer_index)
        self._autosave.pop(key, None)
        try:
            await self.save_note(section_index, answer_index)
        except Exception as e:
            print(f"[Sync] Autosave of {key} failed, note kept locally: {e}")
            self.errors[key] = f"Note not saved: {e}"

    async def save_note(self, section_index: int, answer_index: int) -> dict:
        key = draft_key(self.audit_id, section_index, answer_index)
        draft = self.drafts.get(key) or new_draft()
        saved = save_store_note(self.store, self.audit_id, section_index, answer_index, draft["note"])
        self.errors.pop(key, None)
        return saved

    # ── photos ──
    async def add_photo(self, section_index: int, answer_index: int, file_name: str, data: bytes,
                        content_type: str = None) -> dict:
        key = draft_key(self.audit_id, section_index, answer_index)
        try:
            item = await self._run(media.add_photo(
                self.store, self.storage, self.drafts, self.audit_id, section_index, answer_index,
                file_name, data, online=self.online, queue=self.queue, content_type=content_type,
                audit=self.audit))
        except media.MediaUploadError as e:
            self.errors[key] = str(e)
            raise
        self.errors.pop(key, None)
        return item

    async def retry_photo(self, section_index: int, answer_index: int, item_id: str, data: bytes = None) -> dict:
        key = draft_key(self.audit_id, section_index, answer_index)
        try:
            item = await self._run(media.retry_photo(
                self.store, self.storage, self.drafts, self.audit_id, section_index, answer_index,
                item_id, data=data, queue=self.queue))
        except media.MediaUploadError as e:
            self.errors[key] = str(e)
            raise
        self.errors.pop(key, None)
        return item

    async def remove_photo(self, section_index: int, answer_index: int, item_id: str):
        return await self._run(media.remove_photo(
            self.store, self.storage, self.drafts, self.audit_id, section_index, answer_index,
            item_id, queue=self.queue))

    async def set_online(self, online: bool):
        """Back online: push notes typed offline, then drain the media queue."""
        was_offline = not self.online
        self.online = online
        if not (online and was_offline):
            return None
        result = {"notes": await self.save_offline_notes()}
        if self.queue is not None:
            result.update(await self.flush_offline_media())
        else:
            self.refresh()
        return result

    async def save_offline_notes(self) -> int:
        """Save every note edited while offline. Failed ones stay marked for the next reconnect."""
        saved = 0
        for section_index, answer_index in sorted(self._unsaved_notes):
            key = draft_key(self.audit_id, section_index, answer_index)
            try:
                await self._run(self.save_note(section_index, answer_index))
            except InvalidTransition as e:
                print(f"[Sync] Offline note for {key} dropped: {e}")
                self.errors[key] = f"Note not saved: {e}"
            except Exception as e:
                print(f"[Sync] Offline note for {key} not saved, kept locally: {e}")
                self.errors[key] = f"Note not saved: {e}"
                continue
            else:
                saved += 1
            self._unsaved_notes.discard((section_index, answer_index))
        if saved:
            print(f"[Sync] {saved} offline note(s) saved to audit {self.audit_id}")
        return saved

    async def flush_offline_media(self) -> dict:
        result = await self._run(media.flush_offline_queue(
            self.store, self.storage, self.drafts, self.queue, self.audit_id))
        self.refresh()
        return result

    # ── submit ──
    async def submit(self) -> dict:
        """Bulk submit every store-owned action from the local drafts."""
        for task in list(self._autosave.values()):
            task.cancel()
        self._autosave.clear()
        self._unsaved_notes.clear()
        updated = apply_transition(self.store, self.audit_id, submit_store_actions,
                                   self.drafts.for_audit(self.audit_id), by=self.by)
        self.drafts.clear_audit(self.audit_id)
        self.errors.clear()
        self.apply_snapshot(updated)
        print(f"[Sync] Audit {self.audit_id} actions submitted")
        return updated

    # ── navigation away ──
    async def close(self):
        """Cancel in-flight work. Uploads already past the object put may still land."""
        self.closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._autosave.clear()
