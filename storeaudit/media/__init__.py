"""
StoreAudit — Media Upload Pipeline
Photo evidence for corrective actions, from file selection to a URL in the
answer's authoritative storeImages list.

Add (online):
  draft gets a pending item → compress (fall back to original bytes) →
  upload under a unique object key → read the CURRENT audit, append the URL to
  storeImages, replace → pending item becomes a confirmed URL

Add (offline):
  draft gets a pending item (no document store read) → original + best-effort
  compressed bytes go to the OfflineMediaQueue → flush_offline_queue() uploads
  them once back online

Remove:
  confirmed → object delete (best effort, failure only logged) → URL removed
              from storeImages regardless → draft item dropped
  pending   → draft item and its queue entry dropped

Failures leave the draft item pending with an `error`; retry_photo() picks it
up again. When the upload worked but the record write did not, the item keeps
its `uploadedUrl` and a retry only repeats the record write.
"""
import asyncio
import io
import re
import uuid
from datetime import datetime

from PIL import Image, ImageOps, UnidentifiedImageError

from storeaudit.actions import (
    action_status, draft_key, new_action_data, InvalidTransition,
)
from storeaudit.config import (
    IMAGE_MAX_SIZE_MB, IMAGE_MAX_DIMENSION, IMAGE_QUALITY, IMAGE_MIN_QUALITY,
    IMAGE_QUALITY_STEP, OBJECT_KEY_PREFIX, MAX_FILENAME_LENGTH, STORE_EDITABLE_STATUSES,
)
from storeaudit.db import AuditNotFound
from storeaudit.records import RecordError, get_answer, is_failing, question_label, now_iso
from storeaudit.storage import StorageError


class CompressionError(Exception):
    pass


class MediaUploadError(Exception):
    def __init__(self, message: str, item_id: str = None):
        self.item_id = item_id
        super().__init__(message)


# ============================================================
# COMPRESSION
# ============================================================
def _compress_sync(data: bytes, max_bytes: int, max_dimension: int, quality: float) -> bytes:
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise CompressionError(f"Not a readable image: {e}") from e

    img = ImageOps.exif_transpose(img)
    if img.mode != "RGB":
        img = img.convert("RGB")
    img.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)

    q = quality
    while True:
        buf = io.BytesIO()
        img.save(buf, format="JPEG", quality=int(round(q * 100)), optimize=True)
        out = buf.getvalue()
        if len(out) <= max_bytes or q - IMAGE_QUALITY_STEP < IMAGE_MIN_QUALITY - 1e-9:
            return out
        q -= IMAGE_QUALITY_STEP


async def compress_image(data: bytes, max_size_mb: float = IMAGE_MAX_SIZE_MB,
                         max_dimension: int = IMAGE_MAX_DIMENSION, quality: float = IMAGE_QUALITY) -> bytes:
    """JPEG-encode, bounded to max_dimension px, stepping quality down until the
    result fits max_size_mb (or the quality floor is hit). Runs off the event loop."""
    max_bytes = int(max_size_mb * 1024 * 1024)
    return await asyncio.to_thread(_compress_sync, data, max_bytes, max_dimension, quality)


async def _prepare_upload(data: bytes, file_name: str, content_type: str = None) -> tuple:
    try:
        return await compress_image(data), "image/jpeg"
    except CompressionError as e:
        print(f"[Upload] Compression failed for {file_name} ({e}), uploading original")
        return data, content_type or "application/octet-stream"


# ============================================================
# OBJECT KEYS
# ============================================================
def sanitize_filename(name: str) -> str:
    base = (name or "").replace("\\", "/").rsplit("/", 1)[-1]
    base = re.sub(r"[^A-Za-z0-9._-]+", "_", base).strip("._")
    return base[-MAX_FILENAME_LENGTH:] or "photo.jpg"


def build_object_key(audit_id: str, file_name: str, now: datetime = None) -> str:
    millis = int((now or datetime.now()).timestamp() * 1000)
    return f"{OBJECT_KEY_PREFIX}/{audit_id}/{millis}_{uuid.uuid4().hex[:6]}_{sanitize_filename(file_name)}"


# ============================================================
# AUTHORITATIVE RECORD (read-modify-write)
# ============================================================
def append_store_image(store, audit_id: str, section_index: int, answer_index: int, url: str) -> dict:
    """Append to the storeImages of a freshly read audit, never a cached copy."""
    audit = store.get_audit(audit_id)
    answer = get_answer(audit, section_index, answer_index)
    data = answer.get("actionData")
    if not isinstance(data, dict):
        data = answer["actionData"] = new_action_data()
    images = data.setdefault("storeImages", [])
    if url not in images:
        images.append(url)
    data["photoUploadedAt"] = now_iso()
    audit["updatedAt"] = data["photoUploadedAt"]
    return store.replace_audit(audit)


def remove_store_image(store, audit_id: str, section_index: int, answer_index: int, url: str) -> dict:
    audit = store.get_audit(audit_id)
    answer = get_answer(audit, section_index, answer_index)
    data = answer.get("actionData") or {}
    data["storeImages"] = [u for u in data.get("storeImages") or [] if u != url]
    audit["updatedAt"] = now_iso()
    return store.replace_audit(audit)


async def delete_store_image(store, storage, audit_id: str, section_index: int, answer_index: int, url: str) -> dict:
    """Object delete is best effort; the URL leaves storeImages either way."""
    key = storage.key_from_url(url)
    if key:
        try:
            await storage.delete(key)
        except StorageError as e:
            print(f"[Upload] Object delete failed for {url} ({e}), removing reference anyway")
    else:
        print(f"[Upload] {url} is not in this storage, removing reference only")
    return remove_store_image(store, audit_id, section_index, answer_index, url)


def check_accepts_photos(store, audit_id: str, section_index: int, answer_index: int):
    ensure_accepts_photos(get_answer(store.get_audit(audit_id), section_index, answer_index))


def ensure_accepts_photos(answer: dict):
    if not is_failing(answer):
        raise InvalidTransition(f"'{question_label(answer)}' has no corrective action")
    if action_status(answer) not in STORE_EDITABLE_STATUSES:
        raise InvalidTransition(
            f"'{question_label(answer)}' is '{action_status(answer)}'; evidence can no longer change")


async def upload_evidence(store, storage, audit_id: str, section_index: int, answer_index: int,
                          file_name: str, data: bytes, content_type: str = None) -> str:
    """Server-side upload without a local draft: compress, put, append. Returns the URL."""
    check_accepts_photos(store, audit_id, section_index, answer_index)
    payload, ctype = await _prepare_upload(data, file_name, content_type)
    try:
        url = await storage.put(build_object_key(audit_id, file_name), payload, ctype)
    except StorageError as e:
        print(f"[Upload] Upload failed for {file_name}: {e}")
        raise MediaUploadError(f"Upload failed for {file_name}: {e}") from e
    append_store_image(store, audit_id, section_index, answer_index, url)
    print(f"[Upload] {url} attached to {audit_id}:{section_index}:{answer_index}")
    return url


# ============================================================
# DRAFT-AWARE UPLOAD STEPS
# ============================================================
async def _record_upload(store, drafts, audit_id, section_index, answer_index, item_id, url) -> dict:
    key = draft_key(audit_id, section_index, answer_index)
    drafts.update_pending(key, item_id, uploadedUrl=url, error=None)
    try:
        append_store_image(store, audit_id, section_index, answer_index, url)
    except Exception as e:
        print(f"[Upload] Uploaded {url} but could not update audit {audit_id}: {e}")
        drafts.update_pending(key, item_id, error=f"Saving the photo failed: {e}")
        raise MediaUploadError(f"Photo uploaded but not saved to the audit: {e}", item_id) from e
    print(f"[Upload] {url} attached to {key}")
    return drafts.confirm(key, item_id, url)


async def _upload_and_record(store, storage, drafts, audit_id, section_index, answer_index,
                             item_id, file_name, data, content_type=None) -> dict:
    key = draft_key(audit_id, section_index, answer_index)
    payload, ctype = await _prepare_upload(data, file_name, content_type)
    object_key = build_object_key(audit_id, file_name)
    try:
        url = await storage.put(object_key, payload, ctype)
    except StorageError as e:
        print(f"[Upload] Upload failed for {file_name}: {e}")
        drafts.update_pending(key, item_id, error=str(e))
        raise MediaUploadError(f"Upload failed for {file_name}: {e}", item_id) from e
    return await _record_upload(store, drafts, audit_id, section_index, answer_index, item_id, url)


async def add_photo(store, storage, drafts, audit_id: str, section_index: int, answer_index: int,
                    file_name: str, data: bytes, online: bool = True, queue=None,
                    content_type: str = None, audit: dict = None) -> dict:
    """Returns the draft item: confirmed when uploaded, pending (queued) when offline.

    `audit` is the caller's last snapshot. When given, eligibility is checked
    against it; otherwise an online add reads the live record once the pending
    item exists. Offline adds never read the document store.
    """
    if not online and queue is None:
        raise MediaUploadError("Offline and no local media queue configured")
    if audit is not None:
        ensure_accepts_photos(get_answer(audit, section_index, answer_index))

    key = draft_key(audit_id, section_index, answer_index)
    item = drafts.add_pending(key, file_name)

    if online and audit is None:
        try:
            check_accepts_photos(store, audit_id, section_index, answer_index)
        except (InvalidTransition, RecordError, AuditNotFound):
            drafts.remove_item(key, item["id"])
            raise
        except Exception as e:
            print(f"[Upload] Could not read audit {audit_id} before uploading {file_name}: {e}")
            drafts.update_pending(key, item["id"], error=f"Audit unavailable: {e}")
            raise MediaUploadError(f"Audit {audit_id} unavailable: {e}", item["id"]) from e

    if not online:
        try:
            compressed = await compress_image(data)
        except CompressionError:
            compressed = None
        queue.enqueue(audit_id, section_index, answer_index, file_name, data, compressed,
                      content_type=content_type or "application/octet-stream", draft_item_id=item["id"])
        return drafts.update_pending(key, item["id"], queued=True)

    return await _upload_and_record(store, storage, drafts, audit_id, section_index, answer_index,
                                    item["id"], file_name, data, content_type)


async def retry_photo(store, storage, drafts, audit_id: str, section_index: int, answer_index: int,
                      item_id: str, data: bytes = None, queue=None, content_type: str = None) -> dict:
    key = draft_key(audit_id, section_index, answer_index)
    item = drafts.find_item(key, item_id)
    if item is None:
        raise KeyError(f"No evidence item {item_id} in draft {key}")
    if item["state"] == "confirmed":
        return item

    if item.get("uploadedUrl"):
        return await _record_upload(store, drafts, audit_id, section_index, answer_index,
                                    item_id, item["uploadedUrl"])

    queued = None
    if data is None and queue is not None:
        queued = next((e for e in queue.list_pending(audit_id) if e.get("draftItemId") == item_id), None)
        if queued:
            data = queue.get_blob(queued["id"], prefer_compressed=False)
            content_type = content_type or queued.get("contentType")
    if data is None:
        raise MediaUploadError(f"No image data left to retry {item.get('fileName')}", item_id)

    result = await _upload_and_record(store, storage, drafts, audit_id, section_index, answer_index,
                                      item_id, item.get("fileName"), data, content_type)
    if queued:
        queue.remove(queued["id"])
    return result


async def remove_photo(store, storage, drafts, audit_id: str, section_index: int, answer_index: int,
                       item_id: str, queue=None):
    key = draft_key(audit_id, section_index, answer_index)
    item = drafts.find_item(key, item_id)
    if item is None:
        return None

    if item["state"] == "confirmed":
        await delete_store_image(store, storage, audit_id, section_index, answer_index, item["url"])
    else:
        if queue is not None:
            queue.remove_for_item(item_id)
        if item.get("uploadedUrl"):
            object_key = storage.key_from_url(item["uploadedUrl"])
            try:
                if object_key:
                    await storage.delete(object_key)
            except StorageError as e:
                print(f"[Upload] Could not delete orphaned object {item['uploadedUrl']}: {e}")
    return drafts.remove_item(key, item_id)


# ============================================================
# OFFLINE QUEUE DRAIN
# ============================================================
async def flush_offline_queue(store, storage, drafts, queue, audit_id: str = None) -> dict:
    """Upload everything the device queued while offline. One failure does not stop the rest."""
    uploaded, failed, dropped = 0, 0, 0
    for entry in queue.list_pending(audit_id):
        s_idx, a_idx = entry["sectionIndex"], entry["answerIndex"]
        key = draft_key(entry["auditId"], s_idx, a_idx)
        item_id = entry.get("draftItemId")
        if not item_id or drafts.find_item(key, item_id) is None:
            queue.remove(entry["id"])
            dropped += 1
            continue

        data = queue.get_blob(entry["id"])
        ctype = "image/jpeg" if entry.get("compressed") else entry.get("contentType")
        try:
            url = await storage.put(build_object_key(entry["auditId"], entry["fileName"]), data, ctype)
        except StorageError as e:
            print(f"[Sync] Queued upload of {entry['fileName']} failed: {e}")
            drafts.update_pending(key, item_id, error=str(e))
            failed += 1
            continue

        queue.mark_uploaded(entry["id"], url)
        drafts.update_pending(key, item_id, queued=False)
        try:
            await _record_upload(store, drafts, entry["auditId"], s_idx, a_idx, item_id, url)
            uploaded += 1
        except MediaUploadError:
            failed += 1

    cleared = queue.clear_uploaded()
    print(f"[Sync] Offline queue flushed: {uploaded} uploaded, {failed} failed, {dropped} dropped, {cleared} cleared")
    return {"uploaded": uploaded, "failed": failed, "dropped": dropped}
