import io
import re

import pytest
from PIL import Image

from conftest import AUDIT_ID, UnreachableStore, jpeg_bytes
from storeaudit.actions import InvalidTransition
from storeaudit.db import FileDocumentStore
from storeaudit.media import (
    CompressionError, MediaUploadError, add_photo, build_object_key, compress_image,
    delete_store_image, flush_offline_queue, remove_photo, retry_photo, sanitize_filename,
)
from storeaudit.storage import FileObjectStorage, StorageError

KEY = f"{AUDIT_ID}:1:0"


class BrokenStorage(FileObjectStorage):
    """Accepts nothing, deletes nothing."""

    def __init__(self, root, fail_put=True):
        super().__init__(root, base_url="/api/uploads")
        self.fail_put = fail_put
        self.puts = 0

    async def put(self, key, data, content_type="application/octet-stream"):
        self.puts += 1
        if self.fail_put:
            raise StorageError("bucket unavailable")
        return await super().put(key, data, content_type)

    async def delete(self, key):
        raise StorageError("delete not permitted")


class ReadOnlyStore(FileDocumentStore):
    def replace_audit(self, audit):
        raise IOError("disk full")


def _store_images(store):
    return store.get_audit(AUDIT_ID)["sections"][1]["answers"][0]["actionData"]["storeImages"]


# ============================================================
# COMPRESSION / KEYS
# ============================================================
@pytest.mark.asyncio
async def test_compress_bounds_dimension_and_size():
    big = Image.linear_gradient("L").resize((4000, 3000)).convert("RGB")
    buf = io.BytesIO()
    big.save(buf, format="PNG")
    out = await compress_image(buf.getvalue())
    img = Image.open(io.BytesIO(out))
    assert img.format == "JPEG"
    assert max(img.size) == 1920
    assert len(out) <= 0.5 * 1024 * 1024


@pytest.mark.asyncio
async def test_compress_stops_at_quality_floor():
    noisy = Image.effect_noise((800, 800), 120).convert("RGB")
    buf = io.BytesIO()
    noisy.save(buf, format="PNG")
    out = await compress_image(buf.getvalue(), max_size_mb=0.0001)
    assert Image.open(io.BytesIO(out)).format == "JPEG"


@pytest.mark.asyncio
async def test_compress_rejects_non_images():
    with pytest.raises(CompressionError):
        await compress_image(b"definitely not an image")


def test_object_keys_are_unique_and_sanitized():
    key = build_object_key(AUDIT_ID, "Back door (1).JPG")
    assert re.fullmatch(rf"actions/{AUDIT_ID}/\d+_[0-9a-f]{{6}}_Back_door_1_.JPG", key)
    assert build_object_key(AUDIT_ID, "x.jpg") != build_object_key(AUDIT_ID, "x.jpg")


def test_sanitize_filename():
    assert sanitize_filename("../../etc/passwd") == "passwd"
    assert sanitize_filename("C:\\photos\\shelf 2.png") == "shelf_2.png"
    assert sanitize_filename("") == "photo.jpg"


# ============================================================
# ADD
# ============================================================
@pytest.mark.asyncio
async def test_add_photo_online_confirms_and_appends(store, storage, drafts, completed):
    item = await add_photo(store, storage, drafts, AUDIT_ID, 1, 0, "exit.jpg", jpeg_bytes())
    assert item["state"] == "confirmed"
    assert item["url"].startswith(f"/api/uploads/actions/{AUDIT_ID}/")
    assert _store_images(store) == [item["url"]]
    assert drafts.get(KEY)["evidence"] == [item]
    assert await storage.get(storage.key_from_url(item["url"]))


@pytest.mark.asyncio
async def test_add_photo_appends_to_the_current_server_list(store, storage, drafts, completed):
    # another device uploaded meanwhile; this device never saw it
    audit = store.get_audit(AUDIT_ID)
    audit["sections"][1]["answers"][0]["actionData"]["storeImages"] = ["/api/uploads/other.jpg"]
    store.replace_audit(audit)

    item = await add_photo(store, storage, drafts, AUDIT_ID, 1, 0, "exit.jpg", jpeg_bytes())
    assert _store_images(store) == ["/api/uploads/other.jpg", item["url"]]


@pytest.mark.asyncio
async def test_uncompressible_file_is_uploaded_as_is(store, storage, drafts, completed):
    item = await add_photo(store, storage, drafts, AUDIT_ID, 1, 0, "scan.heic", b"raw-heic-bytes", content_type="image/heic")
    assert await storage.get(storage.key_from_url(item["url"])) == b"raw-heic-bytes"


@pytest.mark.asyncio
async def test_photos_only_for_open_actions(store, storage, drafts, completed):
    with pytest.raises(InvalidTransition):
        await add_photo(store, storage, drafts, AUDIT_ID, 0, 0, "x.jpg", jpeg_bytes())
    assert drafts.get(f"{AUDIT_ID}:0:0")["evidence"] == []


@pytest.mark.asyncio
async def test_snapshot_check_refuses_before_drafting(store, storage, drafts, completed):
    with pytest.raises(InvalidTransition):
        await add_photo(store, storage, drafts, AUDIT_ID, 0, 0, "x.jpg", jpeg_bytes(), audit=completed)
    assert drafts.get(f"{AUDIT_ID}:0:0") is None


@pytest.mark.asyncio
async def test_add_photo_offline_queues_bytes(store, storage, drafts, queue, completed):
    item = await add_photo(store, storage, drafts, AUDIT_ID, 1, 0, "exit.jpg", jpeg_bytes(),
                           online=False, queue=queue)
    assert item["state"] == "pending" and item["queued"] is True
    pending = queue.list_pending(AUDIT_ID)
    assert len(pending) == 1
    assert pending[0]["draftItemId"] == item["id"]
    assert pending[0]["compressed"] is True
    assert queue.get_blob(pending[0]["id"], prefer_compressed=False) == jpeg_bytes()
    assert _store_images(store) == []


@pytest.mark.asyncio
async def test_offline_without_queue_is_refused(store, storage, drafts, completed):
    with pytest.raises(MediaUploadError):
        await add_photo(store, storage, drafts, AUDIT_ID, 1, 0, "exit.jpg", jpeg_bytes(), online=False)
    assert drafts.get(KEY) is None


@pytest.mark.asyncio
async def test_offline_add_never_reads_the_server(tmp_path, storage, drafts, queue, completed):
    down = UnreachableStore(tmp_path / "down.json", persist=False)
    item = await add_photo(down, storage, drafts, AUDIT_ID, 1, 0, "exit.jpg", jpeg_bytes(),
                           online=False, queue=queue)
    assert item["state"] == "pending" and item["queued"] is True
    assert drafts.get(KEY)["evidence"] == [item]
    assert [e["draftItemId"] for e in queue.list_pending(AUDIT_ID)] == [item["id"]]


@pytest.mark.asyncio
async def test_unreachable_server_leaves_pending_item(tmp_path, store, storage, drafts, completed):
    down = UnreachableStore(tmp_path / "down.json", persist=False)
    with pytest.raises(MediaUploadError) as exc:
        await add_photo(down, storage, drafts, AUDIT_ID, 1, 0, "exit.jpg", jpeg_bytes())
    item = drafts.get(KEY)["evidence"][0]
    assert item["state"] == "pending"
    assert "no network" in item["error"]
    assert exc.value.item_id == item["id"]

    confirmed = await retry_photo(store, storage, drafts, AUDIT_ID, 1, 0, item["id"], data=jpeg_bytes())
    assert _store_images(store) == [confirmed["url"]]


# ============================================================
# FAILURE + RETRY
# ============================================================
@pytest.mark.asyncio
async def test_failed_upload_leaves_pending_item_for_retry(tmp_path, store, storage, drafts, completed):
    broken = BrokenStorage(tmp_path / "broken")
    with pytest.raises(MediaUploadError) as exc:
        await add_photo(store, broken, drafts, AUDIT_ID, 1, 0, "exit.jpg", jpeg_bytes())
    item = drafts.get(KEY)["evidence"][0]
    assert item["state"] == "pending"
    assert "bucket unavailable" in item["error"]
    assert exc.value.item_id == item["id"]
    assert _store_images(store) == []

    with pytest.raises(MediaUploadError):
        await retry_photo(store, storage, drafts, AUDIT_ID, 1, 0, item["id"])

    confirmed = await retry_photo(store, storage, drafts, AUDIT_ID, 1, 0, item["id"], data=jpeg_bytes())
    assert confirmed["state"] == "confirmed"
    assert _store_images(store) == [confirmed["url"]]


@pytest.mark.asyncio
async def test_record_write_failure_retries_without_reupload(tmp_path, store, drafts, completed):
    storage = BrokenStorage(tmp_path / "ok", fail_put=False)
    read_only = ReadOnlyStore(tmp_path / "db.json", persist=False)
    read_only._db = store._get()

    with pytest.raises(MediaUploadError):
        await add_photo(read_only, storage, drafts, AUDIT_ID, 1, 0, "exit.jpg", jpeg_bytes())
    item = drafts.get(KEY)["evidence"][0]
    assert item["state"] == "pending"
    assert item["uploadedUrl"]
    assert storage.puts == 1

    confirmed = await retry_photo(store, storage, drafts, AUDIT_ID, 1, 0, item["id"])
    assert confirmed["url"] == item["uploadedUrl"]
    assert storage.puts == 1
    assert _store_images(store) == [item["uploadedUrl"]]


# ============================================================
# REMOVE
# ============================================================
@pytest.mark.asyncio
async def test_remove_confirmed_survives_storage_delete_failure(tmp_path, store, storage, drafts, completed):
    item = await add_photo(store, storage, drafts, AUDIT_ID, 1, 0, "exit.jpg", jpeg_bytes())
    removed = await remove_photo(store, BrokenStorage(tmp_path / "uploads"), drafts, AUDIT_ID, 1, 0, item["id"])
    assert removed["url"] == item["url"]
    assert _store_images(store) == []
    assert drafts.get(KEY)["evidence"] == []


@pytest.mark.asyncio
async def test_remove_pending_drops_queue_entry(store, storage, drafts, queue, completed):
    item = await add_photo(store, storage, drafts, AUDIT_ID, 1, 0, "exit.jpg", jpeg_bytes(),
                           online=False, queue=queue)
    await remove_photo(store, storage, drafts, AUDIT_ID, 1, 0, item["id"], queue=queue)
    assert queue.list_pending() == []
    assert drafts.get(KEY)["evidence"] == []


@pytest.mark.asyncio
async def test_delete_store_image_for_foreign_url(store, storage, completed):
    audit = store.get_audit(AUDIT_ID)
    audit["sections"][1]["answers"][0]["actionData"]["storeImages"] = ["https://old-cdn.example/a.jpg"]
    store.replace_audit(audit)
    await delete_store_image(store, storage, AUDIT_ID, 1, 0, "https://old-cdn.example/a.jpg")
    assert _store_images(store) == []


# ============================================================
# OFFLINE QUEUE
# ============================================================
@pytest.mark.asyncio
async def test_flush_uploads_queued_photos(store, storage, drafts, queue, completed):
    item = await add_photo(store, storage, drafts, AUDIT_ID, 1, 0, "exit.jpg", jpeg_bytes(),
                           online=False, queue=queue)
    orphan = queue.enqueue(AUDIT_ID, 1, 0, "gone.jpg", b"x", draft_item_id="deleted-item")

    result = await flush_offline_queue(store, storage, drafts, queue, AUDIT_ID)
    assert result == {"uploaded": 1, "failed": 0, "dropped": 1}
    assert queue.get(orphan["id"]) is None
    assert queue.list_pending() == []
    evidence = drafts.get(KEY)["evidence"]
    assert [e["state"] for e in evidence] == ["confirmed"]
    assert evidence[0]["id"] == item["id"]
    assert _store_images(store) == [evidence[0]["url"]]


@pytest.mark.asyncio
async def test_flush_keeps_failed_uploads_queued(tmp_path, store, drafts, queue, completed):
    await add_photo(store, None, drafts, AUDIT_ID, 1, 0, "exit.jpg", jpeg_bytes(), online=False, queue=queue)
    result = await flush_offline_queue(store, BrokenStorage(tmp_path / "b"), drafts, queue)
    assert result["failed"] == 1
    assert len(queue.list_pending()) == 1
    assert drafts.get(KEY)["evidence"][0]["error"] == "bucket unavailable"


def test_queue_bookkeeping(queue):
    first = queue.enqueue("a1", 0, 0, "one.jpg", b"orig", b"small")
    second = queue.enqueue("a2", 0, 1, "two.jpg", b"orig2")
    assert queue.get_blob(first["id"]) == b"small"
    assert queue.get_blob(second["id"]) == b"orig2"
    assert [e["id"] for e in queue.list_pending("a1")] == [first["id"]]

    queue.mark_uploaded(first["id"], "/api/uploads/one.jpg")
    assert [e["id"] for e in queue.list_pending()] == [second["id"]]
    assert queue.clear_uploaded() == 1
    assert queue.get(first["id"]) is None

    assert queue.clear_audit("a2") == 1
    assert queue.list_pending() == []
    with pytest.raises(KeyError):
        queue.get_blob(second["id"])
