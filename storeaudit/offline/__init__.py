"""
StoreAudit — Offline Media Queue
Durable local queue for photos taken while the device has no connection.

Layout under the queue directory:
  index.json        — {id: metadata}
  <id>.orig         — original bytes as selected
  <id>.jpg          — compressed bytes (only when compression succeeded)

Metadata: {id, auditId, sectionIndex, answerIndex, fileName, contentType,
           draftItemId, compressed, uploaded, uploadedUrl, queuedAt}

Uploading is done by whoever drains the queue (ActionSession.flush_offline_media);
the queue only stores, lists and marks.
"""
import json
import random
import time
from datetime import datetime
from pathlib import Path

from storeaudit.config import OFFLINE_DIR


def generate_media_id() -> str:
    return f"{int(time.time() * 1000)}-{random.randint(0, 36 ** 6):x}"


class OfflineMediaQueue:
    def __init__(self, directory: Path = OFFLINE_DIR):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.index_path = self.directory / "index.json"
        self.index = self._load()

    def _load(self) -> dict:
        if self.index_path.exists():
            try:
                with open(self.index_path) as f:
                    return json.load(f)
            except (json.JSONDecodeError, IOError) as e:
                print(f"[Offline] Queue index unreadable ({e}), starting empty")
        return {}

    def _save(self):
        with open(self.index_path, "w") as f:
            json.dump(self.index, f, indent=2, default=str)

    def _blob_path(self, media_id: str, compressed: bool) -> Path:
        return self.directory / f"{media_id}.{'jpg' if compressed else 'orig'}"

    def enqueue(self, audit_id: str, section_index: int, answer_index: int, file_name: str,
                original: bytes, compressed: bytes = None, content_type: str = "image/jpeg",
                draft_item_id: str = None, media_id: str = None) -> dict:
        media_id = media_id or generate_media_id()
        self._blob_path(media_id, False).write_bytes(original)
        if compressed is not None:
            self._blob_path(media_id, True).write_bytes(compressed)
        entry = {
            "id": media_id,
            "auditId": audit_id,
            "sectionIndex": section_index,
            "answerIndex": answer_index,
            "fileName": file_name,
            "contentType": content_type,
            "draftItemId": draft_item_id,
            "compressed": compressed is not None,
            "uploaded": False,
            "uploadedUrl": None,
            "queuedAt": datetime.now().isoformat(),
        }
        self.index[media_id] = entry
        self._save()
        print(f"[Offline] Queued {file_name} for audit {audit_id} ({len(original)} bytes)")
        return dict(entry)

    def get(self, media_id: str):
        entry = self.index.get(media_id)
        return dict(entry) if entry else None

    def list_pending(self, audit_id: str = None) -> list:
        entries = [dict(e) for e in self.index.values()
                   if not e.get("uploaded") and (audit_id is None or e.get("auditId") == audit_id)]
        return sorted(entries, key=lambda e: e.get("queuedAt") or "")

    def get_blob(self, media_id: str, prefer_compressed: bool = True) -> bytes:
        entry = self.index.get(media_id)
        if not entry:
            raise KeyError(media_id)
        if prefer_compressed and entry.get("compressed"):
            return self._blob_path(media_id, True).read_bytes()
        return self._blob_path(media_id, False).read_bytes()

    def mark_uploaded(self, media_id: str, url: str = None) -> dict:
        entry = self.index.get(media_id)
        if not entry:
            raise KeyError(media_id)
        entry["uploaded"] = True
        entry["uploadedUrl"] = url
        self._save()
        return dict(entry)

    def remove(self, media_id: str) -> bool:
        entry = self.index.pop(media_id, None)
        if entry is None:
            return False
        for compressed in (False, True):
            path = self._blob_path(media_id, compressed)
            if path.exists():
                path.unlink()
        self._save()
        return True

    def remove_for_item(self, draft_item_id: str) -> int:
        ids = [i for i, e in self.index.items() if e.get("draftItemId") == draft_item_id]
        for media_id in ids:
            self.remove(media_id)
        return len(ids)

    def clear_uploaded(self) -> int:
        ids = [i for i, e in self.index.items() if e.get("uploaded")]
        for media_id in ids:
            self.remove(media_id)
        return len(ids)

    def clear_audit(self, audit_id: str) -> int:
        ids = [i for i, e in self.index.items() if e.get("auditId") == audit_id]
        for media_id in ids:
            self.remove(media_id)
        return len(ids)
