"""
StoreAudit — Database Layer
Authoritative audit documents. File-based JSON store with PostgreSQL upgrade path.

The store only knows two writes: save a question, and replace a whole audit.
There is no partial patch and no version check — the last replace wins.
"""
import copy
import json
from pathlib import Path

from storeaudit.config import DB_PATH, PERSIST_DATA, DATABASE_URL

# ============================================================
# EMPTY DB SCHEMA
# ============================================================
EMPTY_DB = {"audits": [], "questions": []}


class AuditNotFound(KeyError):
    pass


def _fresh_db():
    """Return a fresh empty database."""
    return json.loads(json.dumps(EMPTY_DB))


# ============================================================
# FILE BACKEND
# ============================================================
class FileDocumentStore:
    """Single JSON file holding every collection. Records handed out are copies,
    so callers never mutate the stored document behind the store's back."""

    def __init__(self, path: Path = DB_PATH, persist: bool = PERSIST_DATA):
        self.path = Path(path)
        self.persist = persist
        self._db = None

    def _load(self):
        if self.path.exists():
            try:
                with open(self.path) as f:
                    self._db = json.load(f)
                for k, v in EMPTY_DB.items():
                    if k not in self._db:
                        self._db[k] = type(v)()
            except (json.JSONDecodeError, IOError) as e:
                print(f"[DB] Could not read {self.path.name} ({e}), starting empty")
                self._db = _fresh_db()
        else:
            self._db = _fresh_db()
        return self._db

    def _get(self):
        if self._db is None:
            return self._load()
        return self._db

    def _save(self):
        if self.persist:
            with open(self.path, "w") as f:
                json.dump(self._db, f, indent=2, default=str)

    # ── audits ──
    def get_audit(self, audit_id: str) -> dict:
        for audit in self._get()["audits"]:
            if audit.get("id") == audit_id:
                return copy.deepcopy(audit)
        raise AuditNotFound(audit_id)

    def list_audits(self) -> list:
        return copy.deepcopy(self._get()["audits"])

    def replace_audit(self, audit: dict) -> dict:
        """Full-document replace (insert when new)."""
        db = self._get()
        record = copy.deepcopy(audit)
        for i, existing in enumerate(db["audits"]):
            if existing.get("id") == audit["id"]:
                db["audits"][i] = record
                break
        else:
            db["audits"].append(record)
        self._save()
        return copy.deepcopy(record)

    # ── question catalog ──
    def get_question(self, question_id: str):
        for q in self._get()["questions"]:
            if q.get("id") == question_id:
                return copy.deepcopy(q)
        return None

    def list_questions(self) -> list:
        return copy.deepcopy(self._get()["questions"])

    def save_question(self, question: dict) -> dict:
        db = self._get()
        db["questions"] = [q for q in db["questions"] if q.get("id") != question["id"]]
        db["questions"].append(copy.deepcopy(question))
        self._save()
        return question

    def question_catalog(self) -> dict:
        return {q["id"]: q for q in self.list_questions()}


# ============================================================
# POSTGRES BACKEND (optional)
# ============================================================
class PostgresDocumentStore:
    """One JSONB row per audit / question."""

    def __init__(self, dsn: str):
        import psycopg2
        from psycopg2.pool import SimpleConnectionPool
        self._pool = SimpleConnectionPool(1, 5, dsn)
        self._init()
        print("[DB] Connected to PostgreSQL")

    def _init(self):
        conn = self._pool.getconn()
        try:
            cur = conn.cursor()
            for table in ("audits", "questions"):
                cur.execute(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id TEXT PRIMARY KEY,
                        data JSONB NOT NULL,
                        updated_at TIMESTAMP DEFAULT NOW()
                    )
                """)
            conn.commit()
        except Exception as e:
            print(f"[DB] pg_init error: {e}")
            conn.rollback()
            raise
        finally:
            self._pool.putconn(conn)

    def _fetch_one(self, table: str, record_id: str):
        conn = self._pool.getconn()
        try:
            cur = conn.cursor()
            cur.execute(f"SELECT data FROM {table} WHERE id=%s", (record_id,))
            row = cur.fetchone()
            return row[0] if row else None
        finally:
            self._pool.putconn(conn)

    def _fetch_all(self, table: str) -> list:
        conn = self._pool.getconn()
        try:
            cur = conn.cursor()
            cur.execute(f"SELECT data FROM {table} ORDER BY id")
            return [row[0] for row in cur.fetchall()]
        finally:
            self._pool.putconn(conn)

    def _upsert(self, table: str, record: dict):
        conn = self._pool.getconn()
        try:
            cur = conn.cursor()
            cur.execute(f"""
                INSERT INTO {table} (id, data, updated_at) VALUES (%s, %s, NOW())
                ON CONFLICT (id) DO UPDATE SET data=EXCLUDED.data, updated_at=NOW()
            """, (record["id"], json.dumps(record, default=str)))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._pool.putconn(conn)

    def get_audit(self, audit_id: str) -> dict:
        audit = self._fetch_one("audits", audit_id)
        if audit is None:
            raise AuditNotFound(audit_id)
        return audit

    def list_audits(self) -> list:
        return self._fetch_all("audits")

    def replace_audit(self, audit: dict) -> dict:
        self._upsert("audits", audit)
        return copy.deepcopy(audit)

    def get_question(self, question_id: str):
        return self._fetch_one("questions", question_id)

    def list_questions(self) -> list:
        return self._fetch_all("questions")

    def save_question(self, question: dict) -> dict:
        self._upsert("questions", question)
        return question

    def question_catalog(self) -> dict:
        return {q["id"]: q for q in self.list_questions()}


# ============================================================
# PUBLIC API
# ============================================================
_store = None


def get_store():
    """Process-wide default store, chosen from DATABASE_URL on first use."""
    global _store
    if _store is None:
        if DATABASE_URL:
            print("[DB] Using PostgreSQL backend")
            _store = PostgresDocumentStore(DATABASE_URL)
        else:
            print(f"[DB] Using file backend ({DB_PATH.name})")
            _store = FileDocumentStore(DB_PATH)
    return _store


def set_store(store):
    """Swap the default store (tests, embedding applications)."""
    global _store
    _store = store
    return store
