"""
StoreAudit — Configuration & Constants
All environment variables, feature flags, storage locations and workflow constants.
"""
import os
from pathlib import Path

# ============================================================
# PATHS
# ============================================================
BASE_DIR = Path(__file__).parent.parent.parent
DATA_DIR = Path(os.environ.get("STOREAUDIT_DATA_DIR", str(BASE_DIR / "data")))
UPLOAD_DIR = DATA_DIR / "uploads"
OFFLINE_DIR = DATA_DIR / "offline"

for d in (DATA_DIR, UPLOAD_DIR, OFFLINE_DIR):
    d.mkdir(parents=True, exist_ok=True)

DB_PATH = DATA_DIR / "db.json"
DRAFTS_PATH = DATA_DIR / "drafts.json"

# ============================================================
# FEATURE FLAGS
# ============================================================
PERSIST_DATA = os.environ.get("PERSIST_DATA", "true").lower() == "true"

# ============================================================
# BACKENDS
# ============================================================
DATABASE_URL = os.environ.get("DATABASE_URL")
OBJECT_STORAGE_URL = os.environ.get("OBJECT_STORAGE_URL")
OBJECT_STORAGE_TOKEN = os.environ.get("OBJECT_STORAGE_TOKEN")
PUBLIC_UPLOAD_BASE_URL = os.environ.get("PUBLIC_UPLOAD_BASE_URL", "/api/uploads")

# ============================================================
# ACTION WORKFLOW
# ============================================================
ACTION_DEADLINE_BUSINESS_DAYS = int(os.environ.get("ACTION_DEADLINE_BUSINESS_DAYS", "3"))

ACTION_STATUSES = ["pending_store", "pending_admin", "approved", "rejected"]
DEFAULT_ACTION_STATUS = "pending_store"

# Statuses in which the store still owns the item (drafting / resubmission)
STORE_EDITABLE_STATUSES = ("pending_store", "rejected")

AUDIT_STATUSES = ["in_progress", "completed", "cancelled"]

# ============================================================
# ANSWER KINDS
# ============================================================
ANSWER_TYPES = ["yes_no", "multiple_choice", "checkbox", "rating", "number", "date", "short_text"]
INFORMATIONAL_TYPES = ("number", "date", "short_text")
DEFAULT_ANSWER_TYPE = "yes_no"
DEFAULT_RATING_MAX = 5

ANSWER_YES = "yes"
ANSWER_NO = "no"
ANSWER_EXEMPT = "exempt"

# ============================================================
# MEDIA
# ============================================================
IMAGE_MAX_SIZE_MB = float(os.environ.get("IMAGE_MAX_SIZE_MB", "0.5"))
IMAGE_MAX_DIMENSION = int(os.environ.get("IMAGE_MAX_DIMENSION", "1920"))
IMAGE_QUALITY = float(os.environ.get("IMAGE_QUALITY", "0.85"))
IMAGE_MIN_QUALITY = 0.4
IMAGE_QUALITY_STEP = 0.1

OBJECT_KEY_PREFIX = "actions"
MAX_FILENAME_LENGTH = 80

# ============================================================
# VERSION
# ============================================================
VERSION = "1.4.0"
