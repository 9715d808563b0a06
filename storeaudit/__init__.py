"""
StoreAudit — Corrective Action Core (v1.4.0)

Architecture:
  storeaudit/
  ├── config/      — Paths, backends, workflow and media constants
  ├── records/     — Answer kinds, record navigation, catalog backfill, edit diffs
  ├── scoring/     — Per-answer points, section scores, overall audit score
  ├── deadline/    — Business-day deadline and status
  ├── actions/     — Corrective action state machine, dashboard metrics
  ├── db/          — Authoritative audit store (JSON file / PostgreSQL)
  ├── storage/     — Evidence object storage (local dir / HTTP)
  ├── drafts/      — Per-device local drafts
  ├── offline/     — Durable queue for photos taken offline
  ├── media/       — Compression, upload, URL substitution, deletion
  ├── sync/        — Snapshot reconciliation + ActionSession view model
  └── server.py    — FastAPI routing layer

Each module is self-contained with clear imports and no circular dependencies.
"""
