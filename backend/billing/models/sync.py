from __future__ import annotations

from ..extensions import db
from billing.time_utils import to_utc_z


SYNC_PENDING = "PENDING"
SYNC_SYNCED = "SYNCED"
SYNC_FAILED = "FAILED"
VALID_SYNC_STATUSES = (SYNC_PENDING, SYNC_SYNCED, SYNC_FAILED)


class SyncTrackedMixin:
    """
    Offline-first sync bookkeeping shared by every mutable tenant record.

    - sync_version: last server version confirmed by a round-trip
    - sync_base_version: server version the pending local change started from
    - sync_attempts: consecutive failures (drives the external retry backoff)

    State transitions live in services/sync_service.py; models only store them.
    """

    sync_status = db.Column(db.String(16), nullable=False, default=SYNC_PENDING, index=True)
    sync_version = db.Column(db.Integer, nullable=False, default=0)
    sync_base_version = db.Column(db.Integer, nullable=False, default=0)
    sync_error = db.Column(db.Text, nullable=True)
    sync_attempts = db.Column(db.Integer, nullable=False, default=0)
    synced_at = db.Column(db.DateTime, nullable=True)

    def sync_dict(self) -> dict:
        return {
            "sync_status": self.sync_status,
            "sync_version": self.sync_version,
            "sync_base_version": self.sync_base_version,
            "sync_error": self.sync_error,
            "sync_attempts": self.sync_attempts,
            "synced_at": to_utc_z(self.synced_at),
        }
