# Overview: Service-layer operations for maintenance; encapsulates business logic and database work.

from __future__ import annotations

from datetime import datetime

from ..extensions import db
from ..models import Session
from billing.time_utils import utcnow


def purge_expired_sessions(now: datetime | None = None) -> int:
    """
    Delete sessions whose expiry has passed.

    Sessions are issued by the external auth layer; the engine only
    garbage-collects them.
    """
    cutoff = now or utcnow()
    deleted = db.session.query(Session).filter(
        Session.expires <= cutoff
    ).delete(synchronize_session=False)
    db.session.commit()
    return deleted
