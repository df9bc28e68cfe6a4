# kleanly/models.py
from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import String, DateTime

from kleanly import db


def utcnow() -> datetime:
    """Naive UTC timestamp (all DateTime columns are stored as UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


# -------------------------
# Business (cleaner)
# -------------------------
class Business(db.Model):
    """
    Directory listing owner. Profile/onboarding lives elsewhere; this table is
    only what the sponsorship flow reads (identity and a billing contact).
    """
    __tablename__ = "businesses"

    id = db.Column(String(36), primary_key=True, default=new_id)
    user_id = db.Column(String(64), index=True, nullable=True)
    business_name = db.Column(String(200), nullable=False)
    contact_email = db.Column(String(255), nullable=True)

    created_at = db.Column(DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Business id={self.id} name={self.business_name!r}>"
