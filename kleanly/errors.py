# kleanly/errors.py
"""
Error types shared by the sponsorship services and the HTTP layer.

`SponsorshipError` subclasses carry a machine-readable `code` and the HTTP
status the blueprints render them with. `LedgerConflict`, `LockHeld` and
`GeometryError` are internal signals caught by the services themselves.
"""
from __future__ import annotations

from typing import Any, Dict


class SponsorshipError(Exception):
    status = 400

    def __init__(self, code: str, message: str = "", status: int | None = None, **details: Any):
        super().__init__(message or code)
        self.code = code
        self.message = message or code
        if status is not None:
            self.status = status
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"ok": False, "code": self.code, "error": self.message}
        body.update({k: v for k, v in self.details.items() if v is not None})
        return body


class ValidationFailed(SponsorshipError):
    status = 400


class NotFound(SponsorshipError):
    status = 404


class AvailabilityConflict(SponsorshipError):
    """slot_taken / already_sponsored / no_remaining / checkout_in_progress."""
    status = 409


class BillingProviderError(SponsorshipError):
    status = 502


class LedgerConflict(Exception):
    """A ledger write would break disjointness or single ownership."""

    def __init__(self, reason: str, detail: str = ""):
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason
        self.detail = detail


class LockHeld(Exception):
    def __init__(self, lock_id: str, business_id: str):
        super().__init__(f"lock {lock_id} held by business {business_id}")
        self.lock_id = lock_id
        self.business_id = business_id


class GeometryError(Exception):
    pass
