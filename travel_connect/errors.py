"""
Typed errors raised by the trip service.

Each kind carries the HTTP status the API layer answers with; the service
itself never builds HTTP responses.
"""

from typing import Dict, Optional


class TripError(Exception):
    """Base class for every error the trip service raises on purpose."""
    kind = "trip_error"
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def to_dict(self) -> dict:
        return {"ok": False, "error": self.kind, "detail": self.detail}


class NotFound(TripError):
    """No such trip or item, or a trip this actor is not allowed to see."""
    kind = "not_found"
    status_code = 404


class ItemNotFound(NotFound):
    kind = "item_not_found"


class NotAuthorized(TripError):
    kind = "not_authorized"
    status_code = 403


class InvalidState(TripError):
    """A membership transition that the current state does not permit."""
    kind = "invalid_state"
    status_code = 409


class AlreadyMember(TripError):
    kind = "already_member"
    status_code = 409


class ValidationError(TripError):
    kind = "validation_error"
    status_code = 400

    def __init__(self, detail: str, fields: Optional[Dict[str, str]] = None):
        super().__init__(detail)
        self.fields = fields or {}

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.fields:
            data["fields"] = self.fields
        return data


class DependencyError(TripError):
    """A collaborator (media store, identity provider) failed. Never retried here."""
    kind = "dependency_error"
    status_code = 502
