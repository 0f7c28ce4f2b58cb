"""
Payload validation for trip, itinerary and checklist writes.

Each validator takes the raw request payload (JSON body or form fields) and
returns the cleaned column values, or raises ValidationError listing every
bad field at once.
"""

import json
import math
import re
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from travel_connect.errors import ValidationError
from travel_connect.models import (
    MAX_INTERESTS, TRIP_INTERESTS, TripStatus, TripType, TripVisibility
)

NAME_MAX = 200
DESCRIPTION_MAX = 1000
DESTINATION_MAX = 200
TITLE_MAX = 200
LOCATION_MAX = 200
NOTES_MAX = 1000
CHECKLIST_ITEM_MAX = 200
JOIN_MESSAGE_MAX = 500
MAX_MEMBERS_LIMIT = 50
DAY_MAX = 366
PLACE_ID_MAX = 300

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class _Errors:
    """Collects per-field messages so one response reports every problem."""

    def __init__(self):
        self.fields: Dict[str, str] = {}

    def add(self, name: str, message: str):
        self.fields.setdefault(name, message)

    def raise_if_any(self):
        if self.fields:
            raise ValidationError("Validation errors", self.fields)


def _clean_text(errors: _Errors, payload: Dict[str, Any], name: str, max_len: int,
                required: bool = False) -> Optional[str]:
    value = payload.get(name)
    if value is None:
        if required:
            errors.add(name, f"{name} is required")
        return None
    if not isinstance(value, str):
        errors.add(name, f"{name} must be text")
        return None
    value = value.strip()
    if required and not value:
        errors.add(name, f"{name} cannot be empty")
        return None
    if len(value) > max_len:
        errors.add(name, f"{name} cannot be more than {max_len} characters")
        return None
    return value


def parse_date(value: Any) -> Optional[str]:
    """Normalize a date or ISO datetime string to YYYY-MM-DD. Raises ValueError."""
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value.isoformat()
    if not isinstance(value, str):
        raise ValueError("not a date")
    return date.fromisoformat(value.strip()[:10]).isoformat()


def check_date_order(start_date: Optional[str], end_date: Optional[str]):
    if start_date and end_date and end_date < start_date:
        raise ValidationError(
            "End date cannot be before start date",
            {"end_date": "end_date must be on or after start_date"},
        )


def _parse_list(value: Any) -> Optional[List[Any]]:
    """Accept a JSON list, a JSON-encoded list (multipart forms) or a comma separated string."""
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return []
        if text.startswith("["):
            try:
                parsed = json.loads(text)
            except ValueError:
                return None
            return parsed if isinstance(parsed, list) else None
        return [part for part in text.split(",")]
    return None


def _parse_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "1", "yes", "on"):
        return True
    if isinstance(value, str) and value.strip().lower() in ("false", "0", "no", "off"):
        return False
    return None


def _parse_coordinates(value: Any) -> Optional[Tuple[Optional[float], Optional[float]]]:
    """{lat, lng} (or its JSON text from a form) -> (lat, lng). Empty clears both; None means invalid."""
    if value in (None, ""):
        return None, None
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return None
    if not isinstance(value, dict):
        return None
    try:
        lat, lng = value["lat"], value["lng"]
        if isinstance(lat, bool) or isinstance(lng, bool):
            return None
        lat, lng = float(lat), float(lng)
    except (KeyError, TypeError, ValueError):
        return None
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return None
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        return None
    return lat, lng


def validate_trip_fields(payload: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
    """
    Validate trip fields for create (partial=False) or patch (partial=True).

    Only keys present in the payload are returned for a patch, so unspecified
    fields stay unchanged. Date ordering is checked by the caller against the
    merged record.
    """
    errors = _Errors()
    cleaned: Dict[str, Any] = {}

    if not partial or "name" in payload:
        cleaned["name"] = _clean_text(errors, payload, "name", NAME_MAX, required=True)
    for name, max_len in (("description", DESCRIPTION_MAX), ("destination", DESTINATION_MAX)):
        if name in payload:
            cleaned[name] = _clean_text(errors, payload, name, max_len)

    if "destination_place_id" in payload:
        cleaned["destination_place_id"] = _clean_text(errors, payload, "destination_place_id", PLACE_ID_MAX) or None
    if "destination_coordinates" in payload:
        coordinates = _parse_coordinates(payload["destination_coordinates"])
        if coordinates is None:
            errors.add("destination_coordinates",
                       "destination_coordinates must be {lat, lng} with lat in [-90, 90] and lng in [-180, 180]")
        else:
            cleaned["destination_lat"], cleaned["destination_lng"] = coordinates

    for name in ("start_date", "end_date"):
        if name in payload:
            try:
                cleaned[name] = parse_date(payload[name])
            except ValueError:
                errors.add(name, f"{name} must be a date (YYYY-MM-DD)")

    if "visibility" in payload:
        try:
            cleaned["visibility"] = TripVisibility(str(payload["visibility"]).lower())
        except ValueError:
            errors.add("visibility", "visibility must be 'public' or 'private'")
    elif "is_public" in payload:
        flag = _parse_bool(payload["is_public"])
        if flag is None:
            errors.add("is_public", "is_public must be a boolean")
        else:
            cleaned["visibility"] = TripVisibility.PUBLIC if flag else TripVisibility.PRIVATE
    elif not partial:
        cleaned["visibility"] = TripVisibility.PRIVATE

    if "status" in payload:
        try:
            cleaned["status"] = TripStatus(str(payload["status"]).lower())
        except ValueError:
            errors.add("status", "status must be one of: " + ", ".join(s.value for s in TripStatus))

    if payload.get("trip_type") not in (None, ""):
        try:
            cleaned["trip_type"] = TripType(str(payload["trip_type"]).lower())
        except ValueError:
            errors.add("trip_type", "trip_type must be one of: " + ", ".join(t.value for t in TripType))
    elif "trip_type" in payload:
        cleaned["trip_type"] = None

    if "interests" in payload:
        interests = _parse_list(payload["interests"])
        if interests is None:
            errors.add("interests", "interests must be a list")
        else:
            normalized = []
            for interest in interests:
                value = str(interest).strip().lower()
                if value not in TRIP_INTERESTS:
                    errors.add("interests", f"Unknown interest: {value}")
                elif value not in normalized:
                    normalized.append(value)
            cleaned["interests"] = normalized[:MAX_INTERESTS]

    if "tags" in payload:
        tags = _parse_list(payload["tags"])
        if tags is None:
            errors.add("tags", "tags must be a list")
        else:
            normalized = []
            for tag in tags:
                value = str(tag).strip().lower()
                if value and value not in normalized:
                    normalized.append(value)
            cleaned["tags"] = normalized

    if "max_members" in payload:
        try:
            max_members = int(payload["max_members"])
            if isinstance(payload["max_members"], bool) or not 1 <= max_members <= MAX_MEMBERS_LIMIT:
                raise ValueError
            cleaned["max_members"] = max_members
        except (TypeError, ValueError, OverflowError):
            errors.add("max_members", f"max_members must be between 1 and {MAX_MEMBERS_LIMIT}")

    errors.raise_if_any()
    if not partial:
        check_date_order(cleaned.get("start_date"), cleaned.get("end_date"))
    return cleaned


def _parse_day(errors: _Errors, value: Any) -> Optional[int]:
    if isinstance(value, bool):
        errors.add("day", "day must be a positive integer")
        return None
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or not 1 <= value <= DAY_MAX:
        errors.add("day", f"day must be an integer between 1 and {DAY_MAX}")
        return None
    return value


def validate_itinerary_item(payload: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
    errors = _Errors()
    cleaned: Dict[str, Any] = {}

    if not partial or "day" in payload:
        if payload.get("day") is None:
            errors.add("day", "day is required")
        else:
            cleaned["day"] = _parse_day(errors, payload["day"])
    if not partial or "title" in payload:
        cleaned["title"] = _clean_text(errors, payload, "title", TITLE_MAX, required=True)
    for name, max_len in (("location", LOCATION_MAX), ("notes", NOTES_MAX)):
        if name in payload:
            cleaned[name] = _clean_text(errors, payload, name, max_len)

    for name in ("start_time", "end_time"):
        if name in payload:
            value = payload[name]
            if value in (None, ""):
                cleaned[name] = None
            elif isinstance(value, str) and _TIME_RE.match(value.strip()):
                cleaned[name] = value.strip()
            else:
                errors.add(name, f"{name} must use HH:MM format")

    if "cost" in payload:
        value = payload["cost"]
        if value in (None, ""):
            cleaned["cost"] = None
        else:
            try:
                cost = float(value)
                if isinstance(value, bool) or not math.isfinite(cost) or cost < 0:
                    raise ValueError
                cleaned["cost"] = cost
            except (TypeError, ValueError):
                errors.add("cost", "cost must be a non-negative number")

    errors.raise_if_any()
    return cleaned


def validate_checklist_item(payload: Dict[str, Any]) -> Dict[str, Any]:
    errors = _Errors()
    item = _clean_text(errors, payload, "item", CHECKLIST_ITEM_MAX, required=True)
    errors.raise_if_any()
    return {"item": item}


def validate_join_message(message: Any) -> Optional[str]:
    errors = _Errors()
    cleaned = _clean_text(errors, {"message": message}, "message", JOIN_MESSAGE_MAX)
    errors.raise_if_any()
    return cleaned or None
