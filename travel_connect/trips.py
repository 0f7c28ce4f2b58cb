"""
Trip collaboration service for Travel Connect.

Provides:
- Trip management (CRUD) with public/private visibility
- Itinerary and checklist items addressed by stable ids
- Membership workflow: join requests, approval, direct collaborators
- Share links that allow joining by token

Every mutating operation runs in a single store transaction: load the trip,
check the actor's role, validate, write, audit, commit. Any error rolls the
whole operation back.
"""

import json
import logging
import secrets
import sqlite3
import uuid
from typing import Optional, List, Dict, Any, Tuple

from travel_connect.auth import IdentityProvider
from travel_connect.config import Settings
from travel_connect.db import TripStore, utc_now_iso
from travel_connect.errors import (
    AlreadyMember, InvalidState, ItemNotFound, NotAuthorized, NotFound, ValidationError
)
from travel_connect.media import LocalMediaStore
from travel_connect.models import (
    AuditAction, ChecklistItem, DISCOVERABLE_STATUSES, ItineraryItem, MembershipState,
    TRIP_INTERESTS, Trip, TripMembership, TripStatus, TripType, TripVisibility, User
)
from travel_connect.permissions import TripOperation, authorize, is_owner, membership_state
from travel_connect.validation import (
    check_date_order, parse_date, validate_checklist_item, validate_itinerary_item,
    validate_join_message, validate_trip_fields
)

logger = logging.getLogger("travel_connect.trips")

TRIP_COLUMNS = (
    "name", "description", "destination", "destination_lat", "destination_lng", "destination_place_id",
    "start_date", "end_date", "visibility", "status", "trip_type", "interests", "tags", "max_members",
)

ITINERARY_COLUMNS = ("day", "title", "location", "notes", "start_time", "end_time", "cost")


# ─────────────────────────── ROW CONVERSION ───────────────────────────

def _json_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    try:
        parsed = json.loads(value)
    except ValueError:
        return []
    return parsed if isinstance(parsed, list) else []


def _row_to_trip(row: sqlite3.Row) -> Trip:
    return Trip(
        id=row["id"],
        owner_id=row["owner_id"],
        name=row["name"],
        description=row["description"],
        destination=row["destination"],
        destination_lat=row["destination_lat"],
        destination_lng=row["destination_lng"],
        destination_place_id=row["destination_place_id"],
        start_date=row["start_date"],
        end_date=row["end_date"],
        visibility=TripVisibility(row["visibility"]),
        status=TripStatus(row["status"]),
        trip_type=TripType(row["trip_type"]) if row["trip_type"] else None,
        interests=_json_list(row["interests"]),
        tags=_json_list(row["tags"]),
        max_members=row["max_members"],
        cover_image=row["cover_image"],
        share_token=row["share_token"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_itinerary_item(row: sqlite3.Row) -> ItineraryItem:
    return ItineraryItem(
        id=row["id"],
        trip_id=row["trip_id"],
        position=row["position"],
        day=row["day"],
        title=row["title"],
        location=row["location"],
        notes=row["notes"],
        start_time=row["start_time"],
        end_time=row["end_time"],
        cost=row["cost"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_checklist_item(row: sqlite3.Row) -> ChecklistItem:
    return ChecklistItem(
        id=row["id"],
        trip_id=row["trip_id"],
        position=row["position"],
        item=row["item"],
        is_done=bool(row["is_done"]),
        added_by=row["added_by"],
        completed_by=row["completed_by"],
        completed_at=row["completed_at"],
        created_at=row["created_at"],
    )


def _row_to_membership(row: sqlite3.Row) -> TripMembership:
    return TripMembership(
        trip_id=row["trip_id"],
        user_id=row["user_id"],
        state=MembershipState(row["state"]),
        message=row["message"],
        requested_at=row["requested_at"],
        joined_at=row["joined_at"],
        added_by_user_id=row["added_by_user_id"],
        username=row["username"],
        name=row["user_name"],
    )


def _column_value(value: Any) -> Any:
    """Convert cleaned Python values to what SQLite stores."""
    if isinstance(value, (TripVisibility, TripStatus, TripType)):
        return value.value
    if isinstance(value, list):
        return json.dumps(value)
    return value


def _load_trip(conn: sqlite3.Connection, trip_id: str) -> Optional[Trip]:
    """Load a trip with its itinerary, checklist and memberships."""
    row = conn.execute("SELECT * FROM trips WHERE id = ?", (trip_id,)).fetchone()
    if not row:
        return None
    trip = _row_to_trip(row)

    trip.itinerary = [_row_to_itinerary_item(r) for r in conn.execute(
        "SELECT * FROM itinerary_items WHERE trip_id = ? ORDER BY position", (trip_id,)
    ).fetchall()]
    trip.checklist = [_row_to_checklist_item(r) for r in conn.execute(
        "SELECT * FROM checklist_items WHERE trip_id = ? ORDER BY position", (trip_id,)
    ).fetchall()]

    memberships = [_row_to_membership(r) for r in conn.execute("""
        SELECT m.*, u.username AS username, u.name AS user_name
        FROM trip_memberships m
        LEFT JOIN users u ON u.id = m.user_id
        WHERE m.trip_id = ?
        ORDER BY COALESCE(m.joined_at, m.requested_at)
    """, (trip_id,)).fetchall()]
    trip.members = [m for m in memberships if m.state == MembershipState.MEMBER]
    trip.pending_requests = [m for m in memberships if m.state == MembershipState.PENDING]
    return trip


def _audit(
    conn: sqlite3.Connection,
    action: AuditAction,
    actor_id: Optional[str],
    target_type: str,
    target_id: str,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    conn.execute("""
        INSERT INTO audit_log (id, created_at, action, actor_type, actor_id, target_type, target_id, details)
        VALUES (?, ?, ?, 'user', ?, ?, ?, ?)
    """, (
        str(uuid.uuid4()), utc_now_iso(), action.value, actor_id,
        target_type, target_id, json.dumps(details or {}),
    ))


def _touch(conn: sqlite3.Connection, trip_id: str, now: str) -> None:
    conn.execute("UPDATE trips SET updated_at = ? WHERE id = ?", (now, trip_id))


def _member_count(conn: sqlite3.Connection, trip_id: str) -> int:
    return conn.execute(
        "SELECT COUNT(*) FROM trip_memberships WHERE trip_id = ? AND state = 'member'", (trip_id,)
    ).fetchone()[0]


def _as_list(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


def _like_escape(term: str) -> str:
    """Escape LIKE wildcards so % and _ in a search term match literally."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _actor_id(actor: Optional[User]) -> str:
    if actor is None:
        raise NotAuthorized("Authentication required")
    return actor.id


def get_trip_constants() -> Dict[str, List[str]]:
    """Vocabularies the client offers when creating or filtering trips."""
    return {
        "trip_types": [t.value for t in TripType],
        "interests": list(TRIP_INTERESTS),
        "statuses": [s.value for s in TripStatus],
    }


# ─────────────────────────── SERVICE ───────────────────────────

class TripService:
    def __init__(self, store: TripStore, media: LocalMediaStore, identity: IdentityProvider, settings: Settings):
        self.store = store
        self.media = media
        self.identity = identity
        self.settings = settings

    def page_bounds(self, page: Any, limit: Any) -> Tuple[int, int]:
        try:
            page = max(int(page or 1), 1)
        except (TypeError, ValueError):
            page = 1
        try:
            limit = int(limit or self.settings.default_page_size)
        except (TypeError, ValueError):
            limit = self.settings.default_page_size
        limit = min(max(limit, 1), self.settings.max_page_size)
        return page, limit

    def _require_trip(self, conn: sqlite3.Connection, trip_id: str, user_id: Optional[str],
                      operation: TripOperation) -> Trip:
        trip = _load_trip(conn, trip_id)
        if not trip:
            raise NotFound("Trip not found")
        authorize(trip, user_id, operation)
        return trip

    # ─────────────────────────── TRIP CRUD ───────────────────────────

    def create_trip(self, actor: Optional[User], payload: Dict[str, Any],
                    cover_image: Optional[Tuple[bytes, Optional[str]]] = None) -> Trip:
        """
        Create a trip owned by `actor`.

        `cover_image` is (bytes, content_type). The image is stored before the
        trip row is written; if storing fails nothing is persisted, and if the
        insert fails the stored image is discarded.
        """
        owner_id = _actor_id(actor)
        fields = validate_trip_fields(payload)

        cover_ref = None
        if cover_image is not None:
            data, content_type = cover_image
            cover_ref = self.media.store(data, content_type)

        trip_id = str(uuid.uuid4())
        now = utc_now_iso()
        columns = [c for c in TRIP_COLUMNS if c in fields]
        values = [_column_value(fields[c]) for c in columns]
        try:
            with self.store.transaction() as conn:
                conn.execute(f"""
                    INSERT INTO trips (id, owner_id, {", ".join(columns)}, cover_image, created_at, updated_at)
                    VALUES (?, ?, {", ".join("?" for _ in columns)}, ?, ?, ?)
                """, [trip_id, owner_id, *values, cover_ref, now, now])
                _audit(conn, AuditAction.TRIP_CREATED, owner_id, "trip", trip_id, {"name": fields["name"]})
                trip = _load_trip(conn, trip_id)
        except Exception:
            if cover_ref:
                self.media.discard(cover_ref)
            raise

        logger.info(f"Trip created: {trip.name} ({trip_id}) by user {owner_id}")
        return trip

    def get_trip(self, actor: Optional[User], trip_id: str) -> Trip:
        user_id = actor.id if actor else None
        with self.store.read() as conn:
            return self._require_trip(conn, trip_id, user_id, TripOperation.VIEW_TRIP)

    def update_trip(self, actor: Optional[User], trip_id: str, patch: Dict[str, Any]) -> Trip:
        """Owner-only partial update. Fields absent from the patch stay unchanged."""
        user_id = _actor_id(actor)
        fields = validate_trip_fields(patch, partial=True)

        with self.store.transaction() as conn:
            trip = self._require_trip(conn, trip_id, user_id, TripOperation.UPDATE_TRIP)
            check_date_order(fields.get("start_date", trip.start_date), fields.get("end_date", trip.end_date))
            if "max_members" in fields and fields["max_members"] < len(trip.members):
                raise ValidationError(
                    "max_members is below the current member count",
                    {"max_members": f"Trip already has {len(trip.members)} members"},
                )
            if not fields:
                return trip

            now = utc_now_iso()
            updates = {k: _column_value(v) for k, v in fields.items()}
            updates["updated_at"] = now
            set_clause = ", ".join(f"{k} = ?" for k in updates.keys())
            conn.execute(f"UPDATE trips SET {set_clause} WHERE id = ?", [*updates.values(), trip_id])
            _audit(conn, AuditAction.TRIP_UPDATED, user_id, "trip", trip_id, {"fields": sorted(fields.keys())})
            trip = _load_trip(conn, trip_id)

        logger.info(f"Trip updated: {trip_id} fields={sorted(fields.keys())}")
        return trip

    def delete_trip(self, actor: Optional[User], trip_id: str) -> None:
        user_id = _actor_id(actor)
        with self.store.transaction() as conn:
            trip = self._require_trip(conn, trip_id, user_id, TripOperation.DELETE_TRIP)
            conn.execute("DELETE FROM itinerary_items WHERE trip_id = ?", (trip_id,))
            conn.execute("DELETE FROM checklist_items WHERE trip_id = ?", (trip_id,))
            conn.execute("DELETE FROM trip_memberships WHERE trip_id = ?", (trip_id,))
            conn.execute("DELETE FROM trips WHERE id = ?", (trip_id,))
            _audit(conn, AuditAction.TRIP_DELETED, user_id, "trip", trip_id, {"name": trip.name})

        logger.info(f"Trip deleted: {trip_id}")

    # ─────────────────────────── LISTINGS ───────────────────────────

    def list_trips_for_user(self, actor: Optional[User], page: Any = 1, limit: Any = None) -> Tuple[List[Trip], bool]:
        """Trips the actor owns or has joined, most recently updated first."""
        user_id = _actor_id(actor)
        page, limit = self.page_bounds(page, limit)
        with self.store.read() as conn:
            rows = conn.execute("""
                SELECT t.id FROM trips t
                WHERE t.owner_id = ?
                   OR EXISTS (
                       SELECT 1 FROM trip_memberships m
                       WHERE m.trip_id = t.id AND m.user_id = ? AND m.state = 'member'
                   )
                ORDER BY t.updated_at DESC, t.created_at DESC
                LIMIT ? OFFSET ?
            """, (user_id, user_id, limit + 1, (page - 1) * limit)).fetchall()
            trips = [_load_trip(conn, r["id"]) for r in rows[:limit]]
        return trips, len(rows) > limit

    def get_requested_trips(self, actor: Optional[User], page: Any = 1,
                            limit: Any = None) -> Tuple[List[Tuple[Trip, TripMembership]], bool]:
        """Trips where the actor has a pending join request, newest request first."""
        user_id = _actor_id(actor)
        page, limit = self.page_bounds(page, limit)
        with self.store.read() as conn:
            rows = conn.execute("""
                SELECT t.id FROM trips t
                JOIN trip_memberships m ON m.trip_id = t.id
                WHERE m.user_id = ? AND m.state = 'pending'
                ORDER BY m.requested_at DESC
                LIMIT ? OFFSET ?
            """, (user_id, limit + 1, (page - 1) * limit)).fetchall()
            results = []
            for r in rows[:limit]:
                trip = _load_trip(conn, r["id"])
                request = next(p for p in trip.pending_requests if p.user_id == user_id)
                results.append((trip, request))
        return results, len(rows) > limit

    def filter_public_trips(self, criteria: Dict[str, Any], page: Any = 1,
                            limit: Any = None) -> Tuple[List[Trip], bool]:
        """
        Public trips that are still planning or active.

        Criteria (all optional): trip_type and interests (lists, match any),
        destination or query (case-insensitive substring), start_date (trips
        starting on or after), end_date (trips ending on or before).
        """
        page, limit = self.page_bounds(page, limit)
        query = "SELECT t.id FROM trips t WHERE t.visibility = ?"
        params: List[Any] = [TripVisibility.PUBLIC.value]

        statuses = [s.value for s in DISCOVERABLE_STATUSES]
        query += f" AND t.status IN ({', '.join('?' for _ in statuses)})"
        params.extend(statuses)

        trip_types = [t for t in _as_list(criteria.get("trip_type")) if t]
        if trip_types:
            query += f" AND t.trip_type IN ({', '.join('?' for _ in trip_types)})"
            params.extend(t.lower() for t in trip_types)

        interests = [i for i in _as_list(criteria.get("interests")) if i]
        if interests:
            query += (
                " AND EXISTS (SELECT 1 FROM json_each(t.interests) j"
                f" WHERE j.value IN ({', '.join('?' for _ in interests)}))"
            )
            params.extend(i.lower() for i in interests)

        destination = criteria.get("query") or criteria.get("destination")
        if destination:
            query += " AND LOWER(COALESCE(t.destination, '')) LIKE ? ESCAPE '\\'"
            params.append(f"%{_like_escape(destination.strip().lower())}%")

        for key, op in (("start_date", "t.start_date >= ?"), ("end_date", "t.end_date <= ?")):
            if criteria.get(key):
                try:
                    value = parse_date(criteria[key])
                except ValueError:
                    raise ValidationError("Validation errors", {key: f"{key} must be a date (YYYY-MM-DD)"})
                query += f" AND {op}"
                params.append(value)

        query += " ORDER BY t.created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit + 1, (page - 1) * limit])

        with self.store.read() as conn:
            rows = conn.execute(query, params).fetchall()
            trips = [_load_trip(conn, r["id"]) for r in rows[:limit]]
        return trips, len(rows) > limit

    # ─────────────────────────── ITINERARY ───────────────────────────

    def add_itinerary_item(self, actor: Optional[User], trip_id: str, payload: Dict[str, Any]) -> ItineraryItem:
        user_id = _actor_id(actor)
        fields = validate_itinerary_item(payload)
        item_id = str(uuid.uuid4())
        now = utc_now_iso()

        with self.store.transaction() as conn:
            self._require_trip(conn, trip_id, user_id, TripOperation.EDIT_ITINERARY)
            position = conn.execute(
                "SELECT COALESCE(MAX(position), 0) + 1 FROM itinerary_items WHERE trip_id = ?", (trip_id,)
            ).fetchone()[0]
            columns = [c for c in ITINERARY_COLUMNS if c in fields]
            conn.execute(f"""
                INSERT INTO itinerary_items (id, trip_id, position, {", ".join(columns)}, created_at, updated_at)
                VALUES (?, ?, ?, {", ".join("?" for _ in columns)}, ?, ?)
            """, [item_id, trip_id, position, *(fields[c] for c in columns), now, now])
            _touch(conn, trip_id, now)
            _audit(conn, AuditAction.ITINERARY_ITEM_ADDED, user_id, "trip", trip_id,
                   {"item_id": item_id, "day": fields["day"], "title": fields["title"]})
            row = conn.execute("SELECT * FROM itinerary_items WHERE id = ?", (item_id,)).fetchone()

        logger.info(f"Itinerary item added: {item_id} to trip {trip_id}")
        return _row_to_itinerary_item(row)

    def update_itinerary_item(self, actor: Optional[User], trip_id: str, item_id: str,
                              patch: Dict[str, Any]) -> ItineraryItem:
        user_id = _actor_id(actor)
        fields = validate_itinerary_item(patch, partial=True)

        with self.store.transaction() as conn:
            self._require_trip(conn, trip_id, user_id, TripOperation.EDIT_ITINERARY)
            row = conn.execute(
                "SELECT * FROM itinerary_items WHERE id = ? AND trip_id = ?", (item_id, trip_id)
            ).fetchone()
            if not row:
                raise ItemNotFound("Itinerary item not found")
            if not fields:
                return _row_to_itinerary_item(row)

            now = utc_now_iso()
            updates = dict(fields)
            updates["updated_at"] = now
            set_clause = ", ".join(f"{k} = ?" for k in updates.keys())
            conn.execute(
                f"UPDATE itinerary_items SET {set_clause} WHERE id = ? AND trip_id = ?",
                [*updates.values(), item_id, trip_id],
            )
            _touch(conn, trip_id, now)
            _audit(conn, AuditAction.ITINERARY_ITEM_UPDATED, user_id, "trip", trip_id,
                   {"item_id": item_id, "fields": sorted(fields.keys())})
            row = conn.execute("SELECT * FROM itinerary_items WHERE id = ?", (item_id,)).fetchone()

        logger.info(f"Itinerary item updated: {item_id} on trip {trip_id}")
        return _row_to_itinerary_item(row)

    def delete_itinerary_item(self, actor: Optional[User], trip_id: str, item_id: str) -> None:
        user_id = _actor_id(actor)
        with self.store.transaction() as conn:
            self._require_trip(conn, trip_id, user_id, TripOperation.EDIT_ITINERARY)
            cur = conn.execute("DELETE FROM itinerary_items WHERE id = ? AND trip_id = ?", (item_id, trip_id))
            if cur.rowcount == 0:
                raise ItemNotFound("Itinerary item not found")
            _touch(conn, trip_id, utc_now_iso())
            _audit(conn, AuditAction.ITINERARY_ITEM_DELETED, user_id, "trip", trip_id, {"item_id": item_id})

        logger.info(f"Itinerary item deleted: {item_id} from trip {trip_id}")

    # ─────────────────────────── CHECKLIST ───────────────────────────

    def add_checklist_item(self, actor: Optional[User], trip_id: str, payload: Dict[str, Any]) -> ChecklistItem:
        user_id = _actor_id(actor)
        fields = validate_checklist_item(payload)
        item_id = str(uuid.uuid4())
        now = utc_now_iso()

        with self.store.transaction() as conn:
            self._require_trip(conn, trip_id, user_id, TripOperation.EDIT_CHECKLIST)
            conn.execute("""
                INSERT INTO checklist_items (id, trip_id, position, item, is_done, added_by, created_at)
                VALUES (?, ?, (SELECT COALESCE(MAX(position), 0) + 1 FROM checklist_items WHERE trip_id = ?),
                        ?, 0, ?, ?)
            """, (item_id, trip_id, trip_id, fields["item"], user_id, now))
            _touch(conn, trip_id, now)
            _audit(conn, AuditAction.CHECKLIST_ITEM_ADDED, user_id, "trip", trip_id, {"item_id": item_id})
            row = conn.execute("SELECT * FROM checklist_items WHERE id = ?", (item_id,)).fetchone()

        logger.info(f"Checklist item added: {item_id} to trip {trip_id}")
        return _row_to_checklist_item(row)

    def toggle_checklist_item(self, actor: Optional[User], trip_id: str, item_id: str) -> ChecklistItem:
        """Flip is_done. Completion stamps are set when done and cleared when undone."""
        user_id = _actor_id(actor)
        now = utc_now_iso()

        with self.store.transaction() as conn:
            self._require_trip(conn, trip_id, user_id, TripOperation.EDIT_CHECKLIST)
            # SET expressions see the pre-update row, so is_done = 0 means "becoming done"
            cur = conn.execute("""
                UPDATE checklist_items
                SET is_done = 1 - is_done,
                    completed_by = CASE WHEN is_done = 0 THEN ? ELSE NULL END,
                    completed_at = CASE WHEN is_done = 0 THEN ? ELSE NULL END
                WHERE id = ? AND trip_id = ?
            """, (user_id, now, item_id, trip_id))
            if cur.rowcount == 0:
                raise ItemNotFound("Checklist item not found")
            row = conn.execute("SELECT * FROM checklist_items WHERE id = ?", (item_id,)).fetchone()
            _touch(conn, trip_id, now)
            _audit(conn, AuditAction.CHECKLIST_ITEM_TOGGLED, user_id, "trip", trip_id,
                   {"item_id": item_id, "is_done": bool(row["is_done"])})

        logger.info(f"Checklist item toggled: {item_id} on trip {trip_id} -> {bool(row['is_done'])}")
        return _row_to_checklist_item(row)

    def delete_checklist_item(self, actor: Optional[User], trip_id: str, item_id: str) -> None:
        user_id = _actor_id(actor)
        with self.store.transaction() as conn:
            self._require_trip(conn, trip_id, user_id, TripOperation.EDIT_CHECKLIST)
            cur = conn.execute("DELETE FROM checklist_items WHERE id = ? AND trip_id = ?", (item_id, trip_id))
            if cur.rowcount == 0:
                raise ItemNotFound("Checklist item not found")
            _touch(conn, trip_id, utc_now_iso())
            _audit(conn, AuditAction.CHECKLIST_ITEM_DELETED, user_id, "trip", trip_id, {"item_id": item_id})

        logger.info(f"Checklist item deleted: {item_id} from trip {trip_id}")

    # ─────────────────────────── SHARING ───────────────────────────

    def share_url(self, trip_id: str, token: str) -> str:
        return f"{self.settings.frontend_url}/trips/{trip_id}?code={token}"

    def generate_share_link(self, actor: Optional[User], trip_id: str) -> Dict[str, str]:
        """Create or replace the share token. Links built from the old token stop resolving."""
        user_id = _actor_id(actor)
        token = secrets.token_urlsafe(16)
        with self.store.transaction() as conn:
            self._require_trip(conn, trip_id, user_id, TripOperation.GENERATE_SHARE_LINK)
            now = utc_now_iso()
            conn.execute("UPDATE trips SET share_token = ?, updated_at = ? WHERE id = ?", (token, now, trip_id))
            _audit(conn, AuditAction.SHARE_LINK_GENERATED, user_id, "trip", trip_id)

        logger.info(f"Share link generated for trip {trip_id}")
        return {"token": token, "url": self.share_url(trip_id, token)}

    def _trip_by_token(self, conn: sqlite3.Connection, token: str) -> Trip:
        row = None
        if token:
            row = conn.execute("SELECT id, share_token FROM trips WHERE share_token = ?", (token,)).fetchone()
        if not row or not secrets.compare_digest(row["share_token"], token):
            raise NotFound("Invalid or expired share link")
        return _load_trip(conn, row["id"])

    def resolve_share_token(self, token: str) -> Trip:
        """Read a trip through its share token. Works for private trips; grants nothing."""
        with self.store.read() as conn:
            return self._trip_by_token(conn, token)

    # ─────────────────────────── MEMBERSHIP ───────────────────────────

    def _request_join(self, conn: sqlite3.Connection, trip: Trip, user_id: str, message: Optional[str]) -> Trip:
        if is_owner(trip, user_id):
            raise AlreadyMember("You already own this trip")
        state = membership_state(trip, user_id)
        if state == MembershipState.MEMBER:
            raise AlreadyMember("Already a member of this trip")
        if state == MembershipState.PENDING:
            return trip

        now = utc_now_iso()
        conn.execute("""
            INSERT INTO trip_memberships (trip_id, user_id, state, message, requested_at)
            VALUES (?, ?, 'pending', ?, ?)
        """, (trip.id, user_id, message, now))
        _touch(conn, trip.id, now)
        _audit(conn, AuditAction.JOIN_REQUESTED, user_id, "trip", trip.id)
        logger.info(f"Join requested: user {user_id} for trip {trip.id}")
        return _load_trip(conn, trip.id)

    def request_join(self, actor: Optional[User], trip_id: str, message: Any = None) -> Trip:
        """
        Ask to join a trip the actor can see. Asking again while pending is a
        no-op; members and the owner get AlreadyMember.
        """
        user_id = _actor_id(actor)
        message = validate_join_message(message)
        with self.store.transaction() as conn:
            trip = self._require_trip(conn, trip_id, user_id, TripOperation.REQUEST_JOIN)
            return self._request_join(conn, trip, user_id, message)

    def request_join_by_token(self, actor: Optional[User], token: str, message: Any = None) -> Trip:
        """Same as request_join, but reaches the trip through its share token (private trips included)."""
        user_id = _actor_id(actor)
        message = validate_join_message(message)
        with self.store.transaction() as conn:
            trip = self._trip_by_token(conn, token)
            return self._request_join(conn, trip, user_id, message)

    def handle_join_request(self, actor: Optional[User], trip_id: str, target_user_id: str,
                            decision: Any) -> Trip:
        """Owner approves (pending -> member) or denies (pending -> none) a join request."""
        user_id = _actor_id(actor)
        decision = str(decision or "").strip().lower()
        if decision == "reject":
            decision = "deny"
        if decision not in ("approve", "deny"):
            raise ValidationError("Validation errors", {"decision": "decision must be 'approve' or 'deny'"})
        if not target_user_id or not isinstance(target_user_id, str):
            raise ValidationError("Validation errors", {"user_id": "user_id is required"})

        with self.store.transaction() as conn:
            trip = self._require_trip(conn, trip_id, user_id, TripOperation.HANDLE_JOIN_REQUEST)
            now = utc_now_iso()
            if decision == "approve":
                if membership_state(trip, target_user_id) == MembershipState.PENDING \
                        and _member_count(conn, trip_id) >= trip.max_members:
                    raise InvalidState("Trip has reached maximum member limit")
                cur = conn.execute("""
                    UPDATE trip_memberships SET state = 'member', joined_at = ?, added_by_user_id = ?
                    WHERE trip_id = ? AND user_id = ? AND state = 'pending'
                """, (now, user_id, trip_id, target_user_id))
                action = AuditAction.JOIN_APPROVED
            else:
                cur = conn.execute(
                    "DELETE FROM trip_memberships WHERE trip_id = ? AND user_id = ? AND state = 'pending'",
                    (trip_id, target_user_id),
                )
                action = AuditAction.JOIN_DENIED
            if cur.rowcount == 0:
                raise InvalidState("No pending join request for this user")
            _touch(conn, trip_id, now)
            _audit(conn, action, user_id, "trip_member", target_user_id, {"trip_id": trip_id})
            trip = _load_trip(conn, trip_id)

        logger.info(f"Join request {decision}: user {target_user_id} on trip {trip_id}")
        return trip

    def add_collaborator(self, actor: Optional[User], trip_id: str, target_user_id: Optional[str] = None,
                         username: Optional[str] = None) -> Trip:
        """Owner adds a user directly as a member, bypassing (or settling) any pending request."""
        user_id = _actor_id(actor)
        for name, value in (("user_id", target_user_id), ("username", username)):
            if value is not None and not isinstance(value, str):
                raise ValidationError("Validation errors", {name: f"{name} must be text"})
        if target_user_id:
            target = self.identity.get_user_by_id(target_user_id)
        elif username:
            target = self.identity.get_user_by_username(username)
        else:
            raise ValidationError("Validation errors", {"user_id": "user_id or username is required"})

        with self.store.transaction() as conn:
            trip = self._require_trip(conn, trip_id, user_id, TripOperation.ADD_COLLABORATOR)
            if not target:
                raise NotFound("User not found")
            if is_owner(trip, target.id):
                raise AlreadyMember("The owner is already part of this trip")
            if membership_state(trip, target.id) == MembershipState.MEMBER:
                raise AlreadyMember("User is already a member")
            if _member_count(conn, trip_id) >= trip.max_members:
                raise InvalidState("Trip has reached maximum member limit")

            now = utc_now_iso()
            conn.execute("""
                INSERT INTO trip_memberships (trip_id, user_id, state, joined_at, added_by_user_id)
                VALUES (?, ?, 'member', ?, ?)
                ON CONFLICT(trip_id, user_id) DO UPDATE SET
                    state = 'member', joined_at = excluded.joined_at, added_by_user_id = excluded.added_by_user_id
            """, (trip_id, target.id, now, user_id))
            _touch(conn, trip_id, now)
            _audit(conn, AuditAction.COLLABORATOR_ADDED, user_id, "trip_member", target.id, {"trip_id": trip_id})
            trip = _load_trip(conn, trip_id)

        logger.info(f"Collaborator added: user {target.id} to trip {trip_id}")
        return trip

    def remove_collaborator(self, actor: Optional[User], trip_id: str, target_user_id: str) -> Trip:
        user_id = _actor_id(actor)
        with self.store.transaction() as conn:
            trip = self._require_trip(conn, trip_id, user_id, TripOperation.REMOVE_COLLABORATOR)
            if is_owner(trip, target_user_id):
                raise InvalidState("The trip owner cannot be removed")
            cur = conn.execute(
                "DELETE FROM trip_memberships WHERE trip_id = ? AND user_id = ? AND state = 'member'",
                (trip_id, target_user_id),
            )
            if cur.rowcount == 0:
                raise InvalidState("User is not a member of this trip")
            _touch(conn, trip_id, utc_now_iso())
            _audit(conn, AuditAction.COLLABORATOR_REMOVED, user_id, "trip_member", target_user_id,
                   {"trip_id": trip_id})
            trip = _load_trip(conn, trip_id)

        logger.info(f"Collaborator removed: user {target_user_id} from trip {trip_id}")
        return trip

    def leave_trip(self, actor: Optional[User], trip_id: str) -> None:
        """A member leaves, or a pending requester withdraws. The owner cannot leave."""
        user_id = _actor_id(actor)
        with self.store.transaction() as conn:
            trip = self._require_trip(conn, trip_id, user_id, TripOperation.LEAVE_TRIP)
            if is_owner(trip, user_id):
                raise InvalidState("The owner cannot leave their own trip")
            previous = membership_state(trip, user_id)
            cur = conn.execute(
                "DELETE FROM trip_memberships WHERE trip_id = ? AND user_id = ?", (trip_id, user_id)
            )
            if cur.rowcount == 0:
                raise InvalidState("You are not a member of this trip")
            _touch(conn, trip_id, utc_now_iso())
            _audit(conn, AuditAction.MEMBER_LEFT, user_id, "trip_member", user_id,
                   {"trip_id": trip_id, "previous_state": previous.value})

        logger.info(f"User {user_id} left trip {trip_id} (was {previous.value})")
