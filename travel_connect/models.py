"""
Data models and schema definitions for Travel Connect.

This module defines:
- Users (the principals handed to us by the identity layer)
- Trips with their embedded itinerary and checklist items
- Trip memberships (pending requests and accepted collaborators)
- Audit logging
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Optional, List, Dict, Any
from enum import Enum


# ─────────────────────────── ENUMS ───────────────────────────

class UserRole(str, Enum):
    """Account role as reported by the identity layer"""
    USER = "user"
    ADMIN = "admin"


class TripVisibility(str, Enum):
    """Who can discover and read a trip"""
    PUBLIC = "public"      # Listed and readable by anyone
    PRIVATE = "private"    # Readable by owner, members and pending requesters


class TripStatus(str, Enum):
    PLANNING = "planning"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TripType(str, Enum):
    SOLO = "solo"
    COUPLE = "couple"
    GROUP = "group"
    FAMILY = "family"


class MembershipState(str, Enum):
    """Where a (trip, user) pair sits in the join workflow"""
    NONE = "none"
    PENDING = "pending"
    MEMBER = "member"


class AuditAction(str, Enum):
    """Types of auditable trip actions"""
    TRIP_CREATED = "trip_created"
    TRIP_UPDATED = "trip_updated"
    TRIP_DELETED = "trip_deleted"
    ITINERARY_ITEM_ADDED = "itinerary_item_added"
    ITINERARY_ITEM_UPDATED = "itinerary_item_updated"
    ITINERARY_ITEM_DELETED = "itinerary_item_deleted"
    CHECKLIST_ITEM_ADDED = "checklist_item_added"
    CHECKLIST_ITEM_TOGGLED = "checklist_item_toggled"
    CHECKLIST_ITEM_DELETED = "checklist_item_deleted"
    SHARE_LINK_GENERATED = "share_link_generated"
    JOIN_REQUESTED = "join_requested"
    JOIN_APPROVED = "join_approved"
    JOIN_DENIED = "join_denied"
    COLLABORATOR_ADDED = "collaborator_added"
    COLLABORATOR_REMOVED = "collaborator_removed"
    MEMBER_LEFT = "member_left"


# Active statuses are the only ones shown in public discovery
DISCOVERABLE_STATUSES = (TripStatus.PLANNING, TripStatus.ACTIVE)

TRIP_INTERESTS = (
    "adventure",
    "culture-history",
    "food-cuisine",
    "nature-outdoors",
    "relaxation",
    "photography",
    "nightlife",
    "shopping",
    "wellness-spa",
    "business",
    "sports",
    "music-festivals",
    "art-museums",
    "wildlife",
    "beach-coastal",
    "mountains",
    "urban-exploration",
    "backpacking",
    "luxury",
    "budget-travel",
)

MAX_INTERESTS = 5


# ─────────────────────────── DATA CLASSES ───────────────────────────

@dataclass
class User:
    """An authenticated principal"""
    id: str
    username: str
    name: str
    role: UserRole = UserRole.USER
    created_at: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "name": self.name,
            "role": self.role.value if isinstance(self.role, UserRole) else self.role,
        }


@dataclass
class ItineraryItem:
    id: str
    trip_id: str
    day: int
    title: str
    position: int = 0
    location: Optional[str] = None
    notes: Optional[str] = None
    start_time: Optional[str] = None  # "HH:MM"
    end_time: Optional[str] = None
    cost: Optional[float] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "day": self.day,
            "title": self.title,
            "location": self.location,
            "notes": self.notes,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "cost": self.cost,
        }


@dataclass
class ChecklistItem:
    id: str
    trip_id: str
    item: str
    is_done: bool = False
    position: int = 0
    added_by: Optional[str] = None
    completed_by: Optional[str] = None
    completed_at: Optional[str] = None
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "item": self.item,
            "is_done": self.is_done,
            "added_by": self.added_by,
            "completed_by": self.completed_by,
            "completed_at": self.completed_at,
        }


@dataclass
class TripMembership:
    """A non-owner user attached to a trip, either pending or accepted"""
    trip_id: str
    user_id: str
    state: MembershipState
    message: Optional[str] = None
    requested_at: Optional[str] = None
    joined_at: Optional[str] = None
    added_by_user_id: Optional[str] = None

    # Populated from JOINs
    username: Optional[str] = None
    name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "user_id": self.user_id,
            "username": self.username,
            "name": self.name,
        }
        if self.state == MembershipState.PENDING:
            data["message"] = self.message
            data["requested_at"] = self.requested_at
        else:
            data["joined_at"] = self.joined_at
        return data


@dataclass
class Trip:
    """Trip aggregate. Owner is never listed among members or pending requests."""
    id: str
    owner_id: str
    name: str
    created_at: str
    updated_at: str
    description: Optional[str] = None
    destination: Optional[str] = None
    destination_lat: Optional[float] = None
    destination_lng: Optional[float] = None
    destination_place_id: Optional[str] = None
    start_date: Optional[str] = None  # YYYY-MM-DD
    end_date: Optional[str] = None
    visibility: TripVisibility = TripVisibility.PRIVATE
    status: TripStatus = TripStatus.PLANNING
    trip_type: Optional[TripType] = None
    interests: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    max_members: int = 10
    cover_image: Optional[str] = None
    share_token: Optional[str] = None

    itinerary: List[ItineraryItem] = field(default_factory=list)
    checklist: List[ChecklistItem] = field(default_factory=list)
    members: List[TripMembership] = field(default_factory=list)
    pending_requests: List[TripMembership] = field(default_factory=list)

    @property
    def is_public(self) -> bool:
        return self.visibility == TripVisibility.PUBLIC

    @property
    def member_ids(self) -> List[str]:
        return [m.user_id for m in self.members]

    @property
    def pending_ids(self) -> List[str]:
        return [m.user_id for m in self.pending_requests]

    @property
    def destination_coordinates(self) -> Optional[Dict[str, float]]:
        if self.destination_lat is None or self.destination_lng is None:
            return None
        return {"lat": self.destination_lat, "lng": self.destination_lng}

    @property
    def duration_days(self) -> Optional[int]:
        if not self.start_date or not self.end_date:
            return None
        start = date.fromisoformat(self.start_date)
        end = date.fromisoformat(self.end_date)
        return (end - start).days + 1

    @property
    def checklist_completed_count(self) -> int:
        return sum(1 for c in self.checklist if c.is_done)

    @property
    def checklist_completion_percentage(self) -> int:
        if not self.checklist:
            return 100
        return round(self.checklist_completed_count * 100 / len(self.checklist))

    def to_dict(self, include_private: bool = False) -> Dict[str, Any]:
        """Serialize for API responses. Share token and pending requests are owner-only."""
        data = {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "description": self.description,
            "destination": self.destination,
            "destination_coordinates": self.destination_coordinates,
            "destination_place_id": self.destination_place_id,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "visibility": self.visibility.value,
            "status": self.status.value,
            "trip_type": self.trip_type.value if self.trip_type else None,
            "interests": list(self.interests),
            "tags": list(self.tags),
            "max_members": self.max_members,
            "cover_image": self.cover_image,
            "itinerary": [i.to_dict() for i in self.itinerary],
            "checklist": [c.to_dict() for c in self.checklist],
            "members": [m.to_dict() for m in self.members],
            "member_count": len(self.members),
            "duration_days": self.duration_days,
            "checklist_completed_count": self.checklist_completed_count,
            "checklist_completion_percentage": self.checklist_completion_percentage,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if include_private:
            data["share_token"] = self.share_token
            data["pending_requests"] = [p.to_dict() for p in self.pending_requests]
        return data

    def to_summary(self) -> Dict[str, Any]:
        """Metadata-only view used for share link previews."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "destination": self.destination,
            "destination_coordinates": self.destination_coordinates,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "visibility": self.visibility.value,
            "status": self.status.value,
            "trip_type": self.trip_type.value if self.trip_type else None,
            "interests": list(self.interests),
            "cover_image": self.cover_image,
            "member_count": len(self.members),
            "duration_days": self.duration_days,
        }


# ─────────────────────────── SCHEMA ───────────────────────────

USERS_TABLE = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    username TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    role TEXT NOT NULL DEFAULT 'user',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

USER_SESSIONS_TABLE = """
CREATE TABLE IF NOT EXISTS user_sessions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    token TEXT NOT NULL UNIQUE,
    device_info TEXT,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    last_active TEXT,
    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
);
"""

TRIPS_TABLE = """
CREATE TABLE IF NOT EXISTS trips (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    destination TEXT,
    destination_lat REAL,
    destination_lng REAL,
    destination_place_id TEXT,
    start_date TEXT,
    end_date TEXT,
    visibility TEXT NOT NULL DEFAULT 'private',
    status TEXT NOT NULL DEFAULT 'planning',
    trip_type TEXT,
    interests TEXT NOT NULL DEFAULT '[]',
    tags TEXT NOT NULL DEFAULT '[]',
    max_members INTEGER NOT NULL DEFAULT 10,
    cover_image TEXT,
    share_token TEXT UNIQUE,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY(owner_id) REFERENCES users(id)
);
"""

TRIP_MEMBERSHIPS_TABLE = """
CREATE TABLE IF NOT EXISTS trip_memberships (
    trip_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    state TEXT NOT NULL CHECK (state IN ('pending', 'member')),
    message TEXT,
    requested_at TEXT,
    joined_at TEXT,
    added_by_user_id TEXT,
    PRIMARY KEY(trip_id, user_id),
    FOREIGN KEY(trip_id) REFERENCES trips(id) ON DELETE CASCADE,
    FOREIGN KEY(user_id) REFERENCES users(id)
);
"""

ITINERARY_ITEMS_TABLE = """
CREATE TABLE IF NOT EXISTS itinerary_items (
    id TEXT PRIMARY KEY,
    trip_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    day INTEGER NOT NULL CHECK (day >= 1),
    title TEXT NOT NULL,
    location TEXT,
    notes TEXT,
    start_time TEXT,
    end_time TEXT,
    cost REAL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY(trip_id) REFERENCES trips(id) ON DELETE CASCADE
);
"""

CHECKLIST_ITEMS_TABLE = """
CREATE TABLE IF NOT EXISTS checklist_items (
    id TEXT PRIMARY KEY,
    trip_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    item TEXT NOT NULL,
    is_done INTEGER NOT NULL DEFAULT 0,
    added_by TEXT,
    completed_by TEXT,
    completed_at TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY(trip_id) REFERENCES trips(id) ON DELETE CASCADE
);
"""

AUDIT_LOG_TABLE = """
CREATE TABLE IF NOT EXISTS audit_log (
    id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL,
    action TEXT NOT NULL,

    -- Actor (who did it)
    actor_type TEXT NOT NULL,
    actor_id TEXT,

    -- Target (what was affected)
    target_type TEXT,
    target_id TEXT,

    -- Additional details as JSON
    details TEXT DEFAULT '{}'
);
"""

# Index definitions for performance
INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_user_sessions_token ON user_sessions(token);",
    "CREATE INDEX IF NOT EXISTS idx_trips_owner ON trips(owner_id);",
    "CREATE INDEX IF NOT EXISTS idx_trips_updated ON trips(updated_at);",
    "CREATE INDEX IF NOT EXISTS idx_trips_public ON trips(visibility, status, trip_type);",
    "CREATE INDEX IF NOT EXISTS idx_trip_memberships_user ON trip_memberships(user_id, state);",
    "CREATE INDEX IF NOT EXISTS idx_itinerary_trip ON itinerary_items(trip_id, position);",
    "CREATE INDEX IF NOT EXISTS idx_checklist_trip ON checklist_items(trip_id, position);",
    "CREATE INDEX IF NOT EXISTS idx_audit_target ON audit_log(target_type, target_id);",
    "CREATE INDEX IF NOT EXISTS idx_audit_created ON audit_log(created_at);",
]

ALL_TABLES = [
    USERS_TABLE,
    USER_SESSIONS_TABLE,
    TRIPS_TABLE,
    TRIP_MEMBERSHIPS_TABLE,
    ITINERARY_ITEMS_TABLE,
    CHECKLIST_ITEMS_TABLE,
    AUDIT_LOG_TABLE,
]

# Columns added after the first release: (table, column, type)
COLUMN_MIGRATIONS = [
    ("trips", "destination_lat", "REAL"),
    ("trips", "destination_lng", "REAL"),
    ("trips", "destination_place_id", "TEXT"),
]
