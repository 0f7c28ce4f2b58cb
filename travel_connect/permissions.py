"""
Role-based access rules for trip operations.

Every entry point in the trip service asks `required_role` what it needs and
compares that against the actor's standing on the trip. Nothing else in the
codebase decides who may do what.
"""

from enum import Enum
from typing import Optional

from travel_connect.errors import NotAuthorized, NotFound
from travel_connect.models import MembershipState, Trip


class TripRole(str, Enum):
    """Minimum standing an actor needs on a trip"""
    OWNER = "owner"      # Trip fields, deletion, membership, sharing
    MEMBER = "member"    # Owner or accepted collaborator: itinerary and checklist
    ANY = "any"          # Anyone who can see the trip


class TripOperation(str, Enum):
    VIEW_TRIP = "view_trip"
    UPDATE_TRIP = "update_trip"
    DELETE_TRIP = "delete_trip"
    EDIT_ITINERARY = "edit_itinerary"
    EDIT_CHECKLIST = "edit_checklist"
    GENERATE_SHARE_LINK = "generate_share_link"
    REQUEST_JOIN = "request_join"
    HANDLE_JOIN_REQUEST = "handle_join_request"
    ADD_COLLABORATOR = "add_collaborator"
    REMOVE_COLLABORATOR = "remove_collaborator"
    LEAVE_TRIP = "leave_trip"


OPERATION_ROLES = {
    TripOperation.VIEW_TRIP: TripRole.ANY,
    TripOperation.UPDATE_TRIP: TripRole.OWNER,
    TripOperation.DELETE_TRIP: TripRole.OWNER,
    TripOperation.EDIT_ITINERARY: TripRole.MEMBER,
    TripOperation.EDIT_CHECKLIST: TripRole.MEMBER,
    TripOperation.GENERATE_SHARE_LINK: TripRole.OWNER,
    TripOperation.REQUEST_JOIN: TripRole.ANY,
    TripOperation.HANDLE_JOIN_REQUEST: TripRole.OWNER,
    TripOperation.ADD_COLLABORATOR: TripRole.OWNER,
    TripOperation.REMOVE_COLLABORATOR: TripRole.OWNER,
    TripOperation.LEAVE_TRIP: TripRole.ANY,
}


def required_role(operation: TripOperation) -> TripRole:
    return OPERATION_ROLES[operation]


def membership_state(trip: Trip, user_id: Optional[str]) -> MembershipState:
    """Standing of a non-owner user on a trip."""
    if not user_id:
        return MembershipState.NONE
    if user_id in trip.member_ids:
        return MembershipState.MEMBER
    if user_id in trip.pending_ids:
        return MembershipState.PENDING
    return MembershipState.NONE


def is_owner(trip: Trip, user_id: Optional[str]) -> bool:
    return bool(user_id) and trip.owner_id == user_id


def can_view(trip: Trip, user_id: Optional[str]) -> bool:
    """Public trips are readable by anyone; private ones by owner, members and pending requesters."""
    if trip.is_public or is_owner(trip, user_id):
        return True
    return membership_state(trip, user_id) != MembershipState.NONE


def has_role(trip: Trip, user_id: Optional[str], role: TripRole) -> bool:
    if role == TripRole.ANY:
        return True
    if is_owner(trip, user_id):
        return True
    if role == TripRole.MEMBER:
        return membership_state(trip, user_id) == MembershipState.MEMBER
    return False


def authorize(trip: Trip, user_id: Optional[str], operation: TripOperation) -> None:
    """
    Raise unless the actor may perform `operation` on `trip`.

    A private trip the actor cannot see is reported as missing so callers
    cannot probe for its existence.
    """
    if not can_view(trip, user_id):
        raise NotFound("Trip not found")
    role = required_role(operation)
    if not has_role(trip, user_id, role):
        if role == TripRole.OWNER:
            raise NotAuthorized(f"Only the trip owner can {operation.value.replace('_', ' ')}")
        raise NotAuthorized("Not a member of this trip")
