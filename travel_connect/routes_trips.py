"""
HTTP routes for trips.

JSON API under /api/trips plus a server-rendered preview page for share
links. Every handler resolves the caller, calls the TripService and
serializes the result; service errors are turned into responses by the
app-level TripError handler.
"""

import os
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.templating import Jinja2Templates
from starlette.datastructures import UploadFile

from travel_connect.auth import get_current_user, require_user
from travel_connect.errors import NotFound
from travel_connect.models import Trip, User
from travel_connect.permissions import is_owner, membership_state
from travel_connect.trips import TripService, get_trip_constants

router = APIRouter(tags=["trips"])

templates = Jinja2Templates(directory=os.path.join(os.path.dirname(__file__), "templates"))

LIST_FIELDS = ("interests", "tags")


def _service(request: Request) -> TripService:
    return request.app.state.ctx.trips


async def _json_body(request: Request, required: bool = True) -> Dict[str, Any]:
    raw = await request.body()
    if not raw.strip():
        if required:
            raise HTTPException(status_code=400, detail="Request body is required")
        return {}
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="JSON body must be an object")
    return payload


def _trip_payload(trip: Trip, user: Optional[User]) -> Dict[str, Any]:
    """Full trip for the caller. Owner-only fields are included for the owner."""
    user_id = user.id if user else None
    owner = is_owner(trip, user_id)
    data = trip.to_dict(include_private=owner)
    data["viewer_role"] = "owner" if owner else membership_state(trip, user_id).value
    return data


def _query_list(request: Request, name: str) -> List[str]:
    """Repeated (?x=a&x=b) and comma separated (?x=a,b) values."""
    values = []
    for raw in request.query_params.getlist(name):
        values.extend(part.strip() for part in raw.split(",") if part.strip())
    return values


# ─────────────────────────── DISCOVERY ───────────────────────────

@router.get("/api/trips/constants")
async def get_constants():
    return JSONResponse({"ok": True, **get_trip_constants()})


@router.get("/api/trips/public")
async def list_public_trips(request: Request, user: Optional[User] = Depends(get_current_user)):
    service = _service(request)
    params = request.query_params
    criteria = {
        "trip_type": _query_list(request, "trip_type"),
        "interests": _query_list(request, "interests"),
        "destination": params.get("destination"),
        "query": params.get("query"),
        "start_date": params.get("start_date"),
        "end_date": params.get("end_date"),
    }
    page, limit = service.page_bounds(params.get("page"), params.get("limit"))
    trips, has_more = service.filter_public_trips(criteria, page, limit)
    return JSONResponse({
        "ok": True,
        "trips": [_trip_payload(t, user) for t in trips],
        "page": page,
        "limit": limit,
        "has_more": has_more,
    })


@router.get("/api/trips")
async def list_my_trips(request: Request, user: User = Depends(require_user)):
    service = _service(request)
    page, limit = service.page_bounds(request.query_params.get("page"), request.query_params.get("limit"))
    trips, has_more = service.list_trips_for_user(user, page, limit)
    return JSONResponse({
        "ok": True,
        "trips": [_trip_payload(t, user) for t in trips],
        "page": page,
        "limit": limit,
        "has_more": has_more,
    })


@router.get("/api/trips/requested")
async def list_requested_trips(request: Request, user: User = Depends(require_user)):
    service = _service(request)
    page, limit = service.page_bounds(request.query_params.get("page"), request.query_params.get("limit"))
    results, has_more = service.get_requested_trips(user, page, limit)
    trips = []
    for trip, join_request in results:
        data = _trip_payload(trip, user)
        data["my_request"] = join_request.to_dict()
        trips.append(data)
    return JSONResponse({"ok": True, "trips": trips, "page": page, "limit": limit, "has_more": has_more})


# ─────────────────────────── CREATE ───────────────────────────

@router.post("/api/trips", status_code=201)
async def create_trip(request: Request, user: User = Depends(require_user)):
    """Accepts a JSON body, or multipart form fields with an optional `cover_image` file."""
    cover = None
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("multipart/form-data") or content_type.startswith("application/x-www-form-urlencoded"):
        form = await request.form()
        payload: Dict[str, Any] = {}
        for key in form.keys():
            if key == "cover_image":
                continue
            values = form.getlist(key)
            payload[key] = values if key in LIST_FIELDS and len(values) > 1 else values[-1]
        upload = form.get("cover_image")
        if isinstance(upload, UploadFile) and upload.filename:
            cover = (await upload.read(), upload.content_type)
    else:
        payload = await _json_body(request)

    trip = _service(request).create_trip(user, payload, cover)
    return JSONResponse({"ok": True, "trip": _trip_payload(trip, user)}, status_code=201)


# ─────────────────────────── SHARE LINKS ───────────────────────────

@router.get("/api/trips/shared/{token}")
async def get_shared_trip(token: str, request: Request):
    trip = _service(request).resolve_share_token(token)
    return JSONResponse({"ok": True, "trip": trip.to_summary()})


@router.post("/api/trips/shared/{token}/join")
async def join_by_share_token(token: str, request: Request, user: User = Depends(require_user)):
    body = await _json_body(request, required=False)
    trip = _service(request).request_join_by_token(user, token, body.get("message"))
    return JSONResponse({"ok": True, "trip_id": trip.id, "status": membership_state(trip, user.id).value})


@router.get("/trips/shared/{token}", response_class=HTMLResponse)
async def shared_trip_page(token: str, request: Request):
    service = _service(request)
    try:
        trip = service.resolve_share_token(token)
    except NotFound:
        return templates.TemplateResponse(
            request, "trip_shared.html", {"trip": None, "open_url": None}, status_code=404
        )
    return templates.TemplateResponse(request, "trip_shared.html", {
        "trip": trip.to_summary(),
        "open_url": service.share_url(trip.id, token),
    })


# ─────────────────────────── SINGLE TRIP ───────────────────────────

@router.get("/api/trips/{trip_id}")
async def get_trip(trip_id: str, request: Request, user: Optional[User] = Depends(get_current_user)):
    trip = _service(request).get_trip(user, trip_id)
    return JSONResponse({"ok": True, "trip": _trip_payload(trip, user)})


@router.patch("/api/trips/{trip_id}")
async def update_trip(trip_id: str, request: Request, user: User = Depends(require_user)):
    patch = await _json_body(request)
    trip = _service(request).update_trip(user, trip_id, patch)
    return JSONResponse({"ok": True, "trip": _trip_payload(trip, user)})


@router.delete("/api/trips/{trip_id}")
async def delete_trip(trip_id: str, request: Request, user: User = Depends(require_user)):
    _service(request).delete_trip(user, trip_id)
    return JSONResponse({"ok": True})


# ─────────────────────────── ITINERARY ───────────────────────────

@router.post("/api/trips/{trip_id}/itinerary", status_code=201)
async def add_itinerary_item(trip_id: str, request: Request, user: User = Depends(require_user)):
    payload = await _json_body(request)
    item = _service(request).add_itinerary_item(user, trip_id, payload)
    return JSONResponse({"ok": True, "item": item.to_dict()}, status_code=201)


@router.patch("/api/trips/{trip_id}/itinerary/{item_id}")
async def update_itinerary_item(trip_id: str, item_id: str, request: Request, user: User = Depends(require_user)):
    patch = await _json_body(request)
    item = _service(request).update_itinerary_item(user, trip_id, item_id, patch)
    return JSONResponse({"ok": True, "item": item.to_dict()})


@router.delete("/api/trips/{trip_id}/itinerary/{item_id}")
async def delete_itinerary_item(trip_id: str, item_id: str, request: Request, user: User = Depends(require_user)):
    _service(request).delete_itinerary_item(user, trip_id, item_id)
    return JSONResponse({"ok": True})


# ─────────────────────────── CHECKLIST ───────────────────────────

@router.post("/api/trips/{trip_id}/checklist", status_code=201)
async def add_checklist_item(trip_id: str, request: Request, user: User = Depends(require_user)):
    payload = await _json_body(request)
    item = _service(request).add_checklist_item(user, trip_id, payload)
    return JSONResponse({"ok": True, "item": item.to_dict()}, status_code=201)


@router.patch("/api/trips/{trip_id}/checklist/{item_id}")
async def toggle_checklist_item(trip_id: str, item_id: str, request: Request, user: User = Depends(require_user)):
    item = _service(request).toggle_checklist_item(user, trip_id, item_id)
    return JSONResponse({"ok": True, "item": item.to_dict()})


@router.delete("/api/trips/{trip_id}/checklist/{item_id}")
async def delete_checklist_item(trip_id: str, item_id: str, request: Request, user: User = Depends(require_user)):
    _service(request).delete_checklist_item(user, trip_id, item_id)
    return JSONResponse({"ok": True})


# ─────────────────────────── MEMBERSHIP ───────────────────────────

@router.post("/api/trips/{trip_id}/share")
async def generate_share_link(trip_id: str, request: Request, user: User = Depends(require_user)):
    link = _service(request).generate_share_link(user, trip_id)
    return JSONResponse({"ok": True, **link})


@router.post("/api/trips/{trip_id}/join")
async def request_join(trip_id: str, request: Request, user: User = Depends(require_user)):
    body = await _json_body(request, required=False)
    trip = _service(request).request_join(user, trip_id, body.get("message"))
    return JSONResponse({"ok": True, "trip_id": trip.id, "status": membership_state(trip, user.id).value})


@router.post("/api/trips/{trip_id}/join/handle")
async def handle_join_request(trip_id: str, request: Request, user: User = Depends(require_user)):
    body = await _json_body(request)
    trip = _service(request).handle_join_request(user, trip_id, body.get("user_id"), body.get("decision"))
    return JSONResponse({"ok": True, "trip": _trip_payload(trip, user)})


@router.post("/api/trips/{trip_id}/collaborators")
async def add_collaborator(trip_id: str, request: Request, user: User = Depends(require_user)):
    body = await _json_body(request)
    trip = _service(request).add_collaborator(
        user, trip_id, target_user_id=body.get("user_id"), username=body.get("username")
    )
    return JSONResponse({"ok": True, "trip": _trip_payload(trip, user)})


@router.delete("/api/trips/{trip_id}/collaborators/{user_id}")
async def remove_collaborator(trip_id: str, user_id: str, request: Request, user: User = Depends(require_user)):
    trip = _service(request).remove_collaborator(user, trip_id, user_id)
    return JSONResponse({"ok": True, "trip": _trip_payload(trip, user)})


@router.post("/api/trips/{trip_id}/leave")
async def leave_trip(trip_id: str, request: Request, user: User = Depends(require_user)):
    _service(request).leave_trip(user, trip_id)
    return JSONResponse({"ok": True})
