from fastapi import APIRouter, HTTPException, Query, Request
from schemas.rooms import CreateRoomResponse, RoomDetailsResponse, Room, SweepResponse, UpdateTitleRequest
from backend import state_path
from exceptions import StoreUnavailable
from services.engine import RoomEngine
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


def get_engine(request: Request) -> RoomEngine:
    return request.app.state.engine


def build_ws_url(request: Request, room_id: str) -> str:
    # Replace http/https with ws/wss
    base_url = str(request.base_url).rstrip('/')
    ws_base = base_url.replace("http://", "ws://").replace("https://", "wss://")
    return f"{ws_base}/rooms/{room_id}/ws"


def require_valid_room_id(engine: RoomEngine, room_id: str) -> None:
    if not engine.registry.is_valid_room_id(room_id):
        logger.warning(f"Rejected malformed room id {room_id!r}")
        raise HTTPException(status_code=400, detail="Invalid room id")


@rooms_router.post("/", response_model=CreateRoomResponse, status_code=201)
async def create_room(request: Request):
    engine = get_engine(request)
    room_id = engine.registry.generate_id()
    logger.info(f"Room creation request from {request.client.host if request.client else 'unknown'}")

    if not await engine.registry.create_room(room_id):
        logger.error(f"Error creating room {room_id}")
        raise HTTPException(status_code=500, detail="Failed to create room")

    return CreateRoomResponse(
        room_id=room_id,
        ws_url=build_ws_url(request, room_id),
        title=engine.registry.default_title,
    )


@rooms_router.post("/sweep", response_model=SweepResponse)
async def sweep_rooms(request: Request):
    deleted = await get_engine(request).registry.sweep_stale()
    return SweepResponse(deleted=deleted)


@rooms_router.get("/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(
    room_id: str,
    request: Request,
    include_participants: bool = Query(True, description="Include the participant list"),
):
    """
    Get room details.

    Returns:
    - room_id, title, created_at, revealed
    - participants_count: Number of joined participants
    - online_count: Number of participants with a live connection
    - is_full: Whether the room has reached max capacity
    """
    engine = get_engine(request)
    require_valid_room_id(engine, room_id)

    try:
        data = await engine.store.get(state_path(room_id))
    except StoreUnavailable as e:
        logger.error(f"Error reading room {room_id}: {e}")
        raise HTTPException(status_code=503, detail="Room store unavailable")
    if not data:
        logger.warning(f"Room details failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")

    room = Room.from_store(room_id, data, engine.registry.default_title)
    max_participants = engine.membership.max_participants
    logger.info(f"Room details retrieved for {room_id}: {len(room.participants)}/{max_participants} participants")

    return RoomDetailsResponse(
        room_id=room_id,
        title=room.title,
        created_at=room.created_at,
        revealed=room.revealed,
        participants_count=len(room.participants),
        online_count=len(room.presence),
        max_participants=max_participants,
        participants=room.participants if include_participants else None,
        is_full=len(room.participants) >= max_participants,
    )


@rooms_router.put("/{room_id}/title")
async def update_room_title(room_id: str, body: UpdateTitleRequest, request: Request):
    engine = get_engine(request)
    require_valid_room_id(engine, room_id)

    try:
        exists = await engine.store.room_exists(room_id)
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Room store unavailable")
    if not exists:
        raise HTTPException(status_code=404, detail="Room not found")

    title = body.title.strip()
    if not title:
        raise HTTPException(status_code=400, detail="Title must not be blank")
    if not await engine.registry.set_title(room_id, title):
        raise HTTPException(status_code=503, detail="Failed to update title")
    return {"room_id": room_id, "title": title}
