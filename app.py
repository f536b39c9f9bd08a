from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from routers.rooms import rooms_router
from backend import RedisStateStore, create_redis_client
from constants import ROOM_SWEEP_INTERVAL
from services.engine import RoomEngine
from services.session import RoomSession, SessionTimings
from contextlib import asynccontextmanager
import uuid
import json
import asyncio
from typing import Any, Dict, Optional
from logging_config import get_logger, setup_logging
import os

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


async def sweep_stale_rooms(engine: RoomEngine, interval: int):
    """Background task deleting rooms nobody is in anymore."""
    logger.info(f"Starting stale room sweeper (every {interval}s)")
    try:
        while True:
            await asyncio.sleep(interval)
            deleted = await engine.registry.sweep_stale()
            logger.debug(f"Stale room sweep deleted {deleted} rooms")
    except asyncio.CancelledError:
        logger.info("Stale room sweeper stopped")


async def forward_events(websocket: WebSocket, session: RoomSession):
    """Push session events to the browser until the socket goes away."""
    try:
        while True:
            event = await session.events.get()
            await websocket.send_text(json.dumps(event))
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.debug(f"Stopped forwarding events to {session.participant_id}: {e}")


async def handle_action(session: RoomSession, message: Dict[str, Any]) -> bool:
    action = message.get("action")
    if action == "select_card":
        return await session.select_card(message.get("card"))
    if action == "start_countdown":
        return await session.start_countdown()
    if action == "hide_cards":
        return await session.hide_cards()
    if action == "reset_cards":
        return await session.reset_cards()
    if action == "rename":
        name = str(message.get("name") or "").strip()
        return bool(name) and await session.rename(name)
    if action == "set_title":
        title = str(message.get("title") or "").strip()
        return bool(title) and await session.set_title(title)
    logger.warning(f"Unknown action {action!r} from {session.participant_id} in room {session.room_id}")
    return False


async def websocket_endpoint(websocket: WebSocket, room_id: str, participant_id: Optional[str] = None,
                             display_name: Optional[str] = None):
    """One browser in one room.

    Query parameters:
    - participant_id: Stable id of the browser's user; a new one is generated if missing
    - display_name: Optional display name for the user
    """
    engine: RoomEngine = websocket.app.state.engine
    logger.info(f"WebSocket connection attempt for room: {room_id}, display_name: {display_name}")

    if not engine.registry.is_valid_room_id(room_id):
        new_room_id = engine.registry.generate_id()
        logger.info(f"WebSocket connection rejected: invalid room id {room_id!r}, redirecting to {new_room_id}")
        await websocket.close(code=1008, reason=f"Invalid room id, redirect to {new_room_id}")
        return

    participant_id = participant_id or str(uuid.uuid4())
    name = display_name.strip() if display_name and display_name.strip() else f"User_{participant_id[:8]}"

    await websocket.accept()
    session = RoomSession(engine, room_id, participant_id, name, timings=websocket.app.state.timings)
    sender = None
    left = False
    try:
        if not await session.enter():
            # The session queued a redirect to a fresh room
            await websocket.send_text(json.dumps(session.events.get_nowait()))
            await websocket.close(code=1008, reason="Room is full")
            return

        await websocket.send_text(json.dumps({
            "type": "system",
            "message": "Connected to room",
            "room_id": room_id,
            "participant_id": participant_id,
            "name": name,
        }))
        sender = asyncio.create_task(forward_events(websocket, session))

        while True:
            try:
                data = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info(f"WebSocket disconnected for {participant_id} in room {room_id}")
                break

            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await session.events.put({"type": "error", "message": "Messages must be JSON"})
                continue
            if not isinstance(message, dict):
                await session.events.put({"type": "error", "message": "Messages must be JSON objects"})
                continue

            if message.get("action") == "leave":
                left = await session.leave()
                break
            ok = await handle_action(session, message)
            await session.events.put({"type": "ack", "action": message.get("action"), "ok": ok})
    except Exception as e:
        logger.error(f"WebSocket error for {participant_id} in room {room_id}: {e}", exc_info=True)
    finally:
        if sender:
            sender.cancel()
        if session.joined and not left:
            await session.close()
        # Nobody may be left to watch this participant's disconnect marker
        await engine.registry.delete_if_empty(room_id)
        try:
            await websocket.close()
        except Exception as e:
            logger.debug(f"Error closing WebSocket: {e}")


def create_app(redis_client=None, relay_remote: bool = True, sweep_interval: int = ROOM_SWEEP_INTERVAL,
               timings: Optional[SessionTimings] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = redis_client if redis_client is not None else create_redis_client()
        store = RedisStateStore(client, relay_remote=relay_remote)
        app.state.engine = RoomEngine(store)
        app.state.timings = timings or SessionTimings()
        sweeper = asyncio.create_task(sweep_stale_rooms(app.state.engine, sweep_interval)) if sweep_interval > 0 else None
        logger.info("PlanningPoker application started")

        yield

        if sweeper:
            sweeper.cancel()
            await asyncio.gather(sweeper, return_exceptions=True)
        await store.close()
        if redis_client is None:
            await client.aclose()
        logger.info("PlanningPoker application shut down")

    application = FastAPI(title="PlanningPoker", lifespan=lifespan)

    # Configure CORS to allow all origins
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(rooms_router)
    application.add_api_websocket_route("/rooms/{room_id}/ws", websocket_endpoint)

    @application.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return application


app = create_app()

logger.info("FastAPI application initialized")
