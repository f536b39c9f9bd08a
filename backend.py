import asyncio
import json
import uuid
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD, SUBSCRIPTION_RETRY_SECONDS
from exceptions import StoreUnavailable
from redis_keys import (
    REDIS_ROOM_INDEX_KEY,
    REDIS_META_KEY,
    REDIS_PARTICIPANTS_KEY,
    REDIS_PARTICIPANT_KEY,
    REDIS_PRESENCE_KEY,
    REDIS_DISCONNECTS_KEY,
    REDIS_ROOM_CHANNEL,
)
from logging_config import get_logger

logger = get_logger(__name__)

ROOT = "rooms"
COLLECTIONS = ("participants", "presence", "disconnects")

Callback = Callable[[Any], Awaitable[None]]


def create_redis_client() -> redis.Redis:
    logger.info(f"Creating Redis client for {REDIS_HOST}:{REDIS_PORT}")
    return redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)


def state_path(room_id: str, *parts: str) -> str:
    """Build a tree path such as ``rooms/<id>/participants/<pid>``."""
    return "/".join((ROOT, room_id) + parts)


class StatePath(NamedTuple):
    room_id: Optional[str] = None
    section: Optional[str] = None
    child_id: Optional[str] = None

    @property
    def is_root(self) -> bool:
        return self.room_id is None

    @property
    def is_room(self) -> bool:
        return self.room_id is not None and self.section is None

    @property
    def is_field(self) -> bool:
        return self.section is not None and self.section not in COLLECTIONS

    @property
    def is_collection(self) -> bool:
        return self.section in COLLECTIONS and self.child_id is None

    @property
    def is_child(self) -> bool:
        return self.section in COLLECTIONS and self.child_id is not None


def parse_path(path: str) -> StatePath:
    parts = [part for part in path.strip("/").split("/") if part]
    if not parts or parts[0] != ROOT or len(parts) > 4:
        raise ValueError(f"Unsupported state path: {path!r}")
    if len(parts) == 4 and parts[2] not in COLLECTIONS:
        raise ValueError(f"Unsupported state path: {path!r}")
    return StatePath(*parts[1:])


def _related(a: str, b: str) -> bool:
    return a == b or a.startswith(b + "/") or b.startswith(a + "/")


def _encode(value: Any) -> str:
    return json.dumps(value)


def _decode(value: Optional[str]) -> Any:
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return value


def _decode_hash(data: Dict[str, str]) -> Dict[str, Any]:
    return {k: _decode(v) for k, v in data.items()}


def _split_fields(fields: Dict[str, Any]) -> Tuple[Dict[str, str], List[str]]:
    # A None value deletes the field, like a null write in a JSON tree
    to_set = {k: _encode(v) for k, v in fields.items() if v is not None}
    to_delete = [k for k, v in fields.items() if v is None]
    return to_set, to_delete


@asynccontextmanager
async def _store_errors(operation: str, path: str):
    try:
        yield
    except RedisError as e:
        logger.warning(f"Store {operation} failed for {path}: {e}")
        raise StoreUnavailable(f"{operation} {path}: {e}") from e


_UNSET = object()


class Subscription:
    """Live feed of one path: fires with the current value, then on every change."""

    def __init__(self, store: "RedisStateStore", path: str, room_id: str, callback: Callback):
        self.store = store
        self.path = path
        self.room_id = room_id
        self.callback = callback
        self.active = True
        self._dirty = False
        self._task: Optional[asyncio.Task] = None
        self._last: Any = _UNSET

    def notify(self) -> None:
        if not self.active:
            return
        self._dirty = True
        if self._task is None or self._task.done():
            self._task = self.store._track(asyncio.create_task(self._deliver()))

    async def _deliver(self) -> None:
        # Changes arriving while the callback runs are coalesced into one re-read
        while self._dirty and self.active:
            self._dirty = False
            try:
                value = await self.store.get(self.path)
            except StoreUnavailable:
                logger.warning(f"Refresh of {self.path} failed, retrying in {self.store.retry_delay}s")
                self._dirty = True
                await asyncio.sleep(self.store.retry_delay)
                continue
            if value == self._last:
                continue
            self._last = value
            try:
                await self.callback(value)
            except Exception as e:
                logger.error(f"Subscriber callback failed for {self.path}: {e}", exc_info=True)

    def cancel(self) -> None:
        if self.active:
            self.active = False
            self.store._unsubscribe(self)


class StoreConnection:
    """One client's connection to the store.

    Disconnect actions are unconditional writes the server applies when the
    connection goes away, whether or not the client said goodbye.
    """

    def __init__(self, store: "RedisStateStore", connection_id: str):
        self.store = store
        self.connection_id = connection_id
        self.connected = True
        self._disconnect_actions: List[Tuple[str, str, Any]] = []
        self._subscriptions: List[Subscription] = []

    async def on_connection_established(self, callback: Callable[[], Awaitable[None]]) -> None:
        if self.connected:
            await callback()

    def register_disconnect_action(self, path: str, action: str, value: Any = None) -> None:
        """Register a ``set`` or ``remove`` of ``path``; a callable value is evaluated at disconnect time."""
        parse_path(path)
        if action not in ("set", "remove"):
            raise ValueError(f"Unsupported disconnect action: {action!r}")
        self._disconnect_actions.append((path, action, value))
        logger.debug(f"Connection {self.connection_id} registered disconnect {action} on {path}")

    def cancel_disconnect_actions(self) -> None:
        self._disconnect_actions.clear()

    def subscribe(self, path: str, callback: Callback) -> Subscription:
        subscription = self.store.subscribe(path, callback)
        self._subscriptions.append(subscription)
        return subscription

    async def close(self) -> None:
        if not self.connected:
            return
        self.connected = False
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions.clear()

        actions, self._disconnect_actions = self._disconnect_actions, []
        logger.info(f"Connection {self.connection_id} closed, applying {len(actions)} disconnect actions")
        for path, action, value in actions:
            try:
                if action == "set":
                    await self.store.set(path, value() if callable(value) else value)
                else:
                    await self.store.remove(path)
            except StoreUnavailable as e:
                logger.warning(f"Disconnect action {action} on {path} failed: {e}")


class RedisStateStore:
    """Tree-structured state store on top of Redis.

    Each room is split over a handful of keys (see ``redis_keys``); there are
    no cross-key transactions, so every key is last-write-wins. Writes are
    published on the room channel so other instances can refresh their
    subscribers.
    """

    def __init__(self, redis_client: redis.Redis, relay_remote: bool = True,
                 retry_delay: float = SUBSCRIPTION_RETRY_SECONDS):
        self.redis_client = redis_client
        self.relay_remote = relay_remote
        self.retry_delay = retry_delay
        self.instance_id = uuid.uuid4().hex
        # Format: {room_id: [subscription, ...]}
        self._subscriptions: Dict[str, List[Subscription]] = {}
        # Format: {room_id: task}
        self._listener_tasks: Dict[str, asyncio.Task] = {}
        self._deliveries = set()
        logger.info(f"Initializing RedisStateStore instance {self.instance_id[:8]} (relay_remote={relay_remote})")

    def connect(self, connection_id: Optional[str] = None) -> StoreConnection:
        return StoreConnection(self, connection_id or str(uuid.uuid4()))

    # Reads

    async def get(self, path: str) -> Any:
        target = parse_path(path)
        async with _store_errors("get", path):
            if target.is_root:
                rooms = {}
                for room_id in await self.room_ids():
                    room = await self._get_room(room_id)
                    if room is not None:
                        rooms[room_id] = room
                return rooms
            if target.is_room:
                return await self._get_room(target.room_id)
            if target.is_field:
                value = await self.redis_client.hget(REDIS_META_KEY.format(slug=target.room_id), target.section)
                return None if value is None else _decode(value)
            if target.is_collection:
                return await self._get_collection(target.room_id, target.section)
            return await self._get_child(target)

    async def room_ids(self) -> List[str]:
        async with _store_errors("list", ROOT):
            return sorted(await self.redis_client.smembers(REDIS_ROOM_INDEX_KEY))

    async def room_exists(self, room_id: str) -> bool:
        async with _store_errors("exists", state_path(room_id)):
            return await self.redis_client.exists(REDIS_META_KEY.format(slug=room_id)) > 0

    async def _get_room(self, room_id: str) -> Optional[Dict[str, Any]]:
        meta = await self.redis_client.hgetall(REDIS_META_KEY.format(slug=room_id))
        children = {section: await self._get_collection(room_id, section) for section in COLLECTIONS}
        if not meta and not any(children.values()):
            return None
        room = _decode_hash(meta)
        room.update(children)
        return room

    async def _get_collection(self, room_id: str, section: str) -> Dict[str, Any]:
        if section == "participants":
            participant_ids = sorted(await self.redis_client.smembers(REDIS_PARTICIPANTS_KEY.format(slug=room_id)))
            if not participant_ids:
                return {}
            pipe = self.redis_client.pipeline(transaction=False)
            for participant_id in participant_ids:
                pipe.hgetall(REDIS_PARTICIPANT_KEY.format(slug=room_id, participant_id=participant_id))
            rows = await pipe.execute()
            # A participant removed between the two reads has an empty hash
            return {pid: _decode_hash(row) for pid, row in zip(participant_ids, rows) if row}
        if section == "presence":
            members = await self.redis_client.smembers(REDIS_PRESENCE_KEY.format(slug=room_id))
            return {pid: True for pid in sorted(members)}
        markers = await self.redis_client.hgetall(REDIS_DISCONNECTS_KEY.format(slug=room_id))
        return {pid: _decode(markers[pid]) for pid in sorted(markers)}

    async def _get_child(self, target: StatePath) -> Any:
        room_id, child_id = target.room_id, target.child_id
        if target.section == "participants":
            data = await self.redis_client.hgetall(REDIS_PARTICIPANT_KEY.format(slug=room_id, participant_id=child_id))
            return _decode_hash(data) if data else None
        if target.section == "presence":
            present = await self.redis_client.sismember(REDIS_PRESENCE_KEY.format(slug=room_id), child_id)
            return True if present else None
        value = await self.redis_client.hget(REDIS_DISCONNECTS_KEY.format(slug=room_id), child_id)
        return None if value is None else _decode(value)

    # Writes

    async def set(self, path: str, value: Any) -> None:
        target = parse_path(path)
        room_id = target.room_id
        async with _store_errors("set", path):
            if target.is_room:
                if not isinstance(value, dict) or any(section in value for section in COLLECTIONS):
                    raise ValueError("A room can only be set from its own fields")
                meta_key = REDIS_META_KEY.format(slug=room_id)
                to_set, _ = _split_fields(value)
                pipe = self.redis_client.pipeline(transaction=False)
                pipe.delete(meta_key)
                if to_set:
                    pipe.hset(meta_key, mapping=to_set)
                pipe.sadd(REDIS_ROOM_INDEX_KEY, room_id)
                await pipe.execute()
            elif target.is_field:
                meta_key = REDIS_META_KEY.format(slug=room_id)
                if value is None:
                    await self.redis_client.hdel(meta_key, target.section)
                else:
                    await self.redis_client.hset(meta_key, target.section, _encode(value))
            elif target.is_child:
                await self._set_child(target, value)
            else:
                raise ValueError(f"Cannot set {path}")
        logger.debug(f"Set {path}")
        await self._publish(room_id, path)

    async def _set_child(self, target: StatePath, value: Any) -> None:
        room_id, child_id = target.room_id, target.child_id
        if value is None:
            await self._remove_child(target)
            return
        pipe = self.redis_client.pipeline(transaction=False)
        if target.section == "participants":
            participant_key = REDIS_PARTICIPANT_KEY.format(slug=room_id, participant_id=child_id)
            to_set, _ = _split_fields(value)
            pipe.delete(participant_key)
            if to_set:
                pipe.hset(participant_key, mapping=to_set)
            pipe.sadd(REDIS_PARTICIPANTS_KEY.format(slug=room_id), child_id)
        elif target.section == "presence":
            pipe.sadd(REDIS_PRESENCE_KEY.format(slug=room_id), child_id)
        else:
            pipe.hset(REDIS_DISCONNECTS_KEY.format(slug=room_id), child_id, _encode(value))
        pipe.sadd(REDIS_ROOM_INDEX_KEY, room_id)
        await pipe.execute()

    async def update(self, path: str, fields: Dict[str, Any]) -> None:
        """Merge ``fields`` into ``path``; a None value removes that field."""
        target = parse_path(path)
        room_id = target.room_id
        async with _store_errors("update", path):
            if target.is_room:
                await self._merge_hash(REDIS_META_KEY.format(slug=room_id), fields)
                await self.redis_client.sadd(REDIS_ROOM_INDEX_KEY, room_id)
            elif target.is_field:
                await self.set(path, fields)
                return
            elif target.is_collection and target.section == "participants":
                await self._update_participants(room_id, fields)
            elif target.is_child and target.section == "participants":
                participants_key = REDIS_PARTICIPANTS_KEY.format(slug=room_id)
                if not await self.redis_client.sismember(participants_key, target.child_id):
                    logger.debug(f"Skipping update of departed participant {target.child_id} in room {room_id}")
                    return
                await self._merge_hash(
                    REDIS_PARTICIPANT_KEY.format(slug=room_id, participant_id=target.child_id), fields
                )
            else:
                raise ValueError(f"Cannot update {path}")
        logger.debug(f"Updated {path}: {sorted(fields)}")
        await self._publish(room_id, path)

    async def _merge_hash(self, key: str, fields: Dict[str, Any]) -> None:
        to_set, to_delete = _split_fields(fields)
        pipe = self.redis_client.pipeline(transaction=False)
        if to_set:
            pipe.hset(key, mapping=to_set)
        if to_delete:
            pipe.hdel(key, *to_delete)
        await pipe.execute()

    async def _update_participants(self, room_id: str, changes: Dict[str, Dict[str, Any]]) -> None:
        members = await self.redis_client.smembers(REDIS_PARTICIPANTS_KEY.format(slug=room_id))
        pipe = self.redis_client.pipeline(transaction=False)
        for participant_id, fields in changes.items():
            if participant_id not in members:
                logger.debug(f"Skipping update of departed participant {participant_id} in room {room_id}")
                continue
            participant_key = REDIS_PARTICIPANT_KEY.format(slug=room_id, participant_id=participant_id)
            to_set, to_delete = _split_fields(fields)
            if to_set:
                pipe.hset(participant_key, mapping=to_set)
            if to_delete:
                pipe.hdel(participant_key, *to_delete)
        await pipe.execute()

    async def remove(self, path: str) -> None:
        target = parse_path(path)
        room_id = target.room_id
        async with _store_errors("remove", path):
            if target.is_root:
                raise ValueError("Refusing to remove every room")
            if target.is_room:
                participant_ids = await self.redis_client.smembers(REDIS_PARTICIPANTS_KEY.format(slug=room_id))
                pipe = self.redis_client.pipeline(transaction=False)
                pipe.delete(
                    REDIS_META_KEY.format(slug=room_id),
                    REDIS_PARTICIPANTS_KEY.format(slug=room_id),
                    REDIS_PRESENCE_KEY.format(slug=room_id),
                    REDIS_DISCONNECTS_KEY.format(slug=room_id),
                    *[REDIS_PARTICIPANT_KEY.format(slug=room_id, participant_id=pid) for pid in participant_ids],
                )
                pipe.srem(REDIS_ROOM_INDEX_KEY, room_id)
                await pipe.execute()
            elif target.is_field:
                await self.redis_client.hdel(REDIS_META_KEY.format(slug=room_id), target.section)
            elif target.is_collection:
                await self._remove_collection(room_id, target.section)
            else:
                await self._remove_child(target)
        logger.debug(f"Removed {path}")
        await self._publish(room_id, path)

    async def _remove_collection(self, room_id: str, section: str) -> None:
        if section == "participants":
            participants_key = REDIS_PARTICIPANTS_KEY.format(slug=room_id)
            participant_ids = await self.redis_client.smembers(participants_key)
            await self.redis_client.delete(
                participants_key,
                *[REDIS_PARTICIPANT_KEY.format(slug=room_id, participant_id=pid) for pid in participant_ids],
            )
        elif section == "presence":
            await self.redis_client.delete(REDIS_PRESENCE_KEY.format(slug=room_id))
        else:
            await self.redis_client.delete(REDIS_DISCONNECTS_KEY.format(slug=room_id))

    async def _remove_child(self, target: StatePath) -> None:
        room_id, child_id = target.room_id, target.child_id
        if target.section == "participants":
            pipe = self.redis_client.pipeline(transaction=False)
            pipe.srem(REDIS_PARTICIPANTS_KEY.format(slug=room_id), child_id)
            pipe.delete(REDIS_PARTICIPANT_KEY.format(slug=room_id, participant_id=child_id))
            await pipe.execute()
        elif target.section == "presence":
            await self.redis_client.srem(REDIS_PRESENCE_KEY.format(slug=room_id), child_id)
        else:
            await self.redis_client.hdel(REDIS_DISCONNECTS_KEY.format(slug=room_id), child_id)

    # Change feed

    def subscribe(self, path: str, callback: Callback) -> Subscription:
        target = parse_path(path)
        if target.is_root:
            raise ValueError("Subscriptions must be scoped to a room")
        subscription = Subscription(self, path, target.room_id, callback)
        self._subscriptions.setdefault(target.room_id, []).append(subscription)
        if self.relay_remote:
            self._ensure_listener(target.room_id)
        subscription.notify()
        logger.debug(f"Subscribed to {path}")
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        room_subscriptions = self._subscriptions.get(subscription.room_id, [])
        if subscription in room_subscriptions:
            room_subscriptions.remove(subscription)
        if not room_subscriptions:
            self._subscriptions.pop(subscription.room_id, None)
            task = self._listener_tasks.pop(subscription.room_id, None)
            if task is not None:
                task.cancel()

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)
        return task

    def _dispatch(self, room_id: str, path: str) -> None:
        for subscription in list(self._subscriptions.get(room_id, [])):
            if _related(subscription.path, path):
                subscription.notify()

    async def _publish(self, room_id: str, path: str) -> None:
        self._dispatch(room_id, path)
        if not self.relay_remote:
            return
        channel = REDIS_ROOM_CHANNEL.format(slug=room_id)
        try:
            await self.redis_client.publish(channel, json.dumps({"path": path, "origin": self.instance_id}))
        except RedisError as e:
            # The write itself went through; remote instances refresh on their next change
            logger.warning(f"Failed to publish change of {path} on {channel}: {e}")

    def _ensure_listener(self, room_id: str) -> None:
        task = self._listener_tasks.get(room_id)
        if task is None or task.done():
            self._listener_tasks[room_id] = asyncio.create_task(self._listen_to_room_channel(room_id))

    async def _listen_to_room_channel(self, room_id: str) -> None:
        """Relay changes written by other instances to the local subscribers of a room."""
        channel = REDIS_ROOM_CHANNEL.format(slug=room_id)
        logger.info(f"Starting Redis pub/sub listener for room: {room_id}")
        pubsub = self.redis_client.pubsub()
        try:
            await pubsub.subscribe(channel)
            while self._subscriptions.get(room_id):
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message is None:
                    continue
                try:
                    payload = json.loads(message["data"])
                except (json.JSONDecodeError, TypeError) as e:
                    logger.error(f"Error parsing change message for room {room_id}: {e}")
                    continue
                if payload.get("origin") == self.instance_id:
                    continue
                self._dispatch(room_id, payload.get("path") or state_path(room_id))
        except asyncio.CancelledError:
            logger.info(f"Redis listener task cancelled for room: {room_id}")
        except RedisError as e:
            logger.error(f"Error in Redis listener for room {room_id}: {e}", exc_info=True)
        finally:
            try:
                await pubsub.unsubscribe(channel)
                await pubsub.aclose()
            except RedisError as e:
                logger.error(f"Error closing pub/sub for room {room_id}: {e}")
            if self._listener_tasks.get(room_id) is asyncio.current_task():
                del self._listener_tasks[room_id]

    async def drain(self) -> None:
        """Wait until every pending subscriber delivery has run."""
        while self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)

    async def close(self) -> None:
        for room_subscriptions in list(self._subscriptions.values()):
            for subscription in list(room_subscriptions):
                subscription.cancel()
        for task in list(self._listener_tasks.values()):
            task.cancel()
        await asyncio.gather(*self._listener_tasks.values(), *self._deliveries, return_exceptions=True)
        self._listener_tasks.clear()
        logger.info(f"RedisStateStore instance {self.instance_id[:8]} closed")
