from backend import RedisStateStore
from constants import DEFAULT_ROOM_TITLE, MAX_ROOM_PARTICIPANTS
from logging_config import get_logger
from services.locks import RoomLocks
from services.membership import MembershipManager
from services.registry import RoomRegistry
from services.voting import VotingSession

logger = get_logger(__name__)


class RoomEngine:
    """The room services of one process, sharing a store and a room lock table."""

    def __init__(self, store: RedisStateStore, max_participants: int = MAX_ROOM_PARTICIPANTS,
                 default_title: str = DEFAULT_ROOM_TITLE):
        self.store = store
        self.locks = RoomLocks()
        self.registry = RoomRegistry(store, default_title=default_title)
        self.membership = MembershipManager(store, self.registry, self.locks, max_participants=max_participants)
        self.voting = VotingSession(store, self.locks)
        logger.info(f"RoomEngine initialized (max {max_participants} participants per room)")
