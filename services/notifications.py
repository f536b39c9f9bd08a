from typing import List, Optional

from constants import ADMIN_CHANGE_DISMISS_SECONDS, USER_LEFT_DISMISS_SECONDS
from logging_config import get_logger
from schemas.rooms import Notification, Participant

logger = get_logger(__name__)


def user_left(name: str) -> Notification:
    return Notification(kind="user_left", message=f"{name} left the room", dismiss_after=USER_LEFT_DISMISS_SECONDS)


def admin_transferred(name: str) -> Notification:
    return Notification(kind="admin_transferred", message=f"{name} is now the room admin",
                        dismiss_after=ADMIN_CHANGE_DISMISS_SECONDS)


def new_admin() -> Notification:
    return Notification(kind="new_admin", message="You are now the room admin!",
                        dismiss_after=ADMIN_CHANGE_DISMISS_SECONDS)


class NotificationRelay:
    """Turns successive participant snapshots into notifications for one local participant."""

    def __init__(self, local_participant_id: str):
        self.local_participant_id = local_participant_id
        self.leaving = False
        self._previous: List[Participant] = []
        # Last admin seen; kept across snapshots that momentarily show no admin
        self._admin_id: Optional[str] = None

    def process(self, participants: List[Participant]) -> List[Notification]:
        notifications = []
        if not self.leaving:
            notifications.extend(self._departures(participants))
            notifications.extend(self._admin_change(participants))

        current_admin = next((p for p in participants if p.is_admin), None)
        if current_admin is not None:
            self._admin_id = current_admin.id
        elif not participants:
            self._admin_id = None
        self._previous = list(participants)

        for notification in notifications:
            logger.debug(f"Notification for {self.local_participant_id}: {notification.message}")
        return notifications

    def _departures(self, participants: List[Participant]) -> List[Notification]:
        current_ids = {p.id for p in participants}
        return [
            user_left(p.name)
            for p in self._previous
            if p.id not in current_ids and p.id != self.local_participant_id
        ]

    def _admin_change(self, participants: List[Participant]) -> List[Notification]:
        current_admin = next((p for p in participants if p.is_admin), None)
        if current_admin is None or self._admin_id is None or current_admin.id == self._admin_id:
            return []
        if current_admin.id == self.local_participant_id:
            return [new_admin()]
        return [admin_transferred(current_admin.name)]
