import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

# Rooms
ROOM_ID_LENGTH = 8
ROOM_ID_PATTERN = r"^[0-9a-f]{8}$"
MAX_ROOM_PARTICIPANTS = int(os.getenv("MAX_ROOM_PARTICIPANTS", 10))
DEFAULT_ROOM_TITLE = os.getenv("DEFAULT_ROOM_TITLE", "default")
ROOM_SWEEP_INTERVAL = int(os.getenv("ROOM_SWEEP_INTERVAL", 300))  # seconds, 0 disables
MARKER_STALE_SECONDS = int(os.getenv("MARKER_STALE_SECONDS", 60))
SUBSCRIPTION_RETRY_SECONDS = float(os.getenv("SUBSCRIPTION_RETRY_SECONDS", 1.0))

# Voting
CARDS = ("XXS", "XS", "S", "M", "L", "XL", "XXL", "?")

# Every client must run the same countdown, these must match across instances
COUNTDOWN_TICKS = int(os.getenv("COUNTDOWN_TICKS", 3))
COUNTDOWN_TICK_SECONDS = float(os.getenv("COUNTDOWN_TICK_SECONDS", 0.8))
REVEAL_DELAY_SECONDS = float(os.getenv("REVEAL_DELAY_SECONDS", 0.5))
RESET_CLEAR_DELAY = float(os.getenv("RESET_CLEAR_DELAY", 1.0))

# Notifications (auto-dismiss, seconds)
USER_LEFT_DISMISS_SECONDS = 4
ADMIN_CHANGE_DISMISS_SECONDS = 3
