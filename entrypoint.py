import os

import uvicorn

from logging_config import get_logger, setup_logging

# Setup logging before anything else logs
setup_logging(log_level=os.getenv("LOG_LEVEL", "DEBUG"), log_file=os.getenv("LOG_FILE"))

from constants import REDIS_HOST, REDIS_PORT, ROOM_SWEEP_INTERVAL

logger = get_logger(__name__)


def main():
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 8000))
    reload = os.getenv("RELOAD", "true").lower() == "true"
    logger.info(f"Starting PlanningPoker server on {host}:{port}, Redis at {REDIS_HOST}:{REDIS_PORT}, "
                f"sweeping empty rooms every {ROOM_SWEEP_INTERVAL}s")
    uvicorn.run("app:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    main()
