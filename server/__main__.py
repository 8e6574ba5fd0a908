import logging
import threading

import uvicorn

from database import init_db
from server import config
from server.api import app, notifier
from server.worker import Worker

logging.basicConfig(
    level=config.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main():
    init_db()
    logger.info("Database initialized")

    worker = None
    if config.RUN_SWEEP_WORKER:
        # Safe to enable in several processes: each settlement claims its auction first
        worker = Worker(notifier=notifier)
        threading.Thread(target=worker.run_loop, name="sweep-worker", daemon=True).start()
        logger.info(f"Sweep worker started, every {config.SWEEP_INTERVAL_SECONDS}s")
    else:
        logger.info("Sweep worker disabled in this process")

    try:
        uvicorn.run(app, host=config.HOST, port=config.PORT)
    finally:
        if worker is not None:
            worker.stop()


if __name__ == "__main__":
    main()
