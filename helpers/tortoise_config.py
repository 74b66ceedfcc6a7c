import os

from dotenv import load_dotenv
from tortoise import Tortoise

from helpers.config import get_logger

load_dotenv()

logger = get_logger("lifespan")

TORTOISE_CONFIG = {
    "connections": {
        "default": os.getenv("DATABASE_URL", "sqlite://db.sqlite3")
    },
    "apps": {
        "models": {
            "models": [
                "models.auth",
                "aerich.models",
                "models.call_record",
                "models.message",
                "models.pipeline_job",
            ]
        }
    },
    "use_tz": True,
    "timezone": "UTC",
}


async def lifespan(_):
    from helpers.pipeline_jobs import get_job_queue
    from scheduler.comm_scheduler import start_comm_scheduler, shutdown_scheduler

    await Tortoise.init(config=TORTOISE_CONFIG)
    jobs = get_job_queue()
    jobs.start()
    start_comm_scheduler()
    logger.info("communication pipeline started")
    try:
        yield
    finally:
        shutdown_scheduler(wait=False)
        await jobs.stop()
        await Tortoise.close_connections()
        logger.info("communication pipeline stopped")
