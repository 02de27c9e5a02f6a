"""
Celery worker running the stale-bot sweeper on a beat schedule
"""
import asyncio
from datetime import timedelta

from celery import Celery

from app.core.config import settings
from app.core.container import build_container
from app.core.logging import configure_logging, get_logger

configure_logging()
logger = get_logger(__name__)

# Create Celery app
celery_app = Celery(
    "recorder_worker",
    broker=settings.celery_broker_url,
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    task_track_started=True,
    # Sweeps may overlap; every write goes through the reconciler's compare-and-set
    task_time_limit=5 * 60,
    task_soft_time_limit=4 * 60,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
    beat_schedule={
        'sweep-bots': {
            'task': 'worker.sweep_bots',
            'schedule': timedelta(seconds=settings.sweep_interval_seconds),
            # Drop ticks that waited a full interval in the queue
            'options': {'expires': settings.sweep_interval_seconds},
        },
    },
)


async def run_sweep(container=None) -> dict:
    """Run one sweep and return its summary as plain data."""
    owned = container is None
    container = container or build_container(settings)
    if owned:
        await container.db.initialize()
    try:
        result = await container.sweeper.run()
        return result.model_dump(mode="json")
    finally:
        if owned:
            await container.close()


@celery_app.task(bind=True)
def sweep_bots(self):
    """
    Periodic task reconciling active bots with the provider
    """
    logger.info("Starting sweep_bots task", task_id=self.request.id)

    try:
        result = asyncio.run(run_sweep())
    except Exception as e:
        logger.error("Sweep task failed", task_id=self.request.id, error=str(e), exc_info=True)
        raise

    logger.info(
        "Sweep task completed",
        task_id=self.request.id,
        checked=result["checked"],
        updated=result["updated"],
        errors=result["errors"],
    )
    return result


if __name__ == '__main__':
    celery_app.start()
