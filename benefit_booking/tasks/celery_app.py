# benefit_booking/tasks/celery_app.py
"""
Celery application configuration for the booking engine.

Runs the periodic maintenance jobs (no-show sweep, credit expiry). The
broker defaults to the Redis instance used for credit locks.
"""

import logging
from typing import Any

from celery import Celery, Task
from celery.signals import setup_logging

from benefit_booking.core.config import settings


def create_celery_app() -> Celery:
    """
    Create and configure the Celery application.

    Returns:
        Celery: Configured Celery application instance
    """
    # Priority: CELERY_BROKER_URL -> REDIS_URL -> local default
    broker_url = settings.celery_broker_url or settings.redis_url or "redis://localhost:6379/0"

    celery_app = Celery("benefit_booking", broker=broker_url)

    celery_app.conf.update(
        {
            "task_serializer": "json",
            "accept_content": ["json"],
            "result_serializer": "json",
            "timezone": settings.facility_timezone,
            "enable_utc": True,
            "task_ignore_result": True,
            "worker_prefetch_multiplier": 1,
            "worker_max_tasks_per_child": 1000,
            "task_soft_time_limit": 240,
            "task_time_limit": 300,
            "task_acks_late": True,
            "task_reject_on_worker_lost": True,
            "worker_hijack_root_logger": False,
            "beat_schedule_filename": "celerybeat-schedule",
        }
    )

    # Force import so tasks register even when autodiscovery is skipped
    celery_app.conf.imports = ("benefit_booking.tasks.booking_maintenance",)
    celery_app.conf.task_routes = {"booking_maintenance.*": {"queue": "maintenance"}}

    from benefit_booking.tasks.beat_schedule import get_beat_schedule

    celery_app.conf.beat_schedule = get_beat_schedule()
    return celery_app


@setup_logging.connect
def config_loggers(*args: Any, **kwargs: Any) -> None:
    """Use the application's logging format instead of Celery's."""
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


celery_app = create_celery_app()


class BaseTask(Task):
    """Base task that logs failures and retries with their context."""

    def on_failure(self, exc: Exception, task_id: str, args: Any, kwargs: Any, einfo: Any) -> None:
        logging.getLogger(__name__).error(
            f"Task {self.name}[{task_id}] failed with exception: {exc}",
            exc_info=True,
            extra={"task_id": task_id, "task_name": self.name},
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_retry(self, exc: Exception, task_id: str, args: Any, kwargs: Any, einfo: Any) -> None:
        logging.getLogger(__name__).warning(
            f"Task {self.name}[{task_id}] retry {self.request.retries} due to: {exc}",
            extra={"task_id": task_id, "task_name": self.name, "retry_count": self.request.retries},
        )
        super().on_retry(exc, task_id, args, kwargs, einfo)
