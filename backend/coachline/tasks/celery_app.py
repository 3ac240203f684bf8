# backend/coachline/tasks/celery_app.py
"""
Celery application configuration for Coachline.

Redis is both broker and result backend. The beat schedule runs the weekly
coach payout every Monday shortly after midnight UTC.
"""

import logging
from typing import Any, Callable, Dict, ParamSpec, Protocol, Type, TypeVar, cast

from celery import Celery, Task
from celery.result import AsyncResult
from celery.schedules import crontab
from celery.signals import setup_logging

from coachline.core.config import settings

P = ParamSpec("P")
R = TypeVar("R", covariant=True)


def _broker_url() -> str:
    broker_url = settings.redis_url or "redis://localhost:6379"
    # Ensure Redis URL includes database number
    if not any(broker_url.endswith(f"/{i}") for i in range(16)):
        broker_url = f"{broker_url}/0"
    return broker_url


def get_beat_schedule() -> Dict[str, Dict[str, Any]]:
    return {
        "run-weekly-payouts": {
            "task": "coachline.tasks.payout_tasks.run_weekly_payouts",
            "schedule": crontab(minute=5, hour=0, day_of_week=1),
            "options": {"queue": "payments"},
        },
    }


def create_celery_app() -> Celery:
    broker_url = _broker_url()
    app = Celery("coachline", broker=broker_url, backend=broker_url)
    app.conf.update(
        {
            "task_serializer": "json",
            "accept_content": ["json"],
            "result_serializer": "json",
            "timezone": "UTC",
            "enable_utc": True,
            "task_soft_time_limit": 300,
            "task_time_limit": 600,
            "task_acks_late": True,
            "task_reject_on_worker_lost": True,
            "worker_hijack_root_logger": False,
        }
    )
    app.conf.imports = ("coachline.tasks.payout_tasks",)
    app.conf.task_routes = {"coachline.tasks.payout_tasks.*": {"queue": "payments"}}
    app.conf.beat_schedule = get_beat_schedule()
    return app


# Disable Celery's default logging configuration
@setup_logging.connect  # type: ignore[misc]
def config_loggers(*args: Any, **kwargs: Any) -> None:
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


celery_app = create_celery_app()


class BaseTask(Task):  # type: ignore[misc]
    """Base task with retry on failure and logging."""

    autoretry_for = (Exception,)
    retry_kwargs = {"max_retries": 3, "countdown": 60}
    retry_backoff = True
    retry_backoff_max = 600
    retry_jitter = True

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


celery_app.Task = cast(Type[Task], BaseTask)


class TaskWrapper(Protocol[P, R]):
    def __call__(self, *args: P.args, **kwargs: P.kwargs) -> R:
        ...

    delay: Callable[..., AsyncResult]
    apply_async: Callable[..., AsyncResult]


def typed_task(
    *task_args: Any, **task_kwargs: Any
) -> Callable[[Callable[P, R]], TaskWrapper[P, R]]:
    """Return a typed Celery task decorator for mypy."""

    return cast(
        Callable[[Callable[P, R]], TaskWrapper[P, R]],
        celery_app.task(*task_args, **task_kwargs),
    )
