from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from restobot.core.config import SCHEDULER_POLL_SECONDS
from restobot.core.database import SessionLocal
from restobot.core.time_utils import utcnow
from restobot.models.scheduled_task import (
    TASK_DONE,
    TASK_FAILED,
    TASK_PENDING,
    TASK_RUNNING,
    TASK_SKIPPED,
    ScheduledTask,
)

logger = logging.getLogger(__name__)

# (db, order_id, now) -> True when the task did its work, False when it had nothing to do
TaskHandler = Callable[[Session, int, datetime], bool]

_handlers: dict[str, TaskHandler] = {}


def register_task_handler(kind: str, handler: TaskHandler) -> None:
    _handlers[kind] = handler


def schedule_task(db: Session, *, kind: str, order_id: int, delay_seconds: float, now: datetime) -> bool:
    """Arm a deferred task once per (kind, order); re-arming is a no-op."""
    existing = (
        db.query(ScheduledTask.id)
        .filter(ScheduledTask.kind == kind, ScheduledTask.order_id == order_id)
        .first()
    )
    if existing:
        return False
    db.add(
        ScheduledTask(
            kind=kind,
            order_id=order_id,
            run_at=now + timedelta(seconds=delay_seconds),
            status=TASK_PENDING,
            attempts=0,
            created_at=now,
            updated_at=now,
        )
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    logger.info("task scheduled kind=%s order=%s delay=%ss", kind, order_id, delay_seconds)
    return True


def _claim(db: Session, task_id: int, now: datetime) -> bool:
    claimed = (
        db.query(ScheduledTask)
        .filter(ScheduledTask.id == task_id, ScheduledTask.status == TASK_PENDING)
        .update(
            {
                ScheduledTask.status: TASK_RUNNING,
                ScheduledTask.attempts: ScheduledTask.attempts + 1,
                ScheduledTask.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return claimed == 1


def _finish(db: Session, task_id: int, *, status: str, now: datetime, error: str | None = None) -> None:
    db.query(ScheduledTask).filter(ScheduledTask.id == task_id).update(
        {
            ScheduledTask.status: status,
            ScheduledTask.last_error: error,
            ScheduledTask.updated_at: now,
        },
        synchronize_session=False,
    )
    db.commit()


def run_due_tasks(db: Session, *, now: datetime | None = None) -> int:
    """Run every pending task whose time has come; returns how many were claimed."""
    now = now or utcnow()
    due = (
        db.query(ScheduledTask.id, ScheduledTask.kind, ScheduledTask.order_id)
        .filter(ScheduledTask.status == TASK_PENDING, ScheduledTask.run_at <= now)
        .order_by(ScheduledTask.run_at.asc(), ScheduledTask.id.asc())
        .all()
    )
    claimed = 0
    for task_id, kind, order_id in due:
        if not _claim(db, task_id, now):
            continue
        claimed += 1
        handler = _handlers.get(kind)
        if handler is None:
            logger.error("no handler registered for task kind=%s task=%s", kind, task_id)
            _finish(db, task_id, status=TASK_FAILED, now=now, error=f"unknown task kind {kind}")
            continue
        try:
            did_work = handler(db, order_id, now)
        except Exception as exc:
            db.rollback()
            logger.exception("task failed kind=%s order=%s", kind, order_id)
            _finish(db, task_id, status=TASK_FAILED, now=now, error=str(exc))
            continue
        _finish(db, task_id, status=TASK_DONE if did_work else TASK_SKIPPED, now=now)
    return claimed


def reset_stuck_tasks(db: Session, *, now: datetime | None = None) -> int:
    """Re-queue tasks left ``running`` by a process that died mid-task."""
    now = now or utcnow()
    count = (
        db.query(ScheduledTask)
        .filter(ScheduledTask.status == TASK_RUNNING)
        .update(
            {ScheduledTask.status: TASK_PENDING, ScheduledTask.updated_at: now},
            synchronize_session=False,
        )
    )
    db.commit()
    if count:
        logger.warning("re-queued %s stuck scheduled tasks", count)
    return count


class TaskRunner:
    """Background thread that polls for due tasks."""

    def __init__(self, *, poll_seconds: float = SCHEDULER_POLL_SECONDS, session_factory=None) -> None:
        self.poll_seconds = poll_seconds
        self._session_factory = session_factory
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def _new_session(self) -> Session:
        factory = self._session_factory or SessionLocal
        return factory()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        db = self._new_session()
        try:
            reset_stuck_tasks(db)
        finally:
            db.close()
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="restobot-task-runner", daemon=True)
        self._thread.start()
        logger.info("task runner started poll=%ss", self.poll_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None

    def run_once(self) -> int:
        db = self._new_session()
        try:
            return run_due_tasks(db)
        finally:
            db.close()

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("task runner iteration failed")
            self._stop.wait(self.poll_seconds)
