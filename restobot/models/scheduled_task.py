from sqlalchemy import Column, DateTime, Integer, String, Text, UniqueConstraint, func

from restobot.core.database import Base

TASK_PENDING = "pending"
TASK_RUNNING = "running"
TASK_DONE = "done"
TASK_SKIPPED = "skipped"
TASK_FAILED = "failed"


class ScheduledTask(Base):
    __tablename__ = "scheduled_tasks"
    __table_args__ = (UniqueConstraint("kind", "order_id", name="uq_scheduled_tasks_kind_order"),)

    id = Column(Integer, primary_key=True)
    kind = Column(String(50), nullable=False)
    order_id = Column(Integer, nullable=False, index=True)
    run_at = Column(DateTime(timezone=True), nullable=False, index=True)
    status = Column(String(20), default=TASK_PENDING, nullable=False, index=True)
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
