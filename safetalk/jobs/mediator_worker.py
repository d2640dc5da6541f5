"""
Mediator Worker: consumes queued mediator cycles.

Transitions that reach a mediator milestone (every Nth user message, or a
rejected proposal below the attempt cap) insert a MediatorTask row in their
own transaction. This worker claims pending tasks one at a time, runs the
cycle in a fresh transaction and records the outcome. It also drains pending
push notifications.

Run continuously:  python -m safetalk.jobs.mediator_worker
Run one pass:      python -m safetalk.jobs.mediator_worker --once
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import Settings, get_settings
from ..core.database import session_scope
from ..models import MediatorTask, TaskStatus, utcnow
from ..services.agents import AgentBackend, get_agent_backend
from ..services.issue_engine import IssueEngine
from ..services.notifications import FCMPushChannel, NotificationDispatcher, PushChannel

logger = logging.getLogger(__name__)


@dataclass
class TaskRun:
    task_id: UUID
    issue_id: UUID
    status: TaskStatus
    outcome: str | None = None
    error: str | None = None


@dataclass
class WorkerPass:
    tasks: list[TaskRun] = field(default_factory=list)
    pushes_sent: int = 0
    pushes_failed: int = 0
    pushes_skipped: int = 0


# =============================================================================
# TASKS
# =============================================================================


def claimable_tasks(lease_seconds: float):
    """Pending tasks, plus running tasks whose worker has been silent past the lease."""
    abandoned_before = utcnow() - timedelta(seconds=lease_seconds)
    return or_(
        MediatorTask.status == TaskStatus.PENDING,
        and_(
            MediatorTask.status == TaskStatus.RUNNING,
            MediatorTask.claimed_at < abandoned_before,
        ),
    )


async def claim_task(session: AsyncSession, task_id: UUID, lease_seconds: float) -> bool:
    """-> running. False when another worker holds the task."""
    result = await session.execute(
        update(MediatorTask)
        .where(MediatorTask.id == task_id, claimable_tasks(lease_seconds))
        .values(status=TaskStatus.RUNNING, claimed_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def run_task(
    session_factory: async_sessionmaker[AsyncSession],
    backend: AgentBackend,
    task_id: UUID,
    push_channel: PushChannel | None = None,
    settings: Settings | None = None,
) -> TaskRun | None:
    """Claim and run one task. Returns None if it was not claimable."""
    settings = settings or get_settings()
    async with session_scope(session_factory) as session:
        task = await session.get(MediatorTask, task_id)
        if not task or not await claim_task(session, task_id, settings.mediator_task_lease_seconds):
            return None
        issue_id = task.issue_id
        if task.status == TaskStatus.RUNNING:
            logger.warning(f"Reclaiming mediator task {task_id} abandoned since {task.claimed_at}")

    try:
        async with session_scope(session_factory) as session:
            engine = IssueEngine.from_backend(session, backend, push_channel, settings)
            result = await engine.run_mediator_cycle(issue_id)
            await _finish(session, task_id, TaskStatus.COMPLETED, outcome=result.outcome.value)
    except Exception as e:
        logger.exception(f"Mediator task {task_id} for issue {issue_id} failed")
        async with session_scope(session_factory) as session:
            await _finish(session, task_id, TaskStatus.FAILED, error=str(e)[:1000])
        return TaskRun(task_id=task_id, issue_id=issue_id, status=TaskStatus.FAILED, error=str(e))

    logger.info(f"Mediator task {task_id} for issue {issue_id}: {result.outcome.value}")
    return TaskRun(
        task_id=task_id,
        issue_id=issue_id,
        status=TaskStatus.COMPLETED,
        outcome=result.outcome.value,
    )


async def _finish(
    session: AsyncSession,
    task_id: UUID,
    status: TaskStatus,
    outcome: str | None = None,
    error: str | None = None,
) -> None:
    await session.execute(
        update(MediatorTask)
        .where(MediatorTask.id == task_id)
        .values(status=status, outcome=outcome, error_message=error, processed_at=utcnow())
        .execution_options(synchronize_session=False)
    )


async def process_pending_tasks(
    session_factory: async_sessionmaker[AsyncSession],
    backend: AgentBackend,
    push_channel: PushChannel | None = None,
    batch_size: int = 20,
    issue_id: UUID | None = None,
    settings: Settings | None = None,
) -> list[TaskRun]:
    """Run claimable tasks oldest first, optionally only for one issue."""
    settings = settings or get_settings()
    async with session_scope(session_factory) as session:
        stmt = (
            select(MediatorTask.id)
            .where(claimable_tasks(settings.mediator_task_lease_seconds))
            .order_by(MediatorTask.created_at.asc())
            .limit(batch_size)
        )
        if issue_id is not None:
            stmt = stmt.where(MediatorTask.issue_id == issue_id)
        task_ids = list((await session.execute(stmt)).scalars().all())

    runs = []
    for task_id in task_ids:
        run = await run_task(session_factory, backend, task_id, push_channel, settings)
        if run:
            runs.append(run)
    return runs


# =============================================================================
# PUSHES
# =============================================================================


async def deliver_pending_pushes(
    session_factory: async_sessionmaker[AsyncSession],
    push_channel: PushChannel | None = None,
    batch_size: int = 100,
) -> tuple[int, int, int]:
    """
    Best-effort push delivery. Never raises.

    Claims are committed before any push goes out, so a concurrent pass
    (another request or the worker) skips these notifications.
    """
    lease_seconds = get_settings().push_lease_seconds
    try:
        async with session_scope(session_factory) as session:
            claimed = await NotificationDispatcher(session, push_channel).claim_pending(
                batch_size, lease_seconds
            )
        async with session_scope(session_factory) as session:
            return await NotificationDispatcher(session, push_channel).deliver_claimed(claimed)
    except Exception:
        logger.exception("Push delivery pass failed")
        return 0, 0, 0


# =============================================================================
# WORKER LOOP
# =============================================================================


async def run_worker_pass(
    session_factory: async_sessionmaker[AsyncSession],
    backend: AgentBackend,
    push_channel: PushChannel | None = None,
    batch_size: int = 20,
) -> WorkerPass:
    result = WorkerPass()
    result.tasks = await process_pending_tasks(
        session_factory, backend, push_channel, batch_size=batch_size
    )
    sent, failed, skipped = await deliver_pending_pushes(session_factory, push_channel)
    result.pushes_sent, result.pushes_failed, result.pushes_skipped = sent, failed, skipped
    return result


async def run_worker(
    interval_seconds: float = 5.0,
    batch_size: int = 20,
    once: bool = False,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> dict[str, Any]:
    """Poll for work until cancelled (or for a single pass with ``once``)."""
    from ..core.database import async_session_factory

    factory = session_factory or async_session_factory
    settings = get_settings()
    backend = get_agent_backend(settings)
    push_channel = FCMPushChannel()

    totals = {"tasks": 0, "failed": 0, "pushes_sent": 0, "passes": 0}
    start_time = datetime.now(timezone.utc)
    logger.info(f"Mediator worker started ({backend.name} agents, batch size {batch_size})")

    while True:
        worker_pass = await run_worker_pass(factory, backend, push_channel, batch_size)
        totals["passes"] += 1
        totals["tasks"] += len(worker_pass.tasks)
        totals["failed"] += sum(1 for t in worker_pass.tasks if t.status == TaskStatus.FAILED)
        totals["pushes_sent"] += worker_pass.pushes_sent

        if worker_pass.tasks:
            logger.info(
                f"Processed {len(worker_pass.tasks)} mediator task(s), "
                f"{worker_pass.pushes_sent} push(es) sent"
            )

        if once:
            break
        await asyncio.sleep(interval_seconds)

    totals["duration_seconds"] = (datetime.now(timezone.utc) - start_time).total_seconds()
    return totals


# =============================================================================
# CLI ENTRY POINT
# =============================================================================


def main():
    """CLI entry point for the mediator worker."""
    import argparse

    parser = argparse.ArgumentParser(description="Run queued mediator cycles and push delivery")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Process one batch and exit",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=5.0,
        help="Seconds between polling passes",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=20,
        help="Maximum tasks per pass",
    )

    args = parser.parse_args()

    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        results = asyncio.run(run_worker(
            interval_seconds=args.interval,
            batch_size=args.batch_size,
            once=args.once,
        ))
        logger.info(f"Worker finished: {results}")
    except KeyboardInterrupt:
        logger.info("Worker stopped")


if __name__ == "__main__":
    main()
