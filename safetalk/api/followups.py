"""Post-response work scheduled by mutating routes.

The request transaction is committed first so the worker sessions see the
queued mediator task and the new notifications.
"""

from uuid import UUID

from fastapi import BackgroundTasks
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..jobs.mediator_worker import deliver_pending_pushes, process_pending_tasks
from ..services.agents import AgentBackend
from ..services.notifications import PushChannel


async def commit_and_schedule(
    session: AsyncSession,
    background_tasks: BackgroundTasks,
    session_factory: async_sessionmaker[AsyncSession],
    push_channel: PushChannel,
    backend: AgentBackend | None = None,
    mediator_issue_id: UUID | None = None,
) -> None:
    await session.commit()
    if backend is not None and mediator_issue_id is not None:
        background_tasks.add_task(
            process_pending_tasks,
            session_factory,
            backend,
            push_channel,
            issue_id=mediator_issue_id,
        )
    background_tasks.add_task(deliver_pending_pushes, session_factory, push_channel)
