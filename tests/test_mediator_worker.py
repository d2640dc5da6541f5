"""Tests for the mediator task queue and the worker loop."""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select, update

from safetalk.jobs.mediator_worker import (
    claim_task,
    deliver_pending_pushes,
    process_pending_tasks,
    run_task,
    run_worker,
    run_worker_pass,
)
from safetalk.models import (
    Issue,
    IssueStatus,
    MediatorTask,
    Notification,
    Proposal,
    PushStatus,
    TaskStatus,
    utcnow,
)
from safetalk.services.issue_engine import IssueEngine


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
async def queued_issue(session, issue_engine, paired, issue) -> Issue:
    """An issue whose third message queued a mediator cycle, committed."""
    alice, bob = paired
    for sender, text in ((alice, "pickup"), (bob, "dropoff"), (alice, "weekends")):
        result = await issue_engine.send_message(issue.id, sender, text)
    assert result.mediator_triggered
    await session.commit()
    return issue


async def load_tasks(session_factory, issue_id):
    async with session_factory() as s:
        result = await s.execute(
            select(MediatorTask).where(MediatorTask.issue_id == issue_id).order_by(MediatorTask.created_at)
        )
        return list(result.scalars().all())


# =============================================================================
# TEST: TASKS
# =============================================================================


class TestProcessPendingTasks:
    async def test_task_runs_cycle_and_completes(self, session_factory, fake_backend, push_channel, settings, queued_issue):
        runs = await process_pending_tasks(session_factory, fake_backend, push_channel, settings=settings)

        assert len(runs) == 1
        assert runs[0].status == TaskStatus.COMPLETED
        assert runs[0].outcome == "proposed"

        [task] = await load_tasks(session_factory, queued_issue.id)
        assert task.status == TaskStatus.COMPLETED
        assert task.outcome == "proposed"
        assert task.processed_at is not None

        async with session_factory() as s:
            issue = await s.get(Issue, queued_issue.id)
            assert issue.status == IssueStatus.PROPOSAL_SENT
            proposals = (await s.execute(select(Proposal))).scalars().all()
            assert [p.version for p in proposals] == [1]

    async def test_task_runs_once(self, session_factory, fake_backend, push_channel, queued_issue):
        await process_pending_tasks(session_factory, fake_backend, push_channel)

        second = await process_pending_tasks(session_factory, fake_backend, push_channel)

        assert second == []
        assert len(fake_backend.generate_calls) == 1

    async def test_claimed_task_is_not_run_again(self, session_factory, fake_backend, settings, queued_issue):
        [task] = await load_tasks(session_factory, queued_issue.id)
        lease = settings.mediator_task_lease_seconds
        async with session_factory() as s:
            assert await claim_task(s, task.id, lease) is True
            assert await claim_task(s, task.id, lease) is False
            await s.commit()

        run = await run_task(session_factory, fake_backend, task.id)

        assert run is None
        assert fake_backend.generate_calls == []

    async def test_abstention_is_recorded(self, session_factory, fake_backend, queued_issue):
        fake_backend.scores = [0.1]

        runs = await process_pending_tasks(session_factory, fake_backend)

        assert runs[0].outcome == "abstained"
        async with session_factory() as s:
            issue = await s.get(Issue, queued_issue.id)
            assert issue.status == IssueStatus.IN_PROGRESS

    async def test_failed_cycle_marks_task_failed(self, monkeypatch, session_factory, fake_backend, queued_issue):
        async def explode(self, issue_id):
            raise RuntimeError("boom")

        monkeypatch.setattr(IssueEngine, "run_mediator_cycle", explode)

        runs = await process_pending_tasks(session_factory, fake_backend)

        assert runs[0].status == TaskStatus.FAILED
        [task] = await load_tasks(session_factory, queued_issue.id)
        assert task.status == TaskStatus.FAILED
        assert task.error_message == "boom"

    async def test_filter_by_issue(self, session_factory, fake_backend, queued_issue):
        runs = await process_pending_tasks(session_factory, fake_backend, issue_id=uuid4())

        assert runs == []
        [task] = await load_tasks(session_factory, queued_issue.id)
        assert task.status == TaskStatus.PENDING


class TestAbandonedTasks:
    """A worker that dies mid-cycle leaves its task running."""

    async def mark_running(self, session_factory, issue_id, claimed_at):
        async with session_factory() as s:
            await s.execute(
                update(MediatorTask)
                .where(MediatorTask.issue_id == issue_id)
                .values(status=TaskStatus.RUNNING, claimed_at=claimed_at)
            )
            await s.commit()

    async def test_expired_claim_is_run_again(self, session_factory, fake_backend, settings, queued_issue):
        expired = utcnow() - timedelta(seconds=settings.mediator_task_lease_seconds + 5)
        await self.mark_running(session_factory, queued_issue.id, expired)

        runs = await process_pending_tasks(session_factory, fake_backend, settings=settings)

        assert [run.outcome for run in runs] == ["proposed"]
        [task] = await load_tasks(session_factory, queued_issue.id)
        assert task.status == TaskStatus.COMPLETED
        async with session_factory() as s:
            issue = await s.get(Issue, queued_issue.id)
            assert issue.status == IssueStatus.PROPOSAL_SENT

    async def test_live_claim_is_left_alone(self, session_factory, fake_backend, settings, queued_issue):
        await self.mark_running(session_factory, queued_issue.id, utcnow())

        runs = await process_pending_tasks(session_factory, fake_backend, settings=settings)

        assert runs == []
        assert fake_backend.generate_calls == []
        [task] = await load_tasks(session_factory, queued_issue.id)
        assert task.status == TaskStatus.RUNNING

    async def test_rejection_cycle_survives_a_crash(self, session, session_factory, fake_backend, settings, issue_engine, paired, issue):
        alice, bob = paired
        proposal = (await issue_engine.run_mediator_cycle(issue.id)).proposal
        await issue_engine.submit_vote(proposal.id, alice, accept=False)
        await issue_engine.submit_vote(proposal.id, bob, accept=True)
        await session.commit()
        expired = utcnow() - timedelta(seconds=settings.mediator_task_lease_seconds + 5)
        await self.mark_running(session_factory, issue.id, expired)

        runs = await process_pending_tasks(session_factory, fake_backend, settings=settings)

        assert [run.outcome for run in runs] == ["proposed"]
        async with session_factory() as s:
            versions = (
                await s.execute(select(Proposal.version).where(Proposal.issue_id == issue.id))
            ).scalars().all()
            assert sorted(versions) == [1, 2]


# =============================================================================
# TEST: PUSH DELIVERY
# =============================================================================


class TestDeliverPendingPushes:
    async def test_sends_to_users_with_tokens(self, session, session_factory, push_channel, paired, issue):
        _, bob = paired
        bob.fcm_token = "bob-device"
        await session.commit()

        sent, failed, skipped = await deliver_pending_pushes(session_factory, push_channel)

        assert (sent, failed, skipped) == (1, 0, 0)
        assert push_channel.sent[0]["token"] == "bob-device"
        assert push_channel.sent[0]["title"] == "New Issue Started"
        assert push_channel.sent[0]["data"]["issue_id"] == str(issue.id)

        async with session_factory() as s:
            notification = (await s.execute(select(Notification))).scalar_one()
            assert notification.push_status == PushStatus.SENT
            assert notification.sent_at is not None

    async def test_missing_token_is_skipped(self, session, session_factory, push_channel, issue):
        await session.commit()

        sent, failed, skipped = await deliver_pending_pushes(session_factory, push_channel)

        assert (sent, failed, skipped) == (0, 0, 1)
        assert push_channel.sent == []

    async def test_overlapping_passes_push_once(self, session, session_factory, push_channel, paired, issue):
        _, bob = paired
        bob.fcm_token = "bob-device"
        await session.commit()
        push_channel.delay = 0.05

        results = await asyncio.gather(
            deliver_pending_pushes(session_factory, push_channel),
            deliver_pending_pushes(session_factory, push_channel),
        )

        assert len(push_channel.sent) == 1
        assert sorted(sent for sent, _, _ in results) == [0, 1]
        async with session_factory() as s:
            notification = (await s.execute(select(Notification))).scalar_one()
            assert notification.push_status == PushStatus.SENT


# =============================================================================
# TEST: WORKER LOOP
# =============================================================================


class TestWorkerLoop:
    async def test_worker_pass(self, session_factory, fake_backend, push_channel, queued_issue):
        result = await run_worker_pass(session_factory, fake_backend, push_channel)

        assert len(result.tasks) == 1
        # new_issue for Bob plus proposal_ready for both, nobody has a device
        assert result.pushes_skipped == 3

    async def test_run_worker_once(self, session_factory, queued_issue):
        totals = await run_worker(once=True, session_factory=session_factory)

        assert totals["passes"] == 1
        assert totals["tasks"] == 1
        assert totals["failed"] == 0
