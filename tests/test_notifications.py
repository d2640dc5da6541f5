"""Tests for notification persistence, push delivery and the dashboard."""

from datetime import timedelta
from uuid import uuid4

import pytest

from safetalk.models import IssueStatus, NotificationType, PushStatus, utcnow
from safetalk.services.dashboard import DashboardService
from safetalk.services.errors import NotificationNotFoundError, NotificationOwnershipError
from safetalk.services.notifications import (
    FCMPushChannel,
    NotificationDispatcher,
    PushChannel,
    render_push,
)


class ExplodingPushChannel(PushChannel):
    async def send(self, device_token, title, body, data):
        raise ConnectionError("socket closed")


# =============================================================================
# TEST: DISPATCHER
# =============================================================================


class TestNotificationDispatcher:
    async def test_notify_stores_unread_pending(self, session, push_channel, alice):
        dispatcher = NotificationDispatcher(session, push_channel)
        issue_id = uuid4()

        notification = await dispatcher.notify(
            alice.id, NotificationType.NEW_ISSUE, {"issue_id": issue_id, "message": "hi"}
        )

        assert notification.is_read is False
        assert notification.push_status == PushStatus.PENDING
        assert notification.payload == {"issue_id": str(issue_id), "message": "hi"}

    async def test_deliver_sends_to_device(self, session, push_channel, alice):
        alice.fcm_token = "alice-device"
        dispatcher = NotificationDispatcher(session, push_channel)
        notification = await dispatcher.notify(
            alice.id, NotificationType.ISSUE_RESOLVED, {"message": "Done"}
        )

        result = await dispatcher.deliver(notification)

        assert result.status == PushStatus.SENT
        assert notification.push_status == PushStatus.SENT
        assert notification.sent_at is not None
        assert push_channel.sent == [
            {
                "token": "alice-device",
                "title": "Issue Resolved!",
                "body": "Done",
                "data": {
                    "notification_id": str(notification.id),
                    "type": "issue_resolved",
                    "message": "Done",
                },
            }
        ]

    async def test_deliver_without_token_is_skipped(self, session, push_channel, alice):
        dispatcher = NotificationDispatcher(session, push_channel)
        notification = await dispatcher.notify(alice.id, NotificationType.NEW_ISSUE, {})

        result = await dispatcher.deliver(notification)

        assert result.status == PushStatus.SKIPPED
        assert push_channel.sent == []

    async def test_unconfigured_channel_is_skipped(self, session, push_channel, alice):
        alice.fcm_token = "alice-device"
        push_channel.configured = False
        dispatcher = NotificationDispatcher(session, push_channel)
        notification = await dispatcher.notify(alice.id, NotificationType.NEW_ISSUE, {})

        result = await dispatcher.deliver(notification)

        assert result.status == PushStatus.SKIPPED

    async def test_channel_failure_is_recorded(self, session, push_channel, alice):
        alice.fcm_token = "alice-device"
        push_channel.fail = True
        dispatcher = NotificationDispatcher(session, push_channel)
        notification = await dispatcher.notify(alice.id, NotificationType.NEW_ISSUE, {})

        result = await dispatcher.deliver(notification)

        assert result.status == PushStatus.FAILED
        assert notification.push_error == "device unreachable"
        assert notification.is_read is False

    async def test_channel_exception_never_propagates(self, session, alice):
        alice.fcm_token = "alice-device"
        dispatcher = NotificationDispatcher(session, ExplodingPushChannel())
        notification = await dispatcher.notify(alice.id, NotificationType.NEW_ISSUE, {})

        result = await dispatcher.deliver(notification)

        assert result.status == PushStatus.FAILED
        assert "socket closed" in notification.push_error

    async def test_deliver_pending_counts(self, session, push_channel, alice, bob):
        alice.fcm_token = "alice-device"
        dispatcher = NotificationDispatcher(session, push_channel)
        await dispatcher.notify(alice.id, NotificationType.NEW_ISSUE, {})
        await dispatcher.notify(bob.id, NotificationType.NEW_ISSUE, {})

        assert await dispatcher.deliver_pending() == (1, 0, 1)
        # Nothing left to deliver
        assert await dispatcher.deliver_pending() == (0, 0, 0)

    async def test_claimed_rows_are_not_claimed_again(self, session, push_channel, alice):
        dispatcher = NotificationDispatcher(session, push_channel)
        notification = await dispatcher.notify(alice.id, NotificationType.NEW_ISSUE, {})

        assert await dispatcher.claim_pending() == [notification.id]
        assert await dispatcher.claim_pending() == []

    async def test_abandoned_send_is_reclaimed(self, session, push_channel, alice):
        alice.fcm_token = "alice-device"
        dispatcher = NotificationDispatcher(session, push_channel)
        notification = await dispatcher.notify(alice.id, NotificationType.NEW_ISSUE, {})
        notification.push_status = PushStatus.SENDING
        notification.push_claimed_at = utcnow() - timedelta(seconds=300)
        await session.flush()

        assert await dispatcher.deliver_pending(lease_seconds=120) == (1, 0, 0)
        assert notification.push_status == PushStatus.SENT

    async def test_live_send_is_left_alone(self, session, push_channel, alice):
        dispatcher = NotificationDispatcher(session, push_channel)
        notification = await dispatcher.notify(alice.id, NotificationType.NEW_ISSUE, {})
        notification.push_status = PushStatus.SENDING
        notification.push_claimed_at = utcnow()
        await session.flush()

        assert await dispatcher.deliver_pending(lease_seconds=120) == (0, 0, 0)
        assert push_channel.sent == []

    async def test_notify_accepts_plain_type_values(self, session, push_channel, alice):
        dispatcher = NotificationDispatcher(session, push_channel)

        notification = await dispatcher.notify(alice.id, "proposal_ready", {"message": "Look"})

        assert notification.type == NotificationType.PROPOSAL_READY
        alice.fcm_token = "alice-device"
        assert (await dispatcher.deliver(notification)).status == PushStatus.SENT
        assert push_channel.sent[0]["data"]["type"] == "proposal_ready"

    async def test_mark_read(self, session, push_channel, alice):
        dispatcher = NotificationDispatcher(session, push_channel)
        notification = await dispatcher.notify(alice.id, NotificationType.NEW_ISSUE, {})

        await dispatcher.mark_read(notification.id, alice.id)

        assert notification.is_read is True
        assert await dispatcher.list_unread(alice.id, 10) == []

    async def test_only_addressee_marks_read(self, session, push_channel, alice, bob):
        dispatcher = NotificationDispatcher(session, push_channel)
        notification = await dispatcher.notify(alice.id, NotificationType.NEW_ISSUE, {})

        with pytest.raises(NotificationOwnershipError):
            await dispatcher.mark_read(notification.id, bob.id)
        assert notification.is_read is False

    async def test_mark_read_unknown(self, session, push_channel, alice):
        dispatcher = NotificationDispatcher(session, push_channel)

        with pytest.raises(NotificationNotFoundError):
            await dispatcher.mark_read(uuid4(), alice.id)

    async def test_list_unread_newest_first(self, session, push_channel, alice):
        dispatcher = NotificationDispatcher(session, push_channel)
        for i in range(3):
            await dispatcher.notify(alice.id, NotificationType.NEW_ISSUE, {"message": str(i)})

        unread = await dispatcher.list_unread(alice.id, 2)

        assert [n.payload["message"] for n in unread] == ["2", "1"]


class TestRenderPush:
    def test_message_becomes_body(self):
        assert render_push(NotificationType.PROPOSAL_READY, {"message": "Look"}) == (
            "Solution Proposal Ready",
            "Look",
        )

    def test_default_body(self):
        title, body = render_push(NotificationType.NEW_ISSUE, {})

        assert title == "New Issue Started"
        assert body == "Your co-parent has started a new issue discussion."

    def test_fcm_channel_without_key_is_unconfigured(self):
        assert FCMPushChannel(server_key="").is_configured is False


# =============================================================================
# TEST: DASHBOARD
# =============================================================================


class TestDashboard:
    async def test_unpaired_user(self, session, settings, alice):
        dashboard = await DashboardService(session, settings).get_user_data(alice)

        assert dashboard.partner is None
        assert dashboard.current_issue is None
        assert dashboard.recent_messages == []

    async def test_active_issue_with_recent_messages(self, session, settings, issue_engine, paired, issue):
        alice, bob = paired
        for i in range(6):
            await issue_engine.send_message(issue.id, alice if i % 2 == 0 else bob, f"point {i}")

        dashboard = await DashboardService(session, settings).get_user_data(bob)

        assert dashboard.partner.id == alice.id
        assert dashboard.current_issue.id == issue.id
        assert len(dashboard.recent_messages) == settings.recent_messages_limit
        # Oldest first, ending with the latest acknowledgement
        assert dashboard.recent_messages[-2].content == "I feel that point 5"
        assert dashboard.current_proposal is None
        assert [n.type for n in dashboard.unread_notifications] == [NotificationType.NEW_ISSUE]

    async def test_current_proposal_only_while_pending(self, session, settings, issue_engine, paired, issue):
        alice, bob = paired
        cycle = await issue_engine.run_mediator_cycle(issue.id)
        service = DashboardService(session, settings)

        pending = await service.get_user_data(alice)
        assert pending.current_proposal.id == cycle.proposal.id

        await issue_engine.submit_vote(cycle.proposal.id, alice, accept=True)
        await issue_engine.submit_vote(cycle.proposal.id, bob, accept=True)

        resolved = await service.get_user_data(alice)
        assert resolved.current_issue is None
        assert resolved.current_proposal is None
        assert [i.id for i in resolved.resolved_issues] == [issue.id]
        assert resolved.resolved_issues[0].status == IssueStatus.RESOLVED

    async def test_unread_notifications_are_capped(self, session, settings, push_channel, alice):
        dispatcher = NotificationDispatcher(session, push_channel)
        for _ in range(settings.unread_notifications_limit + 2):
            await dispatcher.notify(alice.id, NotificationType.NEW_ISSUE, {})

        dashboard = await DashboardService(session, settings).get_user_data(alice)

        assert len(dashboard.unread_notifications) == settings.unread_notifications_limit
