"""
Issue Engine: the conflict-resolution state machine.

States: in_progress -> proposal_sent -> resolved, with halted reachable from
in_progress on a red flag. ``resolved`` and ``halted`` are terminal.

Guarantees:
1. Every transition runs under a row lock on the issue and is applied with
   a conditional UPDATE, so one triggering event moves the state at most once
2. Votes are compare-and-set on the voter's own field; concurrent votes from
   the two partners are never lost
3. Mediator cycles are queued as MediatorTask rows keyed by their trigger,
   giving exactly one cycle per milestone
4. Model calls happen outside the lock; results that no longer fit the issue
   are discarded as stale
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings, get_settings
from ..models import (
    ACTIVE_ISSUE_STATUSES,
    AgentType,
    AIEvent,
    Issue,
    IssueStatus,
    MediatorTask,
    MediatorTrigger,
    Message,
    NotificationType,
    Proposal,
    SenderType,
    User,
    VoteState,
    make_pair_key,
    utcnow,
)
from .errors import (
    ActiveIssueExistsError,
    AlreadyVotedError,
    ConcurrencyError,
    EmptyMessageError,
    IssueClosedError,
    IssueHaltedError,
    IssueNotFoundError,
    MessageTooLongError,
    NoActiveProposalError,
    NotConnectedError,
    NotParticipantError,
    ProposalNotFoundError,
    ProposalPendingError,
    StaleProposalError,
)
from .agents import AgentBackend
from .message_normalizer import MessageNormalizer
from .notifications import NotificationDispatcher, PushChannel
from .proposal_generator import ProposalGenerator
from .safety_classifier import SafetyClassifier

logger = logging.getLogger(__name__)

DEFAULT_ISSUE_SUMMARY = "New Issue"

ACKNOWLEDGEMENT_TEMPLATE = (
    'I understand your concern about "{summary}". Let me help you work through this. '
    "Can you tell me more about what specific outcome you're hoping for?"
)

PROPOSAL_READY_MESSAGE = "A new solution proposal is ready for your review"
RESOLVED_MESSAGE = "Issue has been successfully resolved!"
REJECTED_MESSAGE = "Proposal was not accepted. The mediator will create a new proposal."
MAX_ATTEMPTS_MESSAGE = "Maximum proposal attempts reached."


def sanitize_message(text: str) -> str:
    """Trim and collapse internal whitespace."""
    return re.sub(r"\s+", " ", text or "").strip()


def max_attempts_reached(issue: Issue, latest: Proposal | None, max_attempts: int) -> bool:
    """The final version was rejected and no further proposal will be generated."""
    return (
        issue.status == IssueStatus.IN_PROGRESS
        and latest is not None
        and latest.version >= max_attempts
        and latest.both_voted
        and not latest.both_accepted
    )


# =============================================================================
# RESULTS
# =============================================================================


class CycleOutcome(str, Enum):
    PROPOSED = "proposed"
    ABSTAINED = "abstained"
    MAX_ATTEMPTS_REACHED = "max_attempts_reached"
    SKIPPED = "skipped"  # Issue not in_progress when the cycle started
    STALE = "stale"      # Issue changed while the generator was running


@dataclass
class SendMessageResult:
    issue: Issue
    message: Message
    ai_message: Message | None = None
    red_flagged: bool = False
    mediator_task: MediatorTask | None = None

    @property
    def mediator_triggered(self) -> bool:
        return self.mediator_task is not None


@dataclass
class MediatorCycleResult:
    issue_id: UUID
    outcome: CycleOutcome
    proposal: Proposal | None = None
    score: float | None = None
    attempt_number: int | None = None


@dataclass
class VoteResult:
    proposal: Proposal
    issue: Issue
    both_voted: bool
    both_accepted: bool
    max_attempts_reached: bool = False
    mediator_task: MediatorTask | None = None


@dataclass
class IssueDetail:
    issue: Issue
    messages: list[Message] = field(default_factory=list)
    current_proposal: Proposal | None = None
    max_attempts_reached: bool = False


# =============================================================================
# ISSUE ENGINE
# =============================================================================


class IssueEngine:
    """Owns the lifecycle of issues between paired partners."""

    def __init__(
        self,
        session: AsyncSession,
        classifier: SafetyClassifier,
        normalizer: MessageNormalizer,
        generator: ProposalGenerator,
        notifications: NotificationDispatcher,
        settings: Settings | None = None,
    ):
        self._session = session
        self._classifier = classifier
        self._normalizer = normalizer
        self._generator = generator
        self._notifications = notifications
        self._settings = settings or get_settings()

    @classmethod
    def from_backend(
        cls,
        session: AsyncSession,
        backend: AgentBackend,
        push_channel: PushChannel | None = None,
        settings: Settings | None = None,
    ) -> "IssueEngine":
        """Wire the engine and its capability wrappers around one backend."""
        settings = settings or get_settings()
        timeout = settings.agent_timeout_seconds
        return cls(
            session,
            classifier=SafetyClassifier(backend, timeout),
            normalizer=MessageNormalizer(backend, timeout),
            generator=ProposalGenerator(backend, settings),
            notifications=NotificationDispatcher(session, push_channel),
            settings=settings,
        )

    @property
    def notifications(self) -> NotificationDispatcher:
        return self._notifications

    # =========================================================================
    # CREATE ISSUE
    # =========================================================================

    async def create_issue(self, initiator: User, title: str | None = None) -> Issue:
        """
        Open a new issue between the initiator and their partner.

        Preconditions: the pairing is mutual and the pair has no active issue.
        The partial unique index on ``pair_key`` backs the second check when
        two creations race.
        """
        if not initiator.connected_user_id:
            raise NotConnectedError()

        partner = await self._session.get(User, initiator.connected_user_id)
        if not partner or partner.connected_user_id != initiator.id:
            raise NotConnectedError()

        pair_key = make_pair_key(initiator.id, partner.id)
        existing = await self._session.execute(
            select(Issue.id).where(
                Issue.pair_key == pair_key,
                Issue.status.in_(ACTIVE_ISSUE_STATUSES),
            )
        )
        if existing.first():
            raise ActiveIssueExistsError()

        summary = sanitize_message(title or "") or DEFAULT_ISSUE_SUMMARY
        issue = Issue(
            partner_a_id=initiator.id,
            partner_b_id=partner.id,
            pair_key=pair_key,
            status=IssueStatus.IN_PROGRESS,
            summary=summary,
            red_flagged=False,
            user_message_count=0,
        )
        try:
            async with self._session.begin_nested():
                self._session.add(issue)
                await self._session.flush()
        except IntegrityError:
            raise ActiveIssueExistsError()

        logger.info(f"Issue {issue.id} created by {initiator.id} with partner {partner.id}")

        await self._notifications.notify(
            partner.id,
            NotificationType.NEW_ISSUE,
            {
                "issue_id": issue.id,
                "message": f"{initiator.display_name} started a new issue: {summary}",
            },
        )
        return issue

    # =========================================================================
    # GET ISSUE
    # =========================================================================

    async def get_issue(self, issue_id: UUID, user: User) -> IssueDetail:
        """Participant-only view of an issue with its chronological messages."""
        issue = await self._get_issue(issue_id)
        if not issue.is_participant(user.id):
            raise NotParticipantError()

        result = await self._session.execute(
            select(Message)
            .where(Message.issue_id == issue.id)
            .order_by(Message.created_at.asc())
        )
        messages = list(result.scalars().all())
        current = await self.latest_proposal(issue.id)

        return IssueDetail(
            issue=issue,
            messages=messages,
            current_proposal=current,
            max_attempts_reached=self.is_max_attempts_reached(issue, current),
        )

    async def latest_proposal(self, issue_id: UUID) -> Proposal | None:
        result = await self._session.execute(
            select(Proposal)
            .where(Proposal.issue_id == issue_id)
            .order_by(Proposal.version.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    def is_max_attempts_reached(self, issue: Issue, latest: Proposal | None) -> bool:
        return max_attempts_reached(issue, latest, self._settings.max_proposal_attempts)

    # =========================================================================
    # SEND MESSAGE
    # =========================================================================

    async def send_message(self, issue_id: UUID, sender: User, raw_text: str) -> SendMessageResult:
        """
        Screen, normalize and store a partner's message.

        Flow:
        1. Validate text and issue state
        2. Safety classifier, then message normalizer (outside the lock)
        3. Lock the issue and re-check its state
        4. Red flag: store the raw message flagged and halt the issue
        5. Otherwise: store the processed message and the AI acknowledgement,
           bump the counter and queue a mediator cycle on every Nth message
        """
        text = sanitize_message(raw_text)
        if not text:
            raise EmptyMessageError()
        if len(text) > self._settings.max_message_length:
            raise MessageTooLongError(
                f"Message must be {self._settings.max_message_length} characters or less."
            )

        issue = await self._get_issue(issue_id)
        if not issue.is_participant(sender.id):
            raise NotParticipantError()
        self._ensure_accepts_messages(issue)

        verdict = await self._classifier.classify(text)
        self._record_ai_event(
            issue.id,
            AgentType.SAFETY_CLASSIFIER,
            text,
            json.dumps({"harmful": verdict.harmful, "reason": verdict.reason, "fallback": verdict.fallback}),
        )

        normalized = None
        red_flagged = verdict.harmful
        if not red_flagged:
            normalized = await self._normalizer.normalize(text, sender.display_name)
            self._record_ai_event(
                issue.id,
                AgentType.PARTNER_AI,
                text,
                "RED_FLAG" if normalized.is_red_flagged else normalized.processed_text,
            )
            red_flagged = normalized.is_red_flagged

        issue = await self._lock_issue(issue_id)
        self._ensure_accepts_messages(issue)

        if red_flagged:
            return await self._halt_with_message(issue, sender, raw_text.strip())

        message = Message(
            issue_id=issue.id,
            sender_type=SenderType.USER,
            sender_id=sender.id,
            content=normalized.processed_text,
            mediator_summary=normalized.mediator_summary,
            is_flagged=False,
        )
        self._session.add(message)
        await self._session.flush()

        ai_message = Message(
            issue_id=issue.id,
            sender_type=SenderType.AI,
            sender_id=None,
            content=ACKNOWLEDGEMENT_TEMPLATE.format(summary=normalized.mediator_summary),
            is_flagged=False,
        )
        self._session.add(ai_message)
        await self._session.flush()

        count = await self._increment_message_count(issue.id)
        await self._session.refresh(issue)

        task = None
        if count % self._settings.mediator_trigger_interval == 0:
            task = await self.enqueue_mediator_task(
                issue.id, MediatorTrigger.MESSAGE_MILESTONE, f"messages:{count}"
            )

        logger.info(f"Message {message.id} stored on issue {issue.id} (user message #{count})")
        return SendMessageResult(
            issue=issue,
            message=message,
            ai_message=ai_message,
            red_flagged=False,
            mediator_task=task,
        )

    async def _halt_with_message(self, issue: Issue, sender: User, text: str) -> SendMessageResult:
        """Store the unprocessed text flagged and move the issue to halted."""
        message = Message(
            issue_id=issue.id,
            sender_type=SenderType.USER,
            sender_id=sender.id,
            content=text,
            is_flagged=True,
        )
        self._session.add(message)
        await self._session.flush()

        await self._transition(issue, IssueStatus.IN_PROGRESS, IssueStatus.HALTED, red_flagged=True)
        logger.warning(f"Issue {issue.id} halted: message {message.id} from {sender.id} red-flagged")

        return SendMessageResult(issue=issue, message=message, ai_message=None, red_flagged=True)

    def _ensure_accepts_messages(self, issue: Issue) -> None:
        if issue.status == IssueStatus.HALTED:
            raise IssueHaltedError()
        if issue.status == IssueStatus.RESOLVED:
            raise IssueClosedError()
        if issue.status == IssueStatus.PROPOSAL_SENT:
            raise ProposalPendingError()

    async def _increment_message_count(self, issue_id: UUID) -> int:
        result = await self._session.execute(
            update(Issue)
            .where(Issue.id == issue_id, Issue.status == IssueStatus.IN_PROGRESS)
            .values(user_message_count=Issue.user_message_count + 1)
            .returning(Issue.user_message_count)
            .execution_options(synchronize_session=False)
        )
        count = result.scalar_one_or_none()
        if count is None:
            raise ConcurrencyError()
        return count

    # =========================================================================
    # MEDIATOR QUEUE
    # =========================================================================

    async def enqueue_mediator_task(
        self,
        issue_id: UUID,
        trigger: MediatorTrigger,
        trigger_key: str,
    ) -> MediatorTask | None:
        """
        Queue one mediator cycle for a triggering event.

        Returns None when the same trigger was already queued.
        """
        task = MediatorTask(issue_id=issue_id, trigger=trigger, trigger_key=trigger_key)
        try:
            async with self._session.begin_nested():
                self._session.add(task)
                await self._session.flush()
        except IntegrityError:
            logger.info(f"Mediator trigger {trigger_key} already queued for issue {issue_id}")
            return None

        logger.info(f"Queued mediator cycle {task.id} for issue {issue_id} ({trigger_key})")
        return task

    # =========================================================================
    # MEDIATOR CYCLE
    # =========================================================================

    async def run_mediator_cycle(self, issue_id: UUID) -> MediatorCycleResult:
        """
        Attempt to produce the next proposal for an issue.

        The generator runs against a snapshot. Before the proposal is stored
        the issue is locked and must still be in_progress with the same
        number of proposals, otherwise the draft is discarded.
        """
        issue = await self._get_issue(issue_id, refresh=True)
        if issue.status != IssueStatus.IN_PROGRESS:
            logger.info(f"Mediator cycle skipped for issue {issue_id}: status is {issue.status.value}")
            return MediatorCycleResult(issue_id=issue_id, outcome=CycleOutcome.SKIPPED)

        result = await self._session.execute(
            select(Proposal.content)
            .where(Proposal.issue_id == issue_id)
            .order_by(Proposal.version.asc())
        )
        previous = list(result.scalars().all())
        attempt_number = len(previous) + 1

        if attempt_number > self._settings.max_proposal_attempts:
            logger.info(f"Issue {issue_id} has reached the maximum of {len(previous)} proposals")
            return MediatorCycleResult(
                issue_id=issue_id,
                outcome=CycleOutcome.MAX_ATTEMPTS_REACHED,
                attempt_number=attempt_number,
            )

        partner_a_concerns, partner_b_concerns = await self._collect_concerns(issue)

        draft = await self._generator.generate(
            str(issue_id),
            partner_a_concerns,
            partner_b_concerns,
            previous,
            attempt_number,
        )
        self._record_ai_event(
            issue_id,
            AgentType.MEDIATOR_AI,
            f"Partner A: {' | '.join(partner_a_concerns)} | Partner B: {' | '.join(partner_b_concerns)}",
            json.dumps({
                "version": attempt_number,
                "score": draft.score,
                "is_compromise": draft.is_compromise,
                "fallback": draft.fallback,
                "content": draft.content,
            }),
        )

        if not self._generator.accepts(draft):
            logger.info(
                f"Mediator abstained on issue {issue_id} attempt {attempt_number} (score {draft.score:.2f})"
            )
            return MediatorCycleResult(
                issue_id=issue_id,
                outcome=CycleOutcome.ABSTAINED,
                score=draft.score,
                attempt_number=attempt_number,
            )

        issue = await self._lock_issue(issue_id)
        current_count = await self._proposal_count(issue_id)
        if issue.status != IssueStatus.IN_PROGRESS or current_count != len(previous):
            logger.info(f"Discarding stale proposal draft for issue {issue_id}")
            return MediatorCycleResult(
                issue_id=issue_id,
                outcome=CycleOutcome.STALE,
                score=draft.score,
                attempt_number=attempt_number,
            )

        proposal = Proposal(
            issue_id=issue_id,
            version=attempt_number,
            content=draft.content,
            internal_score=draft.score,
            is_compromise=draft.is_compromise,
            accepted_by_a=VoteState.NOT_VOTED,
            accepted_by_b=VoteState.NOT_VOTED,
        )
        try:
            async with self._session.begin_nested():
                self._session.add(proposal)
                await self._session.flush()
        except IntegrityError:
            logger.info(f"Proposal v{attempt_number} for issue {issue_id} already exists")
            return MediatorCycleResult(
                issue_id=issue_id,
                outcome=CycleOutcome.STALE,
                score=draft.score,
                attempt_number=attempt_number,
            )

        await self._transition(issue, IssueStatus.IN_PROGRESS, IssueStatus.PROPOSAL_SENT)

        await self._notifications.notify_many(
            [issue.partner_a_id, issue.partner_b_id],
            NotificationType.PROPOSAL_READY,
            {
                "issue_id": issue_id,
                "proposal_id": proposal.id,
                "message": PROPOSAL_READY_MESSAGE,
            },
        )

        logger.info(
            f"Proposal v{attempt_number} created for issue {issue_id} "
            f"(score {draft.score:.2f}, compromise={draft.is_compromise})"
        )
        return MediatorCycleResult(
            issue_id=issue_id,
            outcome=CycleOutcome.PROPOSED,
            proposal=proposal,
            score=draft.score,
            attempt_number=attempt_number,
        )

    async def _collect_concerns(self, issue: Issue) -> tuple[list[str], list[str]]:
        """Per-partner concern summaries in the order they were sent."""
        result = await self._session.execute(
            select(Message)
            .where(
                Message.issue_id == issue.id,
                Message.sender_type == SenderType.USER,
                Message.is_flagged.is_(False),
            )
            .order_by(Message.created_at.asc())
        )
        partner_a, partner_b = [], []
        for message in result.scalars().all():
            concern = message.mediator_summary or message.content
            if message.sender_id == issue.partner_a_id:
                partner_a.append(concern)
            elif message.sender_id == issue.partner_b_id:
                partner_b.append(concern)
        return partner_a, partner_b

    async def _proposal_count(self, issue_id: UUID) -> int:
        result = await self._session.execute(
            select(func.count(Proposal.id)).where(Proposal.issue_id == issue_id)
        )
        return result.scalar_one()

    # =========================================================================
    # SUBMIT VOTE
    # =========================================================================

    async def submit_vote(self, proposal_id: UUID, voter: User, accept: bool) -> VoteResult:
        """
        Record one partner's vote on the current proposal.

        Outcomes once both partners have voted:
        - both accepted: issue -> resolved
        - any rejection: issue -> in_progress, and a new cycle is queued
          unless the final version was just rejected
        """
        proposal = await self._session.get(Proposal, proposal_id)
        if not proposal:
            raise ProposalNotFoundError()

        issue = await self._lock_issue(proposal.issue_id)
        if not issue.is_participant(voter.id):
            raise NotParticipantError()

        # Terminal states outrank per-proposal checks
        if issue.status == IssueStatus.HALTED:
            raise IssueHaltedError()
        if issue.status == IssueStatus.RESOLVED:
            raise IssueClosedError()

        proposal = await self._reload_proposal(proposal_id)
        latest = await self.latest_proposal(issue.id)
        if latest is None or latest.id != proposal.id:
            raise StaleProposalError()
        if issue.status != IssueStatus.PROPOSAL_SENT:
            raise NoActiveProposalError()

        is_partner_a = voter.id == issue.partner_a_id
        vote_column = Proposal.accepted_by_a if is_partner_a else Proposal.accepted_by_b
        current_vote = proposal.accepted_by_a if is_partner_a else proposal.accepted_by_b
        if current_vote != VoteState.NOT_VOTED:
            raise AlreadyVotedError()

        vote = VoteState.from_accept(accept)
        result = await self._session.execute(
            update(Proposal)
            .where(Proposal.id == proposal.id, vote_column == VoteState.NOT_VOTED)
            .values({vote_column.key: vote})
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AlreadyVotedError()
        proposal = await self._reload_proposal(proposal.id)

        logger.info(f"User {voter.id} voted {vote.value} on proposal {proposal.id} (v{proposal.version})")

        if not proposal.both_voted:
            await self._notifications.notify(
                issue.other_partner_id(voter.id),
                NotificationType.PROPOSAL_READY,
                {
                    "issue_id": issue.id,
                    "proposal_id": proposal.id,
                    "message": (
                        f"{voter.display_name} has {'accepted' if accept else 'rejected'} "
                        "the proposal. Your vote is needed."
                    ),
                },
            )
            return VoteResult(proposal=proposal, issue=issue, both_voted=False, both_accepted=False)

        participants = [issue.partner_a_id, issue.partner_b_id]

        if proposal.both_accepted:
            await self._transition(
                issue, IssueStatus.PROPOSAL_SENT, IssueStatus.RESOLVED, resolved_at=utcnow()
            )
            await self._notifications.notify_many(
                participants,
                NotificationType.ISSUE_RESOLVED,
                {"issue_id": issue.id, "proposal_id": proposal.id, "message": RESOLVED_MESSAGE},
            )
            return VoteResult(proposal=proposal, issue=issue, both_voted=True, both_accepted=True)

        await self._transition(issue, IssueStatus.PROPOSAL_SENT, IssueStatus.IN_PROGRESS)

        max_reached = proposal.version >= self._settings.max_proposal_attempts
        task = None
        if not max_reached:
            task = await self.enqueue_mediator_task(
                issue.id, MediatorTrigger.PROPOSAL_REJECTED, f"rejected:v{proposal.version}"
            )
        else:
            logger.info(f"Issue {issue.id} reached maximum proposal attempts")

        await self._notifications.notify_many(
            participants,
            NotificationType.PROPOSAL_READY,
            {
                "issue_id": issue.id,
                "proposal_id": proposal.id,
                "message": MAX_ATTEMPTS_MESSAGE if max_reached else REJECTED_MESSAGE,
            },
        )
        return VoteResult(
            proposal=proposal,
            issue=issue,
            both_voted=True,
            both_accepted=False,
            max_attempts_reached=max_reached,
            mediator_task=task,
        )

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _get_issue(self, issue_id: UUID, refresh: bool = False) -> Issue:
        stmt = select(Issue).where(Issue.id == issue_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        issue = result.scalar_one_or_none()
        if not issue:
            raise IssueNotFoundError()
        return issue

    async def _lock_issue(self, issue_id: UUID) -> Issue:
        """SELECT ... FOR UPDATE on the issue row, bypassing the identity map."""
        result = await self._session.execute(
            select(Issue)
            .where(Issue.id == issue_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        issue = result.scalar_one_or_none()
        if not issue:
            raise IssueNotFoundError()
        return issue

    async def _reload_proposal(self, proposal_id: UUID) -> Proposal:
        result = await self._session.execute(
            select(Proposal)
            .where(Proposal.id == proposal_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def _transition(
        self,
        issue: Issue,
        from_status: IssueStatus,
        to_status: IssueStatus,
        **values,
    ) -> None:
        """Conditionally move an issue between states. Zero rows means someone else got there first."""
        result = await self._session.execute(
            update(Issue)
            .where(Issue.id == issue.id, Issue.status == from_status)
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyError(
                f"Issue {issue.id} is no longer {from_status.value}"
            )
        await self._session.refresh(issue)
        logger.info(f"Issue {issue.id}: {from_status.value} -> {to_status.value}")

    def _record_ai_event(
        self,
        issue_id: UUID | None,
        agent: AgentType,
        input_text: str,
        output_text: str,
    ) -> None:
        self._session.add(
            AIEvent(issue_id=issue_id, agent=agent, input=input_text, output=output_text)
        )
