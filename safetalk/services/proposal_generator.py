"""Proposal Generator (mediator agent).

Drafts a joint proposal and decides whether it is good enough to send.
After ``compromise_after_attempt`` rejected versions the generator switches
to compromise mode: the draft is accepted whatever its score. Generation
failures degrade to a low-score placeholder, which the caller treats as an
abstention.
"""

import asyncio
import logging

from ..core.config import Settings, get_settings
from .agents import AgentBackend, ProposalDraft, ProposalRequest

logger = logging.getLogger(__name__)

FALLBACK_CONTENT = (
    "I need more information to create a solution. "
    "Please continue sharing your concerns."
)
FALLBACK_SCORE = 0.3


def placeholder_draft() -> ProposalDraft:
    return ProposalDraft(
        content=FALLBACK_CONTENT,
        score=FALLBACK_SCORE,
        is_compromise=False,
        fallback=True,
    )


class ProposalGenerator:
    def __init__(self, backend: AgentBackend, settings: Settings | None = None):
        settings = settings or get_settings()
        self.backend = backend
        self.timeout_seconds = settings.agent_timeout_seconds
        self.score_threshold = settings.mediator_score_threshold
        self.compromise_after_attempt = settings.compromise_after_attempt
        self.max_attempts = settings.max_proposal_attempts

    def is_compromise_attempt(self, attempt_number: int) -> bool:
        return attempt_number > self.compromise_after_attempt

    def accepts(self, draft: ProposalDraft) -> bool:
        """A draft becomes a proposal when it is ready or produced in compromise mode."""
        return draft.score >= self.score_threshold or draft.is_compromise

    async def generate(
        self,
        issue_id: str,
        partner_a_concerns: list[str],
        partner_b_concerns: list[str],
        previous_proposals: list[str],
        attempt_number: int,
    ) -> ProposalDraft:
        """
        Draft proposal version ``attempt_number``.

        Callers must check the attempt ceiling first; asking for a version
        beyond it is a programming error.
        """
        if attempt_number < 1 or attempt_number > self.max_attempts:
            raise ValueError(
                f"Attempt {attempt_number} outside 1..{self.max_attempts}"
            )

        compromise_mode = self.is_compromise_attempt(attempt_number)
        request = ProposalRequest(
            issue_id=issue_id,
            partner_a_concerns=partner_a_concerns,
            partner_b_concerns=partner_b_concerns,
            previous_proposals=previous_proposals,
            attempt_number=attempt_number,
            compromise_mode=compromise_mode,
        )

        try:
            draft = await asyncio.wait_for(self.backend.generate(request), self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"Proposal generation for issue {issue_id} timed out after {self.timeout_seconds}s")
            return placeholder_draft()
        except Exception as e:
            logger.warning(f"Proposal generation for issue {issue_id} failed: {e}")
            return placeholder_draft()

        draft.score = min(1.0, max(0.0, draft.score))
        draft.is_compromise = compromise_mode
        if not draft.content or not draft.content.strip():
            return placeholder_draft()
        return draft
