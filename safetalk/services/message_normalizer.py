"""Message Normalizer (personal agent).

Rewrites a partner's message into calm first-person statements and produces
a short summary for the mediator. On failure the trimmed raw text passes
through unflagged so a message is never dropped.
"""

import asyncio
import logging

from .agents import AgentBackend, NormalizedMessage

logger = logging.getLogger(__name__)

SUMMARY_FALLBACK_LENGTH = 100


def passthrough(raw_text: str) -> NormalizedMessage:
    text = raw_text.strip()
    return NormalizedMessage(
        processed_text=text,
        is_red_flagged=False,
        mediator_summary=text[:SUMMARY_FALLBACK_LENGTH],
        fallback=True,
    )


class MessageNormalizer:
    def __init__(self, backend: AgentBackend, timeout_seconds: float = 30.0):
        self.backend = backend
        self.timeout_seconds = timeout_seconds

    async def normalize(self, raw_text: str, sender_name: str) -> NormalizedMessage:
        try:
            result = await asyncio.wait_for(
                self.backend.normalize(raw_text, sender_name), self.timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning(f"Message normalizer timed out after {self.timeout_seconds}s, passing raw text")
            return passthrough(raw_text)
        except Exception as e:
            logger.warning(f"Message normalizer failed, passing raw text: {e}")
            return passthrough(raw_text)

        if not result.processed_text or not result.processed_text.strip():
            result.processed_text = raw_text.strip()
        if not result.mediator_summary:
            result.mediator_summary = raw_text.strip()[:SUMMARY_FALLBACK_LENGTH]
        return result
