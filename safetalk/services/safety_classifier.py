"""Safety Classifier.

Screens user-authored text before any other processing. A failing or slow
backend never blocks the conversation: the verdict defaults to not harmful
and the failure is logged.
"""

import asyncio
import logging

from .agents import AgentBackend, SafetyVerdict

logger = logging.getLogger(__name__)

# Shown to a sender whose message halted an issue
SAFETY_RESOURCES = [
    {"name": "National Domestic Violence Hotline", "contact": "1-800-799-7233"},
    {"name": "Crisis Text Line", "contact": "Text HOME to 741741"},
    {"name": "Childhelp National Child Abuse Hotline", "contact": "1-800-422-4453"},
    {"name": "Emergency Services", "contact": "911"},
]

RED_FLAG_MESSAGE = (
    "Message contains inappropriate content. Issue has been halted for safety. "
    "If you are in immediate danger, please contact your local emergency services or call 911."
)


class SafetyClassifier:
    def __init__(self, backend: AgentBackend, timeout_seconds: float = 30.0):
        self.backend = backend
        self.timeout_seconds = timeout_seconds

    async def classify(self, text: str) -> SafetyVerdict:
        try:
            return await asyncio.wait_for(self.backend.classify(text), self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.error(f"Safety classifier timed out after {self.timeout_seconds}s, treating as not harmful")
            return SafetyVerdict(harmful=False, reason="classifier timeout", fallback=True)
        except Exception as e:
            logger.error(f"Safety classifier failed, treating as not harmful: {e}")
            return SafetyVerdict(harmful=False, reason=f"classifier error: {e}", fallback=True)
