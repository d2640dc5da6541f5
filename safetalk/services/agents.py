"""Agent capability layer.

The workflow consults three capabilities: a safety classifier, a personal
agent that rewrites a partner's message, and a mediator that drafts joint
proposals. ``AgentBackend`` is the seam. ``OpenAIAgentBackend`` talks to the
chat-completions API; ``ScriptedAgentBackend`` is deterministic and is used
when no model provider is configured.

Backends may raise. Timeouts and fallbacks are applied by the wrappers in
``safety_classifier``, ``message_normalizer`` and ``proposal_generator``.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from ..core.config import Settings, get_settings

logger = logging.getLogger(__name__)


# =============================================================================
# RESULT TYPES
# =============================================================================


@dataclass
class SafetyVerdict:
    """Moderation verdict for one piece of user text."""

    harmful: bool
    reason: str | None = None
    fallback: bool = False  # True when the classifier failed and the default was used


@dataclass
class NormalizedMessage:
    """Output of the personal agent for one message."""

    processed_text: str
    is_red_flagged: bool
    mediator_summary: str
    fallback: bool = False


@dataclass
class ProposalRequest:
    """Everything the mediator sees when drafting a proposal."""

    issue_id: str
    partner_a_concerns: list[str]
    partner_b_concerns: list[str]
    previous_proposals: list[str] = field(default_factory=list)
    attempt_number: int = 1
    compromise_mode: bool = False


@dataclass
class ProposalDraft:
    """A candidate proposal and the mediator's readiness score."""

    content: str
    score: float
    is_compromise: bool
    reasoning: str | None = None
    fallback: bool = False


# =============================================================================
# BACKEND INTERFACE
# =============================================================================


class AgentBackend(ABC):
    """Abstract model backend."""

    name = "abstract"

    @abstractmethod
    async def classify(self, text: str) -> SafetyVerdict:
        """Decide whether text is harmful enough to halt the conversation."""

    @abstractmethod
    async def normalize(self, raw_text: str, sender_name: str) -> NormalizedMessage:
        """Rewrite a message into calm first-person statements."""

    @abstractmethod
    async def generate(self, request: ProposalRequest) -> ProposalDraft:
        """Draft a joint proposal from both partners' concerns."""


def clamp_score(value: Any, default: float = 0.5) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return default
    return min(1.0, max(0.0, score))


# =============================================================================
# SCRIPTED BACKEND
# =============================================================================


THREAT_PATTERN = re.compile(r"\b(kill|murder|hurt|harm|abuse|threat)\b", re.IGNORECASE)
INSULT_PATTERN = re.compile(r"\b(stupid|idiot|worthless|useless)\b", re.IGNORECASE)

_REWORDINGS = [
    (re.compile(r"\byou always\b", re.IGNORECASE), "I feel that it often happens that you"),
    (re.compile(r"\byou never\b", re.IGNORECASE), "I feel that you rarely"),
    (re.compile(r"!+"), "."),
]


def _collapse(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def _first_sentences(text: str, count: int = 3) -> str:
    sentences = re.split(r"(?<=[.!?])\s+", text)
    return " ".join(sentences[:count])[:300]


class ScriptedAgentBackend(AgentBackend):
    """
    Deterministic backend.

    Harm detection uses the threat and insult word lists. Proposal readiness
    grows with the number of concerns heard from both partners, and a
    proposal is only considered ready once both have spoken.
    """

    name = "scripted"

    BASE_SCORE = 0.5
    SCORE_PER_CONCERN = 0.1
    ONE_SIDED_SCORE = 0.4

    async def classify(self, text: str) -> SafetyVerdict:
        if THREAT_PATTERN.search(text):
            return SafetyVerdict(harmful=True, reason="threatening language")
        if INSULT_PATTERN.search(text):
            return SafetyVerdict(harmful=True, reason="abusive language")
        return SafetyVerdict(harmful=False)

    async def normalize(self, raw_text: str, sender_name: str) -> NormalizedMessage:
        text = _collapse(raw_text)
        verdict = await self.classify(text)
        if verdict.harmful:
            return NormalizedMessage(
                processed_text=text,
                is_red_flagged=True,
                mediator_summary=text[:100],
            )

        processed = text
        for pattern, replacement in _REWORDINGS:
            processed = pattern.sub(replacement, processed)
        if not processed.lower().startswith("i "):
            processed = f"I would like to share: {processed}"

        return NormalizedMessage(
            processed_text=processed,
            is_red_flagged=False,
            mediator_summary=_first_sentences(text),
        )

    async def generate(self, request: ProposalRequest) -> ProposalDraft:
        a_count = len(request.partner_a_concerns)
        b_count = len(request.partner_b_concerns)

        if a_count and b_count:
            score = self.BASE_SCORE + self.SCORE_PER_CONCERN * (a_count + b_count)
        else:
            score = self.ONE_SIDED_SCORE
        score = round(clamp_score(score), 2)

        lines = []
        if request.compromise_mode:
            lines.append("Compromise proposal: each of you gives a little so both core needs are met.")
        else:
            lines.append("Proposed solution addressing both of your core concerns:")
        for i, concern in enumerate(request.partner_a_concerns + request.partner_b_concerns, start=1):
            lines.append(f"{i}. Agree on a concrete step for: {concern}")
        lines.append("Review together in two weeks, keeping the children's best interests first.")

        return ProposalDraft(
            content="\n".join(lines),
            score=score,
            is_compromise=request.compromise_mode,
            reasoning=f"{a_count} concern(s) from partner A, {b_count} from partner B",
        )


# =============================================================================
# OPENAI BACKEND
# =============================================================================


class OpenAIAgentBackend(AgentBackend):
    """Chat-completions backend. Every call expects a JSON object back."""

    name = "openai"

    CLASSIFIER_PROMPT = """You are a safety classifier for a co-parenting communication app.

Decide whether the message below contains abusive language, threats, harassment
or extreme hostility that should stop the conversation and route the sender to
safety resources.

Message: "{text}"

Respond in JSON format:
{{
  "harmful": boolean,
  "reason": "short reason, or null"
}}"""

    PERSONAL_AGENT_PROMPT = """You are a Personal AI Agent helping a divorced co-parent communicate more effectively. Your role is to:

1. FIRST: Check for red flags (abusive language, threats, harassment, extreme hostility)
2. If red flags detected, return immediately with isRedFlagged: true
3. If safe, process the message by:
   - Filtering emotional language
   - Converting to calm I-statements
   - Focusing on facts and solutions
   - Maintaining the core concern

User: {sender_name}
Original message: "{text}"

Respond in JSON format:
{{
  "isRedFlagged": boolean,
  "processedContent": "calm, factual I-statement version",
  "mediatorSummary": "key points for mediator (2-3 sentences max)"
}}"""

    MEDIATOR_PROMPT = """You are a Mediator AI specializing in co-parenting conflict resolution. Your role is to create practical, fair solutions.

PARTNER A CONCERNS:
{partner_a}

PARTNER B CONCERNS:
{partner_b}
{previous}
{mode}

Create a solution that:
1. Addresses both parties' core concerns
2. Is specific and actionable
3. Includes clear steps/protocols
4. Considers children's best interests
5. Is fair to both parties

Respond in JSON format:
{{
  "content": "detailed solution proposal with specific steps",
  "score": 0.0-1.0 (readiness score - only propose if >= {threshold}),
  "reasoning": "why this solution works for both parties"
}}"""

    SOLUTION_MODE = "SOLUTION MODE: Create an optimal solution that addresses both parties' core needs."
    COMPROMISE_MODE = (
        "COMPROMISE MODE: Previous proposals were rejected. Focus on finding middle ground "
        "that both parties can accept, even if not ideal."
    )

    def __init__(self, settings: Settings | None = None):
        settings = settings or get_settings()
        self.api_key = settings.openai_api_key
        self.api_url = settings.openai_api_url
        self.model = settings.openai_model
        self.threshold = settings.mediator_score_threshold
        self.timeout_seconds = settings.agent_timeout_seconds

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def classify(self, text: str) -> SafetyVerdict:
        data = await self._complete(
            self.CLASSIFIER_PROMPT.format(text=text),
            temperature=0.0,
            max_tokens=100,
        )
        return SafetyVerdict(harmful=bool(data.get("harmful", False)), reason=data.get("reason"))

    async def normalize(self, raw_text: str, sender_name: str) -> NormalizedMessage:
        data = await self._complete(
            self.PERSONAL_AGENT_PROMPT.format(sender_name=sender_name, text=raw_text),
            temperature=0.3,
            max_tokens=500,
        )
        return NormalizedMessage(
            processed_text=data.get("processedContent") or raw_text,
            is_red_flagged=bool(data.get("isRedFlagged", False)),
            mediator_summary=data.get("mediatorSummary") or raw_text[:100],
        )

    async def generate(self, request: ProposalRequest) -> ProposalDraft:
        previous = ""
        if request.previous_proposals:
            previous = "\nPrevious proposals that were rejected:\n" + "\n---\n".join(
                request.previous_proposals
            )
        prompt = self.MEDIATOR_PROMPT.format(
            partner_a="\n".join(request.partner_a_concerns) or "(none yet)",
            partner_b="\n".join(request.partner_b_concerns) or "(none yet)",
            previous=previous,
            mode=self.COMPROMISE_MODE if request.compromise_mode else self.SOLUTION_MODE,
            threshold=self.threshold,
        )
        data = await self._complete(
            prompt,
            temperature=0.7 if request.compromise_mode else 0.3,
            max_tokens=800,
        )
        return ProposalDraft(
            content=data.get("content") or "Unable to generate solution at this time.",
            score=clamp_score(data.get("score")),
            is_compromise=request.compromise_mode,
            reasoning=data.get("reasoning"),
        )

    async def _complete(self, prompt: str, temperature: float, max_tokens: int) -> dict[str, Any]:
        """Call the chat-completions API and parse the JSON reply."""
        if not self.is_configured:
            raise RuntimeError("OpenAI API key not configured")

        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": temperature,
            "max_tokens": max_tokens,
            "response_format": {"type": "json_object"},
        }

        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            response = await client.post(
                self.api_url,
                json=payload,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
            )

            if response.status_code != 200:
                logger.error(f"OpenAI API error: {response.status_code} - {response.text}")
                raise RuntimeError(f"OpenAI API error: {response.status_code}")

            body = response.json()

        return parse_json_reply(body)


def parse_json_reply(body: dict[str, Any]) -> dict[str, Any]:
    """Extract the JSON object from a chat-completions response body."""
    choices = body.get("choices", [])
    if not choices:
        raise ValueError("No choices in response")

    text = choices[0].get("message", {}).get("content") or ""

    # Handle potential markdown code blocks
    if "```json" in text:
        text = text.split("```json")[1].split("```")[0]
    elif "```" in text:
        text = text.split("```")[1].split("```")[0]

    data = json.loads(text.strip())
    if not isinstance(data, dict):
        raise ValueError("Expected a JSON object")
    return data


def get_agent_backend(settings: Settings | None = None) -> AgentBackend:
    """Pick the backend for the current configuration."""
    settings = settings or get_settings()
    if settings.ai_enabled:
        return OpenAIAgentBackend(settings)
    logger.info("No model provider configured, using scripted agents")
    return ScriptedAgentBackend()
