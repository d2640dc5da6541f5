"""Tests for the agent backends and their fallback wrappers."""

import asyncio

import pytest

from safetalk.core.config import Settings
from safetalk.services.agents import (
    OpenAIAgentBackend,
    ProposalRequest,
    ScriptedAgentBackend,
    clamp_score,
    get_agent_backend,
    parse_json_reply,
)
from safetalk.services.message_normalizer import MessageNormalizer, passthrough
from safetalk.services.proposal_generator import (
    FALLBACK_CONTENT,
    FALLBACK_SCORE,
    ProposalGenerator,
)
from safetalk.services.safety_classifier import SAFETY_RESOURCES, SafetyClassifier


def reply(content: str) -> dict:
    return {"choices": [{"message": {"content": content}}]}


# =============================================================================
# TEST: SCRIPTED BACKEND
# =============================================================================


class TestScriptedBackend:
    """Tests for the deterministic backend."""

    @pytest.fixture
    def backend(self) -> ScriptedAgentBackend:
        return ScriptedAgentBackend()

    async def test_threat_is_harmful(self, backend):
        verdict = await backend.classify("I will HURT you")

        assert verdict.harmful is True
        assert verdict.reason == "threatening language"

    async def test_insult_is_harmful(self, backend):
        verdict = await backend.classify("you are useless")

        assert verdict.harmful is True

    async def test_ordinary_text_is_safe(self, backend):
        verdict = await backend.classify("Can we swap weekends in March?")

        assert verdict.harmful is False

    async def test_word_boundaries_are_respected(self, backend):
        verdict = await backend.classify("The charm of the park")

        assert verdict.harmful is False

    async def test_normalize_rewrites_accusations(self, backend):
        result = await backend.normalize("You always forget the   homework!", "Alice")

        assert result.is_red_flagged is False
        assert result.processed_text == "I feel that it often happens that you forget the homework."
        assert result.mediator_summary == "You always forget the homework!"

    async def test_normalize_prefixes_plain_statements(self, backend):
        result = await backend.normalize("Pickup is at five", "Alice")

        assert result.processed_text == "I would like to share: Pickup is at five"

    async def test_normalize_keeps_first_person(self, backend):
        result = await backend.normalize("I need more notice", "Bob")

        assert result.processed_text == "I need more notice"

    async def test_normalize_flags_harmful_text(self, backend):
        result = await backend.normalize("I will hurt you", "Bob")

        assert result.is_red_flagged is True

    async def test_one_sided_concerns_are_not_ready(self, backend):
        draft = await backend.generate(
            ProposalRequest(issue_id="i", partner_a_concerns=["a", "b"], partner_b_concerns=[])
        )

        assert draft.score == pytest.approx(0.4)

    async def test_score_grows_with_concerns(self, backend):
        draft = await backend.generate(
            ProposalRequest(issue_id="i", partner_a_concerns=["a", "b"], partner_b_concerns=["c"])
        )

        assert draft.score == pytest.approx(0.8)
        assert "1. Agree on a concrete step for: a" in draft.content
        assert "3. Agree on a concrete step for: c" in draft.content

    async def test_score_is_capped(self, backend):
        draft = await backend.generate(
            ProposalRequest(issue_id="i", partner_a_concerns=["a"] * 5, partner_b_concerns=["b"] * 5)
        )

        assert draft.score == 1.0

    async def test_compromise_wording(self, backend):
        draft = await backend.generate(
            ProposalRequest(
                issue_id="i",
                partner_a_concerns=["a"],
                partner_b_concerns=["b"],
                compromise_mode=True,
            )
        )

        assert draft.is_compromise is True
        assert draft.content.startswith("Compromise proposal")


# =============================================================================
# TEST: OPENAI BACKEND HELPERS
# =============================================================================


class TestParseJsonReply:
    def test_plain_json(self):
        assert parse_json_reply(reply('{"harmful": true}')) == {"harmful": True}

    def test_fenced_json(self):
        body = reply('Here you go:\n```json\n{"score": 0.9}\n```')

        assert parse_json_reply(body) == {"score": 0.9}

    def test_bare_fence(self):
        assert parse_json_reply(reply('```\n{"a": 1}\n```')) == {"a": 1}

    def test_no_choices(self):
        with pytest.raises(ValueError):
            parse_json_reply({"choices": []})

    def test_non_object(self):
        with pytest.raises(ValueError):
            parse_json_reply(reply("[1, 2]"))


class TestClampScore:
    @pytest.mark.parametrize(
        "value,expected",
        [(0.85, 0.85), (1.7, 1.0), (-0.2, 0.0), ("0.6", 0.6), (None, 0.5), ("high", 0.5)],
    )
    def test_clamp(self, value, expected):
        assert clamp_score(value) == pytest.approx(expected)


class TestBackendSelection:
    def test_scripted_without_api_key(self):
        settings = Settings(OPENAI_API_KEY=None)

        assert isinstance(get_agent_backend(settings), ScriptedAgentBackend)

    def test_openai_with_api_key(self):
        settings = Settings(OPENAI_API_KEY="sk-test")

        backend = get_agent_backend(settings)

        assert isinstance(backend, OpenAIAgentBackend)
        assert backend.is_configured is True

    async def test_unconfigured_openai_raises(self):
        backend = OpenAIAgentBackend(Settings(OPENAI_API_KEY=None))

        with pytest.raises(RuntimeError):
            await backend.classify("hello")


# =============================================================================
# TEST: CAPABILITY WRAPPERS
# =============================================================================


class SlowBackend(ScriptedAgentBackend):
    async def classify(self, text):
        await asyncio.sleep(1)
        return await super().classify(text)

    async def normalize(self, raw_text, sender_name):
        await asyncio.sleep(1)
        return await super().normalize(raw_text, sender_name)

    async def generate(self, request):
        await asyncio.sleep(1)
        return await super().generate(request)


class TestSafetyClassifier:
    async def test_verdict_passes_through(self):
        classifier = SafetyClassifier(ScriptedAgentBackend())

        verdict = await classifier.classify("I will kill you")

        assert verdict.harmful is True
        assert verdict.fallback is False

    async def test_failure_defaults_to_safe(self, fake_backend):
        fake_backend.fail_classify = True
        classifier = SafetyClassifier(fake_backend)

        verdict = await classifier.classify("I will kill you")

        assert verdict.harmful is False
        assert verdict.fallback is True

    async def test_timeout_defaults_to_safe(self):
        classifier = SafetyClassifier(SlowBackend(), timeout_seconds=0.01)

        verdict = await classifier.classify("I will kill you")

        assert verdict.harmful is False
        assert verdict.reason == "classifier timeout"

    def test_resources_include_emergency_services(self):
        assert {"name": "Emergency Services", "contact": "911"} in SAFETY_RESOURCES


class TestMessageNormalizer:
    async def test_failure_passes_raw_text(self, fake_backend):
        fake_backend.fail_normalize = True
        normalizer = MessageNormalizer(fake_backend)

        result = await normalizer.normalize("  running late  ", "Alice")

        assert result.processed_text == "running late"
        assert result.is_red_flagged is False
        assert result.fallback is True

    async def test_timeout_passes_raw_text(self):
        normalizer = MessageNormalizer(SlowBackend(), timeout_seconds=0.01)

        result = await normalizer.normalize("running late", "Alice")

        assert result.processed_text == "running late"
        assert result.fallback is True

    def test_passthrough_truncates_summary(self):
        result = passthrough("x" * 150)

        assert len(result.mediator_summary) == 100
        assert len(result.processed_text) == 150


class TestProposalGenerator:
    @pytest.fixture
    def generator(self, fake_backend, settings) -> ProposalGenerator:
        return ProposalGenerator(fake_backend, settings)

    async def test_failure_returns_placeholder(self, generator, fake_backend):
        fake_backend.fail_generate = True

        draft = await generator.generate("issue", ["a"], ["b"], [], 1)

        assert draft.content == FALLBACK_CONTENT
        assert draft.score == FALLBACK_SCORE
        assert draft.fallback is True
        assert generator.accepts(draft) is False

    async def test_timeout_returns_placeholder(self, settings):
        generator = ProposalGenerator(
            SlowBackend(), settings.model_copy(update={"agent_timeout_seconds": 0.01})
        )

        draft = await generator.generate("issue", ["a"], ["b"], [], 1)

        assert draft.fallback is True

    async def test_score_is_clamped(self, generator, fake_backend):
        fake_backend.scores = [1.4]

        draft = await generator.generate("issue", ["a"], ["b"], [], 1)

        assert draft.score == 1.0

    async def test_compromise_mode_from_attempt_four(self, generator, fake_backend):
        assert generator.is_compromise_attempt(3) is False
        assert generator.is_compromise_attempt(4) is True

        fake_backend.scores = [0.1]
        draft = await generator.generate("issue", ["a"], ["b"], ["p1", "p2", "p3"], 4)

        assert draft.is_compromise is True
        assert generator.accepts(draft) is True
        assert fake_backend.generate_calls[-1].compromise_mode is True

    @pytest.mark.parametrize("attempt", [0, 6])
    async def test_attempt_outside_range(self, generator, attempt):
        with pytest.raises(ValueError):
            await generator.generate("issue", [], [], [], attempt)
