"""Shared fixtures: a throwaway SQLite database, users and fake agents."""

import asyncio
import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SERVICE_API_KEY", "test-service-key")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-signing-tokens-0123456789")
os.environ.pop("OPENAI_API_KEY", None)
os.environ.pop("FCM_SERVER_KEY", None)

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from safetalk.core.config import Settings, get_settings
from safetalk.core.database import build_engine, build_session_factory
from safetalk.models import Base, Issue, User
from safetalk.services.agents import (
    AgentBackend,
    NormalizedMessage,
    ProposalDraft,
    ProposalRequest,
    SafetyVerdict,
)
from safetalk.services.issue_engine import IssueEngine
from safetalk.services.notifications import PushChannel
from safetalk.services.users import UserService


# =============================================================================
# TEST DOUBLES
# =============================================================================


class FakeAgentBackend(AgentBackend):
    """Controllable agent backend.

    ``scores`` is consumed one value per generate call; ``default_score`` is
    used once it runs out.
    """

    name = "fake"

    def __init__(self):
        self.harmful_words = {"kill", "hurt"}
        self.red_flag_words = {"redflag"}
        self.scores: list[float] = []
        self.default_score = 0.9
        self.fail_classify = False
        self.fail_normalize = False
        self.fail_generate = False
        self.classify_calls: list[str] = []
        self.normalize_calls: list[str] = []
        self.generate_calls: list[ProposalRequest] = []
        self.on_generate = None  # optional coroutine run before a draft is returned

    async def classify(self, text: str) -> SafetyVerdict:
        self.classify_calls.append(text)
        if self.fail_classify:
            raise RuntimeError("classifier offline")
        words = set(text.lower().split())
        return SafetyVerdict(harmful=bool(words & self.harmful_words))

    async def normalize(self, raw_text: str, sender_name: str) -> NormalizedMessage:
        self.normalize_calls.append(raw_text)
        if self.fail_normalize:
            raise RuntimeError("normalizer offline")
        flagged = bool(set(raw_text.lower().split()) & self.red_flag_words)
        return NormalizedMessage(
            processed_text=f"I feel that {raw_text}",
            is_red_flagged=flagged,
            mediator_summary=f"{sender_name}: {raw_text[:50]}",
        )

    async def generate(self, request: ProposalRequest) -> ProposalDraft:
        self.generate_calls.append(request)
        if self.fail_generate:
            raise RuntimeError("mediator offline")
        if self.on_generate is not None:
            await self.on_generate(request)
        score = self.scores.pop(0) if self.scores else self.default_score
        return ProposalDraft(
            content=f"Proposal attempt {request.attempt_number}",
            score=score,
            is_compromise=False,
        )


class RecordingPushChannel(PushChannel):
    def __init__(self, configured: bool = True, fail: bool = False, delay: float = 0.0):
        self.configured = configured
        self.fail = fail
        self.delay = delay
        self.sent: list[dict] = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def send(self, device_token, title, body, data):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            return False, "device unreachable"
        self.sent.append({"token": device_token, "title": title, "body": body, "data": data})
        return True, None


# =============================================================================
# DATABASE
# =============================================================================


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
async def db_engine(tmp_path):
    config = Settings(database_url=f"sqlite:///{tmp_path / 'safetalk.db'}")
    engine = build_engine(config)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
async def session(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session


# =============================================================================
# SERVICES
# =============================================================================


@pytest.fixture
def fake_backend() -> FakeAgentBackend:
    return FakeAgentBackend()


@pytest.fixture
def push_channel() -> RecordingPushChannel:
    return RecordingPushChannel()


@pytest.fixture
def issue_engine(session, fake_backend, push_channel, settings) -> IssueEngine:
    return IssueEngine.from_backend(session, fake_backend, push_channel, settings)


# =============================================================================
# USERS
# =============================================================================


async def make_user(session: AsyncSession, subject: str, name: str | None = None) -> User:
    return await UserService(session).create_user(
        auth_subject=subject,
        email=f"{subject}@example.com",
        name=name,
    )


async def pair_users(session: AsyncSession, a: User, b: User) -> None:
    a.connected_user_id = b.id
    b.connected_user_id = a.id
    await session.flush()


@pytest.fixture
async def alice(session) -> User:
    return await make_user(session, "alice", "Alice")


@pytest.fixture
async def bob(session) -> User:
    return await make_user(session, "bob", "Bob")


@pytest.fixture
async def carol(session) -> User:
    return await make_user(session, "carol", "Carol")


@pytest.fixture
async def paired(session, alice, bob) -> tuple[User, User]:
    await pair_users(session, alice, bob)
    await session.commit()
    return alice, bob


@pytest.fixture
async def issue(issue_engine, paired) -> Issue:
    alice, _ = paired
    return await issue_engine.create_issue(alice, "School pickup schedule")
