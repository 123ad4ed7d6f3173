"""Shared fixtures: a throwaway SQLite database and recording collaborators."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from role_approval.core.database import create_session_factory
from role_approval.models import Base
from role_approval.services import (
    ActionExecutor,
    ConversationConfig,
    ConversationEngine,
    MembershipService,
    MessageSender,
    OwnerNotifier,
    PolicyDocument,
    PolicySource,
    RoleRequest,
    parse_policy,
)


# =============================================================================
# FAKE COLLABORATORS
# =============================================================================


class FakeClock:
    """Settable clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


class StaticPolicySource(PolicySource):
    """Serves a fixed policy, or raises a fixed error."""

    def __init__(self, policy: PolicyDocument | None = None, error: Exception | None = None):
        self.policy = policy or PolicyDocument()
        self.error = error
        self.fetched: list[str] = []

    async def fetch(self, project_name: str) -> PolicyDocument:
        self.fetched.append(project_name)
        if self.error is not None:
            raise self.error
        return self.policy

    def use_xml(self, xml: str) -> None:
        self.policy = parse_policy(xml)


@dataclass
class SentMessage:
    to: str
    subject: str
    body: str
    in_reply_to: str | None
    message_id: str


class RecordingSender(MessageSender):
    """Remembers every message; can be told to fail or to run a hook mid-send."""

    def __init__(self):
        self.sent: list[SentMessage] = []
        self.fail_with: Exception | None = None
        self.during_send = None
        self._issued = 0

    def new_message_id(self) -> str:
        self._issued += 1
        return f"<msg-{self._issued}@role-approval.test>"

    async def send(self, to, subject, body, in_reply_to=None, message_id=None) -> str:
        message_id = message_id or self.new_message_id()
        if self.during_send is not None:
            await self.during_send(message_id)
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(SentMessage(to, subject, body, in_reply_to, message_id))
        return message_id


class RecordingMembership(MembershipService):
    """Remembers grant/decline calls; can be told to fail."""

    def __init__(self):
        self.calls: list[tuple] = []
        self.fail_with: Exception | None = None

    async def grant_role(self, project_name, user_name, role_name) -> None:
        self.calls.append(("grant", project_name, user_name, role_name))
        if self.fail_with is not None:
            raise self.fail_with

    async def decline_role(self, project_name, user_name, role_name, reason) -> None:
        self.calls.append(("decline", project_name, user_name, role_name, reason))
        if self.fail_with is not None:
            raise self.fail_with

    @property
    def grants(self) -> list[tuple]:
        return [c for c in self.calls if c[0] == "grant"]

    @property
    def declines(self) -> list[tuple]:
        return [c for c in self.calls if c[0] == "decline"]


class RecordingNotifier(OwnerNotifier):
    """Remembers owner notifications; can be told to lose them."""

    def __init__(self):
        self.notifications: list[tuple[str, str, str]] = []
        self.raise_error = False

    async def notify(self, project_name, subject, body) -> bool:
        if self.raise_error:
            raise RuntimeError("notification channel down")
        self.notifications.append((project_name, subject, body))
        return True


@dataclass
class Workflow:
    """Everything a conversation test needs, wired together."""
    engine: ConversationEngine
    policy: StaticPolicySource
    sender: RecordingSender
    membership: RecordingMembership
    notifier: RecordingNotifier
    clock: FakeClock
    config: ConversationConfig = field(default_factory=ConversationConfig)


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
async def db_engine(tmp_path):
    """A fresh SQLite database with all tables."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'role_approval.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def make_workflow(session_factory, clock):
    """Build a ConversationEngine over fresh recording collaborators."""

    def _make(config: ConversationConfig | None = None) -> Workflow:
        config = config or ConversationConfig()
        policy = StaticPolicySource()
        sender = RecordingSender()
        membership = RecordingMembership()
        notifier = RecordingNotifier()
        engine = ConversationEngine(
            session_factory=session_factory,
            policy_source=policy,
            sender=sender,
            executor=ActionExecutor(membership),
            notifier=notifier,
            config=config,
            clock=clock,
        )
        return Workflow(engine, policy, sender, membership, notifier, clock, config)

    return _make


@pytest.fixture
def workflow(make_workflow) -> Workflow:
    return make_workflow()


@pytest.fixture
def request_for():
    """Build RoleRequests with distinct source message ids."""
    counter = iter(range(1, 10_000))

    def _request(role: str = "observer", user: str = "alice", project: str = "glassfish") -> RoleRequest:
        return RoleRequest(
            project_name=project,
            role_name=role,
            user_name=user,
            source_message_id=f"<request-{next(counter)}@dev.java.net>",
        )

    return _request


TALK_POLICY = """
<policy>
  <rule role="committer,observer" action="talk">Hello ${user}</rule>
  <rule role="developer" action="approve"/>
  <rule role="content developer" action="deny">Sorry ${user}, ${project} does not take ${role}s.</rule>
</policy>
"""


@pytest.fixture
def talk_workflow(workflow) -> Workflow:
    """A workflow whose policy talks for observers and committers."""
    workflow.policy.use_xml(TALK_POLICY)
    return workflow
