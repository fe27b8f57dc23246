"""Shared fixtures: an in-memory session, fake queue/ledger/gateway, seeded parties."""

import asyncio
from collections import defaultdict
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from datetime import timedelta
from functools import partial
from types import SimpleNamespace
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.sql import operators
from sqlalchemy.sql.dml import Update
from sqlalchemy.sql.elements import (
    BinaryExpression,
    BindParameter,
    BooleanClauseList,
    False_,
    Grouping,
    Null,
    True_,
)
from sqlalchemy.sql.selectable import Select

from adescrow.container import build_services
from adescrow.core.events import EventBus
from adescrow.db.base import utcnow
from adescrow.models.channel import Channel
from adescrow.models.deal import Deal
from adescrow.models.escrow import Escrow, EscrowStatus
from adescrow.models.published_post import PostStatus, PublishedPost
from adescrow.models.user import User
from adescrow.services.telegram import MessageInfo, PublishResult
from adescrow.services.ton.ledger import PaymentCheck


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client wired to the FastAPI app (no real server)."""
    from adescrow.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac


# ---------------------------------------------------------------------------
# In-memory session
# ---------------------------------------------------------------------------

_COMPARISONS = {
    operators.eq: lambda a, b: a == b,
    operators.ne: lambda a, b: a != b,
    operators.lt: lambda a, b: a is not None and a < b,
    operators.le: lambda a, b: a is not None and a <= b,
    operators.gt: lambda a, b: a is not None and a > b,
    operators.ge: lambda a, b: a is not None and a >= b,
    operators.in_op: lambda a, b: a in b,
    operators.not_in_op: lambda a, b: a not in b,
    operators.is_: lambda a, b: a is b,
    operators.is_not: lambda a, b: a is not b,
}


def _operand(element) -> Any:
    if isinstance(element, BindParameter):
        return element.value
    if isinstance(element, Null):
        return None
    if isinstance(element, (True_, False_)):
        return isinstance(element, True_)
    raise NotImplementedError(f"Unsupported operand {element!r}")


def matches(obj: Any, clause) -> bool:
    """Evaluate the WHERE clauses the services build against a Python object."""
    if clause is None:
        return True
    if isinstance(clause, Grouping):
        return matches(obj, clause.element)
    if isinstance(clause, BooleanClauseList):
        results = [matches(obj, c) for c in clause.clauses]
        return any(results) if clause.operator is operators.or_ else all(results)
    if isinstance(clause, BinaryExpression):
        compare = _COMPARISONS[clause.operator]
        return compare(getattr(obj, clause.left.key), _operand(clause.right))
    raise NotImplementedError(f"Unsupported clause {clause!r}")


class FakeScalars:
    def __init__(self, rows: list) -> None:
        self._rows = rows

    def all(self) -> list:
        return list(self._rows)

    def first(self) -> Any:
        return self._rows[0] if self._rows else None


class FakeResult:
    def __init__(self, rows: list | None = None, rowcount: int = 0) -> None:
        self._rows = rows or []
        self.rowcount = rowcount

    def scalars(self) -> FakeScalars:
        return FakeScalars(self._rows)

    def scalar_one_or_none(self) -> Any:
        return self._rows[0] if self._rows else None


class FakeSession:
    """Stands in for AsyncSession: objects live in dicts, statements are evaluated in Python.

    Conditional updates report how many stored rows match their WHERE clause;
    the services copy the new values onto the loaded objects themselves.
    """

    def __init__(self) -> None:
        self.objects: dict[type, dict[int, Any]] = defaultdict(dict)
        self.executed: list = []
        self.commits = 0
        self.rollbacks = 0
        # table names whose next UPDATE reports zero rows (a concurrent writer won)
        self.lose_next_update: set[str] = set()
        # raised by the next commit (a constraint another transaction tripped first)
        self.fail_next_commit: Exception | None = None
        self._ids: dict[type, int] = defaultdict(int)

    async def __aenter__(self) -> "FakeSession":
        return self

    async def __aexit__(self, *exc_info) -> bool:
        return False

    def add(self, obj: Any) -> None:
        model = type(obj)
        if obj.id is None:
            self._ids[model] += 1
            obj.id = self._ids[model]
        else:
            self._ids[model] = max(self._ids[model], obj.id)
        if getattr(obj, "created_at", None) is None:
            obj.created_at = utcnow()
        self.objects[model][obj.id] = obj

    def all(self, model: type) -> list:
        return list(self.objects[model].values())

    async def get(self, model: type, ident: int) -> Any:
        return self.objects[model].get(ident)

    async def delete(self, obj: Any) -> None:
        self.objects[type(obj)].pop(obj.id, None)

    async def execute(self, stmt) -> FakeResult:
        self.executed.append(stmt)
        if isinstance(stmt, Update):
            model = stmt.entity_description["entity"]
            if model.__tablename__ in self.lose_next_update:
                self.lose_next_update.discard(model.__tablename__)
                return FakeResult(rowcount=0)
            matched = [o for o in self.all(model) if matches(o, stmt.whereclause)]
            return FakeResult(rowcount=len(matched))
        if isinstance(stmt, Select):
            model = stmt.column_descriptions[0]["entity"]
            return FakeResult(rows=[o for o in self.all(model) if matches(o, stmt.whereclause)])
        raise NotImplementedError(f"Unsupported statement {stmt!r}")

    async def flush(self) -> None:
        pass

    async def commit(self) -> None:
        if self.fail_next_commit is not None:
            error, self.fail_next_commit = self.fail_next_commit, None
            raise error
        self.commits += 1

    async def rollback(self) -> None:
        self.rollbacks += 1

    async def refresh(self, obj: Any) -> None:
        pass

    async def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Fakes for the outbound ports
# ---------------------------------------------------------------------------


class FakeJobQueue:
    """In-memory JobQueue with dedupe-key semantics."""

    def __init__(self) -> None:
        self.enqueued: list[dict[str, Any]] = []
        self.pending: dict[str, dict[str, Any]] = {}
        self.cancelled: list[str] = []

    async def enqueue(self, job_name, payload, *, delay_seconds=0, dedupe_key=None):
        if dedupe_key and dedupe_key in self.pending:
            return None
        job = {
            "name": job_name,
            "payload": dict(payload),
            "delay": delay_seconds,
            "key": dedupe_key,
            "token": f"token-{len(self.enqueued) + 1}",
        }
        self.enqueued.append(job)
        if dedupe_key:
            self.pending[dedupe_key] = job
        return job["token"]

    async def cancel(self, dedupe_key):
        self.cancelled.append(dedupe_key)
        return self.pending.pop(dedupe_key, None) is not None

    async def is_current(self, dedupe_key, token):
        job = self.pending.get(dedupe_key)
        return job is not None and job["token"] == token

    async def release(self, dedupe_key, token):
        if await self.is_current(dedupe_key, token):
            del self.pending[dedupe_key]

    def named(self, job_name: str) -> list[dict[str, Any]]:
        return [job for job in self.enqueued if job["name"] == job_name]


class FakeLedger:
    platform_address = "EQPlatform"

    def __init__(self) -> None:
        self.deploy_error: Exception | None = None
        self.release_error: Exception | None = None
        self.refund_error: Exception | None = None
        self.payment = PaymentCheck(received=False)
        self.deployed: list = []
        self.releases: list[str] = []
        self.refunds: list[str] = []
        self.payment_checks: list[tuple] = []

    def compute_escrow_address(self, params) -> str:
        return f"EQEscrow{params.deal_id}"

    async def deploy_escrow(self, params) -> str:
        if self.deploy_error:
            raise self.deploy_error
        self.deployed.append(params)
        return self.compute_escrow_address(params)

    async def send_release(self, address: str) -> str:
        if self.release_error:
            raise self.release_error
        self.releases.append(address)
        return f"release-tx-{len(self.releases)}"

    async def send_refund(self, address: str) -> str:
        if self.refund_error:
            raise self.refund_error
        self.refunds.append(address)
        return f"refund-tx-{len(self.refunds)}"

    async def check_incoming_payment(self, address, min_amount, since) -> PaymentCheck:
        self.payment_checks.append((address, min_amount, since))
        return self.payment


class FakeGateway:
    def __init__(self) -> None:
        self.is_admin = True
        self.publish_error: Exception | None = None
        self.info = MessageInfo(exists=True, views=100, reactions=5, forwards=2)
        self.info_error: Exception | None = None
        self.published: list[tuple] = []
        self.deleted: list[tuple] = []
        self.direct_messages: list[tuple[int, str]] = []
        # when set, publish() blocks until the event is released
        self.gate: asyncio.Event | None = None
        self.publish_started = asyncio.Event()

    async def is_bot_admin(self, chat_id) -> bool:
        return self.is_admin

    async def publish(self, chat_id, content, media_urls=None, buttons=None) -> PublishResult:
        self.publish_started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.publish_error:
            raise self.publish_error
        self.published.append((chat_id, content))
        message_id = 1000 + len(self.published)
        return PublishResult(message_id=message_id, post_url=f"https://t.me/testchannel/{message_id}")

    async def get_message_info(self, chat_ref, message_id) -> MessageInfo:
        if self.info_error:
            raise self.info_error
        return self.info

    async def delete_message(self, chat_id, message_id) -> bool:
        self.deleted.append((chat_id, message_id))
        return True

    async def send_direct_message(self, telegram_user_id, text) -> None:
        self.direct_messages.append((telegram_user_id, text))


class RecordingEventBus(EventBus):
    def __init__(self) -> None:
        super().__init__()
        self.published: list = []

    async def publish(self, event) -> None:
        self.published.append(event)
        await super().publish(event)

    def of_type(self, event_type: type) -> list:
        return [e for e in self.published if isinstance(e, event_type)]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def session_factory(session):
    return lambda: session


@pytest.fixture
def jobs() -> FakeJobQueue:
    return FakeJobQueue()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def events() -> RecordingEventBus:
    return RecordingEventBus()


@pytest.fixture
def services(session_factory, jobs, ledger, gateway, events):
    return build_services(
        session_factory=session_factory,
        jobs=jobs,
        ledger=ledger,
        gateway=gateway,
        events=events,
    )


@dataclass
class World:
    advertiser: User
    owner: User
    channel: Channel
    deal: Deal


@pytest.fixture
def world(session) -> World:
    """Advertiser, channel owner, their channel and one CREATED deal."""
    advertiser = User(id=1, telegram_id=111, username="adv", locale="en", wallet_address="EQAdvertiser")
    owner = User(id=2, telegram_id=222, username="own", locale="ru", wallet_address="EQOwner")
    channel = Channel(id=1, telegram_channel_id=-1001234567890, username="testchannel", title="Test", owner_id=2)
    for obj in (advertiser, owner, channel):
        session.add(obj)
    deal = make_deal(session)
    return World(advertiser=advertiser, owner=owner, channel=channel, deal=deal)


def make_deal(session: FakeSession, status: str = "CREATED", **overrides) -> Deal:
    now = utcnow()
    values = dict(
        reference_code=f"AD-TEST-{len(session.all(Deal)) + 1}",
        status=status,
        advertiser_id=1,
        owner_id=2,
        channel_id=1,
        price=1_000_000_000,
        platform_fee=50_000_000,
        total_amount=1_050_000_000,
        duration_hours=24,
        is_permanent=False,
        timeout_minutes=1440,
        last_activity_at=now,
    )
    values.update(overrides)
    deal = Deal(**values)
    session.add(deal)
    return deal


def make_escrow(session: FakeSession, deal: Deal, status: str = EscrowStatus.FUNDED, **overrides) -> Escrow:
    values = dict(
        deal_id=deal.id,
        contract_address=f"EQEscrow{deal.id}",
        advertiser_wallet="EQAdvertiser",
        owner_wallet="EQOwner",
        platform_wallet="EQPlatform",
        amount=deal.total_amount - deal.platform_fee,
        platform_fee=deal.platform_fee,
        total_amount=deal.total_amount,
        status=status,
        deployed=True,
        expires_at=utcnow() + timedelta(hours=24),
    )
    values.update(overrides)
    escrow = Escrow(**values)
    session.add(escrow)
    return escrow


def make_post(session: FakeSession, deal: Deal, status: str = PostStatus.SCHEDULED, **overrides) -> PublishedPost:
    values = dict(
        deal_id=deal.id,
        channel_id=deal.channel_id,
        content="Buy our product",
        status=status,
        scheduled_for=utcnow() + timedelta(hours=1),
    )
    values.update(overrides)
    post = PublishedPost(**values)
    session.add(post)
    return post


@pytest.fixture
def make(session):
    """Row builders bound to the test session: ``make.deal(...)``, ``make.escrow(deal)``, ``make.post(deal)``."""
    return SimpleNamespace(
        deal=partial(make_deal, session),
        escrow=partial(make_escrow, session),
        post=partial(make_post, session),
    )
