"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import asyncio
import json
import time
from decimal import Decimal
from pathlib import Path
from types import SimpleNamespace
from typing import Callable, List, Optional

import pytest

from multichat.chat_service import ChatService
from multichat.config import Settings
from multichat.credit_ledger import SqlCreditLedger
from multichat.db_connection import DbConnection
from multichat.entities import ROLE_VIEWER
from multichat.idempotency_cache import IdempotencyCache
from multichat.message_cipher import MessageCipher


# -----------------------
# fakes
# -----------------------

class FakeChatLlm:
    """One client per job, scripted by its factory."""

    def __init__(self, factory: "FakeChatLlmFactory", model_name: str, is_nsfw: bool):
        self.factory = factory
        self.model_name = model_name
        self.is_nsfw = is_nsfw
        self.last_usage = None

    def invoke(self, messages, *, retries: int = 3) -> str:
        f = self.factory
        f.calls.append({"model": self.model_name, "is_nsfw": self.is_nsfw, "messages": list(messages), "retries": retries})
        if f.delay:
            time.sleep(f.delay)
        if f.fail_remaining > 0:
            f.fail_remaining -= 1
            raise f.error("provider unavailable")
        reply = f.replies.pop(0) if f.replies else f.default_reply
        self.last_usage = {"accrued_cost": f.cost}
        return reply

    def get_accrued_cost(self) -> Decimal:
        return Decimal(self.last_usage["accrued_cost"]) if self.last_usage else Decimal("0")

    def get_accrued_usage(self) -> dict:
        return dict(self.last_usage or {})


class FakeChatLlmFactory:
    def __init__(self, default_reply: str = "Hello from the character.", cost: Decimal = Decimal("0.0500")):
        self.default_reply = default_reply
        self.replies: List[str] = []
        self.cost = cost
        self.fail_remaining = 0
        self.error = RuntimeError
        self.delay = 0.0
        self.calls: List[dict] = []

    def __call__(self, model_name: str, is_nsfw: bool) -> FakeChatLlm:
        return FakeChatLlm(self, model_name, is_nsfw)


class FakeSummaryLlm:
    def __init__(self, owner: "FakeSummaryFactory"):
        self.owner = owner

    def invoke(self, prompt: str, *, retries: int = 3) -> str:
        self.owner.prompts.append(prompt)
        if self.owner.fail:
            raise RuntimeError("summarizer unavailable")
        return self.owner.response

    def get_accrued_usage(self) -> dict:
        return {}


class FakeSummaryFactory:
    def __init__(self):
        self.prompts: List[str] = []
        self.fail = False
        self.response = json.dumps(
            {
                "summary": "Alice and Bob explored the ruins with Aria.",
                "keyEvents": [{"description": "Found the map", "participants": ["Alice", "Aria"], "importance": "high"}],
                "characterStates": {"Aria": "curious"},
                "narrativeFlags": ["the map is cursed"],
            }
        )

    def __call__(self) -> FakeSummaryLlm:
        return FakeSummaryLlm(self)


class SpyLedger(SqlCreditLedger):
    """Real SQL ledger that records every charge and can be told to fail."""

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.charges: List[dict] = []
        self.fail_charges = 0

    def charge(self, user_id, amount, reason, idempotency_key=None):
        self.charges.append({"user_id": user_id, "amount": Decimal(amount), "idempotency_key": idempotency_key})
        if self.fail_charges > 0:
            self.fail_charges -= 1
            raise ConnectionError("ledger unavailable")
        return super().charge(user_id, amount, reason, idempotency_key=idempotency_key)


class EventRecorder:
    """A spy connection subscribed straight to the hub."""

    def __init__(self, hub, conversation_id: str, connection_id: str = "spy-connection"):
        self.channel = hub.subscribe(connection_id, conversation_id)
        self.events = []

    def drain(self):
        self.events.extend(self.channel.drain())
        return self.events

    def types(self) -> List[str]:
        return [e.type for e in self.drain()]

    def of_type(self, event_type: str):
        return [e for e in self.drain() if e.type == event_type]


# -----------------------
# fixtures
# -----------------------

@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'chat.db'}",
        message_encryption_key=MessageCipher.generate_key(),
        compression_threshold=50,
        compression_retry_gap=10,
        response_max_attempts=3,
        response_backoff_seconds=0.0,
        response_timeout_seconds=5.0,
        worker_id="test-worker",
    )


@pytest.fixture
def session_factory(settings: Settings):
    db = DbConnection(settings.database_url)
    db.create_schema()
    yield db.build_db_session_factory()
    db.get_engine().dispose()


@pytest.fixture
def chat_llm() -> FakeChatLlmFactory:
    return FakeChatLlmFactory()


@pytest.fixture
def summary_llm() -> FakeSummaryFactory:
    return FakeSummaryFactory()


@pytest.fixture
def ledger(session_factory) -> SpyLedger:
    return SpyLedger(session_factory)


@pytest.fixture
def service(settings, session_factory, chat_llm, summary_llm, ledger) -> ChatService:
    return ChatService(
        settings,
        session_factory,
        ledger=ledger,
        chat_llm_factory=chat_llm,
        summary_llm_factory=summary_llm,
        idempotency_cache=IdempotencyCache(),
    )


@pytest.fixture
def group(service: ChatService) -> SimpleNamespace:
    """A (owner), B (member), C (viewer) and one character, Aria."""
    a = service.create_user("alice", "Alice", credits=Decimal("100"))
    b = service.create_user("bob", "Bob", credits=Decimal("100"))
    c = service.create_user("carol", "Carol", credits=Decimal("100"))
    aria = service.create_character("Aria", persona="A curious archaeologist.")
    conv = service.create_conversation(a["id"], title="Ruins", is_multi_user=True, max_users=4, character_ids=[aria["id"]])
    cid = conv["id"]

    service.invite(cid, a["id"], b["id"])
    service.join(cid, b["id"])
    service.invite(cid, a["id"], c["id"], role=ROLE_VIEWER)
    service.join(cid, c["id"])
    return SimpleNamespace(a=a["id"], b=b["id"], c=c["id"], aria=aria["id"], cid=cid)


@pytest.fixture
def record_events(service) -> Callable[..., EventRecorder]:
    def _make(conversation_id: str, connection_id: str = "spy-connection") -> EventRecorder:
        return EventRecorder(service.hub, conversation_id, connection_id)
    return _make


@pytest.fixture
def run_worker(service) -> Callable[..., int]:
    from worker_main import AppHost, AsyncGuard, CompressionApp, ResponseApp

    def _run(max_concurrent: int = 4) -> int:
        host = AppHost(service, [ResponseApp(service), CompressionApp(service)])
        guard = AsyncGuard(host, runner_id="test-worker", poll_interval=0.01, max_concurrent=max_concurrent)
        started = asyncio.run(guard.run_until_idle())
        service.pump_events()
        return started
    return _run
