"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import time
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest

from sms_scheduler.scheduler.dispatcher import Dispatcher
from sms_scheduler.scheduler.engine import SchedulerEngine
from sms_scheduler.scheduler.store import TaskStore
from sms_scheduler.sms.gateway import SendReceipt

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable
    from pathlib import Path


class FakeGateway:
    """Scripted SmsGateway.

    Each send consumes the next entry of *outcomes*: an exception instance is
    raised, anything else is ignored.  Once the script runs out every send
    succeeds.
    """

    def __init__(self, outcomes: list | None = None, *, delay: float = 0.0) -> None:
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.calls: list[dict] = []
        self.closed = False

    @property
    def name(self) -> str:
        return "fake"

    async def send(
        self, recipient: str, body: str, dedupe_key: str, *, timeout: float
    ) -> SendReceipt:
        self.calls.append(
            {"recipient": recipient, "body": body, "dedupe_key": dedupe_key, "timeout": timeout}
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
        return SendReceipt(provider_ref=f"msg-{len(self.calls)}")

    async def close(self) -> None:
        self.closed = True

    def sends_for(self, dedupe_key: str) -> int:
        return sum(1 for call in self.calls if call["dedupe_key"] == dedupe_key)


class FakeClock:
    """Settable clock for components that take ``clock=``."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2025, 6, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path: Path) -> TaskStore:
    """Create a TaskStore backed by a temp database."""
    return TaskStore(tmp_path / "test.db")


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def dispatcher(store: TaskStore, gateway: FakeGateway) -> Dispatcher:
    return Dispatcher(
        store,
        gateway,
        max_attempts=3,
        backoff_base=0.01,
        backoff_cap=0.05,
        backoff_jitter=0.0,
        send_timeout=1.0,
        store_retry_attempts=2,
        store_retry_delay=0.01,
    )


@pytest.fixture
async def engine(store: TaskStore, dispatcher: Dispatcher) -> AsyncIterator[SchedulerEngine]:
    eng = SchedulerEngine(store, dispatcher, worker_count=2, store_retry_delay=0.05)
    await eng.start()
    yield eng
    await eng.stop()


@pytest.fixture
def eventually() -> Callable:
    """Poll an async or sync predicate until it is truthy or the timeout passes."""

    async def _eventually(predicate: Callable, timeout: float = 3.0, interval: float = 0.02):
        deadline = time.monotonic() + timeout
        while True:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return result
            if time.monotonic() > deadline:
                msg = "Condition not met within timeout"
                raise AssertionError(msg)
            await asyncio.sleep(interval)

    return _eventually
