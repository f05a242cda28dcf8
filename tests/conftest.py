from __future__ import annotations

from collections.abc import Callable, Generator
from dataclasses import replace
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from src.models.notification import DeliveryReceipt, DeliveryTicket, PushMessage
from src.notifications.errors import GatewayQueryFailure, GatewaySendFailure
from src.notifications.gateway import PushGatewayClient


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 1, 5, 12, 0, 0)) -> None:
        self._now = start
        self._mono = 1000.0
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._mono

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)

    def advance(self, seconds: float) -> None:
        if seconds > 0:
            self._mono += seconds
            self._now += timedelta(seconds=seconds)


class ScriptedGateway(PushGatewayClient):
    name = "scripted"

    def __init__(self, clock: FakeClock | None = None, max_send_batch: int = 100, max_receipt_batch: int = 1000) -> None:
        super().__init__(max_send_batch=max_send_batch, max_receipt_batch=max_receipt_batch)
        self.clock = clock
        self.send_attempts = 0
        self.query_attempts = 0
        self.failing_send_attempts: set[int] = set()
        self.failing_query_attempts: set[int] = set()
        self.send_calls: list[tuple[float | None, list[str]]] = []
        self.sent_messages: list[PushMessage] = []
        self.query_calls: list[list[str]] = []
        self.ticket_errors: dict[str, DeliveryTicket] = {}
        self.receipts: dict[str, DeliveryReceipt] = {}
        self.token_by_ticket: dict[str, str] = {}
        self.on_send: Callable[[], None] | None = None
        self.on_query: Callable[[], None] | None = None
        self._counter = 0

    def _send_chunk(self, messages: list[PushMessage]) -> list[DeliveryTicket]:
        self.send_attempts += 1
        if self.on_send:
            self.on_send()
        if self.send_attempts in self.failing_send_attempts:
            raise GatewaySendFailure("gateway unavailable")
        when = self.clock.monotonic() if self.clock else None
        self.send_calls.append((when, [message.to for message in messages]))
        self.sent_messages.extend(messages)

        tickets = []
        for message in messages:
            if message.to in self.ticket_errors:
                tickets.append(self.ticket_errors[message.to])
                continue
            self._counter += 1
            ticket_id = f"ticket-{self._counter}"
            self.token_by_ticket[ticket_id] = message.to
            tickets.append(DeliveryTicket(status="ok", id=ticket_id))
        return tickets

    def _query_chunk(self, ticket_ids: list[str]) -> dict[str, DeliveryReceipt]:
        self.query_attempts += 1
        self.query_calls.append(list(ticket_ids))
        if self.on_query:
            self.on_query()
        if self.query_attempts in self.failing_query_attempts:
            raise GatewayQueryFailure("receipts unavailable")
        return {ticket_id: self.receipts[ticket_id] for ticket_id in ticket_ids if ticket_id in self.receipts}

    def sent_tokens(self) -> list[str]:
        return [token for _, tokens in self.send_calls for token in tokens]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_gateway(clock) -> Callable[..., ScriptedGateway]:
    def _make(**kwargs) -> ScriptedGateway:
        return ScriptedGateway(clock=clock, **kwargs)

    return _make


@pytest.fixture
def gateway(make_gateway) -> ScriptedGateway:
    return make_gateway()


@pytest.fixture
def db_ctx(tmp_path, monkeypatch) -> Generator[dict, None, None]:
    import src.models.db as db_module
    from src.models import tables  # noqa: F401
    from src.models.db import Base

    db_file = tmp_path / "test.db"
    test_url = f"sqlite:///{db_file}"
    engine = create_engine(test_url, connect_args={"check_same_thread": False}, future=True)
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

    monkeypatch.setattr(db_module, "engine", engine, raising=False)
    monkeypatch.setattr(db_module, "SessionLocal", TestingSessionLocal, raising=False)

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)

    yield {"session_local": TestingSessionLocal, "engine": engine}

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_ctx):
    return db_ctx["session_local"]


@pytest.fixture
def scheduler_enabled(monkeypatch):
    import src.services.receipt_reconciliation_scheduler as scheduler_module

    def _set(enabled: bool) -> None:
        monkeypatch.setattr(
            scheduler_module,
            "settings",
            replace(scheduler_module.settings, receipt_scheduler_enabled=enabled),
        )

    return _set


@pytest.fixture
def api_ctx(db_ctx, clock, gateway, scheduler_enabled) -> Generator[dict, None, None]:
    from src.api.routes import get_push_service
    from src.app import app
    from src.notifications.service import PushNotificationService

    scheduler_enabled(False)
    service = PushNotificationService(
        gateway=gateway,
        clock=clock,
        session_factory=db_ctx["session_local"],
        autostart_queue=False,
    )
    app.dependency_overrides[get_push_service] = lambda: service

    with TestClient(app) as client:
        yield {
            "client": client,
            "service": service,
            "gateway": gateway,
            "clock": clock,
            "session_local": db_ctx["session_local"],
        }

    app.dependency_overrides.clear()
