from __future__ import annotations

from datetime import timedelta
from http.client import RemoteDisconnected

from sqlalchemy import select

import src.notifications.gateway as gateway_module
from src.models.notification import DeliveryReceipt
from src.models.tables import PushReceipt
from src.notifications.gateway import ExpoPushGatewayClient
from src.notifications.receipt_ledger import ReceiptLedger
from src.notifications.reconciler import ReceiptReconciler
from src.storage.repository import InMemoryUserDirectory

TOKEN_U1 = "ExponentPushToken[user-one]"
TOKEN_U2 = "ExponentPushToken[user-two]"


def _build(gateway, clock, session_factory, directory=None, **kwargs):
    ledger = ReceiptLedger(clock=clock, initial_delay_minutes=15)
    directory = directory or InMemoryUserDirectory()
    kwargs.setdefault("max_retries", 3)
    kwargs.setdefault("retention_hours", 24)
    reconciler = ReceiptReconciler(gateway, ledger, directory, clock=clock, session_factory=session_factory, **kwargs)
    return ledger, reconciler


def _seed(ledger, session_factory, tickets: dict[str, str | None], notification_type: str = "new_post") -> None:
    with session_factory() as db:
        for ticket_id, token in tickets.items():
            ledger.insert(db, ticket_id, notification_type, token)


def _records(session_factory) -> dict[str, PushReceipt]:
    with session_factory() as db:
        return {row.ticket_id: row for row in db.execute(select(PushReceipt)).scalars()}


def test_delivered_receipts_close_out_records(gateway, clock, session_factory) -> None:
    ledger, reconciler = _build(gateway, clock, session_factory)
    _seed(ledger, session_factory, {"t1": TOKEN_U1, "t2": TOKEN_U2})
    gateway.receipts = {"t1": DeliveryReceipt(status="ok"), "t2": DeliveryReceipt(status="ok")}
    clock.advance(16 * 60)

    summary = reconciler.run_once()

    records = _records(session_factory)
    assert summary.checked == 2
    assert summary.delivered == 2
    assert {r.status for r in records.values()} == {"delivered"}
    assert records["t1"].delivered_at == clock.now()


def test_records_are_not_queried_before_initial_delay(gateway, clock, session_factory) -> None:
    ledger, reconciler = _build(gateway, clock, session_factory)
    _seed(ledger, session_factory, {"t1": TOKEN_U1})
    clock.advance(10 * 60)

    summary = reconciler.run_once()

    assert summary.checked == 0
    assert gateway.query_calls == []
    assert _records(session_factory)["t1"].status == "pending"


def test_error_receipt_is_terminal_and_keeps_details(gateway, clock, session_factory) -> None:
    directory = InMemoryUserDirectory()
    directory.add_user("u1", TOKEN_U1)
    ledger, reconciler = _build(gateway, clock, session_factory, directory=directory)
    _seed(ledger, session_factory, {"t1": TOKEN_U1})
    gateway.receipts = {"t1": DeliveryReceipt(status="error", message="Message too big", details={"error": "MessageTooBig"})}
    clock.advance(16 * 60)

    summary = reconciler.run_once()

    record = _records(session_factory)["t1"]
    assert summary.errored == 1
    assert record.status == "error"
    assert record.error_message == "Message too big"
    assert record.error_details == {"error": "MessageTooBig"}
    assert directory.get_user("u1")["push_token"] == TOKEN_U1

    clock.advance(60 * 60)
    reconciler.run_once()
    assert gateway.query_calls == [["t1"]]


def test_device_not_registered_clears_owner_token(gateway, clock, session_factory) -> None:
    directory = InMemoryUserDirectory()
    directory.add_user("u1", TOKEN_U1)
    directory.add_user("u2", TOKEN_U2)
    ledger, reconciler = _build(gateway, clock, session_factory, directory=directory)
    _seed(ledger, session_factory, {"x": TOKEN_U1, "y": TOKEN_U2})
    gateway.receipts = {
        "x": DeliveryReceipt(status="error", message="not registered", details={"error": "DeviceNotRegistered"}),
        "y": DeliveryReceipt(status="ok"),
    }
    clock.advance(16 * 60)

    summary = reconciler.run_once()

    assert summary.tokens_cleared == 1
    assert directory.get_user("u1")["push_token"] is None
    assert directory.get_user("u2")["push_token"] == TOKEN_U2


def test_query_failure_defers_whole_chunk_without_closing_records(gateway, clock, session_factory) -> None:
    ledger, reconciler = _build(gateway, clock, session_factory)
    tickets = {f"t{i}": TOKEN_U1 for i in range(5)}
    _seed(ledger, session_factory, tickets)
    gateway.failing_query_attempts = {1}
    clock.advance(16 * 60)

    summary = reconciler.run_once()

    records = _records(session_factory)
    assert summary.deferred == 5
    assert len(records) == 5
    for record in records.values():
        assert record.status == "pending"
        assert record.retry_count == 1
        assert record.check_after == clock.now() + timedelta(minutes=1)


def test_dropped_connection_defers_chunk_instead_of_raising(monkeypatch, clock, session_factory) -> None:
    def dropped_urlopen(req, timeout):
        raise RemoteDisconnected("Remote end closed connection without response")

    monkeypatch.setattr(gateway_module, "urlopen", dropped_urlopen)
    ledger, reconciler = _build(ExpoPushGatewayClient(), clock, session_factory)
    _seed(ledger, session_factory, {f"t{i}": TOKEN_U1 for i in range(5)})
    clock.advance(16 * 60)

    summary = reconciler.run_once()

    records = _records(session_factory)
    assert summary.deferred == 5
    assert sorted(record.retry_count for record in records.values()) == [1] * 5
    assert {record.status for record in records.values()} == {"pending"}


def test_retry_count_never_exceeds_maximum(gateway, clock, session_factory) -> None:
    ledger, reconciler = _build(gateway, clock, session_factory, max_retries=3)
    _seed(ledger, session_factory, {"t1": TOKEN_U1})
    gateway.failing_query_attempts = set(range(1, 50))
    clock.advance(16 * 60)

    seen: list[int] = []
    for _ in range(6):
        reconciler.run_once()
        seen.append(_records(session_factory)["t1"].retry_count)
        clock.advance(10 * 60)

    assert seen == sorted(seen)
    assert max(seen) == 3
    assert gateway.query_attempts == 3
    assert _records(session_factory)["t1"].status == "pending"


def test_unanswered_tickets_stay_pending(gateway, clock, session_factory) -> None:
    ledger, reconciler = _build(gateway, clock, session_factory)
    _seed(ledger, session_factory, {"t1": TOKEN_U1, "t2": TOKEN_U2})
    gateway.receipts = {"t1": DeliveryReceipt(status="ok")}
    clock.advance(16 * 60)

    reconciler.run_once()

    records = _records(session_factory)
    assert records["t1"].status == "delivered"
    assert records["t2"].status == "pending"
    assert records["t2"].retry_count == 0


def test_cleanup_runs_when_nothing_is_due(gateway, clock, session_factory) -> None:
    ledger, reconciler = _build(gateway, clock, session_factory)
    _seed(ledger, session_factory, {"old-ok": TOKEN_U1, "old-err": TOKEN_U1})
    gateway.receipts = {
        "old-ok": DeliveryReceipt(status="ok"),
        "old-err": DeliveryReceipt(status="error", message="rate", details={"error": "MessageRateExceeded"}),
    }
    clock.advance(16 * 60)
    reconciler.run_once()

    clock.advance(24 * 3600)
    _seed(ledger, session_factory, {"fresh": TOKEN_U2})
    summary = reconciler.run_once()

    assert summary.checked == 0
    assert summary.purged == 2
    assert set(_records(session_factory)) == {"fresh"}


def test_exhausted_records_are_still_purged_by_age(gateway, clock, session_factory) -> None:
    ledger, reconciler = _build(gateway, clock, session_factory, max_retries=1)
    _seed(ledger, session_factory, {"orphan": TOKEN_U1})
    gateway.failing_query_attempts = {1}
    clock.advance(16 * 60)
    reconciler.run_once()

    clock.advance(23 * 3600)
    assert reconciler.run_once().purged == 0
    assert "orphan" in _records(session_factory)

    clock.advance(2 * 3600)
    assert reconciler.run_once().purged == 1
    assert _records(session_factory) == {}


def test_concurrent_pass_is_skipped(gateway, clock, session_factory) -> None:
    ledger, reconciler = _build(gateway, clock, session_factory)
    _seed(ledger, session_factory, {"t1": TOKEN_U1})
    gateway.receipts = {"t1": DeliveryReceipt(status="ok")}
    nested = []
    gateway.on_query = lambda: nested.append(reconciler.run_once())
    clock.advance(16 * 60)

    summary = reconciler.run_once()

    assert summary.delivered == 1
    assert [s.skipped for s in nested] == [True]
