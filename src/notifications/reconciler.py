from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import timedelta

from sqlalchemy.orm import Session

from src.config import settings
from src.models.db import new_session
from src.models.notification import ReconciliationSummary
from src.models.tables import PushReceipt
from src.notifications.errors import DEVICE_NOT_REGISTERED, GatewayQueryFailure
from src.notifications.gateway import PushGatewayClient, chunked
from src.notifications.receipt_ledger import ReceiptLedger
from src.storage.repository import UserDirectory
from src.utils.time import Clock, SystemClock

logger = logging.getLogger(__name__)


class ReceiptReconciler:
    """One pass over due ledger rows: ask the gateway, close out or defer, prune."""

    def __init__(
        self,
        gateway: PushGatewayClient,
        ledger: ReceiptLedger,
        directory: UserDirectory,
        *,
        max_retries: int | None = None,
        retention_hours: int | None = None,
        clock: Clock | None = None,
        session_factory: Callable[[], Session] | None = None,
    ) -> None:
        self.gateway = gateway
        self.ledger = ledger
        self.directory = directory
        self.max_retries = settings.receipt_max_retries if max_retries is None else max_retries
        hours = settings.receipt_retention_hours if retention_hours is None else retention_hours
        self.retention = timedelta(hours=max(0, hours))
        self.clock = clock or SystemClock()
        self.session_factory = session_factory or new_session
        self._lock = threading.Lock()
        self._running = False

    def run_once(self) -> ReconciliationSummary:
        with self._lock:
            if self._running:
                logger.info("Receipt reconciliation already in progress, skipping")
                return ReconciliationSummary(skipped=True)
            self._running = True

        db = self.session_factory()
        try:
            return self._reconcile(db)
        finally:
            db.close()
            with self._lock:
                self._running = False

    def _reconcile(self, db: Session) -> ReconciliationSummary:
        summary = ReconciliationSummary()
        now = self.clock.now()
        due = self.ledger.due_for_check(db, now=now, limit=self.gateway.max_receipt_batch, max_retries=self.max_retries)

        if not due:
            summary.purged = self.ledger.cleanup_expired(db, now - self.retention)
            if summary.purged:
                logger.info("Purged expired push receipts", extra={"purged": summary.purged})
            return summary

        summary.checked = len(due)
        logger.info("Checking push receipts", extra={"count": len(due)})
        by_ticket: dict[str, PushReceipt] = {record.ticket_id: record for record in due}
        stale_tokens: set[str] = set()

        for chunk in chunked(list(by_ticket), self.gateway.max_receipt_batch):
            try:
                receipts = self.gateway.query_receipts(chunk)
            except GatewayQueryFailure as exc:
                logger.warning("Push receipt query failed, deferring chunk", extra={"count": len(chunk), "error": str(exc)})
                for ticket_id in chunk:
                    self.ledger.defer(by_ticket[ticket_id], now)
                summary.deferred += len(chunk)
                db.commit()
                continue

            for ticket_id, receipt in receipts.items():
                record = by_ticket.get(ticket_id)
                if record is None:
                    continue
                if receipt.status == "error":
                    logger.warning(
                        "Push notification delivery failed",
                        extra={"ticket_id": ticket_id, "error_code": receipt.error_code, "error_message": receipt.message},
                    )
                    self.ledger.mark_error(record, receipt.message, receipt.details)
                    summary.errored += 1
                    if receipt.error_code == DEVICE_NOT_REGISTERED and record.device_token:
                        stale_tokens.add(record.device_token)
                elif receipt.status == "ok":
                    self.ledger.mark_delivered(record, now)
                    summary.delivered += 1
            db.commit()

        if stale_tokens:
            summary.tokens_cleared = self._clear_tokens(stale_tokens)

        logger.info("Receipt check complete", extra=summary.model_dump())
        return summary

    def _clear_tokens(self, tokens: set[str]) -> int:
        cleared = 0
        now = self.clock.now()
        for token in sorted(tokens):
            for user_id in self.directory.find_user_ids_by_token(token):
                if self.directory.update_user(user_id, {"push_token": None, "updated_at": now}):
                    cleared += 1
                    logger.info("Removed unregistered push token", extra={"user_id": user_id})
        return cleared
