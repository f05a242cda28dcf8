from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.config import settings
from src.models.tables import PushReceipt
from src.utils.time import Clock, SystemClock

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_DELIVERED = "delivered"
STATUS_ERROR = "error"


class ReceiptLedger:
    """Durable record of every ticket the gateway accepted.

    Rows are created pending by the dispatch queue and only ever moved forward
    by the reconciler; ``ticket_id`` is unique so inserts are idempotent.
    """

    def __init__(self, clock: Clock | None = None, initial_delay_minutes: int | None = None) -> None:
        self.clock = clock or SystemClock()
        delay = settings.receipt_check_delay_minutes if initial_delay_minutes is None else initial_delay_minutes
        self.initial_delay = timedelta(minutes=max(0, delay))
        self._insert_lock = threading.Lock()

    def insert(self, db: Session, ticket_id: str, notification_type: str, device_token: str | None = None) -> bool:
        with self._insert_lock:
            exists = db.execute(select(PushReceipt.id).where(PushReceipt.ticket_id == ticket_id)).scalar_one_or_none()
            if exists is not None:
                return False
            now = self.clock.now()
            db.add(
                PushReceipt(
                    ticket_id=ticket_id,
                    notification_type=notification_type or "unknown",
                    device_token=device_token,
                    status=STATUS_PENDING,
                    created_at=now,
                    check_after=now + self.initial_delay,
                    retry_count=0,
                )
            )
            try:
                db.commit()
            except IntegrityError:
                # Another writer (process) stored the same ticket first.
                db.rollback()
                return False
            return True

    def record_tickets(self, db: Session, entries: Iterable[tuple[str, str | None]], notification_type: str) -> int:
        inserted = 0
        for ticket_id, device_token in entries:
            if self.insert(db, ticket_id, notification_type, device_token):
                inserted += 1
        if inserted:
            logger.info("Stored tickets for receipt checking", extra={"count": inserted, "type": notification_type})
        return inserted

    def get(self, db: Session, ticket_id: str) -> PushReceipt | None:
        return db.execute(select(PushReceipt).where(PushReceipt.ticket_id == ticket_id)).scalar_one_or_none()

    def due_for_check(self, db: Session, now: datetime, limit: int, max_retries: int) -> list[PushReceipt]:
        return db.execute(
            select(PushReceipt)
            .where(
                PushReceipt.status == STATUS_PENDING,
                PushReceipt.check_after <= now,
                PushReceipt.retry_count < max_retries,
            )
            .order_by(PushReceipt.created_at.asc(), PushReceipt.id.asc())
            .limit(max(1, limit))
        ).scalars().all()

    def mark_delivered(self, record: PushReceipt, now: datetime) -> None:
        record.status = STATUS_DELIVERED
        record.delivered_at = now

    def mark_error(self, record: PushReceipt, message: str | None, details: dict[str, Any] | None) -> None:
        record.status = STATUS_ERROR
        record.error_message = message
        record.error_details = details

    def defer(self, record: PushReceipt, now: datetime) -> None:
        backoff = timedelta(minutes=2 ** record.retry_count)
        record.retry_count = record.retry_count + 1
        record.check_after = now + backoff

    def cleanup_expired(self, db: Session, cutoff: datetime) -> int:
        result = db.execute(delete(PushReceipt).where(PushReceipt.created_at < cutoff))
        db.commit()
        return int(result.rowcount or 0)
