from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.config import settings
from src.models.db import new_session
from src.models.notification import DeliveryTicket, NotificationOptions, PushMessage
from src.notifications.errors import GatewaySendFailure
from src.notifications.gateway import PushGatewayClient
from src.notifications.receipt_ledger import ReceiptLedger
from src.utils.time import Clock, SystemClock

logger = logging.getLogger(__name__)

RATE_WINDOW_SECONDS = 1.0


@dataclass
class NotificationTask:
    recipients: list[str]
    title: str
    body: str
    payload: dict[str, Any] = field(default_factory=dict)
    options: NotificationOptions = field(default_factory=NotificationOptions)
    retry_count: int = 0
    enqueued_at: datetime | None = None
    # Monotonic time before which a retried task is not eligible for a flush.
    not_before: float = 0.0

    @property
    def notification_type(self) -> str:
        return str(self.payload.get("type") or "unknown")

    def messages(self) -> list[PushMessage]:
        opts = self.options
        return [
            PushMessage(
                to=token,
                title=self.title,
                body=self.body,
                data=self.payload,
                sound=opts.sound,
                priority=opts.priority,
                channel_id=opts.channel_id,
                ttl=opts.ttl,
                expiration=opts.expiration,
                badge=opts.badge,
                mutable_content=opts.mutable_content,
                category_id=opts.category_id,
            )
            for token in self.recipients
        ]


class DispatchQueue:
    """FIFO buffer drained by a single consumer under a per-second recipient ceiling.

    ``enqueue`` only appends under the buffer lock and, when nothing is
    draining yet, hands off to a daemon thread. Each flush starts at least one
    second after the previous flush finished and carries at most
    ``max_per_second`` recipients, splitting a task across flushes when it
    does not fit. Send failures requeue the unsent recipients with
    exponential backoff until ``max_send_retries`` is reached.
    """

    def __init__(
        self,
        gateway: PushGatewayClient,
        ledger: ReceiptLedger,
        *,
        max_per_second: int | None = None,
        max_send_retries: int | None = None,
        retry_base_seconds: float | None = None,
        clock: Clock | None = None,
        session_factory: Callable[[], Session] | None = None,
        autostart: bool = True,
    ) -> None:
        self.gateway = gateway
        self.ledger = ledger
        self.max_per_second = max(1, settings.push_max_per_second if max_per_second is None else max_per_second)
        self.max_send_retries = max(0, settings.push_max_send_retries if max_send_retries is None else max_send_retries)
        self.retry_base_seconds = settings.push_retry_base_seconds if retry_base_seconds is None else retry_base_seconds
        self.clock = clock or SystemClock()
        self.session_factory = session_factory or new_session
        self.autostart = autostart

        self._buffer: deque[NotificationTask] = deque()
        self._lock = threading.Lock()
        self._processing = False
        self._last_flush: float | None = None
        self._thread: threading.Thread | None = None

    @property
    def is_processing(self) -> bool:
        with self._lock:
            return self._processing

    @property
    def pending_recipients(self) -> int:
        with self._lock:
            return sum(len(task.recipients) for task in self._buffer)

    def enqueue(self, task: NotificationTask) -> None:
        if not task.recipients:
            return
        if task.enqueued_at is None:
            task.enqueued_at = self.clock.now()
        with self._lock:
            self._buffer.append(task)
            if not self.autostart or self._processing:
                return
            self._processing = True
        self._thread = threading.Thread(target=self._run_background, name="push-dispatch-queue", daemon=True)
        self._thread.start()

    def drain(self) -> int:
        """Drain the buffer in the calling thread and return the number of flushes.

        Returns 0 straight away when another drain cycle is already active.
        """
        with self._lock:
            if self._processing:
                return 0
            self._processing = True
        return self._drain_claimed()

    def _run_background(self) -> None:
        try:
            flushes = self._drain_claimed()
            logger.debug("Push dispatch drain finished", extra={"flushes": flushes})
        except Exception as exc:
            logger.exception("Push dispatch drain failed", extra={"error": str(exc)})

    def _drain_claimed(self) -> int:
        flushes = 0
        try:
            while True:
                with self._lock:
                    # Release the flag under the same lock enqueue checks it with.
                    if not self._buffer:
                        self._processing = False
                        return flushes
                    wait = self._seconds_until_eligible_locked()
                if wait > 0:
                    self.clock.sleep(wait)
                    continue

                self._wait_for_rate_window()
                segments = self._take_flush()
                if not segments:
                    continue
                for segment in segments:
                    self._send_segment(segment)
                self._last_flush = self.clock.monotonic()
                flushes += 1
        except BaseException:
            with self._lock:
                self._processing = False
            raise

    def _seconds_until_eligible_locked(self) -> float:
        now = self.clock.monotonic()
        earliest = min(task.not_before for task in self._buffer)
        return max(0.0, earliest - now)

    def _wait_for_rate_window(self) -> None:
        if self._last_flush is None:
            return
        elapsed = self.clock.monotonic() - self._last_flush
        if elapsed < RATE_WINDOW_SECONDS:
            self.clock.sleep(RATE_WINDOW_SECONDS - elapsed)

    def _take_flush(self) -> list[NotificationTask]:
        with self._lock:
            now = self.clock.monotonic()
            budget = self.max_per_second
            segments: list[NotificationTask] = []
            kept: deque[NotificationTask] = deque()
            for task in self._buffer:
                if budget <= 0 or task.not_before > now:
                    kept.append(task)
                    continue
                if len(task.recipients) <= budget:
                    segments.append(task)
                    budget -= len(task.recipients)
                    continue
                segments.append(replace(task, recipients=task.recipients[:budget]))
                task.recipients = task.recipients[budget:]
                kept.append(task)
                budget = 0
            self._buffer = kept
            return segments

    def _send_segment(self, segment: NotificationTask) -> None:
        try:
            tickets = self.gateway.send_batch(segment.messages())
        except GatewaySendFailure as exc:
            accepted = exc.accepted[: len(segment.recipients)]
            self._record_tickets(segment, segment.recipients[: len(accepted)], accepted)
            self._retry_or_drop(segment, segment.recipients[len(accepted) :], exc)
            return
        self._record_tickets(segment, segment.recipients, tickets)

    def _record_tickets(self, segment: NotificationTask, recipients: list[str], tickets: list[DeliveryTicket]) -> None:
        entries: list[tuple[str, str | None]] = []
        for token, ticket in zip(recipients, tickets):
            if ticket.status == "ok" and ticket.id:
                entries.append((ticket.id, token))
                continue
            logger.warning(
                "Push ticket rejected by gateway",
                extra={"token": token, "error_code": ticket.error_code, "error_message": ticket.message},
            )
        if not entries:
            return

        db: Session | None = None
        try:
            db = self.session_factory()
            self.ledger.record_tickets(db, entries, segment.notification_type)
        except SQLAlchemyError as exc:
            # Already accepted by the gateway, so these are not resent.
            logger.exception(
                "Failed to store push tickets for receipt checking",
                extra={"ticket_ids": [ticket_id for ticket_id, _ in entries], "error": str(exc)},
            )
        finally:
            if db is not None:
                db.close()

    def _retry_or_drop(self, segment: NotificationTask, remaining: list[str], exc: GatewaySendFailure) -> None:
        if not remaining:
            return
        if segment.retry_count >= self.max_send_retries:
            logger.error(
                "Dropping push task after exhausting send retries",
                extra={"recipients": len(remaining), "retry_count": segment.retry_count, "error": str(exc)},
            )
            return

        delay = (2 ** segment.retry_count) * self.retry_base_seconds
        retry = replace(
            segment,
            recipients=list(remaining),
            retry_count=segment.retry_count + 1,
            not_before=self.clock.monotonic() + delay,
        )
        logger.warning(
            "Push send failed, requeueing task",
            extra={"recipients": len(remaining), "retry_count": retry.retry_count, "delay_seconds": delay, "error": str(exc)},
        )
        with self._lock:
            self._buffer.append(retry)
