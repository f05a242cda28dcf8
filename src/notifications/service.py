from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

from sqlalchemy.orm import Session

from src.config import get_settings
from src.models.db import new_session
from src.models.notification import EnqueueResult, NotificationOptions, ReconciliationSummary, RegistrationResult
from src.notifications.dispatch_queue import DispatchQueue, NotificationTask
from src.notifications.errors import INVALID_TOKEN_FORMAT, NO_VALID_TOKENS, USER_NOT_FOUND
from src.notifications.gateway import PushGatewayClient, build_gateway_client
from src.notifications.receipt_ledger import ReceiptLedger
from src.notifications.reconciler import ReceiptReconciler
from src.services.receipt_reconciliation_scheduler import ReceiptReconciliationScheduler
from src.storage.repository import SqlUserDirectory, UserDirectory
from src.utils.time import Clock, SystemClock
from src.utils.validation import is_valid_push_token

logger = logging.getLogger(__name__)


class PushNotificationService:
    def __init__(
        self,
        directory: UserDirectory | None = None,
        gateway: PushGatewayClient | None = None,
        clock: Clock | None = None,
        session_factory: Callable[[], Session] | None = None,
        autostart_queue: bool = True,
    ) -> None:
        settings = get_settings()
        self.clock = clock or SystemClock()
        self.session_factory = session_factory or new_session
        self.directory = directory or SqlUserDirectory(self.session_factory)
        self.gateway = gateway or build_gateway_client(settings)
        self.ledger = ReceiptLedger(clock=self.clock)
        self.queue = DispatchQueue(
            self.gateway,
            self.ledger,
            clock=self.clock,
            session_factory=self.session_factory,
            autostart=autostart_queue,
        )
        self.reconciler = ReceiptReconciler(
            self.gateway,
            self.ledger,
            self.directory,
            clock=self.clock,
            session_factory=self.session_factory,
        )
        self.scheduler = ReceiptReconciliationScheduler(self.reconciler, clock=self.clock)

    def register_token(self, user_id: str, token: str) -> RegistrationResult:
        if not is_valid_push_token(token):
            return RegistrationResult(success=False, error=INVALID_TOKEN_FORMAT, message="Invalid push token format")

        updated = self.directory.update_user(user_id, {"push_token": token, "updated_at": self.clock.now()})
        if not updated:
            return RegistrationResult(success=False, error=USER_NOT_FOUND, message=f"User {user_id} not found")

        logger.info("Push token registered", extra={"user_id": user_id})
        return RegistrationResult(success=True, message="Push token registered successfully")

    def enqueue_notification(
        self,
        tokens: Iterable[str],
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
        options: NotificationOptions | None = None,
    ) -> EnqueueResult:
        recipients = list(dict.fromkeys(token for token in tokens if is_valid_push_token(token)))
        if not recipients:
            return EnqueueResult(success=False, error=NO_VALID_TOKENS, message="No valid push tokens provided")

        now = self.clock.now()
        payload = {**(data or {}), "timestamp": now.isoformat()}
        self.queue.enqueue(
            NotificationTask(
                recipients=recipients,
                title=title,
                body=body,
                payload=payload,
                options=options or NotificationOptions(),
                enqueued_at=now,
            )
        )
        return EnqueueResult(
            success=True,
            queued_count=len(recipients),
            message=f"{len(recipients)} notifications queued for delivery",
        )

    def tokens_for_users(self, user_ids: Iterable[str], exclude_user_id: str | None = None) -> list[str]:
        tokens: list[str] = []
        for user_id in dict.fromkeys(user_ids):
            if user_id == exclude_user_id:
                continue
            user = self.directory.get_user(user_id)
            token = (user or {}).get("push_token")
            if token and is_valid_push_token(token) and token not in tokens:
                tokens.append(token)
        return tokens

    def check_receipts(self) -> ReconciliationSummary:
        return self.reconciler.run_once()

    def start_reconciliation(self) -> None:
        self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()
