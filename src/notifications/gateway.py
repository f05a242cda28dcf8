from __future__ import annotations

import json
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from http.client import HTTPException
from typing import Any, TypeVar
from urllib.request import Request, urlopen

from pydantic import ValidationError

from src.models.notification import DeliveryReceipt, DeliveryTicket, PushMessage
from src.notifications.errors import GatewayQueryFailure, GatewaySendFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SEND_BATCH = 100
DEFAULT_RECEIPT_BATCH = 1000


def chunked(items: Sequence[T], size: int) -> Iterator[list[T]]:
    step = max(1, size)
    for start in range(0, len(items), step):
        yield list(items[start : start + step])


class PushGatewayClient(ABC):
    """Batching boundary to an external push gateway.

    Subclasses talk to one chunk at a time; the public methods split oversized
    requests to the provider limits and stitch the answers back together in
    call order.
    """

    name: str = "base"

    def __init__(self, max_send_batch: int = DEFAULT_SEND_BATCH, max_receipt_batch: int = DEFAULT_RECEIPT_BATCH) -> None:
        self.max_send_batch = max(1, max_send_batch)
        self.max_receipt_batch = max(1, max_receipt_batch)

    @abstractmethod
    def _send_chunk(self, messages: list[PushMessage]) -> list[DeliveryTicket]:
        raise NotImplementedError

    @abstractmethod
    def _query_chunk(self, ticket_ids: list[str]) -> dict[str, DeliveryReceipt]:
        raise NotImplementedError

    def send_batch(self, messages: Sequence[PushMessage]) -> list[DeliveryTicket]:
        tickets: list[DeliveryTicket] = []
        for chunk in chunked(messages, self.max_send_batch):
            try:
                issued = self._send_chunk(chunk)
            except GatewaySendFailure as exc:
                raise GatewaySendFailure(str(exc), accepted=tickets) from exc
            if len(issued) != len(chunk):
                raise GatewaySendFailure(
                    f"{self.name} returned {len(issued)} tickets for {len(chunk)} messages",
                    accepted=tickets,
                )
            tickets.extend(issued)
            logger.info("Sent push notification chunk", extra={"gateway": self.name, "count": len(chunk)})
        return tickets

    def query_receipts(self, ticket_ids: Sequence[str]) -> dict[str, DeliveryReceipt]:
        receipts: dict[str, DeliveryReceipt] = {}
        for chunk in chunked(ticket_ids, self.max_receipt_batch):
            receipts.update(self._query_chunk(chunk))
        return receipts


class ExpoPushGatewayClient(PushGatewayClient):
    name = "expo"

    def __init__(
        self,
        access_token: str = "",
        base_url: str = "https://exp.host/--/api/v2",
        timeout_seconds: float = 10.0,
        max_send_batch: int = DEFAULT_SEND_BATCH,
        max_receipt_batch: int = DEFAULT_RECEIPT_BATCH,
    ) -> None:
        super().__init__(max_send_batch=max_send_batch, max_receipt_batch=max_receipt_batch)
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def _post(self, path: str, payload: Any) -> dict:
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "identity",
            "Content-Type": "application/json",
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        req = Request(
            f"{self.base_url}{path}",
            data=json.dumps(payload).encode("utf-8"),
            headers=headers,
            method="POST",
        )
        with urlopen(req, timeout=self.timeout_seconds) as resp:
            raw = resp.read().decode("utf-8", errors="replace")
        body = json.loads(raw) if raw else {}
        if not isinstance(body, dict):
            raise ValueError(f"Unexpected response body from {path}")
        return body

    def _send_chunk(self, messages: list[PushMessage]) -> list[DeliveryTicket]:
        try:
            body = self._post("/push/send", [message.to_wire() for message in messages])
            entries = body.get("data")
            if not isinstance(entries, list):
                raise ValueError(f"Missing ticket list in send response: {body.get('errors')}")
            return [DeliveryTicket.model_validate(entry) for entry in entries]
        except (OSError, HTTPException, ValueError, ValidationError) as exc:
            raise GatewaySendFailure(f"Expo send failed: {exc}") from exc

    def _query_chunk(self, ticket_ids: list[str]) -> dict[str, DeliveryReceipt]:
        try:
            body = self._post("/push/getReceipts", {"ids": ticket_ids})
            entries = body.get("data")
            if not isinstance(entries, dict):
                raise ValueError(f"Missing receipt map in response: {body.get('errors')}")
            return {ticket_id: DeliveryReceipt.model_validate(entry) for ticket_id, entry in entries.items()}
        except (OSError, HTTPException, ValueError, ValidationError) as exc:
            raise GatewayQueryFailure(f"Expo receipt query failed: {exc}") from exc


class MockPushGatewayClient(PushGatewayClient):
    name = "mock"

    def __init__(self, max_send_batch: int = DEFAULT_SEND_BATCH, max_receipt_batch: int = DEFAULT_RECEIPT_BATCH) -> None:
        super().__init__(max_send_batch=max_send_batch, max_receipt_batch=max_receipt_batch)
        self._issued: set[str] = set()

    def _send_chunk(self, messages: list[PushMessage]) -> list[DeliveryTicket]:
        tickets = []
        for _ in messages:
            ticket_id = str(uuid.uuid4())
            self._issued.add(ticket_id)
            tickets.append(DeliveryTicket(status="ok", id=ticket_id))
        return tickets

    def _query_chunk(self, ticket_ids: list[str]) -> dict[str, DeliveryReceipt]:
        return {ticket_id: DeliveryReceipt(status="ok") for ticket_id in ticket_ids if ticket_id in self._issued}


def build_gateway_client(settings) -> PushGatewayClient:
    if settings.push_gateway == "expo":
        return ExpoPushGatewayClient(
            access_token=settings.expo_access_token,
            base_url=settings.expo_api_url,
            timeout_seconds=settings.push_gateway_timeout_seconds,
            max_send_batch=settings.push_send_batch_size,
            max_receipt_batch=settings.push_receipt_batch_size,
        )
    if settings.push_gateway != "mock":
        logger.warning("Unknown push gateway, falling back to mock", extra={"gateway": settings.push_gateway})
    return MockPushGatewayClient(
        max_send_batch=settings.push_send_batch_size,
        max_receipt_batch=settings.push_receipt_batch_size,
    )
