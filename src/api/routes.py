from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from src.models.db import get_db_session
from src.models.notification import (
    DeviceRegistration,
    EnqueueResult,
    NotificationRequest,
    ReceiptStatusResponse,
    ReconciliationSummary,
    RegistrationResult,
)
from src.notifications.errors import INVALID_TOKEN_FORMAT, USER_NOT_FOUND
from src.notifications.service import PushNotificationService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["push-delivery-pipeline"])

push_service = PushNotificationService()


def get_push_service() -> PushNotificationService:
    return push_service


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


@router.post("/push/devices", response_model=RegistrationResult)
def register_device(payload: DeviceRegistration, service: PushNotificationService = Depends(get_push_service)):
    result = service.register_token(payload.user_id, payload.token)
    if result.error == INVALID_TOKEN_FORMAT:
        raise HTTPException(status_code=400, detail=result.message)
    if result.error == USER_NOT_FOUND:
        raise HTTPException(status_code=404, detail=result.message)
    return result


@router.post("/push/notifications", response_model=EnqueueResult)
def send_notification(payload: NotificationRequest, service: PushNotificationService = Depends(get_push_service)):
    result = service.enqueue_notification(
        payload.tokens,
        payload.title,
        payload.body,
        data=payload.data,
        options=payload.options,
    )
    if not result.success:
        raise HTTPException(status_code=400, detail=result.message)
    return result


@router.post("/push/receipts/check", response_model=ReconciliationSummary)
def check_receipts(service: PushNotificationService = Depends(get_push_service)):
    return service.check_receipts()


@router.get("/push/receipts/{ticket_id}", response_model=ReceiptStatusResponse)
def get_receipt(
    ticket_id: str,
    db: Session = Depends(get_db_session),
    service: PushNotificationService = Depends(get_push_service),
):
    record = service.ledger.get(db, ticket_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Unknown ticket: {ticket_id}")
    return ReceiptStatusResponse(
        ticket_id=record.ticket_id,
        notification_type=record.notification_type,
        status=record.status,
        retry_count=record.retry_count,
        error_message=record.error_message,
        error_details=record.error_details,
        created_at=record.created_at,
        check_after=record.check_after,
        delivered_at=record.delivered_at,
    )
