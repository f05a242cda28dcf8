from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class NotificationOptions(BaseModel):
    sound: str | None = "default"
    priority: Literal["default", "normal", "high"] = "high"
    channel_id: str = "default"
    ttl: int | None = Field(default=None, ge=0)
    expiration: int | None = None
    badge: int | None = Field(default=None, ge=0)
    mutable_content: bool = False
    category_id: str | None = None


class PushMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    to: str
    title: str
    body: str
    data: dict[str, Any] = {}
    sound: str | None = "default"
    priority: str = "high"
    channel_id: str = Field(default="default", serialization_alias="channelId")
    ttl: int | None = None
    expiration: int | None = None
    badge: int | None = None
    mutable_content: bool = Field(default=False, serialization_alias="mutableContent")
    category_id: str | None = Field(default=None, serialization_alias="categoryId")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class DeliveryTicket(BaseModel):
    status: Literal["ok", "error"]
    id: str | None = None
    message: str | None = None
    details: dict[str, Any] | None = None

    @property
    def error_code(self) -> str | None:
        return (self.details or {}).get("error")


class DeliveryReceipt(BaseModel):
    status: Literal["ok", "error"]
    message: str | None = None
    details: dict[str, Any] | None = None

    @property
    def error_code(self) -> str | None:
        return (self.details or {}).get("error")


class DeviceRegistration(BaseModel):
    user_id: str = Field(min_length=1)
    token: str


class NotificationRequest(BaseModel):
    tokens: list[str] = Field(min_length=1)
    title: str
    body: str
    data: dict[str, Any] = {}
    options: NotificationOptions = Field(default_factory=NotificationOptions)


class RegistrationResult(BaseModel):
    success: bool
    error: Literal["InvalidTokenFormat", "UserNotFound"] | None = None
    message: str | None = None


class EnqueueResult(BaseModel):
    success: bool
    queued_count: int = 0
    error: Literal["NoValidTokens"] | None = None
    message: str | None = None


class ReconciliationSummary(BaseModel):
    checked: int = 0
    delivered: int = 0
    errored: int = 0
    deferred: int = 0
    purged: int = 0
    tokens_cleared: int = 0
    skipped: bool = False


class ReceiptStatusResponse(BaseModel):
    ticket_id: str
    notification_type: str
    status: str
    retry_count: int
    error_message: str | None = None
    error_details: dict[str, Any] | None = None
    created_at: datetime
    check_after: datetime
    delivered_at: datetime | None = None
