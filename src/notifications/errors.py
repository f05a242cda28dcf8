from __future__ import annotations

from src.models.notification import DeliveryTicket

# Synchronous error kinds returned to callers.
INVALID_TOKEN_FORMAT = "InvalidTokenFormat"
USER_NOT_FOUND = "UserNotFound"
NO_VALID_TOKENS = "NoValidTokens"

# Per-ticket / per-receipt error codes reported by the gateway.
DEVICE_NOT_REGISTERED = "DeviceNotRegistered"
MESSAGE_TOO_BIG = "MessageTooBig"
MESSAGE_RATE_EXCEEDED = "MessageRateExceeded"
INVALID_CREDENTIALS = "InvalidCredentials"


class PushGatewayError(Exception):
    """A gateway call failed as a whole; the caller decides whether to retry."""


class GatewaySendFailure(PushGatewayError):
    def __init__(self, message: str, accepted: list[DeliveryTicket] | None = None) -> None:
        super().__init__(message)
        # Tickets issued by chunks that went through before the failing one.
        self.accepted = list(accepted or [])


class GatewayQueryFailure(PushGatewayError):
    pass
