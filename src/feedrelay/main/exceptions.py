from typing import Optional


class FeedRelayException(Exception):
    pass


class NotReadyException(FeedRelayException):
    """Raised when a component is used before ``start()``/``initialize()``."""


class ScheduleConfigurationError(FeedRelayException):
    pass


class FeedFetchError(FeedRelayException):
    """The feed URL could not be retrieved (network error, bad status, timeout)."""

    def __init__(self, url: str, reason: str, status: Optional[int] = None):
        self.url = url
        self.reason = reason
        self.status = status
        super().__init__(f"{reason} ({url})")


class FeedParseError(FeedFetchError):
    """The feed was retrieved but is not a valid RSS/Atom document."""


class RateLimitedError(FeedRelayException):
    """Raised when a destination has spent its delivery budget for the window."""

    def __init__(self, channel_id: str, retry_after: float, limit: int):
        self.channel_id = channel_id
        self.retry_after = retry_after
        self.limit = limit
        super().__init__(
            f"Channel {channel_id} exceeded {limit} deliveries per window, "
            f"retry after {retry_after:.2f}s"
        )


# Discord error codes we special-case
MISSING_PERMISSIONS_CODE = 50013
INVALID_FORM_BODY_CODE = 50035


class DeliveryError(FeedRelayException):
    """The chat platform rejected (or never acknowledged) a delivery."""

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        status: Optional[int] = None,
    ):
        self.code = code
        self.status = status
        super().__init__(message)

    @property
    def is_invalid_payload(self) -> bool:
        return self.code == INVALID_FORM_BODY_CODE or (self.status == 400 and self.code is None)

    @property
    def is_retryable(self) -> bool:
        if self.code in (MISSING_PERMISSIONS_CODE, INVALID_FORM_BODY_CODE):
            return False
        return self.status is None or self.status >= 500 or self.status == 429


class MissingPermissionsError(DeliveryError):
    def __init__(self, message: str = "Missing permissions", status: Optional[int] = 403):
        super().__init__(message, code=MISSING_PERMISSIONS_CODE, status=status)
