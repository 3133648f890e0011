from feedrelay.main.exceptions import (
    DeliveryError,
    FeedFetchError,
    FeedParseError,
    MissingPermissionsError,
    RateLimitedError,
)


def test_fetch_errors_keep_reason():
    error = FeedParseError("https://a/feed", "Not a valid feed")

    assert isinstance(error, FeedFetchError)
    assert error.reason == "Not a valid feed"
    assert "https://a/feed" in str(error)


def test_rate_limited_error_message():
    error = RateLimitedError("c1", retry_after=0.5, limit=1)
    assert "retry after 0.50s" in str(error)


class TestDeliveryError:
    def test_invalid_payload(self):
        assert DeliveryError("Invalid Form Body", code=50035, status=400).is_invalid_payload
        assert DeliveryError("Bad Request", status=400).is_invalid_payload
        assert not DeliveryError("Server error", status=500).is_invalid_payload

    def test_retryable(self):
        assert DeliveryError("Server error", status=502).is_retryable
        assert DeliveryError("Too many requests", status=429).is_retryable
        assert DeliveryError("Connection reset").is_retryable
        assert not DeliveryError("Not found", status=404).is_retryable
        assert not MissingPermissionsError().is_retryable
