"""Fan a new article out to its subscriptions."""

from enum import Enum
from typing import Awaitable, Callable, Iterable, Optional

from feedrelay.articles.article import Article
from feedrelay.articles.rendering import ArticleRenderer
from feedrelay.delivery.delivery_record import (
    BLOCKED_BY_FILTERS,
    DeliveryRecord,
    DeliveryRecordRepository,
)
from feedrelay.delivery.payloads import DeliveryMetadata, OutboundRequest, build_requests
from feedrelay.delivery.transports import Transport
from feedrelay.main.exceptions import DeliveryError, RateLimitedError
from feedrelay.main.logging import get_logger
from feedrelay.subscriptions.subscription import Subscription

logger = get_logger(__name__)

NoticeSender = Callable[[str, str], Awaitable[None]]


class DeliveryOutcome(str, Enum):
    DELIVERED = "delivered"  # Sent, queued or enqueued on the broker
    BLOCKED = "blocked"
    SKIPPED = "skipped"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"


def invalid_payload_notice(article: Article, error: DeliveryError) -> str:
    return (
        f"Failed to send article <{article.link or article.id}>.\n"
        f"The platform rejected the message ({error}). Check this feed's message format."
    )


async def record_delivery_failure(
    records: DeliveryRecordRepository,
    metadata: DeliveryMetadata,
    error: Exception,
    notice_sender: Optional[NoticeSender] = None,
    notice_text: Optional[str] = None,
) -> None:
    """Write the audit row and, for invalid payloads, tell the destination.

    Shared by the pipeline and the broker worker so both report transport
    failures the same way. Never raises.
    """
    await save_record(
        records,
        DeliveryRecord(
            item_id=metadata.item_id,
            source_url=metadata.source_url,
            destination_channel=metadata.destination_channel,
            subscription_id=metadata.subscription_id,
            comment=str(error),
        ),
    )

    if notice_sender is None:
        return
    if not isinstance(error, DeliveryError) or not error.is_invalid_payload:
        return
    try:
        await notice_sender(
            metadata.destination_channel,
            notice_text or f"Failed to send an article from <{metadata.source_url}>: {error}",
        )
    except Exception:
        logger.warning(
            "Unable to send invalid payload notice",
            exc_info=True,
            extra={"channel_id": metadata.destination_channel},
        )


async def save_record(records: DeliveryRecordRepository, record: DeliveryRecord) -> None:
    try:
        await records.add(record)
    except Exception:
        logger.error(
            "Failed to persist delivery record",
            exc_info=True,
            extra={
                "item_id": record.item_id,
                "channel_id": record.destination_channel,
                "comment": record.comment,
            },
        )


class DeliveryPipeline:
    def __init__(
        self,
        transport: Transport,
        delivery_records: DeliveryRecordRepository,
        api_url: str,
        max_payload_length: int = 2000,
        renderer: Optional[ArticleRenderer] = None,
        notice_sender: Optional[NoticeSender] = None,
        debug_subscription_ids: Iterable[str] = (),
    ):
        self.transport = transport
        self.delivery_records = delivery_records
        self.api_url = api_url
        self.max_payload_length = max_payload_length
        self.renderer = renderer or ArticleRenderer()
        self.notice_sender = notice_sender
        self.debug_subscription_ids = set(debug_subscription_ids)
        self.transport.queues.on_failure = self.handle_deferred_failure

    def _metadata(self, article: Article, subscription: Subscription) -> DeliveryMetadata:
        return DeliveryMetadata(
            item_id=article.id,
            source_url=subscription.url,
            destination_channel=subscription.channel_id,
            subscription_id=subscription.id,
            guild_id=subscription.guild_id,
        )

    async def deliver(
        self,
        article: Article,
        subscriptions: Iterable[Subscription],
        raise_rate_limit: bool = False,
    ) -> list[DeliveryOutcome]:
        return [
            await self.deliver_one(article, subscription, raise_rate_limit)
            for subscription in subscriptions
        ]

    async def deliver_one(
        self,
        article: Article,
        subscription: Subscription,
        raise_rate_limit: bool = False,
    ) -> DeliveryOutcome:
        """Render, filter and hand one article to the transport for one subscription.

        ``raise_rate_limit`` is for synchronous callers that retry on their own:
        a rate-limited article raises ``RateLimitedError`` instead of being queued,
        but only while none of its chunks has gone out.
        """
        debug = subscription.id in self.debug_subscription_ids
        metadata = self._metadata(article, subscription)

        if not subscription.channel_id or subscription.is_disabled:
            return DeliveryOutcome.SKIPPED

        rendered = self.renderer.render(article, subscription)
        if not rendered.passed:
            if debug:
                logger.info(
                    "Article blocked by filters",
                    extra={**metadata.model_dump(), "blocked_by": rendered.filter_result.blocked_by},
                )
            await save_record(
                self.delivery_records,
                DeliveryRecord(
                    item_id=article.id,
                    source_url=subscription.url,
                    destination_channel=subscription.channel_id,
                    subscription_id=subscription.id,
                    comment=BLOCKED_BY_FILTERS,
                ),
            )
            return DeliveryOutcome.BLOCKED

        requests = build_requests(
            api_url=self.api_url,
            payload=rendered.payload,
            metadata=metadata,
            webhook_url=subscription.webhook.url if subscription.webhook else None,
            max_length=self.max_payload_length,
        )

        try:
            owned = await self.transport.deliver(requests, defer=not raise_rate_limit)
        except RateLimitedError:
            if raise_rate_limit:
                raise
            logger.info("Delivery rate limited", extra=metadata.model_dump())
            return DeliveryOutcome.RATE_LIMITED
        except Exception as exc:
            logger.warning(
                "Delivery failed",
                extra={**metadata.model_dump(), "error": str(exc)},
            )
            await record_delivery_failure(
                self.delivery_records,
                metadata,
                exc,
                self.notice_sender,
                invalid_payload_notice(article, exc) if isinstance(exc, DeliveryError) else None,
            )
            return DeliveryOutcome.FAILED

        if not owned:
            return DeliveryOutcome.SKIPPED

        if debug:
            logger.info("Article handed to transport", extra=metadata.model_dump())
        return DeliveryOutcome.DELIVERED

    async def handle_deferred_failure(self, request: OutboundRequest, exc: Exception) -> None:
        logger.warning(
            "Queued delivery failed",
            extra={**request.metadata.model_dump(), "error": str(exc)},
        )
        await record_delivery_failure(
            self.delivery_records, request.metadata, exc, self.notice_sender
        )

    async def close(self, drain_timeout: float = 0) -> None:
        await self.transport.close(drain_timeout)
