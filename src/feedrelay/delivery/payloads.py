"""Outbound request shapes and payload chunking."""

from typing import Any, Optional

from pydantic import BaseModel, Field


class DeliveryMetadata(BaseModel):
    """Correlation data carried with every outbound request for tracing."""

    item_id: str
    source_url: str
    destination_channel: str
    subscription_id: str
    guild_id: str


class OutboundRequest(BaseModel):
    target_url: str
    method: str = "POST"
    body: dict[str, Any] = Field(default_factory=dict)
    metadata: DeliveryMetadata
    # Channel requests authenticate with the bot token; webhooks carry their own secret
    use_bot_auth: bool = True

    @property
    def channel_id(self) -> str:
        return self.metadata.destination_channel

    @property
    def guild_id(self) -> str:
        return self.metadata.guild_id


def split_text(text: str, max_length: int) -> list[str]:
    """Split ``text`` into ordered chunks of at most ``max_length`` characters.

    Prefers a newline boundary, then a space, and only cuts mid-word when a
    single word is longer than the limit.
    """
    if max_length <= 0:
        raise ValueError("max_length must be positive")

    chunks: list[str] = []
    remaining = text
    while len(remaining) > max_length:
        window = remaining[:max_length]
        cut: Optional[int] = None
        for separator in ("\n", " "):
            index = window.rfind(separator)
            if index > 0:
                cut = index
                break

        if cut is None:
            chunks.append(window)
            remaining = remaining[max_length:]
        else:
            chunks.append(remaining[:cut].rstrip())
            remaining = remaining[cut + 1 :]

    if remaining.strip() or not chunks:
        chunks.append(remaining)

    return [chunk for chunk in chunks if chunk] or [""]


def chunk_payload(payload: dict[str, Any], max_length: int) -> list[dict[str, Any]]:
    """One payload per text chunk; extra keys (username, embeds...) ride on the first."""
    content = payload.get("content") or ""
    pieces = split_text(content, max_length)
    extras = {key: value for key, value in payload.items() if key != "content"}

    chunked = []
    for index, piece in enumerate(pieces):
        body: dict[str, Any] = {"content": piece}
        if index == 0:
            body.update(extras)
        elif "username" in extras or "avatar_url" in extras:
            # Webhook identity has to be repeated or later chunks post as the default
            body.update(
                {key: extras[key] for key in ("username", "avatar_url") if key in extras}
            )
        chunked.append(body)
    return chunked


def build_requests(
    *,
    api_url: str,
    payload: dict[str, Any],
    metadata: DeliveryMetadata,
    webhook_url: Optional[str],
    max_length: int,
) -> list[OutboundRequest]:
    """Resolve the medium (webhook wins over channel) and chunk the payload."""
    if webhook_url:
        target_url, use_bot_auth = webhook_url, False
    else:
        target_url = f"{api_url.rstrip('/')}/channels/{metadata.destination_channel}/messages"
        use_bot_auth = True

    return [
        OutboundRequest(
            target_url=target_url,
            body=body,
            metadata=metadata,
            use_bot_auth=use_bot_auth,
        )
        for body in chunk_payload(payload, max_length)
    ]
