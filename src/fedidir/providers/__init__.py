"""Provider interfaces for fedidir."""
from __future__ import annotations

from .instance_api import (
    InstanceApiClient,
    build_http_client,
    decode_mastodon_instance,
    decode_misskey_instance,
)
from .messaging import DirectMessageSender, MessagingError

__all__ = [
    "DirectMessageSender",
    "InstanceApiClient",
    "MessagingError",
    "build_http_client",
    "decode_mastodon_instance",
    "decode_misskey_instance",
]
