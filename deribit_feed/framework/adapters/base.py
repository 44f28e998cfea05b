from __future__ import annotations

from typing import Any, Callable, Protocol

from deribit_feed.framework.models import ChannelKind, Market


class Connection(Protocol):
    async def send(self, message: str) -> None:
        """Send one text frame on the open websocket."""

    def on_connected(self, callback: Callable[[], None]) -> None:
        """Register a callback fired every time the connection is (re-)established."""


class SubscriptionRegistry(Protocol):
    def lookup(self, kind: ChannelKind, remote_id: str) -> Market | None:
        """Return the active market for a remote instrument id, if subscribed."""


class ExchangeAdapter(Protocol):
    exchange_name: str

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        """Register a handler for ``ticker``, ``trade`` or ``error`` events."""

    async def subscribe(self, kind: ChannelKind, remote_id: str) -> bool:
        """Send a gated subscribe request; False if discarded by a reconnect."""

    async def unsubscribe(self, kind: ChannelKind, remote_id: str) -> bool:
        """Send a gated unsubscribe request; False if discarded by a reconnect."""

    def on_message(self, raw: str | bytes) -> None:
        """Decode, route and normalize one inbound frame."""
