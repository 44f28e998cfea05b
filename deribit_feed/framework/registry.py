from __future__ import annotations

from deribit_feed.framework.models import ChannelKind, Market


class MarketRegistry:
    """In-memory ticker/trade subscription maps keyed by remote instrument id."""

    def __init__(self) -> None:
        self._subs: dict[ChannelKind, dict[str, Market]] = {kind: {} for kind in ChannelKind}

    def add(self, kind: ChannelKind, market: Market) -> bool:
        subs = self._subs[kind]
        if market.remote_id in subs:
            return False
        subs[market.remote_id] = market
        return True

    def remove(self, kind: ChannelKind, remote_id: str) -> Market | None:
        return self._subs[kind].pop(remote_id, None)

    def lookup(self, kind: ChannelKind, remote_id: str) -> Market | None:
        return self._subs[kind].get(remote_id)

    def markets(self, kind: ChannelKind) -> list[Market]:
        return list(self._subs[kind].values())
