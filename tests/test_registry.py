from __future__ import annotations

import unittest

from deribit_feed.framework.models import ChannelKind, Market
from deribit_feed.framework.registry import MarketRegistry


class MarketRegistryTests(unittest.TestCase):
    def test_maps_are_kept_per_channel(self) -> None:
        registry = MarketRegistry()
        market = Market(base="BTC", quote="USD", remote_id="BTC-PERPETUAL")
        self.assertTrue(registry.add(ChannelKind.TICKER, market))
        self.assertFalse(registry.add(ChannelKind.TICKER, market))

        self.assertIs(registry.lookup(ChannelKind.TICKER, "BTC-PERPETUAL"), market)
        self.assertIsNone(registry.lookup(ChannelKind.TRADE, "BTC-PERPETUAL"))
        self.assertEqual(registry.markets(ChannelKind.TICKER), [market])

    def test_remove(self) -> None:
        registry = MarketRegistry()
        market = Market(base="ETH", quote="USD", remote_id="ETH-PERPETUAL")
        registry.add(ChannelKind.TRADE, market)
        self.assertIs(registry.remove(ChannelKind.TRADE, "ETH-PERPETUAL"), market)
        self.assertIsNone(registry.remove(ChannelKind.TRADE, "ETH-PERPETUAL"))
        self.assertIsNone(registry.lookup(ChannelKind.TRADE, "ETH-PERPETUAL"))


if __name__ == "__main__":
    unittest.main()
