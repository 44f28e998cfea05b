from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ChannelKind(str, Enum):
    TICKER = "ticker"
    TRADE = "trade"


class Action(str, Enum):
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"


@dataclass(frozen=True)
class Market:
    base: str
    quote: str
    remote_id: str


@dataclass(frozen=True)
class Ticker:
    exchange: str
    base: str
    quote: str
    timestamp: int
    last: float | None
    open: float | None
    high: float | None
    low: float | None
    volume: float
    change: str | None
    change_percent: str | None
    bid: float | None
    bid_volume: float | None
    ask: float | None
    ask_volume: float | None


@dataclass(frozen=True)
class Trade:
    exchange: str
    base: str
    quote: str
    trade_id: str
    side: str
    unix: int
    price: float
    amount: float
