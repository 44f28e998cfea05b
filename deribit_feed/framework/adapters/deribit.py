from __future__ import annotations

import json
from collections import Counter
from enum import Enum
from typing import Any, Callable

from deribit_feed.framework.adapters.base import Connection, SubscriptionRegistry
from deribit_feed.framework.gate import GateReset, SubscriptionGate
from deribit_feed.framework.models import Action, ChannelKind, Market, Ticker, Trade


EXCHANGE_NAME = "Deribit"

_CHANNEL_PREFIX = {ChannelKind.TICKER: "ticker", ChannelKind.TRADE: "trades"}
_METHOD = {Action.SUBSCRIBE: "public/subscribe", Action.UNSUBSCRIBE: "public/unsubscribe"}


class MessageKind(str, Enum):
    ACK = "ack"
    TICKER = "ticker"
    TRADES = "trades"
    UNRECOGNIZED = "unrecognized"


class AckPolicy(str, Enum):
    """How an inbound acknowledgment is matched to an outstanding request.

    UNCONDITIONAL frees one slot for every method-less message, whichever
    request it answers. BY_REQUEST_ID only frees a slot when the message id
    matches the id of a request still outstanding.
    """

    UNCONDITIONAL = "unconditional"
    BY_REQUEST_ID = "by-request-id"


def request_id(kind: ChannelKind, remote_id: str) -> int:
    is_btc = "BTC" in remote_id
    if kind is ChannelKind.TICKER:
        return 1 if is_btc else 2
    return 3 if is_btc else 4


def channel_name(kind: ChannelKind, remote_id: str) -> str:
    return f"{_CHANNEL_PREFIX[kind]}.{remote_id}.raw"


def build_request(action: Action, kind: ChannelKind, remote_id: str) -> dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "method": _METHOD[action],
        "id": request_id(kind, remote_id),
        "params": {"channels": [channel_name(kind, remote_id)]},
    }


def classify_message(message: Any) -> tuple[MessageKind, Any]:
    if not isinstance(message, dict):
        return MessageKind.UNRECOGNIZED, None
    if not message.get("method"):
        return MessageKind.ACK, message

    params = message.get("params")
    if not isinstance(params, dict):
        return MessageKind.UNRECOGNIZED, None
    channel = params.get("channel")
    if not isinstance(channel, str):
        return MessageKind.UNRECOGNIZED, None
    if "ticker" in channel:
        return MessageKind.TICKER, params.get("data")
    if "trades" in channel:
        return MessageKind.TRADES, params.get("data")
    return MessageKind.UNRECOGNIZED, None


def normalize_ticker(data: dict[str, Any], market: Market) -> Ticker | None:
    """Map a ``ticker.<instrument>.raw`` payload onto a canonical ticker.

    The settlement price stands in for the open. Deribit publishes no rolling
    volume on this channel, so volume is always 0. Deribit sends null for an
    empty book side and for ``last_price`` before the first trade; those map to
    None, as do change figures that cannot be computed.
    """
    try:
        timestamp = int(data["timestamp"])
        last = _optional_float(data.get("last_price"))
        open_ = _optional_float(data.get("settlement_price"))
        change = change_percent = None
        if last is not None and open_ is not None:
            diff = last - open_
            change = f"{diff:.8f}"
            change_percent = f"{(diff / open_ if open_ else 0.0):.2f}"
        return Ticker(
            exchange=EXCHANGE_NAME,
            base=market.base,
            quote=market.quote,
            timestamp=timestamp,
            last=last,
            open=open_,
            high=_optional_float(data.get("max_price")),
            low=_optional_float(data.get("min_price")),
            volume=0,
            change=change,
            change_percent=change_percent,
            bid=_optional_float(data.get("best_bid_price")),
            bid_volume=_optional_float(data.get("best_bid_amount")),
            ask=_optional_float(data.get("best_ask_price")),
            ask_volume=_optional_float(data.get("best_ask_amount")),
        )
    except (KeyError, TypeError, ValueError):
        return None


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    return float(value)


def normalize_trade(datum: dict[str, Any], market: Market) -> Trade | None:
    try:
        return Trade(
            exchange=EXCHANGE_NAME,
            base=market.base,
            quote=market.quote,
            trade_id=str(datum["trade_id"]),
            side=datum["direction"],
            unix=int(datum["timestamp"]),
            price=float(datum["price"]),
            amount=float(datum["amount"]),
        )
    except (KeyError, TypeError, ValueError):
        return None


class DeribitFeedAdapter:
    """Deribit API v2 public ticker and trade feed.

    Subscribe/unsubscribe calls pass through a ``SubscriptionGate`` so no more
    than ``gate.capacity`` requests are ever awaiting an acknowledgment. The
    gate is reset whenever the connection reports it is (re-)established.
    """

    exchange_name = EXCHANGE_NAME
    has_tickers = True
    has_trades = True
    has_level2_snapshots = False
    has_level2_updates = False

    def __init__(
        self,
        connection: Connection,
        registry: SubscriptionRegistry,
        gate: SubscriptionGate | None = None,
        ack_policy: AckPolicy = AckPolicy.UNCONDITIONAL,
    ) -> None:
        self._connection = connection
        self._registry = registry
        self._gate = gate if gate is not None else SubscriptionGate()
        self._ack_policy = ack_policy
        self._pending_ids: Counter[int] = Counter()
        self._handlers: dict[str, list[Callable[..., Any]]] = {}
        connection.on_connected(self._on_connected)

    @property
    def gate(self) -> SubscriptionGate:
        return self._gate

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, ())):
            handler(*args)

    async def subscribe(self, kind: ChannelKind, remote_id: str) -> bool:
        return await self._send_request(Action.SUBSCRIBE, kind, remote_id)

    async def unsubscribe(self, kind: ChannelKind, remote_id: str) -> bool:
        return await self._send_request(Action.UNSUBSCRIBE, kind, remote_id)

    def on_message(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except ValueError as exc:
            self.emit("error", exc)
            return
        self.process_message(message)

    def process_message(self, message: Any) -> None:
        kind, payload = classify_message(message)
        if kind is MessageKind.ACK:
            self._on_ack(payload)
        elif kind is MessageKind.TICKER:
            self._process_ticker(payload)
        elif kind is MessageKind.TRADES:
            self._process_trades(payload)

    async def _send_request(self, action: Action, kind: ChannelKind, remote_id: str) -> bool:
        try:
            await self._gate.acquire()
        except GateReset:
            return False
        request = build_request(action, kind, remote_id)
        # recorded before sending: the ack can be processed while send is suspended
        self._pending_ids[request["id"]] += 1
        try:
            await self._connection.send(json.dumps(request))
        except BaseException:
            self._forget_pending(request["id"])
            self._gate.release()
            raise
        return True

    def _on_connected(self) -> None:
        self._gate.reset()
        self._pending_ids.clear()

    def _on_ack(self, message: dict[str, Any]) -> None:
        ack_id = message.get("id")
        matched = (
            isinstance(ack_id, int)
            and not isinstance(ack_id, bool)
            and self._pending_ids[ack_id] > 0
        )
        if matched:
            self._forget_pending(ack_id)
        if self._ack_policy is AckPolicy.UNCONDITIONAL or matched:
            self._gate.release()

    def _forget_pending(self, req_id: int) -> None:
        if self._pending_ids[req_id] > 0:
            self._pending_ids[req_id] -= 1
        if not self._pending_ids[req_id]:
            self._pending_ids.pop(req_id, None)

    def _process_ticker(self, data: Any) -> None:
        if not isinstance(data, dict):
            return
        market = self._registry.lookup(ChannelKind.TICKER, data.get("instrument_name"))
        if market is None:
            return
        ticker = normalize_ticker(data, market)
        if ticker is not None:
            self.emit("ticker", ticker, market)

    def _process_trades(self, data: Any) -> None:
        if not isinstance(data, list):
            return
        for datum in data:
            if not isinstance(datum, dict):
                continue
            market = self._registry.lookup(ChannelKind.TRADE, datum.get("instrument_name"))
            if market is None:
                continue
            trade = normalize_trade(datum, market)
            if trade is not None:
                self.emit("trade", trade, market)
