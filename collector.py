#!/usr/bin/env python3
"""Record Deribit public tickers and trades (API v2 raw channels) to CSV."""

from __future__ import annotations

import argparse
import asyncio
import csv
import signal
import sys
import time
from collections import Counter
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable

import websockets

from deribit_feed.framework.adapters.deribit import AckPolicy, DeribitFeedAdapter
from deribit_feed.framework.gate import DEFAULT_CAPACITY, SubscriptionGate
from deribit_feed.framework.models import ChannelKind, Market, Ticker, Trade
from deribit_feed.framework.registry import MarketRegistry


DERIBIT_WS_V2 = "wss://www.deribit.com/ws/api/v2"
DEFAULT_SYMBOLS = "BTC-PERPETUAL,ETH-PERPETUAL"
CSV_HEADER = [
    "record_type",
    "capture_time_utc",
    "recv_ts_ms",
    "exchange_ts_ms",
    "exchange",
    "remote_id",
    "base",
    "quote",
    "price",
    "amount",
    "side",
    "trade_id",
    "last",
    "volume",
    "open",
    "high",
    "low",
    "change",
    "change_percent",
    "bid",
    "bid_volume",
    "ask",
    "ask_volume",
]
CHANNEL_NAMES = {
    "ticker": ChannelKind.TICKER,
    "trade": ChannelKind.TRADE,
    "trades": ChannelKind.TRADE,
}


def utc_iso_now() -> str:
    return datetime.now(tz=UTC).isoformat()


def epoch_ms() -> float:
    return time.time_ns() / 1_000_000.0


class FeedStats:
    def __init__(self) -> None:
        self.counts: Counter[str] = Counter()
        self.window_start_ms = epoch_ms()

    def add(self, record_type: str) -> None:
        self.counts[record_type] += 1

    def summary(self) -> dict[str, float]:
        elapsed_s = max((epoch_ms() - self.window_start_ms) / 1000.0, 1e-6)
        total = self.counts["ticker"] + self.counts["trade"]
        return {
            "tickers": float(self.counts["ticker"]),
            "trades": float(self.counts["trade"]),
            "errors": float(self.counts["error"]),
            "msg_rate_per_s": total / elapsed_s,
        }


class WebsocketConnection:
    """Connection handle shared across reconnects of the collector loop."""

    def __init__(self) -> None:
        self._ws: Any = None
        self._callbacks: list[Callable[[], None]] = []

    @property
    def is_open(self) -> bool:
        return self._ws is not None

    def on_connected(self, callback: Callable[[], None]) -> None:
        self._callbacks.append(callback)

    def attach(self, ws: Any) -> None:
        self._ws = ws
        for callback in self._callbacks:
            callback()

    def detach(self) -> None:
        self._ws = None

    async def send(self, message: str) -> None:
        if self._ws is None:
            raise ConnectionError("websocket is not connected")
        await self._ws.send(message)


def market_from_instrument(remote_id: str) -> Market:
    """Derive base/quote from a Deribit instrument name.

    Inverse instruments (BTC-PERPETUAL, ETH-27DEC24, BTC-27DEC24-50000-C) quote
    in USD; linear and spot names carry the quote after an underscore
    (ETH_USDC-PERPETUAL, ETH_USDC).
    """
    remote_id = remote_id.strip().upper()
    head = remote_id.split("-", 1)[0]
    if "_" in head:
        base, quote = head.split("_", 1)
    else:
        base, quote = head, "USD"
    return Market(base=base, quote=quote, remote_id=remote_id)


def parse_symbols(value: str) -> list[str]:
    symbols = [s.strip().upper() for s in value.split(",") if s.strip()]
    if not symbols:
        raise argparse.ArgumentTypeError("at least one symbol is required")
    return symbols


def parse_channels(value: str) -> list[ChannelKind]:
    kinds: list[ChannelKind] = []
    for name in value.split(","):
        name = name.strip().lower()
        if not name:
            continue
        if name not in CHANNEL_NAMES:
            raise argparse.ArgumentTypeError(f"unknown channel {name!r}")
        kind = CHANNEL_NAMES[name]
        if kind not in kinds:
            kinds.append(kind)
    if not kinds:
        raise argparse.ArgumentTypeError("at least one channel is required")
    return kinds


def default_output_path() -> Path:
    stamp = datetime.now(tz=UTC).strftime("%Y%m%d_%H%M%S")
    return Path(f"out/deribit_feed_{stamp}.csv")


def ensure_csv(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        with path.open("r", newline="", encoding="utf-8") as f:
            first_line = f.readline().strip()
        expected = ",".join(CSV_HEADER)
        if first_line != expected:
            raise RuntimeError(
                f"CSV header mismatch for {path}. Use a new --out path or migrate file schema."
            )
        return
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(CSV_HEADER)


def ticker_row(ticker: Ticker, market: Market, recv_ts_ms: float) -> list[Any]:
    return [
        "ticker",
        utc_iso_now(),
        f"{recv_ts_ms:.3f}",
        ticker.timestamp,
        ticker.exchange,
        market.remote_id,
        ticker.base,
        ticker.quote,
        "",
        "",
        "",
        "",
        ticker.last,
        ticker.volume,
        ticker.open,
        ticker.high,
        ticker.low,
        ticker.change,
        ticker.change_percent,
        ticker.bid,
        ticker.bid_volume,
        ticker.ask,
        ticker.ask_volume,
    ]


def trade_row(trade: Trade, market: Market, recv_ts_ms: float) -> list[Any]:
    return [
        "trade",
        utc_iso_now(),
        f"{recv_ts_ms:.3f}",
        trade.unix,
        trade.exchange,
        market.remote_id,
        trade.base,
        trade.quote,
        trade.price,
        trade.amount,
        trade.side,
        trade.trade_id,
    ] + [""] * 11


async def subscribe_all(
    adapter: DeribitFeedAdapter, registry: MarketRegistry, channels: list[ChannelKind]
) -> int:
    sent = 0
    for kind in channels:
        for market in registry.markets(kind):
            if await adapter.subscribe(kind, market.remote_id):
                sent += 1
    print(f"[{utc_iso_now()}] subscribe requests sent={sent}")
    return sent


async def run_collector(
    symbols: list[str],
    channels: list[ChannelKind],
    out_csv: Path,
    summary_every_s: float,
    ws_url: str,
    max_seconds: float | None,
    max_pending: int,
    ack_policy: AckPolicy,
) -> None:
    ensure_csv(out_csv)
    registry = MarketRegistry()
    for symbol in symbols:
        market = market_from_instrument(symbol)
        for kind in channels:
            registry.add(kind, market)

    connection = WebsocketConnection()
    adapter = DeribitFeedAdapter(
        connection, registry, gate=SubscriptionGate(max_pending), ack_policy=ack_policy
    )
    stats = FeedStats()
    stop_event = asyncio.Event()
    session_start_ms = epoch_ms()
    reconnect_attempt = 0
    recv_ts_ms = 0.0

    def _stop_handler(*_: Any) -> None:
        stop_event.set()

    signal.signal(signal.SIGINT, _stop_handler)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _stop_handler)

    print(f"[{utc_iso_now()}] starting collector out={out_csv}")
    next_summary_ts = time.monotonic() + summary_every_s
    with out_csv.open("a", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)

        def _on_ticker(ticker: Ticker, market: Market) -> None:
            writer.writerow(ticker_row(ticker, market, recv_ts_ms))
            stats.add("ticker")

        def _on_trade(trade: Trade, market: Market) -> None:
            writer.writerow(trade_row(trade, market, recv_ts_ms))
            stats.add("trade")

        def _on_error(exc: Exception) -> None:
            stats.add("error")
            print(f"[{utc_iso_now()}] warning: dropped undecodable frame error={exc!r}")

        adapter.on("ticker", _on_ticker)
        adapter.on("trade", _on_trade)
        adapter.on("error", _on_error)

        while not stop_event.is_set():
            if max_seconds is not None and (epoch_ms() - session_start_ms) / 1000.0 >= max_seconds:
                stop_event.set()
                break

            subscriber: asyncio.Task[int] | None = None
            try:
                print(f"[{utc_iso_now()}] connecting ws={ws_url} symbols={','.join(symbols)}")
                async with websockets.connect(ws_url, ping_interval=15, ping_timeout=15) as ws:
                    connection.attach(ws)
                    subscriber = asyncio.create_task(subscribe_all(adapter, registry, channels))
                    reconnect_attempt = 0

                    while not stop_event.is_set():
                        if (
                            max_seconds is not None
                            and (epoch_ms() - session_start_ms) / 1000.0 >= max_seconds
                        ):
                            stop_event.set()
                            break

                        raw = await asyncio.wait_for(ws.recv(), timeout=30)
                        recv_ts_ms = epoch_ms()
                        adapter.on_message(raw)

                        if time.monotonic() >= next_summary_ts:
                            s = stats.summary()
                            print(
                                (
                                    f"[{utc_iso_now()}] tickers={int(s['tickers'])} "
                                    f"trades={int(s['trades'])} errors={int(s['errors'])} "
                                    f"rate={s['msg_rate_per_s']:.2f}/s "
                                    f"gate_available={adapter.gate.available}/"
                                    f"{adapter.gate.capacity} waiting={adapter.gate.waiting}"
                                )
                            )
                            next_summary_ts = time.monotonic() + summary_every_s
            except RuntimeError:
                raise
            except (
                TimeoutError,
                OSError,
                websockets.exceptions.ConnectionClosed,
                websockets.exceptions.WebSocketException,
            ) as exc:
                if stop_event.is_set():
                    break
                reconnect_attempt += 1
                delay_s = min(30.0, 2.0 ** min(reconnect_attempt, 5))
                print(
                    f"[{utc_iso_now()}] warning: ws loop error={exc!r}; "
                    f"reconnect_attempt={reconnect_attempt} sleep={delay_s:.1f}s"
                )
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=delay_s)
                except TimeoutError:
                    pass
                continue
            finally:
                connection.detach()
                if subscriber is not None:
                    subscriber.cancel()
                    await asyncio.gather(subscriber, return_exceptions=True)

    print(f"[{utc_iso_now()}] stopped cleanly")


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--symbols",
        type=parse_symbols,
        default=parse_symbols(DEFAULT_SYMBOLS),
        help=f"Comma separated Deribit instrument names (default: {DEFAULT_SYMBOLS}).",
    )
    parser.add_argument(
        "--channels",
        type=parse_channels,
        default=[ChannelKind.TICKER, ChannelKind.TRADE],
        help="Comma separated channels to record: ticker, trades (default: both).",
    )
    parser.add_argument(
        "--out",
        default=None,
        help=(
            "Output CSV path for normalized records. If omitted, a timestamped file is "
            "created under out/."
        ),
    )
    parser.add_argument(
        "--summary-every",
        type=float,
        default=5.0,
        help="Seconds between rolling summaries (default: 5).",
    )
    parser.add_argument(
        "--ws-url",
        default=DERIBIT_WS_V2,
        help="Deribit websocket v2 URL.",
    )
    parser.add_argument(
        "--max-seconds",
        type=float,
        default=None,
        help="Optional max runtime in seconds (useful for smoke tests).",
    )
    parser.add_argument(
        "--max-pending",
        type=int,
        default=DEFAULT_CAPACITY,
        help=(
            "Max subscribe/unsubscribe requests awaiting acknowledgment "
            f"(default: {DEFAULT_CAPACITY})."
        ),
    )
    parser.add_argument(
        "--ack-policy",
        type=AckPolicy,
        choices=list(AckPolicy),
        default=AckPolicy.UNCONDITIONAL,
        help=(
            "How acknowledgments free request slots: 'unconditional' (any response) "
            "or 'by-request-id' (default: unconditional)."
        ),
    )
    return parser.parse_args(argv)


def main(argv: list[str]) -> int:
    args = parse_args(argv)
    out_csv = Path(args.out) if args.out else default_output_path()
    try:
        asyncio.run(
            run_collector(
                symbols=args.symbols,
                channels=args.channels,
                out_csv=out_csv,
                summary_every_s=args.summary_every,
                ws_url=args.ws_url,
                max_seconds=args.max_seconds,
                max_pending=args.max_pending,
                ack_policy=args.ack_policy,
            )
        )
    except KeyboardInterrupt:
        pass
    except Exception as exc:
        print(f"fatal: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
