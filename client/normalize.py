"""
One normalisation function per Kalshi payload type.

Kalshi quotes prices in integer cents (1-99) and, on newer payloads, as
`*_dollars` decimal strings. Everything leaving this module is a probability
in [0, 1] or a dollar amount, so the rest of the pipeline never sees cents.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from scanner.models import (
    Market,
    Order,
    OrderBook,
    OrderStatus,
    PriceLevel,
    Settlement,
    Side,
)
from scanner.validation import InvalidMarketData, to_float, validate_price, validate_size

logger = logging.getLogger(__name__)

RESOLVED_STATUSES = frozenset({"settled", "finalized", "determined", "resolved", "closed"})


def parse_timestamp(raw: object) -> datetime | None:
    """Parse an ISO-8601 string or unix seconds into an aware UTC datetime."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, (int, float)):
        return datetime.fromtimestamp(float(raw), tz=timezone.utc)
    try:
        dt = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _price(payload: dict, field: str, context: str) -> float | None:
    """Read `<field>_dollars` if present, else `<field>` in cents. None when absent."""
    dollars = payload.get(f"{field}_dollars")
    if dollars not in (None, ""):
        return validate_price(to_float(dollars, context), context)
    cents = payload.get(field)
    if cents is None:
        return None
    return validate_price(to_float(cents, context) / 100.0, context)


def _side(raw: object) -> Side | None:
    value = str(raw or "").strip().upper()
    if value == "YES":
        return Side.YES
    if value == "NO":
        return Side.NO
    return None


def normalize_market(payload: dict) -> Market:
    """
    Convert a Kalshi market payload into a Market.

    Missing NO bid falls back to the complement of the YES ask. Resolution
    date prefers expected_expiration_time, then expiration_time, then
    close_time; unparseable dates yield end_date=None.
    """
    ticker = payload.get("ticker") or payload.get("market_id")
    if not ticker:
        raise InvalidMarketData("Market payload missing ticker")
    ctx = f"market {ticker}"

    yes_bid = _price(payload, "yes_bid", f"{ctx} yes_bid") or 0.0
    yes_ask = _price(payload, "yes_ask", f"{ctx} yes_ask") or 0.0
    no_ask = _price(payload, "no_ask", f"{ctx} no_ask") or 0.0
    no_bid = _price(payload, "no_bid", f"{ctx} no_bid")
    if no_bid is None:
        no_bid = round(1.0 - yes_ask, 4) if yes_ask > 0 else 0.0

    end_date = None
    for key in ("expected_expiration_time", "expiration_time", "close_time", "end_date"):
        if payload.get(key):
            end_date = parse_timestamp(payload[key])
            break

    volume_24h = validate_size(
        to_float(payload.get("volume_24h", payload.get("volume")), f"{ctx} volume_24h"),
        f"{ctx} volume_24h",
    )
    open_interest = validate_size(
        to_float(payload.get("open_interest"), f"{ctx} open_interest"),
        f"{ctx} open_interest",
    )
    liquidity = validate_size(
        to_float(payload.get("liquidity"), f"{ctx} liquidity"), f"{ctx} liquidity",
    ) or open_interest

    status = str(payload.get("status") or "").lower()
    outcome = _side(payload.get("result"))
    resolved = status in RESOLVED_STATUSES and outcome is not None

    final_odds = _price(payload, "settlement_value", f"{ctx} settlement_value")
    if final_odds is None:
        final_odds = _price(payload, "result_price", f"{ctx} result_price")

    return Market(
        market_id=str(ticker),
        question=str(payload.get("title") or payload.get("question") or ""),
        end_date=end_date,
        yes_odds=yes_bid,
        no_odds=no_bid,
        liquidity=liquidity,
        volume_24h=volume_24h,
        open_interest=open_interest,
        yes_ask=yes_ask,
        no_ask=no_ask,
        category=str(payload.get("category") or ""),
        event_ticker=str(payload.get("event_ticker") or ""),
        status=status,
        resolved=resolved,
        outcome=outcome if resolved else None,
        final_odds=final_odds if resolved else None,
        resolved_at=parse_timestamp(
            payload.get("settlement_ts") or payload.get("settlement_time")
        ) if resolved else None,
    )


def _levels(raw_levels: list, context: str, dollars: bool) -> tuple[PriceLevel, ...]:
    levels = []
    for raw in raw_levels or []:
        price = to_float(raw[0], f"{context} price")
        if not dollars:
            price /= 100.0
        size = to_float(raw[1], f"{context} size")
        if size <= 0:
            continue
        levels.append(PriceLevel(
            price=validate_price(price, f"{context} price"),
            size=validate_size(size, f"{context} size"),
        ))
    return tuple(sorted(levels, key=lambda level: level.price, reverse=True))


def normalize_orderbook(ticker: str, payload: dict) -> OrderBook:
    """
    Convert `{"orderbook": {"yes": [[cents, qty], ...], "no": [...]}}` into an
    OrderBook with both bid ladders sorted best-first. `yes_dollars` /
    `no_dollars` ladders are preferred when present.
    """
    book = payload.get("orderbook", payload) or {}
    yes_raw, yes_dollars = book.get("yes_dollars"), True
    if yes_raw is None:
        yes_raw, yes_dollars = book.get("yes"), False
    no_raw, no_dollars = book.get("no_dollars"), True
    if no_raw is None:
        no_raw, no_dollars = book.get("no"), False

    return OrderBook(
        market_id=ticker,
        yes_bids=_levels(yes_raw, f"{ticker} YES bid", yes_dollars),
        no_bids=_levels(no_raw, f"{ticker} NO bid", no_dollars),
    )


def normalize_order(payload: dict) -> Order:
    """Convert a Kalshi order payload (bare or wrapped in {"order": ...})."""
    order = payload.get("order", payload)
    side = _side(order.get("side"))
    if side is None:
        raise InvalidMarketData(f"Order {order.get('order_id')} has no side")

    try:
        status = OrderStatus(str(order.get("status") or "pending").lower())
    except ValueError:
        logger.warning("Unknown order status %r for %s", order.get("status"), order.get("order_id"))
        status = OrderStatus.PENDING

    fill_count = int(to_float(order.get("fill_count"), "fill_count"))
    remaining = int(to_float(order.get("remaining_count"), "remaining_count"))
    count = int(to_float(
        order.get("initial_count") or order.get("count") or (fill_count + remaining),
        "count",
    ))
    if not fill_count and status is OrderStatus.EXECUTED:
        fill_count = count

    price_field = "yes_price" if side is Side.YES else "no_price"
    price = _price(order, price_field, f"order {order.get('order_id')} price") or 0.0

    return Order(
        order_id=str(order.get("order_id") or ""),
        market_id=str(order.get("ticker") or ""),
        side=side,
        action=str(order.get("action") or "buy").lower(),
        status=status,
        count=count,
        fill_count=fill_count,
        price=price,
        created_time=parse_timestamp(order.get("created_time")),
        client_order_id=str(order.get("client_order_id") or ""),
    )


def normalize_settlement(payload: dict) -> Settlement:
    ticker = payload.get("ticker")
    if not ticker:
        raise InvalidMarketData("Settlement payload missing ticker")
    return Settlement(
        market_id=str(ticker),
        result=_side(payload.get("market_result")),
        settled_time=parse_timestamp(payload.get("settled_time")),
        yes_count=int(to_float(payload.get("yes_count"), "yes_count")),
        no_count=int(to_float(payload.get("no_count"), "no_count")),
        revenue=to_float(payload.get("revenue"), "revenue") / 100.0,
    )
