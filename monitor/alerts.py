"""
Alert sink for safety events and trade notices.

Delivery is best-effort: a failed alert is logged and reported as False,
never raised, so a broken webhook cannot fail a job.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Protocol

import httpx

from scanner.models import StopLossEvent, TradeResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0
_MAX_TEXT = 4000


class AlertLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertSink(Protocol):
    def send(self, title: str, message: str, level: AlertLevel = AlertLevel.INFO) -> bool: ...


class LogAlertSink:
    """Alerts go to the log only. Used when no webhook is configured."""

    _LEVELS = {
        AlertLevel.INFO: logging.INFO,
        AlertLevel.WARNING: logging.WARNING,
        AlertLevel.CRITICAL: logging.CRITICAL,
    }

    def send(self, title: str, message: str, level: AlertLevel = AlertLevel.INFO) -> bool:
        logger.log(self._LEVELS[level], "ALERT %s: %s", title, message)
        return True


class WebhookAlertSink:
    """Posts alerts as JSON to a webhook (Slack/Discord-compatible `text` field)."""

    def __init__(self, url: str, timeout: float = DEFAULT_TIMEOUT, http: httpx.Client | None = None) -> None:
        self._url = url
        self._http = http or httpx.Client(timeout=timeout)

    def send(self, title: str, message: str, level: AlertLevel = AlertLevel.INFO) -> bool:
        text = f"[{level.value.upper()}] {title}\n{message}"[:_MAX_TEXT]
        payload = {"title": title, "text": text, "level": level.value, "ts": time.time()}
        try:
            resp = self._http.post(self._url, json=payload)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Alert delivery failed (%s): %s", title, e)
            return False
        logger.debug("Alert delivered: %s", title)
        return True

    def close(self) -> None:
        self._http.close()


def build_alert_sink(webhook_url: str, timeout: float = DEFAULT_TIMEOUT) -> AlertSink:
    if webhook_url:
        return WebhookAlertSink(webhook_url, timeout=timeout)
    return LogAlertSink()


# -- Message formatting --

def format_stop_loss_alert(events: list[StopLossEvent], questions: dict[int, str] | None = None) -> str:
    questions = questions or {}
    lines = []
    for e in events:
        question = questions.get(e.trade_id, "")
        lines.append(
            f"trade #{e.trade_id} {question[:60]}: exit {e.exit_odds:.2f} "
            f"(trigger {e.trigger_odds:.2f}), size ${e.position_size:.2f}, "
            f"realized ${e.realized_loss:+.2f}"
        )
    total = sum(e.realized_loss for e in events)
    lines.append(f"Total realized: ${total:+.2f}")
    return "\n".join(lines)


def format_circuit_breaker_alert(event_count: int, window_hours: float, limit: int) -> str:
    return (
        f"{event_count} stop-losses in the last {window_hours:.0f}h (limit {limit}). "
        "Stop-loss engine disabled; new entries are blocked until re-enabled "
        "with `run.py stop-loss --enable`."
    )


def format_trade_alert(results: list[TradeResult]) -> str:
    lines = []
    for r in results:
        if r.success and r.trade:
            t = r.trade
            lines.append(
                f"BUY {t.side.value} {t.contracts_purchased}x {t.market_id} @ {t.entry_odds:.2f} "
                f"(${t.position_size:.2f}, conf {t.confidence:.0%})"
            )
        else:
            market_id = r.contract.market_id if r.contract else "?"
            lines.append(f"FAILED {market_id}: {r.error}")
    return "\n".join(lines)
