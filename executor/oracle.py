"""
Decision oracle boundary.

The oracle itself (the reasoning that picks contracts) lives outside this
repo. This module defines what it is given and what it must return, checks
and normalises its answers, and ships a thin HTTP adapter. It also builds
the forced selections used by the minimum-trading-cadence rule.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from scanner.models import Contract, Selection, Trade

logger = logging.getLogger(__name__)

FORCED_REASONING = "FORCED TRADE: no position opened today, taking the top scanned contract"


class OracleError(Exception):
    """The oracle could not be reached or returned an unusable answer."""


@dataclass(frozen=True)
class OracleRequest:
    contracts: list[Contract]
    history: list[Trade]
    bankroll: float
    budget: float
    min_allocation: float = 20.0
    max_allocation: float = 50.0
    max_selections: int = 3

    def to_payload(self) -> dict:
        return {
            "contracts": [
                {
                    "market_id": c.market_id,
                    "question": c.question,
                    "end_date": c.end_date.isoformat() if c.end_date else None,
                    "yes_odds": c.yes_odds,
                    "no_odds": c.no_odds,
                    "liquidity": c.liquidity,
                    "volume_24h": c.volume_24h,
                    "category": c.category,
                }
                for c in self.contracts
            ],
            "history": [
                {
                    "market_id": t.market_id,
                    "question": t.question,
                    "side": t.side.value,
                    "entry_odds": t.entry_odds,
                    "position_size": t.position_size,
                    "status": t.status.value,
                    "pnl": t.pnl,
                    "executed_at": t.executed_at.isoformat(),
                }
                for t in self.history
            ],
            "bankroll": round(self.bankroll, 2),
            "budget": round(self.budget, 2),
            "constraints": {
                "min_allocation": self.min_allocation,
                "max_allocation": self.max_allocation,
                "max_selections": self.max_selections,
            },
        }


@dataclass(frozen=True)
class OracleDecision:
    selections: list[Selection]
    strategy_notes: str = ""
    rejections: list[dict] = field(default_factory=list)
    forced: bool = False

    @property
    def total_allocated(self) -> float:
        return round(sum(s.allocation for s in self.selections), 2)


class DecisionOracle(Protocol):
    def decide(self, request: OracleRequest) -> OracleDecision: ...


def normalize_allocations(
    allocations: list[float],
    budget: float,
    min_allocation: float,
    max_allocation: float,
) -> list[float]:
    """
    Clamp each allocation to [min_allocation, max_allocation]; if the total
    then exceeds `budget`, scale down proportionally (re-clamped to the band,
    cents-rounded) and let the last item absorb the rounding residue.

    Trailing items are dropped when the budget cannot fund every item at
    the band minimum, so the returned list may be shorter than the input.
    """
    clamped = [min(max(a, min_allocation), max_allocation) for a in allocations]
    if min_allocation > 0:
        clamped = clamped[: int(budget // min_allocation + 1e-9)]
    if not clamped:
        return []

    total = sum(clamped)
    if total <= budget:
        return [round(a, 2) for a in clamped]

    scale = budget / total
    scaled = [
        round(min(max(a * scale, min_allocation), max_allocation), 2)
        for a in clamped[:-1]
    ]
    last = round(budget - sum(scaled), 2)
    if last > 0:
        scaled.append(last)
    return scaled


def parse_decision(payload: dict, request: OracleRequest) -> OracleDecision:
    """
    Validate an oracle answer against the contracts it was offered.

    Unknown or repeated market ids are moved to the rejections list rather
    than failing the whole answer. Confidence is clamped to [0, 1].
    """
    raw_selections = payload.get("selected_contracts")
    if raw_selections is None:
        raw_selections = payload.get("selections", [])
    if not isinstance(raw_selections, list):
        raise OracleError(f"selected_contracts must be a list, got {type(raw_selections).__name__}")

    by_id = {c.market_id: c for c in request.contracts}
    rejections = list(payload.get("rejected") or payload.get("rejections") or [])
    picked: list[tuple[Contract, dict]] = []
    seen: set[str] = set()

    for raw in raw_selections:
        market_id = str(raw.get("market_id", ""))
        contract = by_id.get(market_id)
        if contract is None or market_id in seen:
            logger.warning("Oracle selected unknown or duplicate market %r, ignoring", market_id)
            rejections.append({"market_id": market_id, "reason": "not offered or duplicate"})
            continue
        seen.add(market_id)
        picked.append((contract, raw))

    if len(picked) > request.max_selections:
        logger.warning(
            "Oracle returned %d selections, keeping the first %d",
            len(picked), request.max_selections,
        )
        picked = picked[: request.max_selections]

    try:
        raw_allocations = [float(raw.get("allocation", 0.0)) for _, raw in picked]
        confidences = [float(raw.get("confidence", 0.0)) for _, raw in picked]
    except (TypeError, ValueError) as e:
        raise OracleError(f"Non-numeric allocation or confidence: {e}") from e

    allocations = normalize_allocations(
        raw_allocations, request.budget, request.min_allocation, request.max_allocation,
    )

    selections = [
        Selection(
            contract=contract,
            allocation=allocation,
            confidence=min(max(confidence, 0.0), 1.0),
            reasoning=str(raw.get("reasoning") or ""),
            risk_factors=tuple(str(r) for r in raw.get("risk_factors") or ()),
        )
        for (contract, raw), allocation, confidence in zip(picked, allocations, confidences)
    ]
    return OracleDecision(
        selections=selections,
        strategy_notes=str(payload.get("strategy_notes") or ""),
        rejections=rejections,
    )


def forced_selections(
    contracts: list[Contract],
    budget: float,
    count: int = 3,
    confidence: float = 0.75,
) -> list[Selection]:
    """
    Fallback picks for the cadence rule: the top `count` contracts, each
    offered the whole budget. Run the executor in forced mode so only the
    first success is kept.
    """
    return [
        Selection(
            contract=c,
            allocation=round(budget, 2),
            confidence=confidence,
            reasoning=FORCED_REASONING,
            risk_factors=("forced trade",),
        )
        for c in contracts[:count]
    ]


class HttpDecisionOracle:
    """Posts an OracleRequest as JSON and parses the JSON answer."""

    def __init__(
        self,
        url: str,
        api_key: str = "",
        timeout: float = 60.0,
        http: httpx.Client | None = None,
    ) -> None:
        self._url = url
        self._api_key = api_key
        self._http = http or httpx.Client(timeout=timeout)

    def decide(self, request: OracleRequest) -> OracleDecision:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        try:
            resp = self._http.post(self._url, json=request.to_payload(), headers=headers)
            resp.raise_for_status()
            payload = resp.json()
        except httpx.HTTPError as e:
            raise OracleError(f"Oracle request failed: {e}") from e
        except ValueError as e:
            raise OracleError(f"Oracle returned invalid JSON: {e}") from e

        decision = parse_decision(payload, request)
        logger.info(
            "Oracle selected %d contracts ($%.2f of $%.2f)",
            len(decision.selections), decision.total_allocated, request.budget,
        )
        return decision

    def close(self) -> None:
        self._http.close()
