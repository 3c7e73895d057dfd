"""
Tests for executor/oracle.py -- decision oracle contract and HTTP adapter.
"""

import json

import httpx
import pytest
import respx

from conftest import make_contract, make_trade
from executor.oracle import (
    FORCED_REASONING,
    HttpDecisionOracle,
    OracleError,
    OracleRequest,
    forced_selections,
    normalize_allocations,
    parse_decision,
)

ORACLE_URL = "https://oracle.test/decide"


def _request(budget=100.0, n=4, **kwargs) -> OracleRequest:
    return OracleRequest(
        contracts=[make_contract(f"M{i}") for i in range(n)],
        history=[],
        bankroll=1000.0,
        budget=budget,
        **kwargs,
    )


class TestNormalizeAllocations:
    def test_under_budget_only_clamped(self):
        assert normalize_allocations([10.0, 60.0], 100.0, 20.0, 50.0) == [20.0, 50.0]

    def test_scaled_to_budget(self):
        result = normalize_allocations([30.0, 40.0, 50.0], 100.0, 20.0, 50.0)
        assert sum(result) == pytest.approx(100.0)
        assert result[0] == pytest.approx(25.0)
        assert all(20.0 <= a <= 50.0 for a in result)

    def test_drops_items_the_budget_cannot_fund(self):
        result = normalize_allocations([30.0, 30.0, 30.0], 50.0, 20.0, 50.0)
        assert len(result) == 2
        assert sum(result) == pytest.approx(50.0)

    def test_budget_below_minimum(self):
        assert normalize_allocations([30.0], 15.0, 20.0, 50.0) == []

    @pytest.mark.parametrize("allocations,budget", [
        ([50.0, 50.0, 50.0], 100.0),
        ([20.0, 35.5, 49.99], 90.0),
        ([45.0, 45.0], 60.0),
        ([25.0], 100.0),
    ])
    def test_properties(self, allocations, budget):
        result = normalize_allocations(allocations, budget, 20.0, 50.0)
        assert sum(result) <= budget + 0.01
        assert all(a <= 50.0 for a in result)
        assert all(round(a, 2) == a for a in result)


class TestParseDecision:
    def test_valid_answer(self):
        payload = {
            "selected_contracts": [
                {"market_id": "M0", "allocation": 30, "confidence": 0.9,
                 "reasoning": "forecast stable", "risk_factors": ["late data"]},
                {"market_id": "M1", "allocation": 25, "confidence": 0.8},
            ],
            "strategy_notes": "weather heavy",
        }
        decision = parse_decision(payload, _request())
        assert [s.contract.market_id for s in decision.selections] == ["M0", "M1"]
        assert decision.total_allocated == pytest.approx(55.0)
        assert decision.selections[0].risk_factors == ("late data",)
        assert decision.strategy_notes == "weather heavy"

    def test_unknown_and_duplicate_ids_rejected(self):
        payload = {"selected_contracts": [
            {"market_id": "M0", "allocation": 30, "confidence": 0.9},
            {"market_id": "NOPE", "allocation": 30, "confidence": 0.9},
            {"market_id": "M0", "allocation": 30, "confidence": 0.9},
        ]}
        decision = parse_decision(payload, _request())
        assert [s.contract.market_id for s in decision.selections] == ["M0"]
        assert {r["market_id"] for r in decision.rejections} == {"NOPE", "M0"}

    def test_caps_selection_count(self):
        payload = {"selections": [
            {"market_id": f"M{i}", "allocation": 20, "confidence": 0.9} for i in range(4)
        ]}
        decision = parse_decision(payload, _request(budget=200.0, max_selections=3))
        assert len(decision.selections) == 3

    def test_confidence_clamped(self):
        payload = {"selected_contracts": [{"market_id": "M0", "allocation": 20, "confidence": 1.7}]}
        assert parse_decision(payload, _request()).selections[0].confidence == 1.0

    def test_empty_answer(self):
        decision = parse_decision({"selected_contracts": [], "rejected": [{"market_id": "M0"}]}, _request())
        assert decision.selections == []
        assert len(decision.rejections) == 1

    def test_malformed(self):
        with pytest.raises(OracleError):
            parse_decision({"selected_contracts": "M0"}, _request())
        with pytest.raises(OracleError):
            parse_decision({"selected_contracts": [{"market_id": "M0", "allocation": "lots"}]}, _request())


class TestForcedSelections:
    def test_top_candidates_whole_budget(self):
        contracts = [make_contract(f"M{i}") for i in range(5)]
        picks = forced_selections(contracts, 50.0, count=3, confidence=0.75)
        assert [p.contract.market_id for p in picks] == ["M0", "M1", "M2"]
        assert all(p.allocation == 50.0 and p.confidence == 0.75 for p in picks)
        assert picks[0].reasoning == FORCED_REASONING


class TestHttpDecisionOracle:
    @respx.mock
    def test_posts_request_and_parses(self):
        route = respx.post(ORACLE_URL).mock(return_value=httpx.Response(200, json={
            "selected_contracts": [{"market_id": "M0", "allocation": 20, "confidence": 0.9}],
        }))
        oracle = HttpDecisionOracle(ORACLE_URL, api_key="secret")
        request = _request()
        request = OracleRequest(
            contracts=request.contracts, history=[make_trade("M9")], bankroll=1000.0, budget=100.0,
        )
        decision = oracle.decide(request)
        assert len(decision.selections) == 1
        sent = route.calls[0].request
        assert sent.headers["Authorization"] == "Bearer secret"
        body = json.loads(sent.content)
        assert len(body["contracts"]) == 4
        assert body["history"][0]["market_id"] == "M9"
        assert body["constraints"]["max_selections"] == 3

    @respx.mock
    def test_http_failure_raises_oracle_error(self):
        respx.post(ORACLE_URL).mock(return_value=httpx.Response(502))
        with pytest.raises(OracleError):
            HttpDecisionOracle(ORACLE_URL).decide(_request())

    @respx.mock
    def test_invalid_json_raises_oracle_error(self):
        respx.post(ORACLE_URL).mock(return_value=httpx.Response(200, text="not json"))
        with pytest.raises(OracleError):
            HttpDecisionOracle(ORACLE_URL).decide(_request())
