# tests/scheduling/test_evaluation_boundary.py
"""LocalEvaluationBoundary の単体テスト

評価対象の確認、結論の保存、品質問題時の要調査扱い、
エラー応答、監視アラートの付与をテスト。
"""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.conclusion.conclusion_engine import ConclusionEngine
from src.conclusion.models import ConclusionRule
from src.significance.models import Metrics, Variant
from src.significance.performance_monitor import AlertType, PerformanceMonitor
from src.scheduling.evaluation_boundary import (
    EvaluationBoundary,
    EvaluationRequest,
    EvaluationStatus,
    LocalEvaluationBoundary,
)
from src.scheduling.test_source import EligibleTest


NOW = datetime(2024, 3, 11, 12, 0, 0)


def make_variant(variant_id, impressions, conversions, is_control=False):
    return Variant(
        id=variant_id,
        name=variant_id,
        metrics=Metrics(
            impressions=impressions,
            clicks=impressions // 10,
            conversions=conversions,
        ),
        traffic_allocation=50.0,
        is_control=is_control,
        start_time=NOW - timedelta(days=10),
    )


def make_test(status="running", auto_declare_winner=True):
    return EligibleTest(
        id="test-1",
        status=status,
        auto_declare_winner=auto_declare_winner,
        start_date=NOW - timedelta(days=10),
    )


CLEAR_WINNER = [
    make_variant("control", 10000, 500, is_control=True),
    make_variant("variant_a", 10000, 630),
]


@pytest.fixture
def store():
    store = MagicMock()
    store.fetch_test = AsyncMock(return_value=make_test())
    store.fetch_variants = AsyncMock(return_value=CLEAR_WINNER)
    store.save_conclusion = AsyncMock()
    return store


@pytest.fixture
def boundary(store):
    return LocalEvaluationBoundary(store, ConclusionEngine(clock=lambda: NOW))


class TestLocalEvaluationBoundary:
    """LocalEvaluationBoundary.evaluate のテスト"""

    def test_satisfies_protocol(self, boundary):
        assert isinstance(boundary, EvaluationBoundary)

    @pytest.mark.asyncio
    async def test_concluded_with_winner_is_saved(self, boundary, store):
        response = await boundary.evaluate(EvaluationRequest(test_id="test-1"))

        assert response.evaluation_completed is True
        assert response.status == EvaluationStatus.CONCLUDED
        assert response.winner_selected is True
        assert response.conclusion.selected_winner.variant_id == "variant_a"
        store.fetch_test.assert_awaited_once_with("test-1")
        store.save_conclusion.assert_awaited_once_with("test-1", response.conclusion)

    @pytest.mark.asyncio
    async def test_missing_test_is_no_action(self, boundary, store):
        store.fetch_test.return_value = None

        response = await boundary.evaluate(EvaluationRequest(test_id="test-1"))

        assert response.status == EvaluationStatus.NO_ACTION
        store.fetch_variants.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status, auto", [("paused", True), ("running", False)])
    async def test_ineligible_test_is_no_action(self, boundary, store, status, auto):
        store.fetch_test.return_value = make_test(status=status, auto_declare_winner=auto)

        response = await boundary.evaluate(EvaluationRequest(test_id="test-1"))

        assert response.status == EvaluationStatus.NO_ACTION
        store.save_conclusion.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_force_evaluation_skips_status_check(self, boundary, store):
        store.fetch_test.return_value = make_test(status="paused")

        response = await boundary.evaluate(
            EvaluationRequest(test_id="test-1", force_evaluation=True)
        )

        assert response.status == EvaluationStatus.CONCLUDED
        store.fetch_test.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_rule_triggered(self, boundary, store):
        store.fetch_variants.return_value = [
            make_variant("control", 500, 25, is_control=True),
            make_variant("variant_a", 500, 27),
        ]

        response = await boundary.evaluate(EvaluationRequest(test_id="test-1"))

        assert response.evaluation_completed is True
        assert response.status == EvaluationStatus.NO_ACTION
        assert response.winner_selected is False
        store.save_conclusion.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_engine_error(self, boundary, store):
        store.fetch_variants.return_value = [
            make_variant("a", 10000, 500),
            make_variant("b", 10000, 630),
        ]

        response = await boundary.evaluate(EvaluationRequest(test_id="test-1"))

        assert response.evaluation_completed is False
        assert response.status == EvaluationStatus.ERROR
        assert "コントロール" in response.error
        store.save_conclusion.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_critical_quality_issue_needs_investigation(self, boundary, store):
        """SRM 失敗時は結論を保存せず investigate を返す"""
        store.fetch_variants.return_value = [
            make_variant("control", 9000, 450, is_control=True),
            make_variant("variant_a", 1000, 50),
        ]

        response = await boundary.evaluate(EvaluationRequest(test_id="test-1"))

        assert response.status == EvaluationStatus.INVESTIGATE
        assert response.winner_selected is False
        store.save_conclusion.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_custom_criteria_and_hint(self, boundary, store):
        response = await boundary.evaluate(EvaluationRequest(
            test_id="test-1",
            implementation_strategy_hint="gradual",
            custom_criteria={"minimum_confidence": 90.0},
        ))

        plan = response.conclusion.implementation_plan
        assert plan.strategy.value == "gradual"
        assert plan.rollout_percentages == [25, 50, 100]

    @pytest.mark.asyncio
    async def test_criteria_without_winner_still_saved(self, boundary, store):
        response = await boundary.evaluate(EvaluationRequest(
            test_id="test-1",
            custom_criteria={"minimum_improvement": 30.0},
        ))

        assert response.status == EvaluationStatus.CONCLUDED
        assert response.winner_selected is False
        store.save_conclusion.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_monitor_alerts_are_attached(self, store):
        boundary = LocalEvaluationBoundary(
            store,
            ConclusionEngine(clock=lambda: NOW),
            monitor=PerformanceMonitor(),
        )

        response = await boundary.evaluate(EvaluationRequest(test_id="test-1"))

        assert AlertType.SIGNIFICANCE_ACHIEVED in [a.type for a in response.alerts]
        assert response.to_dict()["alerts"][0]["test_id"] == "test-1"

    @pytest.mark.asyncio
    async def test_repeated_evaluations_keep_latest_alerts_only(self, store):
        monitor = PerformanceMonitor()
        boundary = LocalEvaluationBoundary(
            store, ConclusionEngine(clock=lambda: NOW), monitor=monitor
        )

        first = await boundary.evaluate(EvaluationRequest(test_id="test-1"))
        for _ in range(49):
            response = await boundary.evaluate(EvaluationRequest(test_id="test-1"))

        # 同じテストのアラートは評価のたびに置き換えられる
        assert len(monitor.get_alerts("test-1")) == len(first.alerts)
        assert monitor.get_alerts("test-1") == response.alerts

    @pytest.mark.asyncio
    async def test_store_errors_propagate(self, boundary, store):
        store.fetch_variants.side_effect = RuntimeError("db down")

        with pytest.raises(RuntimeError, match="db down"):
            await boundary.evaluate(EvaluationRequest(test_id="test-1"))

    @pytest.mark.asyncio
    async def test_custom_rules_applied(self, store):
        stop = ConclusionRule.from_dict({
            "id": "kill_switch", "name": "Kill switch", "priority": 0,
            "conditions": [], "action": "stop",
        })
        boundary = LocalEvaluationBoundary(
            store, ConclusionEngine(clock=lambda: NOW), custom_rules=[stop]
        )

        response = await boundary.evaluate(EvaluationRequest(test_id="test-1"))

        assert response.status == EvaluationStatus.CONCLUDED
        assert response.conclusion.action.value == "stop"
        assert response.winner_selected is False
