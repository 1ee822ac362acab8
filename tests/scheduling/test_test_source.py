# tests/scheduling/test_test_source.py
"""PostgresTestStore の単体テスト

DatabaseConnection をモックし、SQL パラメータ・行の変換・
取得失敗時の FetchError・結論保存時のステータスを検証する。
"""

import json
from dataclasses import replace
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import psycopg2
import pytest

from src.conclusion.conclusion_engine import ConclusionEngine
from src.conclusion.models import RuleAction
from src.significance.models import Metrics, Variant
from src.scheduling.test_source import (
    EligibleTest,
    ExperimentStore,
    FetchError,
    PostgresTestStore,
)


NOW = datetime(2024, 3, 11, 12, 0, 0)


@pytest.fixture
def cursor():
    return MagicMock()


@pytest.fixture
def db(cursor):
    db = MagicMock()
    db.get_cursor.return_value.__enter__.return_value = cursor
    return db


@pytest.fixture
def store(db):
    return PostgresTestStore(db, clock=lambda: NOW)


@pytest.fixture
def conclusion():
    variants = [
        Variant("control", "Control", Metrics(10000, 1000, 500), 50.0, True, NOW - timedelta(days=10)),
        Variant("variant_a", "Variant A", Metrics(10000, 1000, 630), 50.0, False, NOW - timedelta(days=10)),
    ]
    return ConclusionEngine(clock=lambda: NOW).evaluate_test_conclusion("test-1", variants)


# =============================================================================
# 取得
# =============================================================================


class TestFetch:
    """fetch_eligible_tests / fetch_test / fetch_variants のテスト"""

    def test_satisfies_protocol(self, store):
        assert isinstance(store, ExperimentStore)

    @pytest.mark.asyncio
    async def test_fetch_eligible_tests(self, store, cursor):
        started = NOW - timedelta(days=3)
        cursor.fetchall.return_value = [
            ("t1", "running", True, started, "ab"),
            ("t2", "running", True, started, None),
        ]

        tests = await store.fetch_eligible_tests(min_age_hours=24)

        sql, params = cursor.execute.call_args.args
        assert "auto_declare_winner = TRUE" in sql
        assert params == (NOW - timedelta(hours=24),)
        assert tests == [
            EligibleTest("t1", "running", True, started, "ab"),
            EligibleTest("t2", "running", True, started, "ab"),
        ]
        assert all(t.is_eligible for t in tests)

    @pytest.mark.asyncio
    async def test_database_error_becomes_fetch_error(self, store, cursor):
        cursor.execute.side_effect = psycopg2.OperationalError("connection refused")

        with pytest.raises(FetchError, match="connection refused"):
            await store.fetch_eligible_tests(min_age_hours=24)

    @pytest.mark.asyncio
    async def test_fetch_test(self, store, cursor):
        cursor.fetchone.return_value = ("t1", "paused", False, NOW, "ab")

        test = await store.fetch_test("t1")

        assert test.status == "paused"
        assert test.is_eligible is False
        assert cursor.execute.call_args.args[1] == ("t1",)

    @pytest.mark.asyncio
    async def test_fetch_missing_test(self, store, cursor):
        cursor.fetchone.return_value = None

        assert await store.fetch_test("missing") is None

    @pytest.mark.asyncio
    async def test_fetch_variants(self, store, cursor):
        started = NOW - timedelta(days=5)
        cursor.fetchall.return_value = [
            ("control", "Control", True, 50, 1000, 100, 50, 120.5, 0.4, None, None, started),
            ("variant_a", "Variant A", False, 50, 1000, None, 60, None, None, 30, 0.2, None),
        ]

        variants = await store.fetch_variants("t1")

        control, variant = variants
        assert control.is_control is True
        assert control.traffic_allocation == 50.0
        assert control.metrics.revenue == 120.5
        assert control.metrics.bounce_rate == 0.4
        assert control.start_time == started
        assert variant.metrics.clicks is None
        assert variant.metrics.revenue == 0.0
        assert variant.metrics.time_on_page == 30.0
        assert variant.metrics.engagement_rate == 0.2
        assert isinstance(variant.start_time, datetime)


# =============================================================================
# 結論の保存
# =============================================================================


class TestSaveConclusion:
    """save_conclusion のテスト"""

    @pytest.mark.asyncio
    async def test_winner_completes_test(self, store, cursor, conclusion):
        await store.save_conclusion("test-1", conclusion)

        sql, params = cursor.execute.call_args.args
        assert sql.strip().startswith("UPDATE ab_tests")
        status, winner_id, confidence, results, concluded_at, test_id = params
        assert status == "completed"
        assert winner_id == "variant_a"
        assert confidence == conclusion.selected_winner.confidence
        assert json.loads(results)["selected_winner"]["variant_id"] == "variant_a"
        assert concluded_at == NOW
        assert test_id == "test-1"

    @pytest.mark.asyncio
    async def test_pause_without_winner(self, store, cursor, conclusion):
        paused = replace(conclusion, action=RuleAction.PAUSE, selected_winner=None)

        await store.save_conclusion("test-1", paused)

        status, winner_id, confidence = cursor.execute.call_args.args[1][:3]
        assert status == "paused"
        assert winner_id is None
        assert confidence is None

    @pytest.mark.asyncio
    async def test_stop_without_winner(self, store, cursor, conclusion):
        stopped = replace(conclusion, action=RuleAction.STOP, selected_winner=None)

        await store.save_conclusion("test-1", stopped)

        assert cursor.execute.call_args.args[1][0] == "stopped"
