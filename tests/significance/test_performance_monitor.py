# tests/significance/test_performance_monitor.py
"""PerformanceMonitor のユニットテスト

テスト観点:
- 分析結果からのアラート生成（有意差・品質問題・低パフォーマンス・サンプル到達）
- 分析エラーの critical アラート化
- リスナーの登録・解除
- テスト単位のアラート取得・クリア
"""

from unittest.mock import MagicMock

import pytest

from src.significance.models import Metrics, Variant
from src.significance.performance_monitor import (
    AlertSeverity,
    AlertType,
    MonitoringAlert,
    PerformanceMonitor,
)


def make_variant(variant_id, impressions, conversions, clicks=None, allocation=50.0, is_control=False):
    return Variant(
        id=variant_id,
        name=variant_id,
        metrics=Metrics(
            impressions=impressions,
            clicks=impressions // 10 if clicks is None else clicks,
            conversions=conversions,
        ),
        traffic_allocation=allocation,
        is_control=is_control,
    )


@pytest.fixture
def monitor():
    return PerformanceMonitor()


@pytest.fixture
def significant_variants():
    return [
        make_variant("control", 10000, 500, is_control=True),
        make_variant("variant_a", 10000, 600),
    ]


# =============================================================================
# アラート生成
# =============================================================================


class TestMonitorTest:
    """monitor_test のテスト"""

    def test_significance_alert(self, monitor, significant_variants):
        alerts = monitor.monitor_test("test-1", significant_variants)

        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.type == AlertType.SIGNIFICANCE_ACHIEVED
        assert alert.severity == AlertSeverity.INFO
        assert alert.data["winning_variant"] == "variant_a"
        assert "variant_a" in alert.message

    def test_quality_issue_alert(self, monitor):
        """SRM 失敗は critical な quality_issue"""
        variants = [
            make_variant("control", 9000, 450, is_control=True),
            make_variant("variant_a", 1000, 50),
        ]

        alerts = monitor.monitor_test("test-srm", variants)

        quality = [a for a in alerts if a.type == AlertType.QUALITY_ISSUE]
        assert len(quality) == 1
        assert quality[0].severity == AlertSeverity.CRITICAL
        assert quality[0].data["quality_check"]["type"] == "sample_ratio_mismatch"

    def test_performance_drop_alerts(self, monitor):
        """CVR 1% 未満と CTR 2% 未満をそれぞれ警告"""
        variants = [
            make_variant("control", 10000, 500, is_control=True),
            make_variant("variant_a", 10000, 50, clicks=100),
        ]

        alerts = monitor.monitor_test("test-drop", variants)

        drops = [a for a in alerts if a.type == AlertType.PERFORMANCE_DROP]
        assert {d.data["metric"] for d in drops} == {"conversion_rate", "click_through_rate"}
        assert all(d.severity == AlertSeverity.WARNING for d in drops)
        assert all(d.data["variant_id"] == "variant_a" for d in drops)

    def test_sample_size_reached_alert(self, monitor):
        variants = [
            make_variant("control", 80000, 4000, is_control=True),
            make_variant("variant_a", 80000, 4000),
        ]

        alerts = monitor.monitor_test("test-full", variants)

        assert [a.type for a in alerts] == [AlertType.SAMPLE_SIZE_REACHED]
        assert alerts[0].data["progress"] == 100.0

    def test_analysis_error_becomes_critical_alert(self, monitor):
        variants = [
            make_variant("a", 1000, 50),
            make_variant("b", 1000, 60),
        ]

        alerts = monitor.monitor_test("test-broken", variants)

        assert len(alerts) == 1
        assert alerts[0].type == AlertType.QUALITY_ISSUE
        assert alerts[0].severity == AlertSeverity.CRITICAL
        assert alerts[0].message.startswith("Analysis error")

    def test_no_alerts_for_quiet_test(self, monitor):
        variants = [
            make_variant("control", 10000, 500, is_control=True),
            make_variant("variant_a", 10000, 510),
        ]

        assert monitor.monitor_test("test-quiet", variants) == []

    def test_uses_injected_engine(self, significant_variants):
        engine = MagicMock()
        engine.analyze_test.side_effect = RuntimeError("boom")
        monitor = PerformanceMonitor(engine)

        alerts = monitor.monitor_test("test-1", significant_variants)

        engine.analyze_test.assert_called_once_with("test-1", significant_variants)
        assert alerts[0].data == {"error": "boom"}


# =============================================================================
# リスナー・履歴
# =============================================================================


class TestListenersAndHistory:
    """on_alert / get_alerts / clear_alerts のテスト"""

    def test_listener_receives_alerts(self, monitor, significant_variants):
        received = []
        monitor.on_alert(received.append)

        monitor.monitor_test("test-1", significant_variants)

        assert len(received) == 1
        assert isinstance(received[0], MonitoringAlert)

    def test_unsubscribe(self, monitor, significant_variants):
        received = []
        unsubscribe = monitor.on_alert(received.append)
        unsubscribe()

        monitor.monitor_test("test-1", significant_variants)

        assert received == []
        unsubscribe()  # 二重解除は無視される

    def test_alerts_are_kept_per_test(self, monitor, significant_variants):
        monitor.monitor_test("test-1", significant_variants)
        monitor.monitor_test("test-2", significant_variants)

        assert len(monitor.get_alerts()) == 2
        assert [a.test_id for a in monitor.get_alerts("test-1")] == ["test-1"]

    def test_clear_alerts_by_test(self, monitor, significant_variants):
        monitor.monitor_test("test-1", significant_variants)
        monitor.monitor_test("test-2", significant_variants)

        monitor.clear_alerts("test-1")

        assert monitor.get_alerts("test-1") == []
        assert len(monitor.get_alerts("test-2")) == 1

        monitor.clear_alerts()
        assert monitor.get_alerts() == []

    def test_alert_log_is_bounded(self, significant_variants):
        monitor = PerformanceMonitor(max_alerts=3)

        for i in range(10):
            monitor.monitor_test(f"test-{i}", significant_variants)

        # 古いアラートから破棄される
        assert [a.test_id for a in monitor.get_alerts()] == ["test-7", "test-8", "test-9"]

    def test_clear_by_test_keeps_bound(self, significant_variants):
        monitor = PerformanceMonitor(max_alerts=2)
        monitor.monitor_test("test-1", significant_variants)
        monitor.clear_alerts("test-1")

        for _ in range(5):
            monitor.monitor_test("test-2", significant_variants)

        assert len(monitor.get_alerts()) == 2

    def test_invalid_max_alerts(self):
        with pytest.raises(ValueError, match="max_alerts"):
            PerformanceMonitor(max_alerts=0)

    def test_alert_to_dict(self, monitor, significant_variants):
        alert = monitor.monitor_test("test-1", significant_variants)[0]

        data = alert.to_dict()

        assert data["id"].startswith("alert_")
        assert data["type"] == "significance_achieved"
        assert data["severity"] == "info"
        assert data["test_id"] == "test-1"
