# tests/monitoring/test_metrics_collector.py
"""MetricsCollector のユニットテスト

テスト観点:
- Counter: インクリメント、取得、ラベル管理
- Gauge: 設定、インクリメント、デクリメント
- Histogram: 観測、バケットカウント、合計・回数
- MetricsCollector: 評価・サイクル・通知の記録、Prometheusフォーマット出力
- スレッドセーフ性
"""

import pytest
from concurrent.futures import ThreadPoolExecutor

from src.monitoring.metrics_collector import (
    Counter,
    Gauge,
    Histogram,
    MetricsCollector,
    MetricType,
    PREDEFINED_METRICS,
)


class TestCounter:
    """Counter クラスのテスト"""

    def test_basic_increment(self):
        """基本的なインクリメント"""
        counter = Counter("evaluations", "Evaluations")
        assert counter.get() == 0.0

        counter.inc()
        assert counter.get() == 1.0

        counter.inc(value=5.0)
        assert counter.get() == 6.0

    def test_increment_with_labels(self):
        """ラベル付きインクリメント"""
        counter = Counter("evaluations", "Evaluations", ["outcome"])

        counter.inc({"outcome": "concluded"})
        counter.inc({"outcome": "concluded"})
        counter.inc({"outcome": "error"})

        assert counter.get({"outcome": "concluded"}) == 2.0
        assert counter.get({"outcome": "error"}) == 1.0
        assert counter.get({"outcome": "no_action"}) == 0.0

    def test_negative_increment_raises_error(self):
        """負の値でのインクリメントはエラー"""
        counter = Counter("evaluations", "Evaluations")

        with pytest.raises(ValueError, match="Counter can only be incremented"):
            counter.inc(value=-1.0)

    def test_collect(self):
        counter = Counter("cycles", "Cycles", ["result"])

        counter.inc({"result": "success"}, 3.0)
        counter.inc({"result": "aborted"}, 1.0)

        results = {labels["result"]: value for labels, value in counter.collect()}
        assert results == {"success": 3.0, "aborted": 1.0}

    def test_metadata(self):
        counter = Counter("cycles", "Cycles", ["result"])

        metadata = counter.metadata

        assert metadata.metric_type == MetricType.COUNTER
        assert metadata.labels == ["result"]


class TestGauge:
    """Gauge クラスのテスト"""

    def test_set_and_get(self):
        gauge = Gauge("eligible", "Eligible tests")
        assert gauge.get() == 0.0

        gauge.set(value=42.0)
        assert gauge.get() == 42.0

        gauge.set(value=10.5)
        assert gauge.get() == 10.5

    def test_increment_and_decrement(self):
        """インクリメントとデクリメント"""
        gauge = Gauge("active", "Active evaluations")

        gauge.inc(value=5.0)
        gauge.dec(value=2.0)
        assert gauge.get() == 3.0

        gauge.inc()  # デフォルト +1
        gauge.dec()  # デフォルト -1
        assert gauge.get() == 3.0


class TestHistogram:
    """Histogram クラスのテスト"""

    def test_basic_observe(self):
        histogram = Histogram(
            "latency",
            "Latency",
            buckets=(0.1, 0.5, 1.0, 5.0),
        )

        histogram.observe(value=0.05)  # <= 0.1
        histogram.observe(value=0.3)   # <= 0.5
        histogram.observe(value=0.8)   # <= 1.0
        histogram.observe(value=2.0)   # <= 5.0

        assert histogram.get_count() == 4
        assert histogram.get_sum() == pytest.approx(3.15)

        bucket_counts = histogram.get_bucket_counts()
        assert bucket_counts[0.1] == 1
        assert bucket_counts[0.5] == 2
        assert bucket_counts[1.0] == 3
        assert bucket_counts[5.0] == 4

    def test_buckets_are_sorted(self):
        histogram = Histogram("latency", "Latency", buckets=(1.0, 0.1, 0.5))

        assert histogram.buckets == (0.1, 0.5, 1.0)

    def test_default_buckets(self):
        histogram = Histogram("latency", "Latency")
        assert histogram.buckets == Histogram.DEFAULT_BUCKETS

    def test_collect(self):
        histogram = Histogram("latency", "Latency", buckets=(0.1, 0.5, 1.0))

        histogram.observe(value=0.05)
        histogram.observe(value=0.3)

        labels, data = histogram.collect()[0]
        assert labels == {}
        assert data["count"] == 2.0
        assert data["sum"] == pytest.approx(0.35)
        assert data["bucket_0.1"] == 1.0
        assert data["bucket_1.0"] == 2.0


class TestMetricsCollector:
    """MetricsCollector クラスのテスト"""

    @pytest.fixture
    def collector(self):
        return MetricsCollector(prefix="test")

    def test_predefined_metrics_exist(self, collector):
        for metric_type, name, _, _, _ in PREDEFINED_METRICS:
            getter = {
                MetricType.COUNTER: collector.get_counter,
                MetricType.GAUGE: collector.get_gauge,
                MetricType.HISTOGRAM: collector.get_histogram,
            }[metric_type]
            assert getter(name) is not None, name

    def test_prefix_applied(self, collector):
        assert collector.get_counter("evaluations_total").name == "test_evaluations_total"

    def test_record_evaluation(self, collector):
        collector.record_evaluation("concluded", 0.12)
        collector.record_evaluation("error", 0.02)

        counter = collector.get_counter("evaluations_total")
        assert counter.get({"outcome": "concluded"}) == 1.0
        assert counter.get({"outcome": "error"}) == 1.0
        latency = collector.get_histogram("evaluation_latency_seconds")
        assert latency.get_count() == 2
        assert latency.get_sum() == pytest.approx(0.14)

    def test_record_cycle(self, collector):
        collector.record_cycle(True, 1.5, eligible=3)
        collector.record_cycle(False, 0.1)

        cycles = collector.get_counter("cycles_total")
        assert cycles.get({"result": "success"}) == 1.0
        assert cycles.get({"result": "aborted"}) == 1.0
        # 中断したサイクルは対象テスト数を更新しない
        assert collector.get_gauge("eligible_tests").get() == 3.0
        assert collector.get_histogram("cycle_duration_seconds").get_count() == 2

    def test_record_winner_selected(self, collector):
        collector.record_winner_selected(2)
        collector.record_winner_selected(0)

        assert collector.get_counter("winners_selected_total").get() == 2.0

    def test_record_notification(self, collector):
        collector.record_notification(True)
        collector.record_notification(False)
        collector.record_notification(False)

        notifications = collector.get_counter("notifications_total")
        assert notifications.get({"result": "delivered"}) == 1.0
        assert notifications.get({"result": "failed"}) == 2.0

    def test_active_evaluations(self, collector):
        collector.evaluation_started()
        collector.evaluation_started()
        collector.evaluation_finished()

        assert collector.get_gauge("active_evaluations").get() == 1.0

    def test_record_daily_summary(self, collector):
        collector.record_daily_summary(10, 2, 90.0)

        assert collector.get_gauge("tests_evaluated_today").get() == 10.0
        assert collector.get_gauge("winners_selected_today").get() == 2.0
        assert collector.get_gauge("success_rate").get() == 90.0


class TestPrometheusExport:
    """Prometheusフォーマットエクスポートのテスト"""

    @pytest.fixture
    def collector(self):
        return MetricsCollector(prefix="test")

    def test_export_counter(self, collector):
        collector.record_evaluation("concluded", 0.1)

        output = collector.export_prometheus_format()

        assert "# HELP test_evaluations_total" in output
        assert "# TYPE test_evaluations_total counter" in output
        assert 'test_evaluations_total{outcome="concluded"} 1.0' in output

    def test_export_gauge(self, collector):
        collector.record_cycle(True, 0.5, eligible=42)

        output = collector.export_prometheus_format()

        assert "# TYPE test_eligible_tests gauge" in output
        assert "test_eligible_tests 42.0" in output

    def test_export_histogram(self, collector):
        collector.record_evaluation("no_action", 0.025)
        collector.record_evaluation("no_action", 0.075)

        output = collector.export_prometheus_format()

        assert "# TYPE test_evaluation_latency_seconds histogram" in output
        assert 'test_evaluation_latency_seconds_bucket{le="0.05"} 1.0' in output
        assert 'test_evaluation_latency_seconds_bucket{le="+Inf"} 2.0' in output
        assert "test_evaluation_latency_seconds_count 2.0" in output

    def test_export_dict(self, collector):
        collector.record_notification(True)

        result = collector.export_dict()

        assert set(result) == {"counters", "gauges", "histograms", "exported_at"}
        assert result["counters"]["notifications_total"] == [
            {"labels": {"result": "delivered"}, "value": 1.0}
        ]

    def test_label_escaping(self, collector):
        """ラベル値のエスケープ"""
        counter = collector.register_counter("custom_counter", "Custom counter", ["message"])
        counter.inc({"message": 'test "quoted" value'})

        output = collector.export_prometheus_format()
        assert r'message="test \"quoted\" value"' in output


class TestThreadSafety:
    """スレッドセーフ性のテスト"""

    def test_counter_thread_safety(self):
        counter = Counter("evaluations", "Evaluations")
        iterations = 1000
        threads = 10

        def increment():
            for _ in range(iterations):
                counter.inc()

        with ThreadPoolExecutor(max_workers=threads) as executor:
            futures = [executor.submit(increment) for _ in range(threads)]
            for future in futures:
                future.result()

        assert counter.get() == iterations * threads

    def test_collector_thread_safety(self):
        collector = MetricsCollector(prefix="test")
        iterations = 100
        threads = 10

        def operate():
            for _ in range(iterations):
                collector.evaluation_started()
                collector.record_evaluation("concluded", 0.01)
                collector.evaluation_finished()

        with ThreadPoolExecutor(max_workers=threads) as executor:
            futures = [executor.submit(operate) for _ in range(threads)]
            for future in futures:
                future.result()

        evaluations = collector.get_counter("evaluations_total")
        assert evaluations.get({"outcome": "concluded"}) == iterations * threads
        assert collector.get_gauge("active_evaluations").get() == 0.0


class TestMetricsCollectorReset:
    """MetricsCollector.reset() のテスト"""

    def test_reset_clears_all_data(self):
        collector = MetricsCollector(prefix="test")
        collector.record_evaluation("concluded", 0.05)
        collector.record_cycle(True, 1.0, eligible=5)

        collector.reset()

        # 定義済みメトリクスは再作成されているが、データはクリア
        assert collector.get_counter("evaluations_total").get({"outcome": "concluded"}) == 0.0
        assert collector.get_gauge("eligible_tests").get() == 0.0
        assert collector.get_histogram("evaluation_latency_seconds").get_count() == 0
