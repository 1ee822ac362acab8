# src/monitoring/metrics_collector.py
"""メトリクス収集モジュール

勝者スケジューラーと結論評価の稼働状況を記録する。
Prometheus依存なしの簡易実装で、テキスト形式（exposition format）で出力できる。

収集するメトリクス:
- 評価: 評価回数（結果別）、評価レイテンシ、並行評価数
- サイクル: サイクル回数、サイクル所要時間、対象テスト数
- 勝者: 勝者選定数
- 日次サマリー: 当日評価数・当日勝者数・成功率（スケジューラーの rolling metrics を反映）
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple


class MetricType(Enum):
    """メトリクスの種類"""
    COUNTER = "counter"      # 単調増加（例: 評価回数）
    GAUGE = "gauge"          # 上下する値（例: 並行評価数）
    HISTOGRAM = "histogram"  # 分布（例: 評価レイテンシ）


@dataclass
class MetricMetadata:
    """メトリクスのメタデータ"""
    name: str
    metric_type: MetricType
    description: str
    labels: List[str] = field(default_factory=list)


class _LabeledMetric:
    """ラベル付きメトリクスの共通部分"""

    metric_type: MetricType

    def __init__(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None,
    ):
        self.name = name
        self.description = description
        self.labels = labels or []
        self._values: Dict[Tuple[str, ...], float] = {}
        self._lock = Lock()

    @property
    def metadata(self) -> MetricMetadata:
        return MetricMetadata(self.name, self.metric_type, self.description, list(self.labels))

    def _key(self, labels: Optional[Dict[str, str]]) -> Tuple[str, ...]:
        if not self.labels:
            return ()
        labels = labels or {}
        return tuple(labels.get(label, "") for label in self.labels)

    def _add(self, labels: Optional[Dict[str, str]], value: float) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + value

    def get(self, labels: Optional[Dict[str, str]] = None) -> float:
        """現在の値を取得"""
        key = self._key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def collect(self) -> List[Tuple[Dict[str, str], float]]:
        """全ての (ラベル, 値) を収集"""
        with self._lock:
            return [
                (dict(zip(self.labels, key)) if self.labels else {}, value)
                for key, value in self._values.items()
            ]


class Counter(_LabeledMetric):
    """カウンターメトリクス（単調増加）

    使用例:
        counter = Counter("evaluations_total", "Evaluations", ["outcome"])
        counter.inc({"outcome": "concluded"})
    """

    metric_type = MetricType.COUNTER

    def inc(
        self,
        labels: Optional[Dict[str, str]] = None,
        value: float = 1.0,
    ) -> None:
        """カウンターをインクリメント

        Raises:
            ValueError: 負の値が指定された場合
        """
        if value < 0:
            raise ValueError("Counter can only be incremented (value must be >= 0)")
        self._add(labels, value)


class Gauge(_LabeledMetric):
    """ゲージメトリクス（上下する値）

    使用例:
        gauge = Gauge("active_evaluations", "In-flight evaluations")
        gauge.inc()
        gauge.dec()
    """

    metric_type = MetricType.GAUGE

    def set(
        self,
        labels: Optional[Dict[str, str]] = None,
        value: float = 0.0,
    ) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = value

    def inc(self, labels: Optional[Dict[str, str]] = None, value: float = 1.0) -> None:
        self._add(labels, value)

    def dec(self, labels: Optional[Dict[str, str]] = None, value: float = 1.0) -> None:
        self._add(labels, -value)


class Histogram:
    """ヒストグラムメトリクス（分布）

    使用例:
        histogram = Histogram(
            "evaluation_latency_seconds",
            "Evaluation latency",
            buckets=(0.01, 0.1, 1.0, 10.0),
        )
        histogram.observe(value=0.123)
    """

    DEFAULT_BUCKETS = (
        0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0
    )

    metric_type = MetricType.HISTOGRAM

    def __init__(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None,
        buckets: Optional[Tuple[float, ...]] = None,
    ):
        self.name = name
        self.description = description
        self.labels = labels or []
        self.buckets = tuple(sorted(buckets)) if buckets else self.DEFAULT_BUCKETS

        # label_key -> (bucket -> count)
        self._bucket_counts: Dict[Tuple[str, ...], Dict[float, int]] = {}
        self._sums: Dict[Tuple[str, ...], float] = {}
        self._counts: Dict[Tuple[str, ...], int] = {}
        self._lock = Lock()

    def _key(self, labels: Optional[Dict[str, str]]) -> Tuple[str, ...]:
        if not self.labels:
            return ()
        labels = labels or {}
        return tuple(labels.get(label, "") for label in self.labels)

    def observe(
        self,
        labels: Optional[Dict[str, str]] = None,
        value: float = 0.0,
    ) -> None:
        """値を観測"""
        key = self._key(labels)
        with self._lock:
            counts = self._bucket_counts.setdefault(key, {b: 0 for b in self.buckets})
            for bucket in self.buckets:
                if value <= bucket:
                    counts[bucket] += 1
            self._sums[key] = self._sums.get(key, 0.0) + value
            self._counts[key] = self._counts.get(key, 0) + 1

    def get_bucket_counts(self, labels: Optional[Dict[str, str]] = None) -> Dict[float, int]:
        key = self._key(labels)
        with self._lock:
            return dict(self._bucket_counts.get(key, {b: 0 for b in self.buckets}))

    def get_sum(self, labels: Optional[Dict[str, str]] = None) -> float:
        key = self._key(labels)
        with self._lock:
            return self._sums.get(key, 0.0)

    def get_count(self, labels: Optional[Dict[str, str]] = None) -> int:
        key = self._key(labels)
        with self._lock:
            return self._counts.get(key, 0)

    def collect(self) -> List[Tuple[Dict[str, str], Dict[str, float]]]:
        """全ての値を収集

        Returns:
            (labels, {"bucket_X": count, ..., "sum": sum, "count": count}) のリスト
        """
        with self._lock:
            results = []
            for key, counts in self._bucket_counts.items():
                data = {f"bucket_{b}": float(c) for b, c in counts.items()}
                data["sum"] = self._sums[key]
                data["count"] = float(self._counts[key])
                results.append((dict(zip(self.labels, key)) if self.labels else {}, data))
            return results


# === 定義済みメトリクス ===
# (種類, 名前, 説明, ラベル, バケット)
PREDEFINED_METRICS: List[Tuple[MetricType, str, str, List[str], Optional[Tuple[float, ...]]]] = [
    (MetricType.COUNTER, "evaluations_total",
     "Total number of test evaluations", ["outcome"], None),
    (MetricType.COUNTER, "winners_selected_total",
     "Total number of winners selected", [], None),
    (MetricType.COUNTER, "cycles_total",
     "Total number of scheduler cycles", ["result"], None),
    (MetricType.COUNTER, "notifications_total",
     "Total number of cycle notifications", ["result"], None),
    (MetricType.HISTOGRAM, "evaluation_latency_seconds",
     "Per-test evaluation latency in seconds", [],
     (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)),
    (MetricType.HISTOGRAM, "cycle_duration_seconds",
     "Scheduler cycle duration in seconds", [],
     (0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 120.0)),
    (MetricType.GAUGE, "active_evaluations",
     "Number of in-flight evaluations", [], None),
    (MetricType.GAUGE, "eligible_tests",
     "Number of eligible tests fetched in the last cycle", [], None),
    (MetricType.GAUGE, "tests_evaluated_today",
     "Tests evaluated since the start of the day", [], None),
    (MetricType.GAUGE, "winners_selected_today",
     "Winners selected since the start of the day", [], None),
    (MetricType.GAUGE, "success_rate",
     "Share of successful evaluations today (0-100)", [], None),
]


class MetricsCollector:
    """メトリクス収集・管理クラス

    カウンター、ゲージ、ヒストグラムを統合管理し、
    Prometheusフォーマットでのエクスポート機能を提供する。
    プロセス内で1つ生成し、スケジューラーへ注入して使う。

    使用例:
        collector = MetricsCollector()
        collector.record_evaluation("concluded", 0.12)
        collector.record_cycle(True, 1.5, eligible=3)
        print(collector.export_prometheus_format())
    """

    def __init__(self, prefix: str = "abtest"):
        """
        Args:
            prefix: メトリクス名のプレフィックス
        """
        self.prefix = prefix
        self._counters: Dict[str, Counter] = {}
        self._gauges: Dict[str, Gauge] = {}
        self._histograms: Dict[str, Histogram] = {}
        self._lock = Lock()

        self._init_predefined_metrics()

    def _init_predefined_metrics(self) -> None:
        for metric_type, name, description, labels, buckets in PREDEFINED_METRICS:
            if metric_type == MetricType.COUNTER:
                self.register_counter(name, description, labels)
            elif metric_type == MetricType.GAUGE:
                self.register_gauge(name, description, labels)
            else:
                self.register_histogram(name, description, labels, buckets)

    def register_counter(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None,
    ) -> Counter:
        counter = Counter(f"{self.prefix}_{name}", description, labels)
        with self._lock:
            self._counters[name] = counter
        return counter

    def register_gauge(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None,
    ) -> Gauge:
        gauge = Gauge(f"{self.prefix}_{name}", description, labels)
        with self._lock:
            self._gauges[name] = gauge
        return gauge

    def register_histogram(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None,
        buckets: Optional[Tuple[float, ...]] = None,
    ) -> Histogram:
        histogram = Histogram(f"{self.prefix}_{name}", description, labels, buckets)
        with self._lock:
            self._histograms[name] = histogram
        return histogram

    def get_counter(self, name: str) -> Optional[Counter]:
        with self._lock:
            return self._counters.get(name)

    def get_gauge(self, name: str) -> Optional[Gauge]:
        with self._lock:
            return self._gauges.get(name)

    def get_histogram(self, name: str) -> Optional[Histogram]:
        with self._lock:
            return self._histograms.get(name)

    # === 便利メソッド（定義済みメトリクスへの操作）===

    def record_evaluation(self, outcome: str, latency_seconds: float) -> None:
        """1テストの評価結果を記録

        Args:
            outcome: "concluded", "no_action", "investigate", "error", "skipped"
            latency_seconds: 評価所要時間（秒）
        """
        self._counters["evaluations_total"].inc({"outcome": outcome})
        self._histograms["evaluation_latency_seconds"].observe(value=latency_seconds)

    def record_winner_selected(self, count: int = 1) -> None:
        if count > 0:
            self._counters["winners_selected_total"].inc(value=float(count))

    def record_cycle(
        self,
        success: bool,
        duration_seconds: float,
        eligible: Optional[int] = None,
    ) -> None:
        """サイクルの完了を記録（取得失敗で中断したサイクルは success=False）"""
        self._counters["cycles_total"].inc({"result": "success" if success else "aborted"})
        self._histograms["cycle_duration_seconds"].observe(value=duration_seconds)
        if eligible is not None:
            self._gauges["eligible_tests"].set(value=float(eligible))

    def record_notification(self, delivered: bool) -> None:
        self._counters["notifications_total"].inc(
            {"result": "delivered" if delivered else "failed"}
        )

    def evaluation_started(self) -> None:
        self._gauges["active_evaluations"].inc()

    def evaluation_finished(self) -> None:
        self._gauges["active_evaluations"].dec()

    def record_daily_summary(
        self,
        tests_evaluated_today: int,
        winners_selected_today: int,
        success_rate: float,
    ) -> None:
        """スケジューラーの日次メトリクスを反映"""
        self._gauges["tests_evaluated_today"].set(value=float(tests_evaluated_today))
        self._gauges["winners_selected_today"].set(value=float(winners_selected_today))
        self._gauges["success_rate"].set(value=success_rate)

    # === エクスポート ===

    def export_prometheus_format(self) -> str:
        """Prometheusテキストフォーマットでエクスポート"""
        lines: List[str] = []

        with self._lock:
            for metric in list(self._counters.values()) + list(self._gauges.values()):
                lines.append(f"# HELP {metric.name} {metric.description}")
                lines.append(f"# TYPE {metric.name} {metric.metric_type.value}")
                for labels, value in metric.collect():
                    lines.append(f"{metric.name}{self._format_labels(labels)} {value}")
                lines.append("")

            for histogram in self._histograms.values():
                lines.append(f"# HELP {histogram.name} {histogram.description}")
                lines.append(f"# TYPE {histogram.name} histogram")
                for labels, data in histogram.collect():
                    for bucket in histogram.buckets:
                        label_str = self._format_labels({**labels, "le": str(bucket)})
                        lines.append(
                            f"{histogram.name}_bucket{label_str} {data[f'bucket_{bucket}']}"
                        )
                    inf_str = self._format_labels({**labels, "le": "+Inf"})
                    lines.append(f"{histogram.name}_bucket{inf_str} {data['count']}")
                    base = self._format_labels(labels)
                    lines.append(f"{histogram.name}_sum{base} {data['sum']}")
                    lines.append(f"{histogram.name}_count{base} {data['count']}")
                lines.append("")

        return "\n".join(lines)

    @staticmethod
    def _format_labels(labels: Dict[str, str]) -> str:
        if not labels:
            return ""
        parts = []
        for key, value in sorted(labels.items()):
            escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
            parts.append(f'{key}="{escaped}"')
        return "{" + ",".join(parts) + "}"

    def export_dict(self) -> Dict[str, Any]:
        """辞書形式でエクスポート（CLI の JSON 出力用）"""
        with self._lock:
            return {
                "counters": {
                    name: [{"labels": l, "value": v} for l, v in c.collect()]
                    for name, c in self._counters.items()
                },
                "gauges": {
                    name: [{"labels": l, "value": v} for l, v in g.collect()]
                    for name, g in self._gauges.items()
                },
                "histograms": {
                    name: [{"labels": l, "data": d} for l, d in h.collect()]
                    for name, h in self._histograms.items()
                },
                "exported_at": datetime.now().isoformat(),
            }

    def reset(self) -> None:
        """全メトリクスをリセット"""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
        self._init_predefined_metrics()
