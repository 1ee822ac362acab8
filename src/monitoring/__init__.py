# src/monitoring/__init__.py
"""監視モジュール

勝者スケジューラーのメトリクス収集とサイクル通知機能を提供する。
"""

from src.monitoring.metrics_collector import (
    MetricsCollector,
    Counter,
    Gauge,
    Histogram,
    MetricType,
)
from src.monitoring.notifications import (
    CycleSummary,
    InMemoryNotificationSink,
    LoggingNotificationSink,
    NotificationSink,
    WinnerNotice,
)

__all__ = [
    # メトリクス収集
    "MetricsCollector",
    "Counter",
    "Gauge",
    "Histogram",
    "MetricType",
    # 通知
    "CycleSummary",
    "InMemoryNotificationSink",
    "LoggingNotificationSink",
    "NotificationSink",
    "WinnerNotice",
]
