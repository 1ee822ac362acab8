# Significance Module
"""
A/Bテスト統計分析モジュール

バリアントごとの観測値から統計的有意性・データ品質・検出力を分析する。

設計方針:
- 統計カーネルは状態を持たない純粋関数（stats_kernel）
- 臨界値は既定でテーブル参照、設定で scipy.stats の厳密値に切り替え可能
- SignificanceEngine は入力バリアントのみから決定論的に TestAnalysis を生成
"""

from src.significance.models import (
    AnalysisStatus,
    CheckStatus,
    Impact,
    InvalidMetricsError,
    Metrics,
    PowerAnalysis,
    QualityCheck,
    QualityCheckType,
    RecommendedAction,
    SampleSizeAnalysis,
    StatisticalResult,
    TestAnalysis,
    Variant,
)
from src.significance.significance_engine import SignificanceEngine
from src.significance.performance_monitor import (
    AlertSeverity,
    AlertType,
    MonitoringAlert,
    PerformanceMonitor,
)

__all__ = [
    "AnalysisStatus",
    "CheckStatus",
    "Impact",
    "InvalidMetricsError",
    "Metrics",
    "PowerAnalysis",
    "QualityCheck",
    "QualityCheckType",
    "RecommendedAction",
    "SampleSizeAnalysis",
    "StatisticalResult",
    "TestAnalysis",
    "Variant",
    "SignificanceEngine",
    "AlertSeverity",
    "AlertType",
    "MonitoringAlert",
    "PerformanceMonitor",
]
