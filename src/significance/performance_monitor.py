# src/significance/performance_monitor.py
"""テストパフォーマンス監視

SignificanceEngine の分析結果をアラートに変換し、テストごとに蓄積する。
リスナーを登録するとアラート発生時に同期的に呼び出される。

アラート種別:
- significance_achieved (info): 有意差に到達し勝者が存在する
- quality_issue (critical): high impact の品質チェック失敗、または分析エラー
- performance_drop (warning): コンバージョン率 1% 未満 / CTR 2% 未満
- sample_size_reached (info): サンプル進捗 100% 到達
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional
from uuid import uuid4

from src.significance.models import AnalysisStatus, Variant
from src.significance.significance_engine import SignificanceEngine


logger = logging.getLogger(__name__)


# 絶対値での低パフォーマンス判定閾値（履歴比較は行わない）
LOW_CONVERSION_RATE = 0.01
LOW_CLICK_THROUGH_RATE = 0.02

# 保持するアラートの上限（古いものから破棄）
DEFAULT_MAX_ALERTS = 1000

PERFORMANCE_DROP_PERCENTAGES: Dict[str, float] = {
    "conversion_rate": 50.0,
    "click_through_rate": 30.0,
}


class AlertType(str, Enum):
    SIGNIFICANCE_ACHIEVED = "significance_achieved"
    QUALITY_ISSUE = "quality_issue"
    PERFORMANCE_DROP = "performance_drop"
    SAMPLE_SIZE_REACHED = "sample_size_reached"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class MonitoringAlert:
    """監視アラート"""
    test_id: str
    type: AlertType
    severity: AlertSeverity
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"alert_{uuid4().hex[:12]}")
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "test_id": self.test_id,
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }


AlertListener = Callable[[MonitoringAlert], None]


class PerformanceMonitor:
    """テストを分析してアラートを生成・保持する

    使用例:
        monitor = PerformanceMonitor(SignificanceEngine())
        unsubscribe = monitor.on_alert(lambda a: print(a.message))
        alerts = monitor.monitor_test("test-1", variants)
        unsubscribe()
    """

    def __init__(
        self,
        engine: Optional[SignificanceEngine] = None,
        max_alerts: int = DEFAULT_MAX_ALERTS,
    ):
        if max_alerts < 1:
            raise ValueError(f"max_alerts は1以上で指定してください: {max_alerts}")
        self.engine = engine or SignificanceEngine()
        self.max_alerts = max_alerts
        self._alerts: Deque[MonitoringAlert] = deque(maxlen=max_alerts)
        self._listeners: List[AlertListener] = []

    def monitor_test(self, test_id: str, variants: List[Variant]) -> List[MonitoringAlert]:
        """テストを分析し、新規アラートを返す

        分析中の例外は critical な quality_issue アラートに変換される。
        """
        new_alerts: List[MonitoringAlert] = []

        try:
            analysis = self.engine.analyze_test(test_id, variants)
        except Exception as e:
            logger.warning(f"監視中の分析エラー: test_id={test_id}, error={e}")
            new_alerts.append(MonitoringAlert(
                test_id=test_id,
                type=AlertType.QUALITY_ISSUE,
                severity=AlertSeverity.CRITICAL,
                message=f"Analysis error: {e}",
                data={"error": str(e)},
            ))
        else:
            if analysis.status == AnalysisStatus.SIGNIFICANT and analysis.winning_variant:
                new_alerts.append(MonitoringAlert(
                    test_id=test_id,
                    type=AlertType.SIGNIFICANCE_ACHIEVED,
                    severity=AlertSeverity.INFO,
                    message=(
                        "Test reached statistical significance. "
                        f"Winner: {analysis.winning_variant}"
                    ),
                    data={
                        "winning_variant": analysis.winning_variant,
                        "confidence": analysis.confidence,
                    },
                ))

            for issue in analysis.critical_issues:
                new_alerts.append(MonitoringAlert(
                    test_id=test_id,
                    type=AlertType.QUALITY_ISSUE,
                    severity=AlertSeverity.CRITICAL,
                    message=f"Quality issue detected: {issue.message}",
                    data={"quality_check": issue.to_dict()},
                ))

            for drop in self.detect_performance_drops(variants):
                new_alerts.append(MonitoringAlert(
                    test_id=test_id,
                    type=AlertType.PERFORMANCE_DROP,
                    severity=AlertSeverity.WARNING,
                    message=(
                        f"Performance drop detected in variant {drop['variant_id']}: "
                        f"{drop['metric']} decreased by {drop['percentage']:.0f}%"
                    ),
                    data=drop,
                ))

            if analysis.sample_size_analysis.progress >= 100:
                new_alerts.append(MonitoringAlert(
                    test_id=test_id,
                    type=AlertType.SAMPLE_SIZE_REACHED,
                    severity=AlertSeverity.INFO,
                    message="Target sample size reached",
                    data={"progress": analysis.sample_size_analysis.progress},
                ))

        self._alerts.extend(new_alerts)
        for alert in new_alerts:
            for listener in list(self._listeners):
                listener(alert)

        if new_alerts:
            logger.info(f"アラート生成: test_id={test_id}, count={len(new_alerts)}")
        return new_alerts

    @staticmethod
    def detect_performance_drops(variants: List[Variant]) -> List[Dict[str, Any]]:
        """低コンバージョン率・低CTRのバリアントを検出"""
        drops = []
        for variant in variants:
            if variant.metrics.conversion_rate < LOW_CONVERSION_RATE:
                drops.append({
                    "variant_id": variant.id,
                    "metric": "conversion_rate",
                    "percentage": PERFORMANCE_DROP_PERCENTAGES["conversion_rate"],
                })
            if variant.metrics.click_through_rate < LOW_CLICK_THROUGH_RATE:
                drops.append({
                    "variant_id": variant.id,
                    "metric": "click_through_rate",
                    "percentage": PERFORMANCE_DROP_PERCENTAGES["click_through_rate"],
                })
        return drops

    def on_alert(self, listener: AlertListener) -> Callable[[], None]:
        """リスナーを登録し、登録解除用の関数を返す"""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def get_alerts(self, test_id: Optional[str] = None) -> List[MonitoringAlert]:
        if test_id is None:
            return list(self._alerts)
        return [a for a in self._alerts if a.test_id == test_id]

    def clear_alerts(self, test_id: Optional[str] = None) -> None:
        if test_id is None:
            self._alerts.clear()
        else:
            self._alerts = deque(
                (a for a in self._alerts if a.test_id != test_id),
                maxlen=self.max_alerts,
            )
