# src/significance/models.py
"""統計分析のデータモデル

バリアントの観測値と、SignificanceEngine が出力する分析結果の構造を定義する。
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class InvalidMetricsError(ValueError):
    """メトリクスが不変条件（impressions >= conversions >= 0）を満たさない"""
    pass


class AnalysisStatus(str, Enum):
    """テスト分析のステータス"""
    INSUFFICIENT_DATA = "insufficient_data"
    RUNNING = "running"
    SIGNIFICANT = "significant"
    INCONCLUSIVE = "inconclusive"


class RecommendedAction(str, Enum):
    """分析に基づく推奨アクション"""
    CONTINUE = "continue"
    STOP = "stop"
    EXTEND = "extend"
    INVESTIGATE = "investigate"


class QualityCheckType(str, Enum):
    """品質チェックの種類"""
    SAMPLE_RATIO_MISMATCH = "sample_ratio_mismatch"
    OUTLIER_DETECTION = "outlier_detection"
    DATA_COMPLETENESS = "data_completeness"
    TRAFFIC_ALLOCATION = "traffic_allocation"


class CheckStatus(str, Enum):
    PASS = "pass"
    WARNING = "warning"
    FAIL = "fail"


class Impact(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class Metrics:
    """バリアントの観測メトリクス

    clicks / conversions は未計測の場合 None を許容する
    （データ完全性チェックで検出される）。
    """
    impressions: int
    clicks: Optional[int] = 0
    conversions: Optional[int] = 0
    revenue: float = 0.0
    bounce_rate: Optional[float] = None
    time_on_page: Optional[float] = None
    engagement_rate: Optional[float] = None

    def __post_init__(self) -> None:
        if self.impressions < 0:
            raise InvalidMetricsError(f"impressions must be >= 0, got {self.impressions}")
        if self.clicks is not None and self.clicks < 0:
            raise InvalidMetricsError(f"clicks must be >= 0, got {self.clicks}")
        if self.conversions is not None:
            if self.conversions < 0:
                raise InvalidMetricsError(
                    f"conversions must be >= 0, got {self.conversions}"
                )
            if self.conversions > self.impressions:
                raise InvalidMetricsError(
                    f"conversions ({self.conversions}) must not exceed "
                    f"impressions ({self.impressions})"
                )

    @property
    def conversion_rate(self) -> float:
        """コンバージョン率（インプレッション 0 の場合は 0.0）"""
        if self.impressions <= 0:
            return 0.0
        return (self.conversions or 0) / self.impressions

    @property
    def click_through_rate(self) -> float:
        if self.impressions <= 0:
            return 0.0
        return (self.clicks or 0) / self.impressions


@dataclass
class Variant:
    """実験のバリアント（コントロールを含む）

    Attributes:
        id: バリアントID
        name: 表示名
        metrics: 観測メトリクス
        traffic_allocation: トラフィック配分（0-100）
        is_control: コントロールかどうか（テストごとにちょうど1つ）
        start_time: 開始日時
    """
    id: str
    name: str
    metrics: Metrics
    traffic_allocation: float
    is_control: bool = False
    start_time: datetime = field(default_factory=datetime.now)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Variant":
        """辞書（YAML / DB行）からバリアントを生成"""
        metrics = data.get("metrics", {})
        start_time = data.get("start_time") or datetime.now()
        if isinstance(start_time, str):
            start_time = datetime.fromisoformat(start_time)
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", data["id"])),
            metrics=Metrics(
                impressions=int(metrics.get("impressions", 0)),
                clicks=metrics.get("clicks", 0),
                conversions=metrics.get("conversions", 0),
                revenue=float(metrics.get("revenue", 0.0)),
                bounce_rate=metrics.get("bounce_rate"),
                time_on_page=metrics.get("time_on_page"),
                engagement_rate=metrics.get("engagement_rate"),
            ),
            traffic_allocation=float(data.get("traffic_allocation", 0.0)),
            is_control=bool(data.get("is_control", False)),
            start_time=start_time,
        )


@dataclass
class StatisticalResult:
    """バリアントごとの統計結果

    コントロールの結果は常に z=0, p=1, 非有意のベースライン。
    """
    variant: str
    conversion_rate: float
    confidence_interval: Tuple[float, float]
    standard_error: float
    z_score: float
    p_value: float
    is_significant: bool
    improvement: float
    improvement_confidence_interval: Tuple[float, float]
    is_control: bool = False

    @property
    def confidence(self) -> float:
        """観測信頼度（%）"""
        return (1.0 - self.p_value) * 100.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variant": self.variant,
            "conversion_rate": self.conversion_rate,
            "confidence_interval": {
                "lower": self.confidence_interval[0],
                "upper": self.confidence_interval[1],
            },
            "standard_error": self.standard_error,
            "z_score": self.z_score,
            "p_value": self.p_value,
            "is_significant": self.is_significant,
            "improvement": self.improvement,
            "improvement_confidence_interval": {
                "lower": self.improvement_confidence_interval[0],
                "upper": self.improvement_confidence_interval[1],
            },
            "is_control": self.is_control,
        }


@dataclass
class QualityCheck:
    """データ品質チェック結果"""
    type: QualityCheckType
    status: CheckStatus
    message: str
    impact: Impact
    recommendation: Optional[str] = None

    @property
    def is_critical(self) -> bool:
        """high impact の fail かどうか"""
        return self.status == CheckStatus.FAIL and self.impact == Impact.HIGH

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "status": self.status.value,
            "message": self.message,
            "impact": self.impact.value,
            "recommendation": self.recommendation,
        }


@dataclass
class SampleSizeAnalysis:
    current: int
    required: int
    progress: float


@dataclass
class PowerAnalysis:
    current_power: float
    target_power: float
    minimum_detectable_effect: float


@dataclass
class TestAnalysis:
    """1回の評価サイクルにおけるテスト分析結果（永続化しない）"""
    test_id: str
    status: AnalysisStatus
    overall_significance: float
    recommended_action: RecommendedAction
    results: List[StatisticalResult]
    sample_size_analysis: SampleSizeAnalysis
    power_analysis: PowerAnalysis
    quality_checks: List[QualityCheck]
    confidence: float
    winning_variant: Optional[str] = None
    time_to_significance_days: Optional[float] = None

    __test__ = False  # pytest の収集対象から除外

    @property
    def non_control_results(self) -> List[StatisticalResult]:
        return [r for r in self.results if not r.is_control]

    @property
    def critical_issues(self) -> List[QualityCheck]:
        return [c for c in self.quality_checks if c.is_critical]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "test_id": self.test_id,
            "status": self.status.value,
            "overall_significance": self.overall_significance,
            "recommended_action": self.recommended_action.value,
            "winning_variant": self.winning_variant,
            "results": [r.to_dict() for r in self.results],
            "sample_size_analysis": {
                "current": self.sample_size_analysis.current,
                "required": self.sample_size_analysis.required,
                "progress": self.sample_size_analysis.progress,
            },
            "power_analysis": {
                "current_power": self.power_analysis.current_power,
                "target_power": self.power_analysis.target_power,
                "minimum_detectable_effect": self.power_analysis.minimum_detectable_effect,
            },
            "quality_checks": [c.to_dict() for c in self.quality_checks],
            "time_to_significance_days": self.time_to_significance_days,
            "confidence": self.confidence,
        }
