# src/conclusion/models.py
"""テスト結論判定のデータモデル

結論ルール・勝者選定・実装計画・リスク評価・ロールバック計画と、
評価結果を表す EvaluationOutcome を定義する。
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from src.config.engine_config import ConfigurationError
from src.significance.models import TestAnalysis


class RuleType(str, Enum):
    SIGNIFICANCE = "significance"
    SAMPLE_SIZE = "sample_size"
    DURATION = "duration"
    PERFORMANCE = "performance"
    BUSINESS = "business"


class RuleAction(str, Enum):
    """ルール発火時のアクション"""
    CONTINUE = "continue"
    EXTEND = "extend"
    PAUSE = "pause"
    STOP = "stop"
    CONCLUDE = "conclude"


class ConditionOperator(str, Enum):
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    EQ = "eq"
    BETWEEN = "between"


class ConditionMetric(str, Enum):
    """ルール条件で参照できる指標

    値の取り出し方は rules.METRIC_EXTRACTORS に全件定義されている。
    """
    CONFIDENCE = "confidence"
    P_VALUE = "p_value"
    SAMPLE_SIZE = "sample_size"
    DURATION = "duration"
    IMPROVEMENT = "improvement"
    REVENUE = "revenue"
    RISK = "risk"


class ImplementationStrategy(str, Enum):
    IMMEDIATE = "immediate"
    GRADUAL = "gradual"
    STAGED = "staged"
    DELAYED = "delayed"


class OutcomeKind(str, Enum):
    OK = "ok"
    NO_ACTION = "no_action"
    ERROR = "error"


# 外部表記（camelCase）からの別名
_METRIC_ALIASES: Dict[str, str] = {
    "pValue": "p_value",
    "sampleSize": "sample_size",
}


def _parse_enum(enum_cls, value: Any, label: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise ConfigurationError(f"{label} が不正です: {value} (有効値: {allowed})")


@dataclass
class ConclusionCondition:
    """ルール条件（metric operator value）

    operator が between の場合、value は (min, max) の2要素。
    """
    metric: ConditionMetric
    operator: ConditionOperator
    value: Union[float, Tuple[float, float]]
    unit: Optional[str] = None

    def validate(self) -> None:
        if self.operator == ConditionOperator.BETWEEN:
            if not isinstance(self.value, (list, tuple)) or len(self.value) != 2:
                raise ConfigurationError(
                    f"between 条件には2要素の範囲が必要です: metric={self.metric.value}"
                )
        elif isinstance(self.value, (list, tuple, bool)) or not isinstance(
            self.value, (int, float)
        ):
            raise ConfigurationError(
                f"{self.operator.value} 条件の値は数値で指定してください: "
                f"metric={self.metric.value}"
            )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConclusionCondition":
        metric = _METRIC_ALIASES.get(data.get("metric"), data.get("metric"))
        value = data.get("value")
        if isinstance(value, list):
            value = tuple(value)
        condition = cls(
            metric=_parse_enum(ConditionMetric, metric, "metric"),
            operator=_parse_enum(ConditionOperator, data.get("operator"), "operator"),
            value=value,
            unit=data.get("unit"),
        )
        condition.validate()
        return condition

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metric": self.metric.value,
            "operator": self.operator.value,
            "value": list(self.value) if isinstance(self.value, tuple) else self.value,
            "unit": self.unit,
        }


@dataclass
class ConclusionRule:
    """結論ルール

    Attributes:
        id: ルールID
        name: 表示名
        type: ルール種別
        priority: 優先度（小さいほど先に評価）
        conditions: 条件（すべて満たすと発火）
        action: 発火時のアクション
        description: 説明
        is_active: 有効フラグ
    """
    id: str
    name: str
    type: RuleType
    priority: int
    conditions: List[ConclusionCondition]
    action: RuleAction
    description: str = ""
    is_active: bool = True

    def validate(self) -> None:
        if not self.id:
            raise ConfigurationError("ルールIDが指定されていません")
        for condition in self.conditions:
            condition.validate()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConclusionRule":
        """辞書（YAML）からルールを生成して検証する

        Raises:
            ConfigurationError: 必須項目の欠落や未知の metric / operator / action
        """
        for key in ("id", "name", "priority", "conditions", "action"):
            if key not in data:
                raise ConfigurationError(f"ルール定義に必須項目 '{key}' がありません")
        if not isinstance(data["conditions"], list):
            raise ConfigurationError(f"conditions はリストで指定してください: rule={data['id']}")
        rule = cls(
            id=str(data["id"]),
            name=str(data["name"]),
            type=_parse_enum(RuleType, data.get("type", "business"), "type"),
            priority=int(data["priority"]),
            conditions=[ConclusionCondition.from_dict(c) for c in data["conditions"]],
            action=_parse_enum(RuleAction, data["action"], "action"),
            description=str(data.get("description", "")),
            is_active=bool(data.get("is_active", True)),
        )
        rule.validate()
        return rule

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "priority": self.priority,
            "conditions": [c.to_dict() for c in self.conditions],
            "action": self.action.value,
            "description": self.description,
            "is_active": self.is_active,
        }


@dataclass
class WinnerSelection:
    """選定された勝者（confidence / expected_improvement は %）"""
    variant_id: str
    variant_name: str
    selection_reason: str
    confidence: float
    expected_improvement: float
    expected_revenue: float
    risk_score: float
    implementation_strategy: ImplementationStrategy
    score: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variant_id": self.variant_id,
            "variant_name": self.variant_name,
            "selection_reason": self.selection_reason,
            "confidence": self.confidence,
            "expected_improvement": self.expected_improvement,
            "expected_revenue": self.expected_revenue,
            "risk_score": self.risk_score,
            "implementation_strategy": self.implementation_strategy.value,
            "score": self.score,
        }


@dataclass
class SuccessCriterion:
    metric: str
    target: float
    tolerance: float
    timeframe_hours: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metric": self.metric,
            "target": self.target,
            "tolerance": self.tolerance,
            "timeframe_hours": self.timeframe_hours,
        }


@dataclass
class RollbackTrigger:
    """ロールバックトリガー（threshold は %、timeframe は分）"""
    metric: str
    threshold: float
    timeframe_minutes: int
    action: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metric": self.metric,
            "threshold": self.threshold,
            "timeframe_minutes": self.timeframe_minutes,
            "action": self.action,
        }


@dataclass
class ImplementationPhase:
    id: str
    name: str
    description: str
    rollout_percentage: int
    duration_hours: int
    success_criteria: List[SuccessCriterion] = field(default_factory=list)
    rollback_triggers: List[RollbackTrigger] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "rollout_percentage": self.rollout_percentage,
            "duration_hours": self.duration_hours,
            "success_criteria": [c.to_dict() for c in self.success_criteria],
            "rollback_triggers": [t.to_dict() for t in self.rollback_triggers],
        }


@dataclass
class EscalationStep:
    level: int
    condition: str
    action: str
    contacts: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level,
            "condition": self.condition,
            "action": self.action,
            "contacts": list(self.contacts),
        }


@dataclass
class MonitoringPlan:
    duration_hours: int
    checkpoints: List[datetime]
    metrics: List[str]
    alert_thresholds: Dict[str, float]
    escalation_plan: List[EscalationStep]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "duration_hours": self.duration_hours,
            "checkpoints": [c.isoformat() for c in self.checkpoints],
            "metrics": list(self.metrics),
            "alert_thresholds": dict(self.alert_thresholds),
            "escalation_plan": [s.to_dict() for s in self.escalation_plan],
        }


@dataclass
class Timeline:
    """実装タイムライン（phases は各フェーズの終了時刻）"""
    start: datetime
    phases: List[datetime]
    completion: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": self.start.isoformat(),
            "phases": [p.isoformat() for p in self.phases],
            "completion": self.completion.isoformat(),
        }


@dataclass
class ImplementationPlan:
    strategy: ImplementationStrategy
    phases: List[ImplementationPhase]
    timeline: Timeline
    rollout_percentages: List[int]
    monitoring_plan: MonitoringPlan
    success_criteria: List[SuccessCriterion]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "phases": [p.to_dict() for p in self.phases],
            "timeline": self.timeline.to_dict(),
            "rollout_percentages": list(self.rollout_percentages),
            "monitoring_plan": self.monitoring_plan.to_dict(),
            "success_criteria": [c.to_dict() for c in self.success_criteria],
        }


@dataclass
class RiskFactor:
    """リスク要因（impact: 0-10, probability: 0-1）"""
    type: str
    description: str
    impact: float
    probability: float
    severity: str
    mitigation: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "description": self.description,
            "impact": self.impact,
            "probability": self.probability,
            "severity": self.severity,
            "mitigation": self.mitigation,
        }


@dataclass
class RiskAssessment:
    overall_risk_score: float
    risk_factors: List[RiskFactor]
    mitigation_strategies: List[str]
    max_acceptable_risk: float
    recommended_approach: ImplementationStrategy

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall_risk_score": self.overall_risk_score,
            "risk_factors": [f.to_dict() for f in self.risk_factors],
            "mitigation_strategies": list(self.mitigation_strategies),
            "max_acceptable_risk": self.max_acceptable_risk,
            "recommended_approach": self.recommended_approach.value,
        }


@dataclass
class BusinessImpact:
    """ビジネスインパクト（定性スコアは 0-10）"""
    revenue_impact: float
    revenue_impact_range: Tuple[float, float]
    audience_reach: int
    strategic_alignment: float
    competitive_advantage: float
    brand_risk: float
    operational_complexity: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "revenue_impact": self.revenue_impact,
            "revenue_impact_range": list(self.revenue_impact_range),
            "audience_reach": self.audience_reach,
            "strategic_alignment": self.strategic_alignment,
            "competitive_advantage": self.competitive_advantage,
            "brand_risk": self.brand_risk,
            "operational_complexity": self.operational_complexity,
        }


@dataclass
class RollbackStep:
    order: int
    action: str
    description: str
    owner: str
    estimated_minutes: int
    dependencies: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order": self.order,
            "action": self.action,
            "description": self.description,
            "owner": self.owner,
            "estimated_minutes": self.estimated_minutes,
            "dependencies": list(self.dependencies),
        }


@dataclass
class RollbackPlan:
    triggers: List[RollbackTrigger]
    procedure: List[RollbackStep]
    time_to_rollback_minutes: int
    fallback_variant: str
    communication_plan: List[str]
    data_preservation: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "triggers": [t.to_dict() for t in self.triggers],
            "procedure": [s.to_dict() for s in self.procedure],
            "time_to_rollback_minutes": self.time_to_rollback_minutes,
            "fallback_variant": self.fallback_variant,
            "communication_plan": list(self.communication_plan),
            "data_preservation": list(self.data_preservation),
        }


@dataclass(frozen=True)
class TestConclusion:
    """1テスト1回の評価における最終出力（生成後は変更しない）"""
    test_id: str
    conclusion_time: datetime
    conclusion_reason: str
    action: RuleAction
    triggered_rules: Tuple[ConclusionRule, ...]
    selected_winner: Optional[WinnerSelection]
    implementation_plan: ImplementationPlan
    confidence: float
    risk_assessment: RiskAssessment
    business_impact: BusinessImpact
    rollback_plan: RollbackPlan

    __test__ = False  # pytest の収集対象から除外

    def to_dict(self) -> Dict[str, Any]:
        return {
            "test_id": self.test_id,
            "conclusion_time": self.conclusion_time.isoformat(),
            "conclusion_reason": self.conclusion_reason,
            "action": self.action.value,
            "triggered_rules": [r.id for r in self.triggered_rules],
            "selected_winner": (
                self.selected_winner.to_dict() if self.selected_winner else None
            ),
            "implementation_plan": self.implementation_plan.to_dict(),
            "confidence": self.confidence,
            "risk_assessment": self.risk_assessment.to_dict(),
            "business_impact": self.business_impact.to_dict(),
            "rollback_plan": self.rollback_plan.to_dict(),
        }


@dataclass(frozen=True)
class EvaluationOutcome:
    """結論評価の結果

    kind:
        ok: 結論あり（conclusion が設定される）
        no_action: 今回は結論なし（継続・延長、または発火ルールなし）
        error: 評価中に例外が発生した（reason にエラー内容）
    """
    kind: OutcomeKind
    conclusion: Optional[TestConclusion] = None
    analysis: Optional[TestAnalysis] = None
    action: Optional[RuleAction] = None
    reason: Optional[str] = None

    @classmethod
    def ok(cls, conclusion: TestConclusion, analysis: TestAnalysis) -> "EvaluationOutcome":
        return cls(
            kind=OutcomeKind.OK,
            conclusion=conclusion,
            analysis=analysis,
            action=conclusion.action,
            reason=conclusion.conclusion_reason,
        )

    @classmethod
    def no_action(
        cls, analysis: TestAnalysis, action: RuleAction, reason: str
    ) -> "EvaluationOutcome":
        return cls(kind=OutcomeKind.NO_ACTION, analysis=analysis, action=action, reason=reason)

    @classmethod
    def error(cls, reason: str) -> "EvaluationOutcome":
        return cls(kind=OutcomeKind.ERROR, reason=reason)

    @property
    def is_ok(self) -> bool:
        return self.kind == OutcomeKind.OK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "action": self.action.value if self.action else None,
            "reason": self.reason,
            "conclusion": self.conclusion.to_dict() if self.conclusion else None,
            "analysis": self.analysis.to_dict() if self.analysis else None,
        }
