# src/conclusion/planning.py
"""勝者スコアリングと実装・リスク・ロールバック計画の生成

勝者候補のスコア（0-100）とリスク（0-100）を計算し、
戦略ごとのテンプレートから実装計画・監視計画を組み立てる。
"""

from datetime import datetime, timedelta
from typing import List, Optional

from src.config.engine_config import (
    ALERT_THRESHOLDS,
    ESCALATION_PLAN,
    IMPLEMENTATION_PHASE_TEMPLATES,
    MONITORING_EXTRA_HOURS,
    MONITORING_METRICS,
    REVENUE_UNCERTAINTY,
    RISK_TOLERANCE_LIMITS,
    ROLLBACK_COMMUNICATION_PLAN,
    ROLLBACK_DATA_PRESERVATION,
    ROLLBACK_PROCEDURE,
    ROLLBACK_TIME_MINUTES,
    ROLLBACK_TRIGGERS,
    STRATEGY_RISK_BANDS,
    SelectionCriteria,
)
from src.conclusion.models import (
    BusinessImpact,
    EscalationStep,
    ImplementationPhase,
    ImplementationPlan,
    ImplementationStrategy,
    MonitoringPlan,
    RiskAssessment,
    RiskFactor,
    RollbackPlan,
    RollbackStep,
    RollbackTrigger,
    SuccessCriterion,
    Timeline,
    WinnerSelection,
)
from src.significance.models import StatisticalResult, TestAnalysis, Variant


# スコア配分（合計100点）
SCORE_WEIGHTS = {
    "confidence": 40.0,
    "improvement": 30.0,
    "sample_size": 20.0,
    "revenue": 10.0,
}

LOW_CONVERSION_RATE = 0.01
LOW_CONVERSION_RISK_PENALTY = 20.0

CONFIDENCE_TARGET = 95.0
LOW_IMPROVEMENT_THRESHOLD = 10.0
HIGH_COMPLEXITY_THRESHOLD = 7.0


# === スコアリング ===

def score_candidate(
    result: StatisticalResult,
    variant: Variant,
    analysis: TestAnalysis,
) -> float:
    """勝者候補の総合スコア（0-100）

    信頼度（最大40）+ 改善率（最大30）+ サンプル充足度（最大20）+ 収益寄与（最大10）
    """
    score = min(SCORE_WEIGHTS["confidence"], result.confidence * 0.4)
    score += min(SCORE_WEIGHTS["improvement"], abs(result.improvement) * 100.0 * 3.0)
    score += min(
        SCORE_WEIGHTS["sample_size"],
        analysis.sample_size_analysis.progress / 100.0 * 20.0,
    )

    current = analysis.sample_size_analysis.current
    if current > 0:
        revenue_improvement = variant.metrics.revenue / current * result.improvement
        score += min(SCORE_WEIGHTS["revenue"], max(0.0, revenue_improvement * 1000.0))
    return score


def variant_risk(result: StatisticalResult, variant: Variant) -> float:
    """バリアント単位のリスク（0-100）"""
    risk = (100.0 - result.confidence) * 0.3
    low, high = result.improvement_confidence_interval
    risk += (high - low) * 50.0
    if variant.metrics.conversion_rate < LOW_CONVERSION_RATE:
        risk += LOW_CONVERSION_RISK_PENALTY
    return min(100.0, max(0.0, risk))


def determine_strategy(risk_score: float) -> ImplementationStrategy:
    """リスクスコアから実装戦略を決定（<30 immediate, <60 gradual, それ以外 staged）"""
    for upper, strategy in STRATEGY_RISK_BANDS:
        if risk_score < upper:
            return ImplementationStrategy(strategy)
    return ImplementationStrategy.STAGED


def expected_revenue(result: StatisticalResult, variant: Variant) -> float:
    return variant.metrics.revenue * (1.0 + result.improvement)


# === 実装計画 ===

def standard_rollback_triggers() -> List[RollbackTrigger]:
    return [RollbackTrigger(**t) for t in ROLLBACK_TRIGGERS]


def build_phases(
    strategy: ImplementationStrategy,
    winner: WinnerSelection,
) -> List[ImplementationPhase]:
    """戦略のテンプレートからフェーズを生成"""
    phases = []
    for template in IMPLEMENTATION_PHASE_TEMPLATES[strategy.value]:
        phases.append(ImplementationPhase(
            **template,
            success_criteria=[
                SuccessCriterion(
                    metric="conversion_rate",
                    target=winner.expected_improvement,
                    tolerance=2.0,
                    timeframe_hours=template["duration_hours"],
                ),
            ],
            rollback_triggers=standard_rollback_triggers(),
        ))
    return phases


def build_timeline(phases: List[ImplementationPhase], start: datetime) -> Timeline:
    ends = []
    current = start
    for phase in phases:
        current = current + timedelta(hours=phase.duration_hours)
        ends.append(current)
    return Timeline(start=start, phases=ends, completion=ends[-1] if ends else start)


def build_checkpoints(phases: List[ImplementationPhase], start: datetime) -> List[datetime]:
    """各フェーズの 25/50/75/100% 時点のチェックポイント"""
    checkpoints = []
    current = start
    for phase in phases:
        duration = timedelta(hours=phase.duration_hours)
        for quarter in range(1, 5):
            checkpoints.append(current + duration * quarter / 4)
        current = current + duration
    return checkpoints


def build_monitoring_plan(
    phases: List[ImplementationPhase], start: datetime
) -> MonitoringPlan:
    total_hours = sum(p.duration_hours for p in phases)
    return MonitoringPlan(
        duration_hours=total_hours + MONITORING_EXTRA_HOURS if phases else 0,
        checkpoints=build_checkpoints(phases, start),
        metrics=list(MONITORING_METRICS) if phases else [],
        alert_thresholds=dict(ALERT_THRESHOLDS) if phases else {},
        escalation_plan=[EscalationStep(**s) for s in ESCALATION_PLAN] if phases else [],
    )


def build_success_criteria(
    winner: WinnerSelection, analysis: TestAnalysis
) -> List[SuccessCriterion]:
    current = analysis.sample_size_analysis.current
    revenue_per_user = winner.expected_revenue / current if current > 0 else 0.0
    return [
        SuccessCriterion("conversion_rate", winner.expected_improvement, 2.0, 24),
        SuccessCriterion("revenue_per_user", revenue_per_user, 5.0, 48),
        SuccessCriterion("user_satisfaction", 4.5, 0.2, 72),
    ]


def build_implementation_plan(
    winner: WinnerSelection,
    analysis: TestAnalysis,
    start: datetime,
) -> ImplementationPlan:
    """勝者の実装戦略に沿った実装計画（delayed はフェーズなし）"""
    strategy = winner.implementation_strategy
    phases = build_phases(strategy, winner)
    return ImplementationPlan(
        strategy=strategy,
        phases=phases,
        timeline=build_timeline(phases, start),
        rollout_percentages=[p.rollout_percentage for p in phases],
        monitoring_plan=build_monitoring_plan(phases, start),
        success_criteria=build_success_criteria(winner, analysis),
    )


def build_fallback_plan(start: datetime) -> ImplementationPlan:
    """勝者がいない場合の空の計画"""
    return ImplementationPlan(
        strategy=ImplementationStrategy.DELAYED,
        phases=[],
        timeline=Timeline(start=start, phases=[], completion=start),
        rollout_percentages=[],
        monitoring_plan=build_monitoring_plan([], start),
        success_criteria=[],
    )


# === リスク評価 ===

def technical_complexity(variants: List[Variant]) -> float:
    high_bounce = any(
        v.metrics.bounce_rate is not None and v.metrics.bounce_rate > 0.5
        for v in variants
    )
    return min(10.0, len(variants) * 2.0 + (3.0 if high_bounce else 0.0))


def operational_complexity(variants: List[Variant]) -> float:
    return min(10.0, len(variants) + (2.0 if len(variants) > 2 else 0.0))


def assess_risks(
    winner: Optional[WinnerSelection],
    observed_confidence: float,
    variants: List[Variant],
    criteria: SelectionCriteria,
) -> RiskAssessment:
    """リスク要因を集計してリスク評価を作成

    Args:
        winner: 選定された勝者（なければ None）
        observed_confidence: 勝者がいない場合に使う最良の観測信頼度（%）
        variants: 全バリアント
        criteria: 選定基準（risk_tolerance から許容リスクを決める）
    """
    factors: List[RiskFactor] = []

    confidence = winner.confidence if winner else observed_confidence
    if confidence < CONFIDENCE_TARGET:
        factors.append(RiskFactor(
            type="statistical",
            description="Below optimal confidence level",
            impact=7,
            probability=0.3,
            severity="medium",
            mitigation="Implement gradual rollout with monitoring",
        ))

    if winner and winner.expected_improvement < LOW_IMPROVEMENT_THRESHOLD:
        factors.append(RiskFactor(
            type="business",
            description="Low expected improvement",
            impact=5,
            probability=0.4,
            severity="low",
            mitigation="Monitor closely and have rollback ready",
        ))

    if technical_complexity(variants) > HIGH_COMPLEXITY_THRESHOLD:
        factors.append(RiskFactor(
            type="technical",
            description="High implementation complexity",
            impact=8,
            probability=0.6,
            severity="high",
            mitigation="Staged rollout with extensive testing",
        ))

    if factors:
        overall = min(
            100.0,
            sum(f.impact * f.probability * 10.0 for f in factors) / len(factors),
        )
    else:
        overall = 0.0

    return RiskAssessment(
        overall_risk_score=overall,
        risk_factors=factors,
        mitigation_strategies=[f.mitigation for f in factors if f.mitigation],
        max_acceptable_risk=RISK_TOLERANCE_LIMITS[criteria.risk_tolerance],
        recommended_approach=determine_strategy(overall),
    )


# === ビジネスインパクト・ロールバック ===

def calculate_business_impact(
    winner: Optional[WinnerSelection],
    winner_variant: Optional[Variant],
    analysis: TestAnalysis,
    variants: List[Variant],
) -> BusinessImpact:
    """収益インパクト（±30%の幅つき）と定性スコア"""
    if winner and winner_variant:
        revenue_impact = winner.expected_revenue - winner_variant.metrics.revenue
    else:
        revenue_impact = 0.0
    bounds = (
        revenue_impact * (1.0 - REVENUE_UNCERTAINTY),
        revenue_impact * (1.0 + REVENUE_UNCERTAINTY),
    )
    return BusinessImpact(
        revenue_impact=revenue_impact,
        revenue_impact_range=(min(bounds), max(bounds)),
        audience_reach=analysis.sample_size_analysis.current,
        strategic_alignment=8.0 if winner else 5.0,
        competitive_advantage=7.0 if winner else 5.0,
        brand_risk=3.0 if winner else 2.0,
        operational_complexity=operational_complexity(variants),
    )


def build_rollback_plan(control_id: str) -> RollbackPlan:
    return RollbackPlan(
        triggers=standard_rollback_triggers(),
        procedure=[RollbackStep(**s) for s in ROLLBACK_PROCEDURE],
        time_to_rollback_minutes=ROLLBACK_TIME_MINUTES,
        fallback_variant=control_id,
        communication_plan=list(ROLLBACK_COMMUNICATION_PLAN),
        data_preservation=list(ROLLBACK_DATA_PRESERVATION),
    )
