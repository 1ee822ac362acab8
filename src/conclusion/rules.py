# src/conclusion/rules.py
"""結論ルールの評価

デフォルトルール定義、ルール条件で参照する指標の取り出し、
条件評価、発火ルールからのアクション決定を提供する。

アクションの優先順位: stop > conclude > pause > extend > continue
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from src.conclusion.models import (
    ConclusionCondition,
    ConclusionRule,
    ConditionMetric,
    ConditionOperator,
    RuleAction,
)
from src.significance.models import TestAnalysis, Variant


logger = logging.getLogger(__name__)


# === デフォルトルール定義 ===
DEFAULT_RULE_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "id": "significance_achieved",
        "name": "Statistical Significance Achieved",
        "type": "significance",
        "priority": 1,
        "conditions": [
            {"metric": "confidence", "operator": "gte", "value": 95, "unit": "percentage"},
            {"metric": "sample_size", "operator": "gte", "value": 1000, "unit": "count"},
        ],
        "action": "conclude",
        "description": "Conclude test when statistical significance is achieved",
    },
    {
        "id": "early_winner",
        "name": "Early Winner Detection",
        "type": "significance",
        "priority": 2,
        "conditions": [
            {"metric": "confidence", "operator": "gte", "value": 99, "unit": "percentage"},
            {"metric": "improvement", "operator": "gte", "value": 20, "unit": "percentage"},
        ],
        "action": "conclude",
        "description": "Early conclusion for clear winners",
    },
    {
        "id": "sample_size_reached",
        "name": "Target Sample Size Reached",
        "type": "sample_size",
        "priority": 3,
        "conditions": [
            {"metric": "sample_size", "operator": "gte", "value": 10000, "unit": "count"},
        ],
        "action": "conclude",
        "description": "Conclude when target sample size is reached",
    },
    {
        "id": "maximum_duration",
        "name": "Maximum Test Duration",
        "type": "duration",
        "priority": 4,
        "conditions": [
            {"metric": "duration", "operator": "gte", "value": 30, "unit": "days"},
        ],
        "action": "conclude",
        "description": "Force conclusion after maximum duration",
    },
    {
        "id": "performance_degradation",
        "name": "Significant Performance Drop",
        "type": "performance",
        "priority": 5,
        "conditions": [
            {"metric": "improvement", "operator": "lt", "value": -10, "unit": "percentage"},
        ],
        "action": "stop",
        "description": "Stop test if performance degrades significantly",
    },
]

# 先頭ほど強いアクション
ACTION_PRECEDENCE: List[RuleAction] = [
    RuleAction.STOP,
    RuleAction.CONCLUDE,
    RuleAction.PAUSE,
    RuleAction.EXTEND,
    RuleAction.CONTINUE,
]

# 浮動小数点の丸め誤差を吸収する比較許容幅
_COMPARISON_TOLERANCE = 1e-9


def default_rules() -> List[ConclusionRule]:
    """デフォルトルールを新しいインスタンスとして生成"""
    return [ConclusionRule.from_dict(d) for d in DEFAULT_RULE_DEFINITIONS]


@dataclass
class RuleContext:
    """条件評価に使う入力一式"""
    analysis: TestAnalysis
    variants: List[Variant]
    now: datetime


# === 指標の取り出し ===

def best_observed_confidence(analysis: TestAnalysis) -> float:
    """コントロール以外で最も高い観測信頼度（%）"""
    return max((r.confidence for r in analysis.non_control_results), default=0.0)


def best_improvement(analysis: TestAnalysis) -> float:
    """コントロール以外で最大の改善率（%）"""
    return max((r.improvement * 100.0 for r in analysis.non_control_results), default=0.0)


def _confidence(ctx: RuleContext) -> float:
    return best_observed_confidence(ctx.analysis)


def _p_value(ctx: RuleContext) -> float:
    significant = [r.p_value for r in ctx.analysis.results if r.is_significant]
    return min(significant) if significant else 1.0


def _sample_size(ctx: RuleContext) -> float:
    return float(ctx.analysis.sample_size_analysis.current)


def _duration(ctx: RuleContext) -> float:
    if not ctx.variants:
        return 0.0
    start = min(v.start_time for v in ctx.variants)
    return (ctx.now - start).total_seconds() / (24 * 60 * 60)


def _improvement(ctx: RuleContext) -> float:
    return best_improvement(ctx.analysis)


def _revenue(ctx: RuleContext) -> float:
    return sum(v.metrics.revenue for v in ctx.variants)


def _risk(ctx: RuleContext) -> float:
    return analysis_risk_score(ctx.analysis)


METRIC_EXTRACTORS: Dict[ConditionMetric, Callable[[RuleContext], float]] = {
    ConditionMetric.CONFIDENCE: _confidence,
    ConditionMetric.P_VALUE: _p_value,
    ConditionMetric.SAMPLE_SIZE: _sample_size,
    ConditionMetric.DURATION: _duration,
    ConditionMetric.IMPROVEMENT: _improvement,
    ConditionMetric.REVENUE: _revenue,
    ConditionMetric.RISK: _risk,
}

_unmapped = set(ConditionMetric) - set(METRIC_EXTRACTORS)
if _unmapped:
    raise RuntimeError(
        f"指標の取り出し関数が未定義です: {sorted(m.value for m in _unmapped)}"
    )


def metric_value(metric: ConditionMetric, ctx: RuleContext) -> float:
    return METRIC_EXTRACTORS[metric](ctx)


def analysis_risk_score(analysis: TestAnalysis) -> float:
    """テスト全体のリスクスコア（0-100）

    信頼度の不足・サンプル進捗の不足・改善率のばらつきから算出する。
    """
    risk = (100.0 - best_observed_confidence(analysis)) * 0.5
    risk += (1.0 - analysis.sample_size_analysis.progress / 100.0) * 30.0

    improvements = [r.improvement * 100.0 for r in analysis.results]
    if improvements:
        mean = sum(improvements) / len(improvements)
        variance = sum((i - mean) ** 2 for i in improvements) / len(improvements)
        risk += min(20.0, variance)

    return min(100.0, max(0.0, risk))


# === 条件評価 ===

def evaluate_condition(condition: ConclusionCondition, value: float) -> bool:
    """単一条件を評価

    境界値は許容幅 _COMPARISON_TOLERANCE で比較する
    （例: 改善率 19.99999999999999 は「20 以上」を満たす）。
    """
    op = condition.operator
    tol = _COMPARISON_TOLERANCE
    if op == ConditionOperator.BETWEEN:
        low, high = condition.value
        return low - tol <= value <= high + tol

    threshold = float(condition.value)
    if op == ConditionOperator.GT:
        return value > threshold + tol
    if op == ConditionOperator.GTE:
        return value >= threshold - tol
    if op == ConditionOperator.LT:
        return value < threshold - tol
    if op == ConditionOperator.LTE:
        return value <= threshold + tol
    if op == ConditionOperator.EQ:
        return math.isclose(value, threshold, rel_tol=0.0, abs_tol=tol)
    raise ValueError(f"未対応の演算子です: {op}")


def evaluate_rule(rule: ConclusionRule, ctx: RuleContext) -> bool:
    """ルールの全条件（AND）を評価"""
    return all(
        evaluate_condition(c, metric_value(c.metric, ctx)) for c in rule.conditions
    )


def merge_rules(
    defaults: Sequence[ConclusionRule],
    custom_rules: Optional[Sequence[ConclusionRule]] = None,
) -> List[ConclusionRule]:
    """デフォルトとカスタムルールを結合し、有効なものを優先度順に並べる

    同じ優先度のルールは結合順を保つ。
    """
    combined = list(defaults)
    for rule in custom_rules or []:
        rule.validate()
        combined.append(rule)
    active = [r for r in combined if r.is_active]
    return sorted(active, key=lambda r: r.priority)


def evaluate_rules(rules: Sequence[ConclusionRule], ctx: RuleContext) -> List[ConclusionRule]:
    """条件をすべて満たしたルールを優先度順に返す"""
    triggered = [rule for rule in rules if evaluate_rule(rule, ctx)]
    if triggered:
        logger.debug(
            f"ルール発火: test_id={ctx.analysis.test_id}, "
            f"rules={[r.id for r in triggered]}"
        )
    return triggered


def determine_conclusion_action(rules: Sequence[ConclusionRule]) -> RuleAction:
    """発火ルールから最も強いアクションを決定（発火なしは continue）"""
    actions = {r.action for r in rules}
    for action in ACTION_PRECEDENCE:
        if action in actions:
            return action
    return RuleAction.CONTINUE
