# Conclusion Module
"""
A/Bテスト結論判定モジュール

統計分析の結果に優先度付きルールを適用し、テストの結論と勝者を決定する。

設計方針:
- ルール条件の指標は閉じた列挙型 ConditionMetric で表し、取り出し関数を全件定義
- アクションの優先順位は stop > conclude > pause > extend > continue
- 評価結果は EvaluationOutcome（ok / no_action / error）で返し、例外を送出しない
"""

from src.conclusion.models import (
    BusinessImpact,
    ConclusionCondition,
    ConclusionRule,
    ConditionMetric,
    ConditionOperator,
    EvaluationOutcome,
    ImplementationPhase,
    ImplementationPlan,
    ImplementationStrategy,
    OutcomeKind,
    RiskAssessment,
    RiskFactor,
    RollbackPlan,
    RollbackStep,
    RollbackTrigger,
    RuleAction,
    RuleType,
    TestConclusion,
    WinnerSelection,
)
from src.conclusion.rules import default_rules, determine_conclusion_action
from src.conclusion.conclusion_engine import ConclusionEngine

__all__ = [
    "BusinessImpact",
    "ConclusionCondition",
    "ConclusionRule",
    "ConditionMetric",
    "ConditionOperator",
    "EvaluationOutcome",
    "ImplementationPhase",
    "ImplementationPlan",
    "ImplementationStrategy",
    "OutcomeKind",
    "RiskAssessment",
    "RiskFactor",
    "RollbackPlan",
    "RollbackStep",
    "RollbackTrigger",
    "RuleAction",
    "RuleType",
    "TestConclusion",
    "WinnerSelection",
    "default_rules",
    "determine_conclusion_action",
    "ConclusionEngine",
]
