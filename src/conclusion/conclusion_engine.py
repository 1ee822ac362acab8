# src/conclusion/conclusion_engine.py
"""テスト結論判定エンジン

SignificanceEngine の分析結果に優先度付きルールを適用し、
テストを継続・延長・一時停止・停止・結論のいずれにするか決定する。
結論の場合は勝者を多基準スコアで選定し、実装計画・リスク評価・
ビジネスインパクト・ロールバック計画を生成する。

評価中の例外はすべて捕捉してログに記録し、EvaluationOutcome.error として返す。
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from src.config.engine_config import ConfigurationError, SelectionCriteria
from src.conclusion.models import (
    ConclusionRule,
    EvaluationOutcome,
    ImplementationStrategy,
    RuleAction,
    TestConclusion,
    WinnerSelection,
)
from src.conclusion import planning
from src.conclusion.rules import (
    RuleContext,
    best_observed_confidence,
    default_rules,
    determine_conclusion_action,
    evaluate_rules,
    merge_rules,
)
from src.significance.models import StatisticalResult, TestAnalysis, Variant
from src.significance.significance_engine import SignificanceEngine


logger = logging.getLogger(__name__)


CriteriaInput = Union[SelectionCriteria, Dict[str, Any], None]


class ConclusionEngine:
    """テスト結論判定エンジン

    使用例:
        engine = ConclusionEngine()
        outcome = engine.evaluate("test-1", variants)
        if outcome.is_ok and outcome.conclusion.selected_winner:
            print(outcome.conclusion.selected_winner.variant_id)
    """

    def __init__(
        self,
        significance_engine: Optional[SignificanceEngine] = None,
        criteria: Optional[SelectionCriteria] = None,
        rules: Optional[List[ConclusionRule]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            significance_engine: 統計分析エンジン
            criteria: デフォルトの勝者選定基準
            rules: 基本ルール（省略時は組み込みの5ルール）
            clock: 現在時刻を返す関数
        """
        self._clock = clock or datetime.now
        self.significance_engine = significance_engine or SignificanceEngine(clock=self._clock)
        self.criteria = criteria or SelectionCriteria()
        self.criteria.validate()
        self.rules = rules if rules is not None else default_rules()

    # === 公開API ===

    def evaluate(
        self,
        test_id: str,
        variants: List[Variant],
        custom_rules: Optional[Sequence[ConclusionRule]] = None,
        criteria: CriteriaInput = None,
        strategy_hint: Optional[str] = None,
    ) -> EvaluationOutcome:
        """テストの結論を評価する

        Args:
            test_id: テストID
            variants: コントロールを含むバリアント一覧
            custom_rules: 追加ルール
            criteria: 選定基準（SelectionCriteria、または既定値への上書き辞書）
            strategy_hint: 実装戦略の指定（指定時は導出された戦略より優先）

        Returns:
            EvaluationOutcome（例外は送出しない）
        """
        try:
            return self._evaluate(test_id, variants, custom_rules, criteria, strategy_hint)
        except Exception as e:
            logger.error(f"結論評価エラー: test_id={test_id}, error={e}", exc_info=True)
            return EvaluationOutcome.error(str(e))

    def evaluate_test_conclusion(
        self,
        test_id: str,
        variants: List[Variant],
        custom_rules: Optional[Sequence[ConclusionRule]] = None,
        criteria: CriteriaInput = None,
        strategy_hint: Optional[str] = None,
    ) -> Optional[TestConclusion]:
        """結論があれば TestConclusion、なければ（エラー含む）None を返す"""
        outcome = self.evaluate(test_id, variants, custom_rules, criteria, strategy_hint)
        return outcome.conclusion if outcome.is_ok else None

    # === 内部処理 ===

    def _evaluate(
        self,
        test_id: str,
        variants: List[Variant],
        custom_rules: Optional[Sequence[ConclusionRule]],
        criteria: CriteriaInput,
        strategy_hint: Optional[str],
    ) -> EvaluationOutcome:
        now = self._clock()
        selection_criteria = self._resolve_criteria(criteria)
        hint = self._resolve_strategy_hint(strategy_hint)

        analysis = self.significance_engine.analyze_test(test_id, variants)

        rules = merge_rules(self.rules, custom_rules)
        triggered = evaluate_rules(rules, RuleContext(analysis, variants, now))
        if not triggered:
            return EvaluationOutcome.no_action(
                analysis, RuleAction.CONTINUE, "No conclusion rule triggered"
            )

        action = determine_conclusion_action(triggered)
        if action in (RuleAction.CONTINUE, RuleAction.EXTEND):
            return EvaluationOutcome.no_action(
                analysis, action, f"Test should {action.value}"
            )

        winner = None
        if action == RuleAction.CONCLUDE:
            winner = self.select_winner(analysis, variants, selection_criteria)
            if winner and hint:
                winner.implementation_strategy = hint

        if winner:
            plan = planning.build_implementation_plan(winner, analysis, now)
        else:
            plan = planning.build_fallback_plan(now)

        control = next(v for v in variants if v.is_control)
        winner_variant = (
            next(v for v in variants if v.id == winner.variant_id) if winner else None
        )

        conclusion = TestConclusion(
            test_id=test_id,
            conclusion_time=now,
            conclusion_reason=self._conclusion_reason(triggered, action),
            action=action,
            triggered_rules=tuple(triggered),
            selected_winner=winner,
            implementation_plan=plan,
            confidence=analysis.confidence,
            risk_assessment=planning.assess_risks(
                winner, best_observed_confidence(analysis), variants, selection_criteria
            ),
            business_impact=planning.calculate_business_impact(
                winner, winner_variant, analysis, variants
            ),
            rollback_plan=planning.build_rollback_plan(control.id),
        )

        logger.info(
            f"テスト結論: test_id={test_id}, action={action.value}, "
            f"rules={[r.id for r in triggered]}, "
            f"winner={winner.variant_id if winner else None}"
        )
        return EvaluationOutcome.ok(conclusion, analysis)

    def select_winner(
        self,
        analysis: TestAnalysis,
        variants: List[Variant],
        criteria: Optional[SelectionCriteria] = None,
    ) -> Optional[WinnerSelection]:
        """選定基準を満たす候補から最高スコアのバリアントを選ぶ

        Returns:
            WinnerSelection。候補がなければ None
        """
        criteria = criteria or self.criteria
        by_id = {v.id: v for v in variants}

        candidates = [
            r for r in analysis.non_control_results
            if r.confidence >= criteria.minimum_confidence
            and r.improvement * 100.0 >= criteria.minimum_improvement
        ]
        if not candidates:
            logger.info(
                f"勝者候補なし: test_id={analysis.test_id}, "
                f"fallback={criteria.fallback_strategy}"
            )
            return None

        scored = [
            (planning.score_candidate(r, by_id[r.variant], analysis), r)
            for r in candidates
        ]
        # 同点の場合は先に現れた候補を採用
        best_score, best = max(scored, key=lambda item: item[0])
        variant = by_id[best.variant]
        risk = planning.variant_risk(best, variant)

        return WinnerSelection(
            variant_id=variant.id,
            variant_name=variant.name,
            selection_reason=self._selection_reason(best, best_score),
            confidence=best.confidence,
            expected_improvement=best.improvement * 100.0,
            expected_revenue=planning.expected_revenue(best, variant),
            risk_score=risk,
            implementation_strategy=planning.determine_strategy(risk),
            score=best_score,
        )

    def _resolve_criteria(self, criteria: CriteriaInput) -> SelectionCriteria:
        if criteria is None:
            return self.criteria
        if isinstance(criteria, SelectionCriteria):
            criteria.validate()
            return criteria
        return self.criteria.merged(criteria)

    @staticmethod
    def _resolve_strategy_hint(hint: Optional[str]) -> Optional[ImplementationStrategy]:
        if not hint:
            return None
        try:
            return ImplementationStrategy(hint)
        except ValueError:
            raise ConfigurationError(f"実装戦略の指定が不正です: {hint}")

    @staticmethod
    def _conclusion_reason(triggered: List[ConclusionRule], action: RuleAction) -> str:
        primary = next(r for r in triggered if r.action == action)
        return f"Test concluded based on: {primary.name}. {primary.description}"

    @staticmethod
    def _selection_reason(result: StatisticalResult, score: float) -> str:
        return (
            f"Selected based on {result.improvement * 100:.1f}% improvement "
            f"with {result.confidence:.1f}% confidence (score: {score:.1f})"
        )
