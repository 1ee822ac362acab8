# src/scheduling/evaluation_boundary.py
"""テスト単位の評価境界

スケジューラーは EvaluationBoundary を通じて1テストの評価を依頼する。
境界の実装はプロセス内でもリモート呼び出しでもよく、
スケジューラーの契約は EvaluationRequest / EvaluationResponse のみに依存する。

LocalEvaluationBoundary は ConclusionEngine をプロセス内で実行し、
勝者が決まった結論を実験ストアへ保存する。
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from src.conclusion.conclusion_engine import ConclusionEngine
from src.conclusion.models import ConclusionRule, OutcomeKind, TestConclusion
from src.scheduling.test_source import ExperimentStore
from src.significance.performance_monitor import MonitoringAlert, PerformanceMonitor


logger = logging.getLogger(__name__)


class EvaluationStatus(str, Enum):
    CONCLUDED = "concluded"
    NO_ACTION = "no_action"
    INVESTIGATE = "investigate"
    ERROR = "error"


@dataclass
class EvaluationRequest:
    """評価依頼

    Attributes:
        test_id: テストID
        force_evaluation: True の場合、テストの状態（running / 自動判定有効）を確認せずに評価
        implementation_strategy_hint: 実装戦略の指定
        custom_criteria: 選定基準の上書き（minimum_confidence など）
    """
    test_id: str
    force_evaluation: bool = False
    implementation_strategy_hint: Optional[str] = None
    custom_criteria: Optional[Dict[str, Any]] = None


@dataclass
class EvaluationResponse:
    """評価結果"""
    evaluation_completed: bool
    status: EvaluationStatus
    conclusion: Optional[TestConclusion] = None
    error: Optional[str] = None
    alerts: List[MonitoringAlert] = field(default_factory=list)

    @property
    def winner_selected(self) -> bool:
        return (
            self.status == EvaluationStatus.CONCLUDED
            and self.conclusion is not None
            and self.conclusion.selected_winner is not None
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "evaluation_completed": self.evaluation_completed,
            "status": self.status.value,
            "conclusion": self.conclusion.to_dict() if self.conclusion else None,
            "error": self.error,
            "alerts": [a.to_dict() for a in self.alerts],
        }


@runtime_checkable
class EvaluationBoundary(Protocol):
    """テスト評価の呼び出し先"""

    async def evaluate(self, request: EvaluationRequest) -> EvaluationResponse:
        ...


class LocalEvaluationBoundary:
    """ConclusionEngine をプロセス内で実行する評価境界

    使用例:
        boundary = LocalEvaluationBoundary(store, ConclusionEngine())
        response = await boundary.evaluate(EvaluationRequest(test_id="t-1"))
    """

    def __init__(
        self,
        store: ExperimentStore,
        engine: Optional[ConclusionEngine] = None,
        monitor: Optional[PerformanceMonitor] = None,
        custom_rules: Optional[Sequence[ConclusionRule]] = None,
    ):
        """
        Args:
            store: 実験ストア（バリアント取得・結論保存）
            engine: 結論判定エンジン
            monitor: パフォーマンス監視（指定時はアラートを応答に含める）
            custom_rules: 全テストに適用する追加ルール
        """
        self.store = store
        self.engine = engine or ConclusionEngine()
        self.monitor = monitor
        self.custom_rules = list(custom_rules or [])

    async def evaluate(self, request: EvaluationRequest) -> EvaluationResponse:
        """1テストを評価する

        ストアへのアクセスで発生した例外はそのまま送出する（呼び出し側でテスト単位に記録）。
        """
        test_id = request.test_id

        if not request.force_evaluation:
            test = await self.store.fetch_test(test_id)
            if test is None or not test.is_eligible:
                logger.info(f"評価対象外のためスキップ: test_id={test_id}")
                return EvaluationResponse(
                    evaluation_completed=True,
                    status=EvaluationStatus.NO_ACTION,
                )

        variants = await self.store.fetch_variants(test_id)
        alerts: List[MonitoringAlert] = []
        if self.monitor:
            # 常駐時はテストごとに最新評価のアラートのみ保持
            self.monitor.clear_alerts(test_id)
            alerts = self.monitor.monitor_test(test_id, variants)

        outcome = self.engine.evaluate(
            test_id,
            variants,
            custom_rules=self.custom_rules,
            criteria=request.custom_criteria,
            strategy_hint=request.implementation_strategy_hint,
        )

        if outcome.kind == OutcomeKind.ERROR:
            return EvaluationResponse(
                evaluation_completed=False,
                status=EvaluationStatus.ERROR,
                error=outcome.reason,
                alerts=alerts,
            )

        if outcome.analysis is not None and outcome.analysis.critical_issues:
            logger.warning(
                f"品質問題のため要調査: test_id={test_id}, "
                f"issues={[c.type.value for c in outcome.analysis.critical_issues]}"
            )
            return EvaluationResponse(
                evaluation_completed=True,
                status=EvaluationStatus.INVESTIGATE,
                conclusion=outcome.conclusion,
                alerts=alerts,
            )

        if outcome.kind == OutcomeKind.NO_ACTION:
            return EvaluationResponse(
                evaluation_completed=True,
                status=EvaluationStatus.NO_ACTION,
                alerts=alerts,
            )

        await self.store.save_conclusion(test_id, outcome.conclusion)
        return EvaluationResponse(
            evaluation_completed=True,
            status=EvaluationStatus.CONCLUDED,
            conclusion=outcome.conclusion,
            alerts=alerts,
        )
