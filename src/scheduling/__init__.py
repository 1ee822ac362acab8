# src/scheduling/__init__.py
"""スケジューリングモジュール

実行中のA/Bテストを定期的に評価し、勝者を自動判定する。
評価対象テストの取得元、テスト単位の評価境界、勝者スケジューラーを提供する。
"""

from src.scheduling.test_source import (
    EligibleTest,
    EligibleTestSource,
    ExperimentStore,
    FetchError,
    PostgresTestStore,
)
from src.scheduling.evaluation_boundary import (
    EvaluationBoundary,
    EvaluationRequest,
    EvaluationResponse,
    EvaluationStatus,
    LocalEvaluationBoundary,
)
from src.scheduling.winner_scheduler import (
    CycleResult,
    SchedulerMetrics,
    TestEvaluationResult,
    WinnerScheduler,
)

__all__ = [
    # 評価対象テスト
    "EligibleTest",
    "EligibleTestSource",
    "ExperimentStore",
    "FetchError",
    "PostgresTestStore",
    # 評価境界
    "EvaluationBoundary",
    "EvaluationRequest",
    "EvaluationResponse",
    "EvaluationStatus",
    "LocalEvaluationBoundary",
    # スケジューラー
    "CycleResult",
    "SchedulerMetrics",
    "TestEvaluationResult",
    "WinnerScheduler",
]
