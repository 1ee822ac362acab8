# src/scheduling/winner_scheduler.py
"""自動勝者判定スケジューラー

一定間隔で評価対象テストを取得し、評価境界（EvaluationBoundary）を通じて
結論判定を実行する。

処理フロー（1サイクル）:
    評価対象テスト取得 (fetch_eligible_tests)
        ↓  失敗時はサイクル中断（FetchError）
    評価中テストを除外（アクティブセット）
        ↓
    max_concurrent_evaluations 件に制限
        ↓
    並行評価 (asyncio.gather)  ← テスト単位で失敗を分離
        ↓
    日次メトリクス更新 → MetricsCollector へ反映
        ↓
    勝者がいればサイクルサマリーを1回通知

状態遷移: idle → running cycle → idle
サイクルは重ならない（asyncio.Lock）。アクティブセットはプロセス内のみで、
複数インスタンス間の排他は行わない。

使用例:
    scheduler = WinnerScheduler(store, LocalEvaluationBoundary(store))
    await scheduler.start()
    ...
    await scheduler.shutdown()
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Set

from src.config.engine_config import SchedulerConfig
from src.monitoring.metrics_collector import MetricsCollector
from src.monitoring.notifications import (
    CycleSummary,
    LoggingNotificationSink,
    NotificationSink,
    WinnerNotice,
)
from src.scheduling.evaluation_boundary import (
    EvaluationBoundary,
    EvaluationRequest,
    EvaluationStatus,
)
from src.scheduling.test_source import EligibleTest, EligibleTestSource, FetchError


logger = logging.getLogger(__name__)


@dataclass
class TestEvaluationResult:
    """1テスト分の評価結果

    Attributes:
        test_id: テストID
        status: 評価ステータス（評価中でスキップした場合は None）
        winner: 勝者の詳細（勝者がいない場合は None）
        error: エラー内容
        duration_ms: 評価所要時間（ミリ秒）
        skipped: 既に評価中だったためスキップした場合 True
    """
    __test__ = False

    test_id: str
    status: Optional[EvaluationStatus] = None
    winner: Optional[WinnerNotice] = None
    error: Optional[str] = None
    duration_ms: float = 0.0
    skipped: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.skipped and self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "test_id": self.test_id,
            "status": self.status.value if self.status else None,
            "winner": self.winner.to_dict() if self.winner else None,
            "error": self.error,
            "duration_ms": round(self.duration_ms, 3),
            "skipped": self.skipped,
        }


@dataclass
class SchedulerMetrics:
    """スケジューラーの日次メトリクス

    tests_evaluated_today / winners_selected_today / errors_today は
    日付が変わった時点でリセットされる。
    """
    total_tests_monitored: int = 0
    """直近サイクルで取得した評価対象テスト数"""

    tests_evaluated_today: int = 0
    winners_selected_today: int = 0
    errors_today: int = 0

    average_evaluation_time_ms: float = 0.0
    """当日の評価所要時間の平均"""

    success_rate: float = 100.0
    """当日の評価成功率（0-100）"""

    last_run_at: Optional[datetime] = None
    day: Optional[date] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_tests_monitored": self.total_tests_monitored,
            "tests_evaluated_today": self.tests_evaluated_today,
            "winners_selected_today": self.winners_selected_today,
            "errors_today": self.errors_today,
            "average_evaluation_time_ms": round(self.average_evaluation_time_ms, 3),
            "success_rate": round(self.success_rate, 2),
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
        }


@dataclass
class CycleResult:
    """1サイクルの結果"""
    started_at: datetime
    eligible: int = 0
    results: List[TestEvaluationResult] = field(default_factory=list)
    aborted: bool = False
    error: Optional[str] = None
    notified: bool = False

    @property
    def winners(self) -> List[WinnerNotice]:
        return [r.winner for r in self.results if r.winner is not None]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "eligible": self.eligible,
            "results": [r.to_dict() for r in self.results],
            "aborted": self.aborted,
            "error": self.error,
            "notified": self.notified,
        }


class WinnerScheduler:
    """自動勝者判定スケジューラー

    プロセス起動時に1つ生成し、終了時に shutdown() を呼ぶ。
    """

    def __init__(
        self,
        source: EligibleTestSource,
        boundary: EvaluationBoundary,
        config: Optional[SchedulerConfig] = None,
        metrics_collector: Optional[MetricsCollector] = None,
        notification_sink: Optional[NotificationSink] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            source: 評価対象テストの取得元
            boundary: テスト単位の評価境界
            config: スケジューラー設定
            metrics_collector: メトリクス収集（省略時は新規生成）
            notification_sink: 通知先（省略時はログ出力）
            clock: 現在時刻を返す関数
        """
        self.source = source
        self.boundary = boundary
        self.config = config or SchedulerConfig()
        self.config.validate()
        self.metrics_collector = metrics_collector or MetricsCollector()
        self.notification_sink = notification_sink or LoggingNotificationSink()
        self._clock = clock or datetime.now

        self.metrics = SchedulerMetrics(day=self._clock().date())
        self._active: Set[str] = set()
        self._cycle_lock = asyncio.Lock()
        self._timer_task: Optional[asyncio.Task] = None
        self._evaluation_time_total_ms = 0.0

    # === 状態 ===

    @property
    def is_running(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    @property
    def active_evaluations(self) -> Set[str]:
        return set(self._active)

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "enabled": self.config.enabled,
            "check_interval": self.config.check_interval,
            "active_evaluations": sorted(self._active),
            "metrics": self.metrics.to_dict(),
        }

    # === ライフサイクル ===

    async def start(self) -> None:
        """タイマーを開始（無効設定または起動済みの場合は何もしない）"""
        if not self.config.enabled:
            logger.info("スケジューラーは無効化されています")
            return
        if self.is_running:
            return

        self._timer_task = asyncio.create_task(self._timer_loop())
        logger.info(f"スケジューラー開始: check_interval={self.config.check_interval}分")

    async def stop(self) -> None:
        """タイマーを停止（実行中のサイクルは完了まで継続する）"""
        task = self._timer_task
        self._timer_task = None
        if task is None:
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("スケジューラー停止")

    async def shutdown(self) -> None:
        """タイマーを停止し、プロセス内の状態を破棄"""
        await self.stop()
        self._active.clear()
        self.metrics = SchedulerMetrics(day=self._clock().date())
        self._evaluation_time_total_ms = 0.0

    async def update_config(self, **changes: Any) -> SchedulerConfig:
        """設定を更新

        check_interval が変わり、かつ実行中の場合はタイマーを再起動する。
        その他の設定は次のサイクルから反映される。

        Raises:
            ConfigurationError: 更新後の設定が不正な場合
        """
        new_config = replace(self.config, **changes)
        new_config.validate()

        interval_changed = new_config.check_interval != self.config.check_interval
        self.config = new_config
        logger.info(f"スケジューラー設定更新: changes={sorted(changes)}")

        if not new_config.enabled:
            await self.stop()
        elif interval_changed and self.is_running:
            await self.stop()
            await self.start()
        return new_config

    async def force_run(self) -> CycleResult:
        """タイマーを待たずに1サイクル実行"""
        return await self._run_cycle()

    async def _timer_loop(self) -> None:
        while True:
            try:
                await asyncio.shield(self._run_cycle())
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"サイクル実行中の予期しないエラー: {e}", exc_info=True)
            await asyncio.sleep(self.config.check_interval * 60)

    # === サイクル ===

    async def _run_cycle(self) -> CycleResult:
        async with self._cycle_lock:
            started = time.perf_counter()
            cycle = CycleResult(started_at=self._clock())
            self._roll_day()
            logger.info("勝者判定サイクル開始")

            try:
                tests = await self.source.fetch_eligible_tests(
                    self.config.minimum_test_age_hours
                )
            except FetchError as e:
                logger.warning(f"評価対象テストの取得に失敗したためサイクルを中断: {e}")
                cycle.aborted = True
                cycle.error = str(e)
                self.metrics_collector.record_cycle(False, time.perf_counter() - started)
                return cycle

            cycle.eligible = len(tests)
            candidates = [t for t in tests if t.id not in self._active]
            batch = candidates[: self.config.max_concurrent_evaluations]
            if len(candidates) > len(batch):
                logger.info(
                    f"同時評価数の上限により次回へ持ち越し: "
                    f"deferred={len(candidates) - len(batch)}"
                )

            gathered = await asyncio.gather(
                *(self.evaluate_test(test) for test in batch),
                return_exceptions=True,
            )
            for test, item in zip(batch, gathered):
                if isinstance(item, BaseException):
                    cycle.results.append(TestEvaluationResult(test_id=test.id, error=str(item)))
                else:
                    cycle.results.append(item)

            self._update_metrics(cycle)
            cycle.notified = await self._notify(cycle)

            duration = time.perf_counter() - started
            self.metrics_collector.record_cycle(True, duration, eligible=cycle.eligible)
            logger.info(
                f"勝者判定サイクル完了: eligible={cycle.eligible}, "
                f"evaluated={len(cycle.results)}, winners={len(cycle.winners)}, "
                f"duration={duration:.2f}s"
            )
            return cycle

    async def evaluate_test(
        self,
        test: EligibleTest,
        force_evaluation: bool = False,
    ) -> TestEvaluationResult:
        """1テストを評価

        同じテストIDが評価中の場合は評価せず skipped=True を返す。
        評価中の例外は結果の error に記録し、送出しない。
        """
        if test.id in self._active:
            logger.info(f"評価中のためスキップ: test_id={test.id}")
            return TestEvaluationResult(test_id=test.id, skipped=True)

        self._active.add(test.id)
        self.metrics_collector.evaluation_started()
        started = time.perf_counter()
        try:
            request = EvaluationRequest(
                test_id=test.id,
                force_evaluation=force_evaluation,
                custom_criteria=self.config.default_criteria.to_dict(),
            )
            response = await self.boundary.evaluate(request)
            result = TestEvaluationResult(
                test_id=test.id,
                status=response.status,
                error=response.error,
            )
            if response.winner_selected:
                result.winner = _winner_notice(test.id, response.conclusion)
        except Exception as e:
            logger.error(f"テスト評価エラー: test_id={test.id}, error={e}", exc_info=True)
            result = TestEvaluationResult(
                test_id=test.id,
                status=EvaluationStatus.ERROR,
                error=str(e),
            )
        finally:
            self._active.discard(test.id)
            self.metrics_collector.evaluation_finished()

        result.duration_ms = (time.perf_counter() - started) * 1000
        self.metrics_collector.record_evaluation(
            result.status.value if result.status else "error",
            result.duration_ms / 1000,
        )
        return result

    # === メトリクス・通知 ===

    def _roll_day(self) -> None:
        today = self._clock().date()
        if self.metrics.day != today:
            logger.info(f"日次メトリクスをリセット: day={today.isoformat()}")
            self.metrics = SchedulerMetrics(
                total_tests_monitored=self.metrics.total_tests_monitored,
                last_run_at=self.metrics.last_run_at,
                day=today,
            )
            self._evaluation_time_total_ms = 0.0

    def _update_metrics(self, cycle: CycleResult) -> None:
        m = self.metrics
        evaluated = [r for r in cycle.results if not r.skipped]

        m.total_tests_monitored = cycle.eligible
        m.tests_evaluated_today += len(evaluated)
        m.errors_today += sum(1 for r in evaluated if r.error is not None)
        m.winners_selected_today += len(cycle.winners)
        m.last_run_at = cycle.started_at

        self._evaluation_time_total_ms += sum(r.duration_ms for r in evaluated)
        if m.tests_evaluated_today > 0:
            m.average_evaluation_time_ms = (
                self._evaluation_time_total_ms / m.tests_evaluated_today
            )
            m.success_rate = (
                (m.tests_evaluated_today - m.errors_today) / m.tests_evaluated_today * 100
            )

        self.metrics_collector.record_winner_selected(len(cycle.winners))
        self.metrics_collector.record_daily_summary(
            m.tests_evaluated_today, m.winners_selected_today, m.success_rate
        )

    async def _notify(self, cycle: CycleResult) -> bool:
        winners = cycle.winners
        notifications = self.config.notifications
        if not winners or not notifications.enabled:
            return False

        summary = CycleSummary(
            winners_selected=len(winners),
            total_tests_monitored=self.metrics.total_tests_monitored,
            success_rate=self.metrics.success_rate,
            winners=winners,
            channels=list(notifications.channels),
            stakeholders=list(notifications.stakeholders),
            timestamp=self._clock(),
        )
        try:
            await self.notification_sink.send(summary)
        except Exception as e:
            logger.warning(f"通知送信に失敗: {e}")
            self.metrics_collector.record_notification(False)
            return False

        self.metrics_collector.record_notification(True)
        return True


def _winner_notice(test_id: str, conclusion) -> WinnerNotice:
    winner = conclusion.selected_winner
    plan = conclusion.implementation_plan
    return WinnerNotice(
        test_id=test_id,
        variant_id=winner.variant_id,
        variant_name=winner.variant_name,
        confidence=winner.confidence,
        expected_improvement=winner.expected_improvement,
        implementation_strategy=plan.strategy.value if plan else "",
    )
