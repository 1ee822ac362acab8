"""
勝者スケジューラーコマンド実装

DATABASE_URL の PostgreSQL を実験ストアとして使用する。
"""

import asyncio
import sys

import click

from src.cli.commands.common import FORMAT_OPTION
from src.cli.utils.output import echo_json, echo_table
from src.monitoring.metrics_collector import MetricsCollector
from src.monitoring.notifications import LoggingNotificationSink
from src.scheduling.evaluation_boundary import LocalEvaluationBoundary
from src.scheduling.test_source import PostgresTestStore
from src.scheduling.winner_scheduler import CycleResult, WinnerScheduler


def scheduler_command(abtest_group, pass_context):
    """scheduler コマンドグループを abtest グループに追加"""

    def _build_scheduler(ctx) -> WinnerScheduler:
        store = PostgresTestStore(ctx.connect_database())
        boundary = LocalEvaluationBoundary(
            store,
            engine=ctx.conclusion_engine,
            monitor=ctx.performance_monitor(),
        )
        return WinnerScheduler(
            store,
            boundary,
            config=ctx.config.scheduler,
            metrics_collector=MetricsCollector(),
            notification_sink=LoggingNotificationSink(),
        )

    @abtest_group.group(name='scheduler')
    def scheduler_group():
        """自動勝者判定スケジューラー"""
        pass

    @scheduler_group.command('run-once')
    @click.option('--metrics', 'show_metrics', is_flag=True,
                  help='Prometheus形式のメトリクスも出力')
    @FORMAT_OPTION
    @pass_context
    def run_once(ctx, show_metrics: bool, output_format: str):
        """評価サイクルを1回実行する"""
        winner_scheduler = _build_scheduler(ctx)

        async def _run() -> CycleResult:
            try:
                return await winner_scheduler.force_run()
            finally:
                await winner_scheduler.shutdown()

        try:
            cycle = asyncio.run(_run())
        finally:
            ctx.close()

        if output_format == 'json':
            echo_json(cycle.to_dict())
        else:
            _display_cycle(cycle)

        if show_metrics:
            click.echo("")
            click.echo(winner_scheduler.metrics_collector.export_prometheus_format())

        if cycle.aborted:
            sys.exit(1)

    @scheduler_group.command()
    @pass_context
    def serve(ctx):
        """スケジューラーを常駐させる（Ctrl+C で停止）"""
        if not ctx.config.scheduler.enabled:
            click.echo("[エラー] スケジューラーが設定で無効化されています", err=True)
            sys.exit(1)

        winner_scheduler = _build_scheduler(ctx)

        async def _serve() -> None:
            await winner_scheduler.start()
            try:
                await asyncio.Event().wait()
            finally:
                await winner_scheduler.shutdown()

        click.echo(
            f"スケジューラーを開始します (間隔: {ctx.config.scheduler.check_interval}分)"
        )
        try:
            asyncio.run(_serve())
        except KeyboardInterrupt:
            click.echo("\nスケジューラーを停止しました")
        finally:
            ctx.close()


def _display_cycle(cycle: CycleResult) -> None:
    if cycle.aborted:
        click.echo(f"[エラー] サイクルを中断しました: {cycle.error}", err=True)
        return

    click.echo(f"評価対象: {cycle.eligible}件 / 評価: {len(cycle.results)}件\n")
    if cycle.results:
        echo_table(
            ["テスト", "結果", "勝者", "時間(ms)", "エラー"],
            [
                [
                    r.test_id,
                    "skipped" if r.skipped else (r.status.value if r.status else "-"),
                    r.winner.variant_id if r.winner else "-",
                    f"{r.duration_ms:.1f}",
                    r.error or "",
                ]
                for r in cycle.results
            ],
        )
    click.echo(f"\n勝者選定: {len(cycle.winners)}件 (通知: {'送信' if cycle.notified else 'なし'})")
