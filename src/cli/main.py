#!/usr/bin/env python3
"""
A/Bテスト判定 CLI メインエントリーポイント

実験データ（YAML）の統計分析・結論判定・監視と、
PostgreSQL 上の実行中テストに対する勝者スケジューラーをターミナルから操作する。
"""

import logging
import sys
from typing import Optional

import click
import yaml

from src.config.engine_config import ConfigurationError, EngineConfig, load_engine_config
from src.conclusion.conclusion_engine import ConclusionEngine
from src.db.connection import DatabaseConnection
from src.significance.performance_monitor import PerformanceMonitor
from src.significance.significance_engine import SignificanceEngine

# コマンドモジュールインポート
from src.cli.commands.analyze import analyze_command
from src.cli.commands.evaluate import evaluate_command
from src.cli.commands.monitor import monitor_command
from src.cli.commands.scheduler import scheduler_command


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class CLIContext:
    """CLI共通コンテキスト（依存関係を保持）"""

    def __init__(self):
        self.config: EngineConfig = EngineConfig()
        self.db: Optional[DatabaseConnection] = None
        self._significance_engine: Optional[SignificanceEngine] = None
        self._conclusion_engine: Optional[ConclusionEngine] = None

    def load_config(self, path: str) -> None:
        self.config = load_engine_config(path)
        self._significance_engine = None
        self._conclusion_engine = None

    @property
    def significance_engine(self) -> SignificanceEngine:
        """SignificanceEngine を遅延初期化"""
        if self._significance_engine is None:
            self._significance_engine = SignificanceEngine(self.config.statistics)
        return self._significance_engine

    @property
    def conclusion_engine(self) -> ConclusionEngine:
        """ConclusionEngine を遅延初期化"""
        if self._conclusion_engine is None:
            self._conclusion_engine = ConclusionEngine(
                significance_engine=self.significance_engine,
                criteria=self.config.scheduler.default_criteria,
            )
        return self._conclusion_engine

    def performance_monitor(self) -> PerformanceMonitor:
        return PerformanceMonitor(self.significance_engine)

    def connect_database(self) -> DatabaseConnection:
        """DATABASE_URL に接続（失敗時は終了コード1）"""
        if self.db is None:
            try:
                self.db = DatabaseConnection()
            except ValueError as e:
                click.echo(f"[初期化エラー] データベース設定が不正です: {e}", err=True)
                sys.exit(1)
        return self.db

    def close(self) -> None:
        if self.db is not None:
            self.db.close()
            self.db = None


# click の pass_context でCLIContextを共有
pass_context = click.make_pass_decorator(CLIContext, ensure=True)


@click.group()
@click.version_option(version="1.0.0", prog_name="abtest")
@click.option('--config', 'config_path', type=click.Path(exists=True, dir_okay=False),
              help='エンジン設定YAML')
@click.option('--verbose', is_flag=True, help='詳細ログを表示')
@pass_context
def abtest(ctx: CLIContext, config_path: Optional[str], verbose: bool):
    """
    A/Bテスト統計判定 CLI

    実験データの有意性分析、勝者判定、自動判定スケジューラーを操作します。
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=LOG_FORMAT,
    )

    if config_path:
        try:
            ctx.load_config(config_path)
        except (ConfigurationError, yaml.YAMLError) as e:
            click.echo(f"[エラー] 設定ファイルが不正です: {e}", err=True)
            sys.exit(2)


# 各コマンドを追加
analyze_command(abtest, pass_context)
evaluate_command(abtest, pass_context)
monitor_command(abtest, pass_context)
scheduler_command(abtest, pass_context)


if __name__ == '__main__':
    abtest()
