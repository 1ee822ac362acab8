"""
統計分析コマンド実装
"""

import sys
from typing import Optional

import click

from src.cli.commands.common import FILE_OPTION, FORMAT_OPTION, load_experiment_or_exit
from src.cli.utils.output import echo_json, echo_table, format_percent
from src.config.engine_config import ConfigurationError
from src.significance.models import TestAnalysis


def analyze_command(abtest_group, pass_context):
    """analyze コマンドを abtest グループに追加"""

    @abtest_group.command()
    @FILE_OPTION
    @click.option('--confidence', type=click.FloatRange(0.5, 0.999),
                  help='信頼水準（例: 0.95）。省略時は設定値')
    @FORMAT_OPTION
    @pass_context
    def analyze(ctx, experiment_file: str, confidence: Optional[float], output_format: str):
        """実験データの統計的有意性・品質・検出力を分析する"""
        test_id, variants, _ = load_experiment_or_exit(experiment_file)

        try:
            analysis = ctx.significance_engine.analyze_test(
                test_id, variants, target_confidence=confidence
            )
        except ConfigurationError as e:
            click.echo(f"[エラー] 分析できません: {e}", err=True)
            sys.exit(1)

        if output_format == 'json':
            echo_json(analysis.to_dict())
            return

        _display_analysis(analysis)


def _display_analysis(analysis: TestAnalysis) -> None:
    click.echo(f"テスト: {analysis.test_id}\n")
    click.echo(f"  状態: {analysis.status.value}")
    click.echo(f"  推奨アクション: {analysis.recommended_action.value}")
    click.echo(f"  全体有意性: {format_percent(analysis.overall_significance)}")
    click.echo(f"  勝者候補: {analysis.winning_variant or '-'}")
    click.echo(f"  信頼水準: {analysis.confidence:.0%}")

    click.echo("\nバリアント別結果:")
    rows = []
    for r in analysis.results:
        low, high = r.confidence_interval
        rows.append([
            r.variant + (" (control)" if r.is_control else ""),
            f"{r.conversion_rate:.4f}",
            f"[{low:.4f}, {high:.4f}]",
            f"{r.z_score:.3f}",
            f"{r.p_value:.4f}",
            format_percent(r.improvement * 100),
            "yes" if r.is_significant else "no",
        ])
    echo_table(["バリアント", "CVR", "信頼区間", "z", "p値", "改善率", "有意"], rows)

    click.echo("\n品質チェック:")
    echo_table(
        ["チェック", "結果", "影響", "内容"],
        [[c.type.value, c.status.value, c.impact.value, c.message] for c in analysis.quality_checks],
    )

    sample = analysis.sample_size_analysis
    power = analysis.power_analysis
    click.echo("\nサンプルサイズ・検出力:")
    click.echo(f"  現在/必要: {sample.current} / {sample.required} ({format_percent(sample.progress)})")
    click.echo(f"  検出力: {power.current_power:.2f} (目標 {power.target_power:.2f})")
    if analysis.time_to_significance_days is not None:
        click.echo(f"  有意到達までの推定: {analysis.time_to_significance_days:.1f}日")
