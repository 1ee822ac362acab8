"""
監視コマンド実装
"""

import click

from src.cli.commands.common import FILE_OPTION, FORMAT_OPTION, load_experiment_or_exit
from src.cli.utils.output import echo_json, echo_table


def monitor_command(abtest_group, pass_context):
    """monitor コマンドを abtest グループに追加"""

    @abtest_group.command()
    @FILE_OPTION
    @FORMAT_OPTION
    @pass_context
    def monitor(ctx, experiment_file: str, output_format: str):
        """実験データを分析し、監視アラートを表示する"""
        test_id, variants, _ = load_experiment_or_exit(experiment_file)

        alerts = ctx.performance_monitor().monitor_test(test_id, variants)

        if output_format == 'json':
            echo_json([a.to_dict() for a in alerts])
            return

        if not alerts:
            click.echo(f"テスト {test_id}: アラートはありません。")
            return

        click.echo(f"テスト {test_id}: アラート ({len(alerts)}件)\n")
        echo_table(
            ["重要度", "種別", "内容"],
            [[a.severity.value, a.type.value, a.message] for a in alerts],
        )
