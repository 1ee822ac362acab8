"""
コマンド共通処理
"""

import sys
from typing import List, Tuple

import click
import yaml

from src.cli.utils.yaml_loader import YamlValidationError, load_experiment
from src.conclusion.models import ConclusionRule
from src.significance.models import Variant


FORMAT_OPTION = click.option(
    '--format', 'output_format',
    type=click.Choice(['table', 'json']), default='table', help='出力形式',
)

FILE_OPTION = click.option(
    '-f', '--file', 'experiment_file',
    type=click.Path(exists=True, dir_okay=False), required=True,
    help='実験データYAML',
)


def load_experiment_or_exit(path: str) -> Tuple[str, List[Variant], List[ConclusionRule]]:
    """実験YAMLを読み込む（不正な場合は終了コード2）"""
    try:
        return load_experiment(path)
    except (YamlValidationError, yaml.YAMLError) as e:
        click.echo(f"[エラー] 実験データが不正です: {e}", err=True)
        sys.exit(2)
