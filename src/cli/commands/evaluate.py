"""
結論判定コマンド実装
"""

import sys
from typing import Any, Dict, Optional

import click
import yaml

from src.cli.commands.common import FILE_OPTION, FORMAT_OPTION, load_experiment_or_exit
from src.cli.utils.output import echo_json, echo_table, format_percent
from src.cli.utils.yaml_loader import YamlValidationError, load_rules
from src.conclusion.models import EvaluationOutcome, ImplementationStrategy, OutcomeKind


def evaluate_command(abtest_group, pass_context):
    """evaluate コマンドを abtest グループに追加"""

    @abtest_group.command()
    @FILE_OPTION
    @click.option('--rules', 'rules_file', type=click.Path(exists=True, dir_okay=False),
                  help='追加ルールYAML（rules: 配列）')
    @click.option('--strategy', type=click.Choice([s.value for s in ImplementationStrategy]),
                  help='実装戦略を指定')
    @click.option('--min-confidence', type=float, help='勝者に必要な最小信頼度（%）')
    @click.option('--min-improvement', type=float, help='勝者に必要な最小改善率（%）')
    @click.option('--risk-tolerance', type=click.Choice(['conservative', 'moderate', 'aggressive']),
                  help='リスク許容度')
    @FORMAT_OPTION
    @pass_context
    def evaluate(ctx, experiment_file: str, rules_file: Optional[str], strategy: Optional[str],
                 min_confidence: Optional[float], min_improvement: Optional[float],
                 risk_tolerance: Optional[str], output_format: str):
        """ルールを適用してテストの結論と勝者を判定する"""
        test_id, variants, custom_rules = load_experiment_or_exit(experiment_file)

        if rules_file:
            try:
                custom_rules = custom_rules + load_rules(rules_file)
            except (YamlValidationError, yaml.YAMLError) as e:
                click.echo(f"[エラー] ルール定義が不正です: {e}", err=True)
                sys.exit(2)

        overrides: Dict[str, Any] = {}
        if min_confidence is not None:
            overrides["minimum_confidence"] = min_confidence
        if min_improvement is not None:
            overrides["minimum_improvement"] = min_improvement
        if risk_tolerance is not None:
            overrides["risk_tolerance"] = risk_tolerance

        outcome = ctx.conclusion_engine.evaluate(
            test_id,
            variants,
            custom_rules=custom_rules,
            criteria=overrides or None,
            strategy_hint=strategy,
        )

        if output_format == 'json':
            echo_json(outcome.to_dict())
        else:
            _display_outcome(test_id, outcome)

        if outcome.kind == OutcomeKind.ERROR:
            sys.exit(1)


def _display_outcome(test_id: str, outcome: EvaluationOutcome) -> None:
    click.echo(f"テスト: {test_id}\n")

    if outcome.kind == OutcomeKind.ERROR:
        click.echo(f"[エラー] 評価に失敗しました: {outcome.reason}", err=True)
        return

    click.echo(f"  判定: {outcome.kind.value}")
    click.echo(f"  アクション: {outcome.action.value if outcome.action else '-'}")
    click.echo(f"  理由: {outcome.reason}")

    conclusion = outcome.conclusion
    if conclusion is None:
        return

    click.echo(f"  発火ルール: {', '.join(r.id for r in conclusion.triggered_rules)}")

    winner = conclusion.selected_winner
    if winner is None:
        click.echo("\n勝者: なし")
    else:
        click.echo(f"\n勝者: {winner.variant_name} ({winner.variant_id})")
        click.echo(f"  選定理由: {winner.selection_reason}")
        click.echo(f"  信頼度: {format_percent(winner.confidence)}")
        click.echo(f"  期待改善率: {format_percent(winner.expected_improvement)}")
        click.echo(f"  リスクスコア: {winner.risk_score:.1f}")

    plan = conclusion.implementation_plan
    click.echo(f"\n実装計画: {plan.strategy.value}")
    if plan.phases:
        echo_table(
            ["フェーズ", "配分", "期間(h)"],
            [[p.name, f"{p.rollout_percentage}%", p.duration_hours] for p in plan.phases],
        )
    click.echo(f"  完了予定: {plan.timeline.completion.isoformat()}")

    risk = conclusion.risk_assessment
    click.echo(
        f"\nリスク評価: {risk.overall_risk_score:.1f} "
        f"(許容上限 {risk.max_acceptable_risk:.1f}, 推奨 {risk.recommended_approach.value})"
    )

    impact = conclusion.business_impact
    low, high = impact.revenue_impact_range
    click.echo(f"収益インパクト: {impact.revenue_impact:.2f} ({low:.2f} - {high:.2f})")
