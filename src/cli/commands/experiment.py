"""
実験コマンド実装（割り当て・有意性検定）
"""

import sys
from typing import Optional

import click

from src.ab_testing.assignment import AssignmentStrategy, VariantAssignmentService
from src.ab_testing.significance import ProportionSample, SignificanceCalculator
from src.cli.utils.output import echo_json, echo_table
from src.cli.utils.yaml_loader import load_experiment
from src.models.errors import ComputationError, ConfigurationError, NotFoundError


def parse_proportion(ctx, param, value: str) -> ProportionSample:
    """"成功数/試行数" 形式の引数を ProportionSample に変換"""
    successes, sep, trials = value.partition("/")
    if not sep:
        raise click.BadParameter("成功数/試行数 の形式で指定してください（例: 120/1000）")
    try:
        return ProportionSample(successes=int(successes), trials=int(trials))
    except ValueError:
        raise click.BadParameter(f"整数で指定してください: {value}")


def experiment_command(cli_group, pass_context):
    """experiment グループを CLI に追加"""

    @cli_group.group()
    def experiment():
        """実験の割り当て・有意性検定"""

    @experiment.command()
    @click.argument('subject_id')
    @click.option('--experiment-file', '-f', required=True,
                  type=click.Path(exists=True, dir_okay=False), help='実験定義YAML')
    @click.option('--strategy', type=click.Choice([s.value for s in AssignmentStrategy]),
                  default=None, help='割り当て戦略（省略時は設定値）')
    @click.option('--json', 'as_json', is_flag=True, help='JSON形式で出力')
    @pass_context
    def assign(ctx, subject_id: str, experiment_file: str, strategy: Optional[str], as_json: bool):
        """被験者に割り当てられるバリアントを表示する"""
        ctx.initialize()

        try:
            definition = load_experiment(experiment_file, ctx.config.allocation_tolerance)
            service = VariantAssignmentService(config=ctx.config, strategy=strategy)
            assignment = service.assign(subject_id, definition)
        except (ConfigurationError, NotFoundError) as e:
            click.echo(f"[エラー] {e}", err=True)
            sys.exit(2)

        variant = definition.get_variant(assignment.variant_id)
        payload = {
            "experiment_id": assignment.experiment_id,
            "subject_id": assignment.subject_id,
            "variant_id": assignment.variant_id,
            "strategy": assignment.strategy,
            "bucket": service.bucket(definition.id, subject_id),
            "weights": dict(variant.weights) if variant else {},
        }

        if as_json:
            echo_json(payload)
            return

        click.echo(f"実験: {definition.name} ({definition.id})")
        click.echo(f"被験者: {subject_id}")
        click.echo(f"バリアント: {assignment.variant_id}")
        click.echo(f"戦略: {assignment.strategy}")
        if assignment.strategy == AssignmentStrategy.DETERMINISTIC.value:
            click.echo(f"バケット: {payload['bucket']:.6f}")
        if payload["weights"]:
            click.echo("\n重み:")
            echo_table(["key", "value"], sorted(payload["weights"].items()))

    @experiment.command()
    @click.option('--control', required=True, callback=parse_proportion,
                  help='コントロールの 成功数/試行数')
    @click.option('--treatment', required=True, callback=parse_proportion,
                  help='トリートメントの 成功数/試行数')
    @click.option('--json', 'as_json', is_flag=True, help='JSON形式で出力')
    @pass_context
    def significance(ctx, control: ProportionSample, treatment: ProportionSample, as_json: bool):
        """2標本比率の有意性検定を行う"""
        ctx.initialize()

        try:
            result = SignificanceCalculator(ctx.config).compute(control, treatment)
        except ConfigurationError as e:
            click.echo(f"[設定エラー] {e}", err=True)
            sys.exit(2)
        except ComputationError as e:
            click.echo(f"[エラー] 有意性を計算できません: {e}", err=True)
            sys.exit(1)

        if as_json:
            echo_json(result.to_dict())
            return

        lower, upper = result.confidence_interval
        echo_table(
            ["指標", "値"],
            [
                ("control_rate", result.control_rate),
                ("treatment_rate", result.treatment_rate),
                ("z_score", result.z_score),
                ("p_value", result.p_value),
                ("ci_lower", lower),
                ("ci_upper", upper),
            ],
        )
        verdict = "有意" if result.significant else "有意差なし"
        click.echo(f"\n判定: {verdict} (alpha={ctx.config.significance_alpha})")
