"""
適応ルールコマンド実装（検証・単発評価）
"""

import asyncio
import sys
from typing import Any, Dict, Tuple

import click
import yaml

from src.adaptation.engine import AdaptationEngine
from src.adaptation.rule_loader import load_rules
from src.cli.utils.output import echo_json, echo_table
from src.models.adaptation import EvaluationReport, RulePriority
from src.models.errors import ConfigurationError, RuleEvaluationError


def _parse_pairs(values: Tuple[str, ...], option: str) -> Dict[str, str]:
    pairs: Dict[str, str] = {}
    for item in values:
        key, sep, raw = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"key=value の形式で指定してください: {item}", param_hint=option)
        pairs[key] = raw
    return pairs


def parse_metrics(values: Tuple[str, ...]) -> Dict[str, float]:
    metrics: Dict[str, float] = {}
    for key, raw in _parse_pairs(values, "--metric").items():
        try:
            metrics[key] = float(raw)
        except ValueError:
            raise click.BadParameter(f"数値で指定してください: {key}={raw}", param_hint="--metric")
    return metrics


def parse_state(values: Tuple[str, ...]) -> Dict[str, Any]:
    """値は YAML スカラーとして解釈する（true / 10 / safe など）"""
    state: Dict[str, Any] = {}
    for key, raw in _parse_pairs(values, "--state").items():
        try:
            state[key] = yaml.safe_load(raw) if raw else raw
        except yaml.YAMLError:
            state[key] = raw
    return state


def _priority_label(priority: int) -> str:
    try:
        return RulePriority(priority).name.lower()
    except ValueError:
        return str(int(priority))


def _echo_report(report: EvaluationReport) -> None:
    echo_table(
        ["rule", "triggered", "succeeded", "actions", "error"],
        [
            (
                o.rule_name,
                "yes" if o.triggered else "no",
                "yes" if o.succeeded else "no",
                ", ".join(o.actions_taken),
                o.error,
            )
            for o in report.outcomes
        ],
    )
    click.echo(
        f"\n評価: {report.evaluated}件 / 発火: {report.triggered}件 / 失敗: {report.failed}件"
    )


def rules_command(cli_group, pass_context):
    """rules グループを CLI に追加"""

    @cli_group.group()
    def rules():
        """適応ルールの検証・評価"""

    @rules.command()
    @click.argument('file', type=click.Path(exists=True, dir_okay=False))
    @pass_context
    def validate(ctx, file: str):
        """ルールYAMLを検証し、評価順に一覧表示する"""
        ctx.initialize()

        try:
            loaded = load_rules(file)
        except ConfigurationError as e:
            click.echo(f"[エラー] {e}", err=True)
            sys.exit(2)

        ordered = sorted(
            enumerate(loaded), key=lambda item: (int(item[1].priority), item[0])
        )
        echo_table(
            ["id", "name", "priority", "enabled", "actions"],
            [
                (
                    rule.id,
                    rule.name,
                    _priority_label(rule.priority),
                    "yes" if rule.enabled else "no",
                    len(rule.actions),
                )
                for _, rule in ordered
            ],
        )
        click.echo(f"\n{len(loaded)}件のルールは有効です")

    @rules.command()
    @click.argument('file', type=click.Path(exists=True, dir_okay=False))
    @click.option('--metric', 'metric_values', multiple=True, help='メトリクス key=value（複数可）')
    @click.option('--state', 'state_values', multiple=True, help='状態 key=value（複数可）')
    @click.option('--event-type', default='manual_check', help='評価イベントの種別')
    @click.option('--json', 'as_json', is_flag=True, help='JSON形式で出力')
    @pass_context
    def run(ctx, file: str, metric_values, state_values, event_type: str, as_json: bool):
        """ルールを1回評価し、結果と更新後の状態を表示する"""
        ctx.initialize()

        metrics = parse_metrics(metric_values)
        state = parse_state(state_values)
        try:
            loaded = load_rules(file)
        except ConfigurationError as e:
            click.echo(f"[エラー] {e}", err=True)
            sys.exit(2)

        engine = AdaptationEngine(config=ctx.config)
        for rule in loaded:
            engine.add_rule(rule)
        if metrics:
            engine.update_metrics(metrics)
        if state:
            engine.update_state(state)

        exit_code = 0
        try:
            report = asyncio.run(engine.evaluate_event({"type": event_type}))
        except RuleEvaluationError as e:
            report = e.report
            exit_code = 1
            click.echo(f"[エラー] {e}", err=True)

        if as_json:
            echo_json({
                "report": report.to_dict() if report else None,
                "state": engine.get_state(),
                "metrics": engine.get_metrics(),
            })
        elif report is not None:
            _echo_report(report)
            click.echo("\n状態:")
            echo_json(engine.get_state())
            click.echo("メトリクス:")
            echo_json(engine.get_metrics())

        if exit_code:
            sys.exit(exit_code)
