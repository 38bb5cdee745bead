import json

import pytest
from click.testing import CliRunner

from src.cli.main import cli


EXPERIMENT_YAML = """
id: search-ranking-v2
name: 検索ランキング改善
status: active
variants:
  - id: control
    allocation: 0.5
  - id: treatment
    allocation: 0.5
    weights:
      boost: 1.2
"""

RULES_YAML = """
rules:
  - id: rule-low
    name: cleanup
    priority: low
    condition: {type: constant, value: true}
    actions:
      - {type: set_metric, metric: cleaned, value: 1}
  - id: rule-high-error
    name: high_error_rate
    priority: critical
    condition:
      type: compare
      path: metrics.error_rate
      operator: gt
      value: 0.1
    actions:
      - type: update_state
        updates: {search: {mode: safe}}
"""


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def experiment_file(tmp_path):
    path = tmp_path / "experiment.yaml"
    path.write_text(EXPERIMENT_YAML, encoding="utf-8")
    return str(path)


@pytest.fixture
def rules_file(tmp_path):
    path = tmp_path / "rules.yaml"
    path.write_text(RULES_YAML, encoding="utf-8")
    return str(path)


def test_version(runner):
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert "expctl" in result.output


def test_experiment_assign_json_is_stable(runner, experiment_file):
    args = ["experiment", "assign", "session-42", "-f", experiment_file, "--json"]

    first = runner.invoke(cli, args)
    second = runner.invoke(cli, args)

    assert first.exit_code == 0, first.output
    payload = json.loads(first.output)
    assert payload["variant_id"] in ("control", "treatment")
    assert payload["strategy"] == "deterministic"
    assert 0.0 <= payload["bucket"] < 1.0
    assert json.loads(second.output)["variant_id"] == payload["variant_id"]


def test_experiment_assign_text(runner, experiment_file):
    result = runner.invoke(cli, ["experiment", "assign", "session-42", "-f", experiment_file])
    assert result.exit_code == 0
    assert "バリアント:" in result.output
    assert "search-ranking-v2" in result.output


def test_experiment_assign_draft_experiment(runner, tmp_path):
    path = tmp_path / "draft.yaml"
    path.write_text(EXPERIMENT_YAML.replace("status: active", "status: draft"), encoding="utf-8")

    result = runner.invoke(cli, ["experiment", "assign", "s-1", "-f", str(path)])

    assert result.exit_code == 2
    assert "[エラー]" in result.output


def test_experiment_assign_invalid_allocation(runner, tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text(EXPERIMENT_YAML.replace("allocation: 0.5", "allocation: 0.7"), encoding="utf-8")

    result = runner.invoke(cli, ["experiment", "assign", "s-1", "-f", str(path)])

    assert result.exit_code == 2


def test_significance_json(runner):
    result = runner.invoke(cli, [
        "experiment", "significance",
        "--control", "100/1000", "--treatment", "150/1000", "--json",
    ])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["control_rate"] == pytest.approx(0.10)
    assert payload["treatment_rate"] == pytest.approx(0.15)
    assert payload["significant"] is True
    assert payload["p_value"] < 0.05


def test_significance_table(runner):
    result = runner.invoke(cli, [
        "experiment", "significance", "--control", "100/1000", "--treatment", "101/1000",
    ])
    assert result.exit_code == 0
    assert "有意差なし" in result.output


def test_significance_bad_input(runner):
    result = runner.invoke(cli, [
        "experiment", "significance", "--control", "abc", "--treatment", "1/10",
    ])
    assert result.exit_code == 2


def test_significance_zero_trials(runner):
    result = runner.invoke(cli, [
        "experiment", "significance", "--control", "0/0", "--treatment", "1/10",
    ])
    assert result.exit_code == 1
    assert "[エラー]" in result.output


def test_rules_validate_lists_in_priority_order(runner, rules_file):
    result = runner.invoke(cli, ["rules", "validate", rules_file])

    assert result.exit_code == 0, result.output
    assert result.output.index("high_error_rate") < result.output.index("cleanup")
    assert "critical" in result.output
    assert "2件のルールは有効です" in result.output


def test_rules_validate_invalid_file(runner, tmp_path):
    path = tmp_path / "rules.yaml"
    path.write_text("rules:\n  - {id: a, name: x, condition: {type: eval}}\n", encoding="utf-8")

    result = runner.invoke(cli, ["rules", "validate", str(path)])

    assert result.exit_code == 2
    assert "[エラー]" in result.output


def test_rules_run_json(runner, rules_file):
    result = runner.invoke(cli, [
        "rules", "run", rules_file, "--metric", "error_rate=0.3", "--json",
    ])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["report"]["triggered"] == 2
    assert [o["rule_name"] for o in payload["report"]["outcomes"]] == [
        "high_error_rate", "cleanup",
    ]
    assert payload["state"] == {"search": {"mode": "safe"}}
    assert payload["metrics"] == {"error_rate": 0.3, "cleaned": 1.0}


def test_rules_run_state_values_are_typed(runner, tmp_path):
    path = tmp_path / "rules.yaml"
    path.write_text(
        "rules:\n"
        "  - id: r1\n"
        "    name: pro_only\n"
        "    condition: {type: compare, path: state.limit, operator: gte, value: 10}\n"
        "    actions: [{type: set_metric, metric: boost, value: 2}]\n",
        encoding="utf-8",
    )

    result = runner.invoke(cli, ["rules", "run", str(path), "--state", "limit=10", "--json"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["metrics"] == {"boost": 2.0}


def test_rules_run_bad_metric(runner, rules_file):
    result = runner.invoke(cli, ["rules", "run", rules_file, "--metric", "error_rate=high"])
    assert result.exit_code == 2


def test_rules_run_all_failed(runner, tmp_path):
    path = tmp_path / "rules.yaml"
    path.write_text(
        "rules:\n"
        "  - id: r1\n"
        "    name: numeric_mode\n"
        "    condition: {type: compare, path: state.mode, operator: gt, value: 1}\n",
        encoding="utf-8",
    )

    result = runner.invoke(cli, ["rules", "run", str(path), "--state", "mode=safe"])

    assert result.exit_code == 1
    assert "[エラー]" in result.output
    assert "TypeError" in result.output


def test_adjust_metric_bounds_checked_on_load(runner, tmp_path):
    path = tmp_path / "rules.yaml"
    path.write_text(
        "rules:\n"
        "  - id: r1\n"
        "    name: lower_threshold\n"
        "    condition: {type: constant, value: true}\n"
        "    actions: [{type: adjust_metric, metric: threshold, adjustment: -0.1, min: 1, max: 0}]\n",
        encoding="utf-8",
    )

    result = runner.invoke(cli, ["rules", "validate", str(path)])

    assert result.exit_code == 2


def test_rules_validate_custom_priority(runner, tmp_path):
    path = tmp_path / "rules.yaml"
    path.write_text(
        RULES_YAML
        + "  - id: rule-late\n"
        "    name: late_cleanup\n"
        "    priority: 10\n"
        "    condition: {type: constant, value: true}\n",
        encoding="utf-8",
    )

    result = runner.invoke(cli, ["rules", "validate", str(path)])

    assert result.exit_code == 0, result.output
    lines = result.output.splitlines()
    late_line = next(line for line in lines if "late_cleanup" in line)
    assert " 10 " in late_line
    names = [line.split()[1] for line in lines[2:] if line.startswith("rule-")]
    assert names == ["high_error_rate", "cleanup", "late_cleanup"]
    assert "3件のルールは有効です" in result.output
