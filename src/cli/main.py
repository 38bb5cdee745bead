#!/usr/bin/env python3
"""
expctl CLI メインエントリーポイント

実験定義・適応ルールを Pythonコードを書かずに検証・実行するための CLI。

終了コード:
    0: 成功
    1: 評価の失敗（全ルール失敗、統計計算不能など）
    2: 入力の不備（ファイル・引数・設定値）
"""

import logging
import sys
from typing import Optional

import click

from src.cli.commands.experiment import experiment_command
from src.cli.commands.rules import rules_command
from src.config.experimentation_config import ExperimentationConfig


class CLIContext:
    """CLI共通コンテキスト"""

    def __init__(self):
        self.config: Optional[ExperimentationConfig] = None
        self.verbose = False

    def initialize(self):
        """設定を環境変数から読み込む（必要時に呼び出される）"""
        if self.config is not None:
            return
        try:
            self.config = ExperimentationConfig.from_env()
        except ValueError as e:
            click.echo(f"[設定エラー] 環境変数の値が不正です: {e}", err=True)
            sys.exit(2)


# click の pass_context でCLIContextを共有
pass_context = click.make_pass_decorator(CLIContext, ensure=True)


@click.group()
@click.version_option(version="0.1.0", prog_name="expctl")
@click.option('--verbose', is_flag=True, help='詳細ログを表示')
@pass_context
def cli(ctx: CLIContext, verbose: bool):
    """実験・適応ルールエンジン CLI"""
    ctx.verbose = verbose
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


# 各コマンドを追加
experiment_command(cli, pass_context)
rules_command(cli, pass_context)


if __name__ == '__main__':
    cli()
