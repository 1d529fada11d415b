"""検索順位トラッカー — メインエントリーポイント.

  ranktracker rankings       日次の順位取得ジョブを1回実行
  ranktracker search-volume  月次の検索ボリューム取得ジョブを1回実行
  ranktracker serve          HTTP サーバー（cron エンドポイント含む）を起動
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime

import click

from ranktracker.api import create_app
from ranktracker.config import LOG_DIR
from ranktracker.jobs import run_ranking_job, run_search_volume_job


def setup_logging() -> None:
    """ロギングの初期設定."""
    log_file = LOG_DIR / f"collector_{datetime.now().strftime('%Y%m%d')}.log"
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file, encoding="utf-8"),
        ],
    )


def _report(summary, count_label: str, count: int) -> None:
    click.echo(
        f"トラッカー: {summary.trackers_processed}, キーワード: {summary.total_keywords}, "
        f"{count_label}: {count}"
    )
    for error in summary.errors:
        click.echo(f"  エラー: {error}", err=True)


@click.group()
def cli() -> None:
    setup_logging()


@cli.command()
@click.option("--time-budget", type=float, default=None, help="打ち切りまでの秒数")
def rankings(time_budget: float | None) -> None:
    """全トラッカーの検索順位を取得する."""
    summary = run_ranking_job(time_budget)
    _report(summary, "順位", summary.total_rankings)


@cli.command("search-volume")
@click.option("--time-budget", type=float, default=None, help="打ち切りまでの秒数")
def search_volume(time_budget: float | None) -> None:
    """全トラッカーの検索ボリュームを更新する."""
    summary = run_search_volume_job(time_budget)
    _report(summary, "更新", summary.updated_keywords)


@cli.command()
@click.option("--host", default="127.0.0.1")
@click.option("--port", default=8000, type=int)
def serve(host: str, port: int) -> None:
    """Flask 開発サーバーを起動する."""
    create_app().run(host=host, port=port)


if __name__ == "__main__":
    cli()
