"""順位取得・検索ボリューム取得ジョブ.

処理フロー（トラッカー単位で逐次）:
  1. DB から全トラッカー×キーワードを取得（失敗時のみジョブ全体が失敗）
  2. トラッカーのキーワードを1リクエストにまとめて SERP を取得
  3. キーワードごとにターゲットの順位を照合
  4. 圏内の順位だけを1回の insert で追記
  5. 途中で失敗したトラッカーは errors に記録して次のトラッカーへ

時間制限を超えた場合は残りのトラッカーをスキップする。それまでに
書き込んだ分はそのまま残る。SERP API の再試行も残り時間の範囲に収める。
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Callable

from ranktracker import config, dataforseo, db, history
from ranktracker.errors import JobLoadError, NotFoundError, ValidationError
from ranktracker.matching import find_ranking_position
from ranktracker.models import JobSummary, RefreshedKeyword, SearchVolumeResult

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def effective_location(tracker: dict) -> str:
    """SERP 取得に使うロケーション. FORCED_LOCATION が設定されていればそれが優先."""
    return config.FORCED_LOCATION or tracker.get("location") or config.DEFAULT_TRACKER_LOCATION


def _language(tracker: dict) -> str:
    return tracker.get("language") or config.DEFAULT_LANGUAGE


def _load_trackers() -> list[dict]:
    try:
        return db.get_trackers_with_keywords()
    except Exception as e:
        logger.exception("トラッカーの読み込みに失敗")
        raise JobLoadError(f"トラッカーの読み込みに失敗しました: {e}") from e


def _collect_rankings(
    tracker: dict, keywords: list[dict], run_id: str, time_left: float | None = None
) -> tuple[list[dict], list[RefreshedKeyword]]:
    """SERP を取得して照合し、(挿入用レコード, キーワード別の結果) を返す."""
    location = effective_location(tracker)
    if location != tracker.get("location"):
        logger.info("ロケーション上書き: %s → %s", tracker.get("location"), location)

    results = dataforseo.fetch_rankings(
        [{"keyword": k["keyword"], "target_url": k.get("target_url")} for k in keywords],
        location,
        _language(tracker),
        time_left=time_left,
    )

    observed_at = _now()
    records: list[dict] = []
    outcomes: list[RefreshedKeyword] = []
    for keyword in keywords:
        match = find_ranking_position(results, keyword["keyword"], keyword.get("target_url"))
        record = history.build_record(keyword["id"], match, observed_at, run_id)
        if record is not None:
            records.append(record)
        status = f"{match.position}位" if match.position else "圏外"
        logger.info("  %s → %s", keyword["keyword"], status)
        outcomes.append(RefreshedKeyword(
            keyword_id=keyword["id"],
            keyword=keyword["keyword"],
            position=match.position,
            url=match.url,
        ))
    return records, outcomes


def _apply_search_volume(keywords: list[dict], results: list[SearchVolumeResult]) -> int:
    """取得できたキーワードの検索ボリュームを更新し、更新件数を返す. 0 も有効な値."""
    volumes = {r.keyword.lower(): r.search_volume for r in results}
    updated_at = _now()
    updated = 0
    for keyword in keywords:
        key = keyword["keyword"].lower()
        if key not in volumes:
            continue
        db.update_search_volume(keyword["id"], volumes[key], updated_at)
        updated += 1
        logger.info("  %s → %s 回/月", keyword["keyword"], volumes[key] or 0)
    return updated


def _run_per_tracker(
    label: str,
    process: Callable[[dict, list[dict], JobSummary, float], None],
    time_budget: float | None,
) -> JobSummary:
    budget = config.JOB_TIME_BUDGET_SECONDS if time_budget is None else time_budget
    summary = JobSummary(run_id=str(uuid.uuid4()))
    logger.info("=== %s 開始 (run_id=%s) ===", label, summary.run_id)
    start_time = time.monotonic()

    trackers = _load_trackers()
    summary.trackers_processed = len(trackers)
    if not trackers:
        logger.warning("トラッカーがありません。終了します。")
        return summary

    for index, tracker in enumerate(trackers):
        elapsed = time.monotonic() - start_time
        if elapsed > budget:
            skipped = len(trackers) - index
            summary.timed_out = True
            summary.errors.append(
                f"時間制限 ({budget:.0f} 秒) を超えたため {skipped} 件のトラッカーをスキップしました"
            )
            logger.warning("時間制限超過: 残り %d 件のトラッカーをスキップ", skipped)
            break

        keywords = tracker["keywords"]
        if not keywords:
            logger.info("トラッカー「%s」はキーワードなし。スキップ", tracker["name"])
            continue

        logger.info("トラッカー「%s」: %d キーワード", tracker["name"], len(keywords))
        summary.total_keywords += len(keywords)
        try:
            process(tracker, keywords, summary, budget - elapsed)
        except Exception as e:
            logger.exception("トラッカー「%s」の処理に失敗", tracker["name"])
            summary.errors.append(f'Tracker "{tracker["name"]}": {e}')

    elapsed = time.monotonic() - start_time
    if elapsed > budget and not summary.timed_out:
        summary.timed_out = True
        logger.warning("時間制限超過: %.1f 秒 (制限 %.0f 秒)", elapsed, budget)
    logger.info("=== %s 完了 ===", label)
    logger.info(
        "トラッカー: %d, キーワード: %d, 順位: %d, 検索ボリューム更新: %d, エラー: %d, 所要時間: %.1f 秒",
        summary.trackers_processed, summary.total_keywords, summary.total_rankings,
        summary.updated_keywords, len(summary.errors), elapsed,
    )
    return summary


def _process_rankings(
    tracker: dict, keywords: list[dict], summary: JobSummary, time_left: float
) -> None:
    records, _ = _collect_rankings(tracker, keywords, summary.run_id, time_left)
    summary.total_rankings += history.append(records)


def _process_search_volume(
    tracker: dict, keywords: list[dict], summary: JobSummary, time_left: float
) -> None:
    results = dataforseo.fetch_search_volume(
        [k["keyword"] for k in keywords], effective_location(tracker), _language(tracker),
        time_left=time_left,
    )
    summary.updated_keywords += _apply_search_volume(keywords, results)


def run_ranking_job(time_budget: float | None = None) -> JobSummary:
    """日次の順位取得ジョブ. 同日に2回実行すると順位は2行ずつ追記される."""
    return _run_per_tracker("検索順位取得", _process_rankings, time_budget)


def run_search_volume_job(time_budget: float | None = None) -> JobSummary:
    """月次の検索ボリューム取得ジョブ."""
    return _run_per_tracker("検索ボリューム取得", _process_search_volume, time_budget)


def _user_keywords(user_id: str, keyword_id: str | None) -> tuple[dict, list[dict]]:
    tracker = db.get_tracker_by_user(user_id)
    keywords = db.get_keywords(tracker["id"], keyword_id) if tracker else []
    if not keywords:
        if keyword_id:
            raise NotFoundError("キーワードが見つかりません")
        raise ValidationError("トラッキング対象のキーワードがありません")
    return tracker, keywords


def refresh_rankings(user_id: str, keyword_id: str | None = None) -> list[RefreshedKeyword]:
    """ユーザーのトラッカーの順位を手動で取得する.

    keyword_id 指定時はそのキーワードだけを取得する。圏外のキーワードは
    書き込まず、直近の記録を last_known に入れて返す。プロバイダの失敗は
    そのまま送出する。
    """
    tracker, keywords = _user_keywords(user_id, keyword_id)
    logger.info("手動順位取得: tracker=%s, %d キーワード", tracker["name"], len(keywords))

    records, outcomes = _collect_rankings(tracker, keywords, str(uuid.uuid4()))
    history.append(records)

    for outcome in outcomes:
        if outcome.position is None:
            outcome.last_known = history.latest(outcome.keyword_id)
    return outcomes


def refresh_search_volume(user_id: str, keyword_id: str | None = None) -> tuple[int, int]:
    """検索ボリュームを手動で取得する. (更新件数, 対象件数) を返す."""
    tracker, keywords = _user_keywords(user_id, keyword_id)
    results = dataforseo.fetch_search_volume(
        [k["keyword"] for k in keywords], effective_location(tracker), _language(tracker)
    )
    return _apply_search_volume(keywords, results), len(keywords)
