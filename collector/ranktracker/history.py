"""順位履歴（追記専用の時系列）モジュール.

1キーワード × 1観測 = 1行。圏外（position=None）の観測は書き込まないため、
系列に欠損が出るのは想定どおり。同日に再実行すると同じ日に2行目が追記される
（run_id で実行単位を区別できる）。
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import asdict
from datetime import datetime, timedelta, timezone

from ranktracker import db
from ranktracker.models import RankingMatch, RankRecord

logger = logging.getLogger(__name__)


def build_record(keyword_id: str, match: RankingMatch, observed_at: str, run_id: str) -> dict | None:
    """照合結果から挿入用レコードを作る. 圏外なら None."""
    if match.position is None:
        return None
    return asdict(RankRecord(
        keyword_id=keyword_id,
        position=match.position,
        url=match.url,
        date=observed_at,
        run_id=run_id,
    ))


def append(records: list[dict]) -> int:
    """レコードを1回の insert で追記し、件数を返す."""
    db.insert_rankings(records)
    return len(records)


def latest(keyword_id: str) -> dict | None:
    return db.get_latest_ranking(keyword_id)


def since_days(days: int) -> str:
    return (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()


def group_by_keyword(rows: list[dict]) -> dict[str, list[dict]]:
    """keyword_id ごとに新しい順へ並べ替えた履歴を返す."""
    grouped: dict[str, list[dict]] = defaultdict(list)
    for row in rows:
        grouped[row["keyword_id"]].append(row)
    for items in grouped.values():
        items.sort(key=lambda r: r["date"], reverse=True)
    return grouped


def summarize(history: list[dict]) -> dict:
    """新しい順の履歴から現在順位・初回順位・変動を求める.

    movement は 初回 - 現在（正の値が改善）。
    """
    if not history:
        return {"current_position": None, "first_position": None, "movement": None}

    current = history[0]["position"]
    initial = history[-1]["position"]
    movement = None
    if current is not None and initial is not None:
        movement = initial - current
    return {"current_position": current, "first_position": initial, "movement": movement}


def window(keywords: list[dict], days: int) -> list[dict]:
    """直近 days 日分の履歴をキーワード情報付きで返す（keyword_id 昇順・日付降順）."""
    rows = db.get_ranking_history([k["id"] for k in keywords], since_days(days))
    info = {
        k["id"]: {"id": k["id"], "keyword": k["keyword"], "target_url": k.get("target_url")}
        for k in keywords
    }
    return [{**row, "keyword": info.get(row["keyword_id"])} for row in rows]
