"""Supabase データベース操作モジュール.

全テーブルは rank_tracker スキーマに配置。
Supabase client のスキーマ指定は .schema() で行う。

rankings は追記専用。1回の insert が1トラッカー分のトランザクション境界になる。
"""

from __future__ import annotations

import logging
from functools import lru_cache

from postgrest.exceptions import APIError
from supabase import AuthApiError, Client, create_client

from ranktracker import config
from ranktracker.errors import ConfigurationError, DuplicateKeywordError

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"
# Supabase の既定 max_rows (1000) 以下にする
HISTORY_PAGE_SIZE = 1000

_KEYWORD_COLUMNS = (
    "id, tracker_id, keyword, category, target_url, "
    "search_volume, search_volume_updated_at, created_at"
)


@lru_cache(maxsize=1)
def get_client() -> Client:
    """Supabase クライアントを生成する（プロセス内で1つ）."""
    if not config.SUPABASE_URL or not config.SUPABASE_SECRET_KEY:
        raise ConfigurationError("SUPABASE_URL と SUPABASE_SECRET_KEY を .env に設定してください")
    return create_client(config.SUPABASE_URL, config.SUPABASE_SECRET_KEY)


def _table(name: str):
    """rank_tracker スキーマのテーブルを参照する."""
    return get_client().schema(config.SUPABASE_SCHEMA).table(name)


def _first(resp) -> dict | None:
    return resp.data[0] if resp.data else None


# --- auth ---

def get_session_user(access_token: str) -> dict | None:
    """Supabase Auth のアクセストークンからユーザーを解決する. 無効なら None."""
    client = get_client()
    try:
        resp = client.auth.get_user(access_token)
    except AuthApiError as e:
        logger.warning("セッション検証に失敗: %s", e)
        return None

    user = getattr(resp, "user", None)
    if user is None:
        return None
    metadata = {**(user.user_metadata or {}), **(user.app_metadata or {})}
    return {"id": user.id, "role": metadata.get("role", "member")}


# --- trackers ---

def get_trackers_with_keywords() -> list[dict]:
    """全トラッカーをキーワード付きで取得する.

    Returns:
        [
            {
                "id": uuid,
                "user_id": uuid,
                "name": str,
                "location": str,
                "language": str,
                "keywords": [{"id", "keyword", "target_url", "category"}, ...],
            },
            ...
        ]
    """
    resp = (
        _table("trackers")
        .select(
            "id, user_id, name, location, language, "
            "keywords(id, keyword, target_url, category)"
        )
        .order("created_at")
        .execute()
    )
    return [{**row, "keywords": row.get("keywords") or []} for row in resp.data]


def get_tracker_by_user(user_id: str) -> dict | None:
    resp = (
        _table("trackers")
        .select("id, user_id, name, location, language")
        .eq("user_id", user_id)
        .limit(1)
        .execute()
    )
    return _first(resp)


def insert_tracker(record: dict) -> dict:
    resp = _table("trackers").insert(record).execute()
    logger.info("トラッカー作成: user_id=%s", record.get("user_id"))
    return resp.data[0]


# --- keywords ---

def get_keywords(tracker_id: str, keyword_id: str | None = None) -> list[dict]:
    """トラッカーのキーワードを新しい順に取得する. keyword_id 指定時はその1件のみ."""
    query = _table("keywords").select(_KEYWORD_COLUMNS).eq("tracker_id", tracker_id)
    if keyword_id:
        query = query.eq("id", keyword_id)
    return query.order("created_at", desc=True).execute().data


def get_keyword(keyword_id: str) -> dict | None:
    """キーワードを所属トラッカーの user_id 付きで取得する."""
    resp = (
        _table("keywords")
        .select(f"{_KEYWORD_COLUMNS}, trackers:tracker_id(user_id, name)")
        .eq("id", keyword_id)
        .limit(1)
        .execute()
    )
    return _first(resp)


def find_keyword(tracker_id: str, text: str) -> dict | None:
    resp = (
        _table("keywords")
        .select("id")
        .eq("tracker_id", tracker_id)
        .eq("keyword", text)
        .limit(1)
        .execute()
    )
    return _first(resp)


def insert_keyword(record: dict) -> dict:
    """キーワードを1件挿入する. (tracker_id, keyword) 重複は DuplicateKeywordError."""
    try:
        resp = _table("keywords").insert(record).execute()
    except APIError as e:
        if e.code == UNIQUE_VIOLATION:
            raise DuplicateKeywordError(f"キーワードは既に存在します: {record['keyword']}") from e
        raise
    return resp.data[0]


def update_keyword(keyword_id: str, fields: dict) -> dict:
    resp = _table("keywords").update(fields).eq("id", keyword_id).execute()
    return resp.data[0]


def delete_keyword(keyword_id: str) -> None:
    """キーワードと順位履歴を削除する（スキーマ側でも ON DELETE CASCADE）."""
    _table("rankings").delete().eq("keyword_id", keyword_id).execute()
    _table("keywords").delete().eq("id", keyword_id).execute()
    logger.info("キーワード削除: id=%s", keyword_id)


def update_search_volume(keyword_id: str, search_volume: int | None, updated_at: str) -> None:
    (
        _table("keywords")
        .update({"search_volume": search_volume, "search_volume_updated_at": updated_at})
        .eq("id", keyword_id)
        .execute()
    )


# --- rankings ---

def insert_rankings(records: list[dict]) -> None:
    """順位レコードを一括挿入する.

    Args:
        records: [{"keyword_id", "position", "url", "date", "run_id"}, ...]
    """
    if not records:
        return
    _table("rankings").insert(records).execute()
    logger.info("rankings に %d 件挿入", len(records))


def get_latest_ranking(keyword_id: str) -> dict | None:
    """直近の順位（= 現在順位）."""
    resp = (
        _table("rankings")
        .select("id, keyword_id, position, url, date, run_id")
        .eq("keyword_id", keyword_id)
        .order("date", desc=True)
        .limit(1)
        .execute()
    )
    return _first(resp)


def get_ranking_history(keyword_ids: list[str], since: str | None = None) -> list[dict]:
    """順位履歴をキーワード別・新しい順で取得する.

    PostgREST は1レスポンスの行数を max_rows で黙って切り詰めるため、
    HISTORY_PAGE_SIZE 件ずつ .range() でページングして全件を読む。
    """
    if not keyword_ids:
        return []

    rows: list[dict] = []
    offset = 0
    while True:
        query = (
            _table("rankings")
            .select("id, keyword_id, position, url, date, run_id")
            .in_("keyword_id", keyword_ids)
        )
        if since:
            query = query.gte("date", since)
        page = (
            query.order("keyword_id")
            .order("date", desc=True)
            .order("id")
            .range(offset, offset + HISTORY_PAGE_SIZE - 1)
            .execute()
            .data
        )
        rows.extend(page)
        if len(page) < HISTORY_PAGE_SIZE:
            return rows
        offset += HISTORY_PAGE_SIZE


# --- rate limits ---

def consume_rate_limit(key: str, window_start: str, window_seconds: int) -> int:
    """ウィンドウ内のカウンタを1増やし、増加後の値を返す.

    rank_tracker.consume_rate_limit（collector/sql/schema.sql）で原子的に加算する。
    """
    resp = (
        get_client()
        .schema(config.SUPABASE_SCHEMA)
        .rpc("consume_rate_limit", {
            "p_key": key,
            "p_window_start": window_start,
            "p_window_seconds": window_seconds,
        })
        .execute()
    )
    return int(resp.data)
