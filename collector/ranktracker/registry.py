"""キーワード登録・一覧モジュール.

トラッカーはユーザー（テナント）ごとに1つ。初回アクセス時に作成する。
"""

from __future__ import annotations

import logging

from ranktracker import db, history
from ranktracker.config import (
    CATEGORIES,
    DEFAULT_LANGUAGE,
    DEFAULT_TRACKER_LOCATION,
    DEFAULT_TRACKER_NAME,
    RECENT_RANKINGS,
)
from ranktracker.errors import (
    DuplicateKeywordError,
    InvalidCategoryError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# update_keyword で「指定なし」と「None（クリア）」を区別する
UNSET = object()


def get_or_create_tracker(user_id: str) -> dict:
    tracker = db.get_tracker_by_user(user_id)
    if tracker is not None:
        return tracker
    return db.insert_tracker({
        "user_id": user_id,
        "name": DEFAULT_TRACKER_NAME,
        "location": DEFAULT_TRACKER_LOCATION,
        "language": DEFAULT_LANGUAGE,
    })


def _clean_category(category: str | None) -> str | None:
    if category is None or category == "":
        return None
    if not isinstance(category, str) or category not in CATEGORIES:
        raise InvalidCategoryError(f"不正なカテゴリです: {category}")
    return category


def _clean_target_url(target_url: str | None) -> str | None:
    if target_url is None:
        return None
    if not isinstance(target_url, str):
        raise ValidationError("ターゲット URL は文字列で指定してください")
    return target_url.strip() or None


def add_keyword(
    tracker_id: str,
    text: str,
    category: str | None = None,
    target_url: str | None = None,
) -> dict:
    """キーワードを登録する.

    Raises:
        ValidationError: キーワードが空
        InvalidCategoryError: カテゴリが CATEGORIES 以外
        DuplicateKeywordError: 同じトラッカーに同じキーワードが既にある
    """
    if not isinstance(text, str) or not text.strip():
        raise ValidationError("キーワードは必須です")
    text = text.strip()

    record = {
        "tracker_id": tracker_id,
        "keyword": text,
        "category": _clean_category(category),
        "target_url": _clean_target_url(target_url),
    }

    if db.find_keyword(tracker_id, text) is not None:
        raise DuplicateKeywordError(f"キーワードは既に存在します: {text}")

    keyword = db.insert_keyword(record)
    logger.info("キーワード登録: %s (tracker=%s)", text, tracker_id)
    return keyword


def get_keyword(keyword_id: str, user_id: str | None = None) -> dict:
    """キーワードを取得する. user_id 指定時は所有者を検証する."""
    keyword = db.get_keyword(keyword_id)
    if keyword is None:
        raise NotFoundError("キーワードが見つかりません")
    owner = (keyword.get("trackers") or {}).get("user_id")
    if user_id is not None and owner != user_id:
        raise PermissionDeniedError("このキーワードへのアクセス権がありません")
    return keyword


def update_keyword(keyword_id: str, category=UNSET, target_url=UNSET) -> dict:
    """カテゴリ・ターゲット URL を部分更新する. None / 空文字はクリア."""
    keyword = get_keyword(keyword_id)

    fields = {}
    if category is not UNSET:
        fields["category"] = _clean_category(category)
    if target_url is not UNSET:
        fields["target_url"] = _clean_target_url(target_url)
    if not fields:
        return keyword

    return db.update_keyword(keyword_id, fields)


def delete_keyword(keyword_id: str) -> None:
    """キーワードを削除する. 順位履歴も一緒に消える."""
    get_keyword(keyword_id)
    db.delete_keyword(keyword_id)


def list_keywords(tracker_id: str, recent: int = RECENT_RANKINGS) -> list[dict]:
    """キーワード一覧（新しい順）を直近 recent 件の順位と変動付きで返す."""
    keywords = db.get_keywords(tracker_id)
    grouped = history.group_by_keyword(
        db.get_ranking_history([k["id"] for k in keywords])
    )

    listed = []
    for keyword in keywords:
        rows = grouped.get(keyword["id"], [])
        listed.append({
            **keyword,
            "rankings": rows[:recent],
            **history.summarize(rows),
        })
    return listed
