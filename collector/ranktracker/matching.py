"""検索結果からターゲットドメインの順位を照合するモジュール."""

from __future__ import annotations

import re
from urllib.parse import urlsplit

from ranktracker.config import DEFAULT_TARGET_DOMAIN
from ranktracker.models import RankingMatch, SerpItem, SerpResult

_SCHEME_PATTERN = re.compile(r"^[a-z][a-z0-9+.-]*://")

NOT_FOUND = RankingMatch(position=None, url=None)


def normalize_domain(value: str) -> str:
    """URL・ドメイン表記をホスト名だけに揃える.

    "ubs.com", "https://ubs.com", "https://www.ubs.com/hypotheken?x=1" -> "ubs.com"
    """
    host = value.strip().lower()
    if not _SCHEME_PATTERN.match(host):
        host = "//" + host
    host = urlsplit(host).hostname or ""
    if host.startswith("www."):
        host = host[4:]
    return host


def _host_matches(host: str, target: str) -> bool:
    return bool(host) and (host == target or host.endswith("." + target))


def _item_matches(item: SerpItem, target: str) -> bool:
    return (
        _host_matches(normalize_domain(item.domain), target)
        or _host_matches(normalize_domain(item.url), target)
    )


def find_ranking_position(
    results: list[SerpResult], keyword: str, target_url: str | None
) -> RankingMatch:
    """検索結果リストから指定ターゲットの順位を見つける.

    キーワードは大文字小文字を区別せずに照合する。ターゲットにマッチする
    アイテムのうち rank が最小のものを採用する。

    Returns:
        RankingMatch。見つからなければ position, url とも None（圏外）。
    """
    wanted = keyword.lower()
    result = next((r for r in results if r.keyword.lower() == wanted), None)
    if result is None or not result.items:
        return NOT_FOUND

    target = normalize_domain(target_url or DEFAULT_TARGET_DOMAIN)
    if not target:
        return NOT_FOUND

    matches = [item for item in result.items if _item_matches(item, target)]
    if not matches:
        return NOT_FOUND

    best = min(matches, key=lambda item: item.rank)
    return RankingMatch(position=best.rank, url=best.url or None)
