"""DataForSEO API クライアント.

取得戦略:
  1. SERP 順位: live/advanced エンドポイントにトラッカーの全キーワードを1リクエストで送る
  2. 検索ボリューム: google_ads/search_volume/live に 100 件ずつ送る

通信エラー・429・5xx は tenacity で指数バックオフ付き再試行する。
"""

from __future__ import annotations

import logging
import time

import requests
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ranktracker import config
from ranktracker.errors import ConfigurationError, ProviderError
from ranktracker.models import SearchVolumeResult, SerpItem, SerpResult

logger = logging.getLogger(__name__)

TASK_OK = 20000
BATCH_INTERVAL = 0.5  # 秒


def _credentials() -> tuple[str, str]:
    """Basic 認証用の (username, password) を返す."""
    if not config.DATAFORSEO_USERNAME or not config.DATAFORSEO_PASSWORD:
        raise ConfigurationError(
            "DATAFORSEO_USERNAME と DATAFORSEO_PASSWORD を .env に設定してください"
        )
    return config.DATAFORSEO_USERNAME, config.DATAFORSEO_PASSWORD


def _is_retryable(exc: BaseException) -> bool:
    """通信エラー（status なし）・429・5xx のみ再試行する."""
    if not isinstance(exc, ProviderError):
        return False
    return exc.status is None or exc.status == 429 or exc.status >= 500


def _remaining(deadline: float | None) -> float | None:
    return None if deadline is None else deadline - time.monotonic()


def _post(
    endpoint: str, payload: list[dict], auth: tuple[str, str], deadline: float | None = None
) -> dict:
    url = config.DATAFORSEO_API_URL + endpoint
    timeout = config.REQUEST_TIMEOUT
    remaining = _remaining(deadline)
    if remaining is not None:
        if remaining <= 0:
            raise ProviderError("時間制限に達したため DataForSEO へのリクエストを中止しました")
        timeout = min(timeout, remaining)

    try:
        resp = requests.post(url, json=payload, auth=auth, timeout=timeout)
    except requests.RequestException as e:
        raise ProviderError(f"DataForSEO 通信エラー: {e}") from e

    if not resp.ok:
        raise ProviderError(
            f"DataForSEO API error: {resp.status_code} - {resp.text[:200]}",
            status=resp.status_code,
        )

    try:
        return resp.json()
    except ValueError as e:
        raise ProviderError(f"DataForSEO レスポンスが JSON ではありません: {e}") from e


def _request(endpoint: str, payload: list[dict], deadline: float | None = None) -> dict:
    """再試行付きで POST する. 最終的に失敗したら ProviderError を送出.

    deadline（time.monotonic 基準）を渡すと、再試行の待ち時間・各リクエストの
    タイムアウトをその時刻までに収め、過ぎたら再試行しない。
    """
    auth = _credentials()
    stop = stop_after_attempt(config.PROVIDER_MAX_ATTEMPTS)
    wait = wait_exponential(
        multiplier=1,
        min=config.PROVIDER_RETRY_MIN_WAIT,
        max=config.PROVIDER_RETRY_MAX_WAIT,
    )
    if deadline is not None:
        backoff = wait

        def past_deadline(retry_state) -> bool:
            return time.monotonic() >= deadline

        def capped_wait(retry_state) -> float:
            return max(0.0, min(backoff(retry_state), deadline - time.monotonic()))

        stop = stop | past_deadline
        wait = capped_wait

    retryer = Retrying(
        stop=stop,
        wait=wait,
        retry=retry_if_exception(_is_retryable),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    return retryer(_post, endpoint, payload, auth, deadline)


def location_code(location: str | None) -> int:
    fallback = config.LOCATION_CODES[config.DEFAULT_TRACKER_LOCATION]
    return config.LOCATION_CODES.get(location or "", fallback)


def language_code(language: str | None) -> str:
    return config.LANGUAGE_CODES.get(language or config.DEFAULT_LANGUAGE, "de")


def fetch_rankings(
    keywords: list[dict], location: str, language: str, time_left: float | None = None
) -> list[SerpResult]:
    """キーワード群の SERP を一括取得する.

    Args:
        keywords: [{"keyword": str, "target_url": str | None}, ...]（空は不可）
        location: DataForSEO のロケーション名（例: "Switzerland"）
        language: DataForSEO の言語名（例: "German"）
        time_left: 再試行を含めて使ってよい秒数（None なら無制限）

    Returns:
        キーワードごとの SerpResult。順序はリクエスト順と一致しないので
        呼び出し側は keyword で照合すること。
    """
    if not keywords:
        raise ValueError("keywords が空です")

    loc = location_code(location)
    lang = language_code(language)
    tasks = [
        {
            "keyword": k["keyword"],
            "location_code": loc,
            "language_code": lang,
            "depth": config.SERP_DEPTH,
        }
        for k in keywords
    ]
    logger.info(
        "SERP 取得: %d キーワード, location=%s(%d), language=%s",
        len(tasks), location, loc, lang,
    )

    deadline = None if time_left is None else time.monotonic() + time_left
    data = _request(config.SERP_ENDPOINT, tasks, deadline)

    results: list[SerpResult] = []
    last_status = None
    for task in data.get("tasks") or []:
        keyword = (task.get("data") or {}).get("keyword", "")
        status = task.get("status_code")
        if status != TASK_OK:
            last_status = status
            logger.warning(
                "タスク失敗: keyword=%s, status=%s (%s)",
                keyword, status, task.get("status_message"),
            )
            continue

        raw = (task.get("result") or [None])[0]
        if raw is None:
            results.append(SerpResult(keyword=keyword))
            continue
        results.append(parse_serp_result(raw))

    if not results:
        raise ProviderError("DataForSEO から結果を取得できませんでした", status=last_status)

    logger.info("SERP 取得完了: %d/%d キーワード", len(results), len(tasks))
    return results


def parse_serp_result(raw: dict) -> SerpResult:
    """task.result[0] を SerpResult に変換する. 広告・オーガニック以外は除外."""
    items: list[SerpItem] = []
    for item in raw.get("items") or []:
        if item.get("type") != "organic" or item.get("is_paid"):
            continue
        rank = item.get("rank_absolute")
        if rank is None:
            continue
        items.append(SerpItem(
            rank=int(rank),
            url=item.get("url") or "",
            domain=item.get("domain") or "",
            title=item.get("title") or "",
        ))

    return SerpResult(
        keyword=raw.get("keyword", ""),
        items=items,
        items_count=raw.get("items_count") or 0,
    )


def fetch_search_volume(
    keywords: list[str], location: str, language: str, time_left: float | None = None
) -> list[SearchVolumeResult]:
    """Google Ads の月間検索ボリュームを取得する.

    API 上限は 1000 件/リクエストだが 100 件ずつ分割して送る。
    time_left は全バッチ合計の持ち時間。
    """
    deadline = None if time_left is None else time.monotonic() + time_left
    loc = location_code(location)
    lang = language_code(language)
    results: list[SearchVolumeResult] = []

    batch_size = config.SEARCH_VOLUME_BATCH_SIZE
    for start in range(0, len(keywords), batch_size):
        if start:
            time.sleep(BATCH_INTERVAL)
        batch = keywords[start:start + batch_size]
        logger.info(
            "検索ボリューム取得: バッチ %d (%d 件)", start // batch_size + 1, len(batch)
        )

        data = _request(config.SEARCH_VOLUME_ENDPOINT, [{
            "keywords": batch,
            "location_code": loc,
            "language_code": lang,
        }], deadline)

        for task in data.get("tasks") or []:
            if task.get("status_code") != TASK_OK:
                raise ProviderError(
                    f"検索ボリューム取得失敗: {task.get('status_message')}",
                    status=task.get("status_code"),
                )
            for row in task.get("result") or []:
                results.append(SearchVolumeResult(
                    keyword=row.get("keyword", ""),
                    search_volume=row.get("search_volume"),
                ))

    logger.info("検索ボリューム取得完了: %d/%d 件", len(results), len(keywords))
    return results
