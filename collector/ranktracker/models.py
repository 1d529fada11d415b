"""データモデル定義."""

from dataclasses import dataclass, field


@dataclass
class SerpItem:
    """SERP のオーガニック結果1件を表す."""

    rank: int  # rank_absolute（1始まり）
    url: str
    domain: str
    title: str = ""


@dataclass
class SerpResult:
    """1キーワード分の検索結果."""

    keyword: str
    items: list[SerpItem] = field(default_factory=list)
    items_count: int = 0  # プロバイダが返した全アイテム数（広告等を含む）


@dataclass(frozen=True)
class RankingMatch:
    """順位照合の結果. position が None なら圏外."""

    position: int | None
    url: str | None


@dataclass
class SearchVolumeResult:
    keyword: str
    search_volume: int | None


@dataclass
class RankRecord:
    """DB に書き込む順位レコード."""

    keyword_id: str  # uuid
    position: int  # 圏外は書き込まない
    url: str | None
    date: str  # ISO 8601
    run_id: str  # uuid（同日に複数回実行した場合の識別用）


@dataclass
class JobSummary:
    """定期ジョブ1回分の集計."""

    run_id: str
    trackers_processed: int = 0
    total_keywords: int = 0
    total_rankings: int = 0
    updated_keywords: int = 0
    errors: list[str] = field(default_factory=list)
    timed_out: bool = False


@dataclass
class RefreshedKeyword:
    """手動更新の結果1件. 圏外の場合は last_known に直近の記録が入る."""

    keyword_id: str
    keyword: str
    position: int | None
    url: str | None
    last_known: dict | None = None
