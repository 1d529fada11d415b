"""共通フィクスチャ."""

from __future__ import annotations

import json
import uuid
from pathlib import Path

import pytest

from ranktracker import config, db
from ranktracker.models import SerpItem, SerpResult
from ranktracker.rate_limit import reset_rate_limiters

FIXTURES_DIR = Path(__file__).parent / "fixtures"


def load_fixture(name: str) -> dict:
    return json.loads((FIXTURES_DIR / name).read_text(encoding="utf-8"))


def serp(keyword: str, *items: tuple[int, str, str]) -> SerpResult:
    """(rank, domain, url) のタプルから SerpResult を作る."""
    return SerpResult(
        keyword=keyword,
        items=[SerpItem(rank=r, domain=d, url=u) for r, d, u in items],
        items_count=len(items),
    )


@pytest.fixture(autouse=True)
def _settings(monkeypatch):
    monkeypatch.setattr(config, "DATAFORSEO_USERNAME", "login@example.com")
    monkeypatch.setattr(config, "DATAFORSEO_PASSWORD", "secret")
    monkeypatch.setattr(config, "PROVIDER_MAX_ATTEMPTS", 3)
    monkeypatch.setattr(config, "PROVIDER_RETRY_MIN_WAIT", 0)
    monkeypatch.setattr(config, "PROVIDER_RETRY_MAX_WAIT", 0)
    monkeypatch.setattr(config, "FORCED_LOCATION", "Switzerland")
    monkeypatch.setattr(config, "CRON_SECRET", "")
    monkeypatch.setattr(config, "RATE_LIMIT_BACKEND", "memory")
    reset_rate_limiters()
    yield
    reset_rate_limiters()


class FakeDb:
    """jobs / history が使う db 関数のメモリ上の実装."""

    def __init__(self):
        self.trackers: list[dict] = []
        self.keywords: list[dict] = []
        self.rankings: list[dict] = []
        self.volumes: dict[str, tuple[int | None, str]] = {}

    def add_tracker(
        self, name: str, keywords=(), user_id: str | None = None,
        location: str = "Switzerland", language: str = "German",
    ) -> dict:
        tracker = {
            "id": str(uuid.uuid4()),
            "user_id": user_id or str(uuid.uuid4()),
            "name": name,
            "location": location,
            "language": language,
        }
        self.trackers.append(tracker)
        for text in keywords:
            target_url = None
            if isinstance(text, tuple):
                text, target_url = text
            self.keywords.append({
                "id": str(uuid.uuid4()),
                "tracker_id": tracker["id"],
                "keyword": text,
                "target_url": target_url,
                "category": None,
            })
        return tracker

    def keyword_id(self, text: str) -> str:
        return next(k["id"] for k in self.keywords if k["keyword"] == text)

    def rankings_for(self, text: str) -> list[dict]:
        return [r for r in self.rankings if r["keyword_id"] == self.keyword_id(text)]

    # --- db 関数の置き換え ---

    def get_trackers_with_keywords(self):
        return [
            {**t, "keywords": [k for k in self.keywords if k["tracker_id"] == t["id"]]}
            for t in self.trackers
        ]

    def get_tracker_by_user(self, user_id):
        return next((t for t in self.trackers if t["user_id"] == user_id), None)

    def get_keywords(self, tracker_id, keyword_id=None):
        return [
            k for k in self.keywords
            if k["tracker_id"] == tracker_id and (keyword_id is None or k["id"] == keyword_id)
        ]

    def insert_rankings(self, records):
        self.rankings.extend(dict(r) for r in records)

    def get_latest_ranking(self, keyword_id):
        rows = [r for r in self.rankings if r["keyword_id"] == keyword_id]
        return max(rows, key=lambda r: r["date"]) if rows else None

    def update_search_volume(self, keyword_id, search_volume, updated_at):
        self.volumes[keyword_id] = (search_volume, updated_at)


@pytest.fixture
def fake_db(monkeypatch) -> FakeDb:
    fake = FakeDb()
    for name in (
        "get_trackers_with_keywords",
        "get_tracker_by_user",
        "get_keywords",
        "insert_rankings",
        "get_latest_ranking",
        "update_search_volume",
    ):
        monkeypatch.setattr(db, name, getattr(fake, name))
    return fake
