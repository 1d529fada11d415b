"""dataforseo モジュールのモックテスト."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from conftest import load_fixture
from ranktracker import config
from ranktracker.dataforseo import fetch_rankings, fetch_search_volume, parse_serp_result
from ranktracker.errors import ConfigurationError, ProviderError

KEYWORDS = [
    {"keyword": "hypothek rechner", "target_url": "ubs.com"},
    {"keyword": "festgeld zinsen", "target_url": None},
]


def _response(status_code=200, data=None, text=""):
    resp = MagicMock()
    resp.ok = 200 <= status_code < 300
    resp.status_code = status_code
    resp.text = text
    resp.json.return_value = data
    return resp


class TestFetchRankings:
    """fetch_rankings のテスト."""

    @patch("ranktracker.dataforseo.requests.post")
    def test_single_batch_request(self, mock_post):
        """全キーワードを1リクエストで送ること."""
        mock_post.return_value = _response(data=load_fixture("serp_live_advanced.json"))

        fetch_rankings(KEYWORDS, "Switzerland", "German")

        mock_post.assert_called_once()
        args, kwargs = mock_post.call_args
        assert args[0] == "https://api.dataforseo.com/v3/serp/google/organic/live/advanced"
        assert kwargs["auth"] == ("login@example.com", "secret")
        assert kwargs["json"] == [
            {"keyword": "hypothek rechner", "location_code": 2756, "language_code": "de", "depth": 100},
            {"keyword": "festgeld zinsen", "location_code": 2756, "language_code": "de", "depth": 100},
        ]

    @patch("ranktracker.dataforseo.requests.post")
    def test_location_and_language_codes(self, mock_post):
        mock_post.return_value = _response(data=load_fixture("serp_live_advanced.json"))

        fetch_rankings(KEYWORDS[:1], "Germany", "French")

        task = mock_post.call_args.kwargs["json"][0]
        assert task["location_code"] == 2276
        assert task["language_code"] == "fr"

    @patch("ranktracker.dataforseo.requests.post")
    def test_parse_results(self, mock_post):
        """レスポンス順に関係なくキーワードごとの結果を返すこと."""
        mock_post.return_value = _response(data=load_fixture("serp_live_advanced.json"))

        results = fetch_rankings(KEYWORDS, "Switzerland", "German")

        by_keyword = {r.keyword: r for r in results}
        assert set(by_keyword) == {"hypothek rechner", "festgeld zinsen"}
        hypothek = by_keyword["hypothek rechner"]
        assert hypothek.items_count == 5
        # 広告と people_also_ask は除外される
        assert [(i.rank, i.domain) for i in hypothek.items] == [
            (2, "moneypark.ch"), (4, "ubs.com"), (5, "www.ubs.com"),
        ]

    @patch("ranktracker.dataforseo.requests.post")
    def test_failed_task_skipped(self, mock_post):
        data = load_fixture("serp_live_advanced.json")
        data["tasks"][0]["status_code"] = 40501
        data["tasks"][0]["status_message"] = "Invalid Field: 'keyword'."
        data["tasks"][0]["result"] = None
        mock_post.return_value = _response(data=data)

        results = fetch_rankings(KEYWORDS, "Switzerland", "German")

        assert [r.keyword for r in results] == ["hypothek rechner"]

    @patch("ranktracker.dataforseo.requests.post")
    def test_all_tasks_failed(self, mock_post):
        data = load_fixture("serp_live_advanced.json")
        for task in data["tasks"]:
            task["status_code"] = 40200
            task["result"] = None
        mock_post.return_value = _response(data=data)

        with pytest.raises(ProviderError) as exc_info:
            fetch_rankings(KEYWORDS, "Switzerland", "German")
        assert exc_info.value.status == 40200

    @patch("ranktracker.dataforseo.requests.post")
    def test_ok_task_without_result_is_empty(self, mock_post):
        """結果なしのタスクはエラーではなく空の結果として扱うこと."""
        data = load_fixture("serp_live_advanced.json")
        data["tasks"][1]["result"] = None
        mock_post.return_value = _response(data=data)

        results = fetch_rankings(KEYWORDS, "Switzerland", "German")

        empty = next(r for r in results if r.keyword == "hypothek rechner")
        assert empty.items == []

    @patch("ranktracker.dataforseo.requests.post")
    def test_retry_on_server_error(self, mock_post):
        """5xx は再試行して成功すること."""
        mock_post.side_effect = [
            _response(status_code=503, text="Service Unavailable"),
            _response(data=load_fixture("serp_live_advanced.json")),
        ]

        results = fetch_rankings(KEYWORDS, "Switzerland", "German")

        assert mock_post.call_count == 2
        assert len(results) == 2

    @patch("ranktracker.dataforseo.requests.post")
    def test_retry_exhausted(self, mock_post):
        mock_post.side_effect = requests.ConnectionError("connection reset")

        with pytest.raises(ProviderError):
            fetch_rankings(KEYWORDS, "Switzerland", "German")
        assert mock_post.call_count == config.PROVIDER_MAX_ATTEMPTS

    @patch("ranktracker.dataforseo.requests.post")
    def test_client_error_not_retried(self, mock_post):
        mock_post.return_value = _response(status_code=401, text="Unauthorized")

        with pytest.raises(ProviderError) as exc_info:
            fetch_rankings(KEYWORDS, "Switzerland", "German")
        assert exc_info.value.status == 401
        assert mock_post.call_count == 1

    @patch("ranktracker.dataforseo.requests.post")
    def test_missing_credentials(self, mock_post, monkeypatch):
        monkeypatch.setattr(config, "DATAFORSEO_PASSWORD", "")

        with pytest.raises(ConfigurationError):
            fetch_rankings(KEYWORDS, "Switzerland", "German")
        mock_post.assert_not_called()

    @patch("ranktracker.dataforseo.requests.post")
    def test_timeout_capped_by_time_left(self, mock_post):
        mock_post.return_value = _response(data=load_fixture("serp_live_advanced.json"))

        fetch_rankings(KEYWORDS, "Switzerland", "German", time_left=5)

        assert 0 < mock_post.call_args.kwargs["timeout"] <= 5

    @patch("ranktracker.dataforseo.requests.post")
    def test_default_timeout(self, mock_post):
        mock_post.return_value = _response(data=load_fixture("serp_live_advanced.json"))

        fetch_rankings(KEYWORDS, "Switzerland", "German")

        assert mock_post.call_args.kwargs["timeout"] == config.REQUEST_TIMEOUT

    @patch("ranktracker.dataforseo.requests.post")
    def test_no_time_left(self, mock_post):
        """持ち時間がなければリクエストも再試行もしないこと."""
        with pytest.raises(ProviderError):
            fetch_rankings(KEYWORDS, "Switzerland", "German", time_left=0)
        mock_post.assert_not_called()

    @patch("ranktracker.dataforseo.requests.post")
    def test_retries_stop_at_time_left(self, mock_post, monkeypatch):
        monkeypatch.setattr(config, "PROVIDER_MAX_ATTEMPTS", 10)
        monkeypatch.setattr(config, "PROVIDER_RETRY_MIN_WAIT", 0.2)
        monkeypatch.setattr(config, "PROVIDER_RETRY_MAX_WAIT", 0.2)
        mock_post.return_value = _response(status_code=503, text="Service Unavailable")

        with pytest.raises(ProviderError):
            fetch_rankings(KEYWORDS, "Switzerland", "German", time_left=0.3)
        assert mock_post.call_count <= 3

    def test_empty_keywords(self):
        with pytest.raises(ValueError):
            fetch_rankings([], "Switzerland", "German")


class TestParseSerpResult:
    """parse_serp_result のテスト."""

    def test_skips_items_without_rank(self):
        result = parse_serp_result({
            "keyword": "ubs",
            "items_count": 2,
            "items": [
                {"type": "organic", "rank_absolute": None, "domain": "ubs.com", "url": "https://ubs.com"},
                {"type": "organic", "rank_absolute": 2, "domain": "ubs.com", "url": "https://ubs.com/a"},
            ],
        })
        assert [i.rank for i in result.items] == [2]

    def test_no_items(self):
        result = parse_serp_result({"keyword": "ubs", "items_count": 0, "items": None})
        assert result.items == []


class TestFetchSearchVolume:
    """fetch_search_volume のテスト."""

    @patch("ranktracker.dataforseo.time.sleep")
    @patch("ranktracker.dataforseo.requests.post")
    def test_batches_of_100(self, mock_post, mock_sleep):
        keywords = [f"keyword {i}" for i in range(150)]

        def reply(url, json, auth, timeout):
            batch = json[0]["keywords"]
            return _response(data={"tasks": [{
                "status_code": 20000,
                "result": [{"keyword": k, "search_volume": 10} for k in batch],
            }]})

        mock_post.side_effect = reply

        results = fetch_search_volume(keywords, "Switzerland", "German")

        assert mock_post.call_count == 2
        assert [len(c.kwargs["json"][0]["keywords"]) for c in mock_post.call_args_list] == [100, 50]
        assert mock_post.call_args.args[0].endswith("/keywords_data/google_ads/search_volume/live")
        assert len(results) == 150
        mock_sleep.assert_called_once()

    @patch("ranktracker.dataforseo.requests.post")
    def test_null_volume_kept(self, mock_post):
        mock_post.return_value = _response(data={"tasks": [{
            "status_code": 20000,
            "result": [{"keyword": "ubs", "search_volume": None}],
        }]})

        results = fetch_search_volume(["ubs"], "Switzerland", "German")

        assert results[0].search_volume is None

    @patch("ranktracker.dataforseo.requests.post")
    def test_task_error(self, mock_post):
        mock_post.return_value = _response(data={"tasks": [{
            "status_code": 40100,
            "status_message": "You are not authorized.",
        }]})

        with pytest.raises(ProviderError):
            fetch_search_volume(["ubs"], "Switzerland", "German")
