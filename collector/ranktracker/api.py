"""HTTP エンドポイント（Flask）.

- /api/cron/*        : 外部タイマーから呼ばれる定期ジョブ（CRON_SECRET の Bearer 認証）
- /api/rank-tracker/*: ログインユーザー向け（Supabase Auth のアクセストークン）
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import asdict
from datetime import datetime, timezone
from functools import wraps

from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

from ranktracker import config, db, history, jobs, registry
from ranktracker.errors import (
    AuthenticationError,
    ConfigurationError,
    NotFoundError,
    PermissionDeniedError,
    RankTrackerError,
    ValidationError,
)
from ranktracker.rate_limit import get_rate_limiter

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_DAYS = 30


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _bearer_token() -> str:
    header = request.headers.get("Authorization", "")
    return header[len("Bearer "):] if header.startswith("Bearer ") else ""


def _verify_cron_secret() -> None:
    if not config.CRON_SECRET:
        raise ConfigurationError("CRON_SECRET が設定されていません")
    expected = f"Bearer {config.CRON_SECRET}"
    actual = request.headers.get("Authorization", "")
    if not hmac.compare_digest(actual.encode(), expected.encode()):
        raise AuthenticationError("Unauthorized")


def cron_job(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        _verify_cron_secret()
        return view(*args, **kwargs)
    return wrapper


def login_required(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        token = _bearer_token()
        user = db.get_session_user(token) if token else None
        if user is None:
            raise AuthenticationError("Unauthorized")
        g.user = user
        return view(*args, **kwargs)
    return wrapper


def _job_response(summary, count_key: str, count: int, message: str):
    body = {
        "success": True,
        "message": message,
        "trackersProcessed": summary.trackers_processed,
        "totalKeywords": summary.total_keywords,
        count_key: count,
        "runId": summary.run_id,
        "timestamp": _timestamp(),
    }
    if summary.errors:
        body["errors"] = summary.errors
    if summary.timed_out:
        body["timedOut"] = True
    return jsonify(body)


def _json_body() -> dict:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValidationError("JSON ボディが必要です")
    return body


def create_app() -> Flask:
    app = Flask(__name__)

    @app.after_request
    def log_response(response):
        logger.info("%s %s → %s", request.method, request.path, response.status_code)
        return response

    @app.errorhandler(RankTrackerError)
    def handle_app_error(e: RankTrackerError):
        if e.status_code >= 500:
            logger.error("%s: %s", type(e).__name__, e)
        return jsonify({"error": str(e), "timestamp": _timestamp()}), e.status_code

    @app.errorhandler(Exception)
    def handle_unexpected(e: Exception):
        if isinstance(e, HTTPException):
            return e
        logger.exception("予期しないエラー")
        return jsonify({"error": str(e) or "Internal Server Error", "timestamp": _timestamp()}), 500

    # --- cron ---

    @app.get("/api/cron/rank-tracker")
    @cron_job
    def cron_rank_tracker():
        summary = jobs.run_ranking_job()
        return _job_response(
            summary, "totalRankings", summary.total_rankings,
            f"{summary.total_keywords} キーワードで {summary.total_rankings} 件の順位を取得しました",
        )

    @app.get("/api/cron/search-volume")
    @cron_job
    def cron_search_volume():
        summary = jobs.run_search_volume_job()
        return _job_response(
            summary, "updatedKeywords", summary.updated_keywords,
            f"{summary.total_keywords} キーワード中 {summary.updated_keywords} 件の検索ボリュームを更新しました",
        )

    # --- rank tracker ---

    @app.get("/api/rank-tracker")
    @login_required
    def get_tracker():
        tracker = registry.get_or_create_tracker(g.user["id"])
        return jsonify({"tracker": {**tracker, "keywords": registry.list_keywords(tracker["id"])}})

    @app.post("/api/rank-tracker/keywords")
    @login_required
    def add_keyword():
        body = _json_body()
        tracker = registry.get_or_create_tracker(g.user["id"])
        keyword = registry.add_keyword(
            tracker["id"],
            body.get("keyword"),
            category=body.get("category"),
            target_url=body.get("targetUrl"),
        )
        return jsonify({"keyword": keyword})

    @app.patch("/api/rank-tracker/keywords/<keyword_id>")
    @login_required
    def update_keyword(keyword_id: str):
        body = _json_body()
        registry.get_keyword(keyword_id, g.user["id"])
        fields = {}
        if "category" in body:
            fields["category"] = body["category"]
        if "targetUrl" in body:
            fields["target_url"] = body["targetUrl"]
        return jsonify({"keyword": registry.update_keyword(keyword_id, **fields)})

    @app.delete("/api/rank-tracker/keywords/<keyword_id>")
    @login_required
    def delete_keyword(keyword_id: str):
        registry.get_keyword(keyword_id, g.user["id"])
        registry.delete_keyword(keyword_id)
        return jsonify({"success": True})

    @app.get("/api/rank-tracker/rankings")
    @login_required
    def get_rankings():
        try:
            days = int(request.args.get("days", DEFAULT_HISTORY_DAYS))
        except ValueError as e:
            raise ValidationError("days は整数で指定してください") from e

        tracker = db.get_tracker_by_user(g.user["id"])
        if tracker is None:
            raise NotFoundError("トラッカーが見つかりません")
        keywords = db.get_keywords(tracker["id"], request.args.get("keywordId"))
        return jsonify({"rankings": history.window(keywords, days)})

    @app.post("/api/rank-tracker/fetch")
    @login_required
    def fetch_rankings():
        get_rate_limiter("api").consume(g.user["id"])
        outcomes = jobs.refresh_rankings(g.user["id"], request.args.get("keywordId"))
        saved = [o for o in outcomes if o.position is not None]
        return jsonify({
            "success": True,
            "rankings": [asdict(o) for o in outcomes],
            "message": f"{len(saved)} 件の順位を取得しました",
        })

    @app.post("/api/rank-tracker/search-volume")
    @login_required
    def fetch_search_volume():
        if g.user["role"] == "viewer":
            raise PermissionDeniedError("Forbidden")
        get_rate_limiter("api").consume(g.user["id"])
        updated, total = jobs.refresh_search_volume(g.user["id"], request.args.get("keywordId"))
        return jsonify({
            "message": f"{updated} 件の検索ボリュームを更新しました",
            "updatedCount": updated,
            "totalKeywords": total,
        })

    return app
