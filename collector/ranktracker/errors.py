"""例外定義.

HTTP 層は status_code をそのままレスポンスに使う。
"""

from __future__ import annotations


class RankTrackerError(Exception):
    """全例外の基底クラス."""

    status_code = 500


class ConfigurationError(RankTrackerError):
    """必須設定（シークレット等）が未設定."""

    status_code = 500


class AuthenticationError(RankTrackerError):
    """トリガーシークレットまたはセッションが不正."""

    status_code = 401


class PermissionDeniedError(RankTrackerError):
    status_code = 403


class NotFoundError(RankTrackerError):
    """トラッカー・キーワードが存在しない."""

    status_code = 404


class ValidationError(RankTrackerError):
    """入力値が不正（空キーワード等）."""

    status_code = 400


class InvalidCategoryError(ValidationError):
    pass


class DuplicateKeywordError(ValidationError):
    """同一トラッカーに同じキーワードが既に存在する."""


class RateLimitExceeded(RankTrackerError):
    status_code = 429

    def __init__(self, reset_in: int):
        super().__init__(f"リクエスト数の上限に達しました。{reset_in} 秒後に再試行してください")
        self.reset_in = reset_in


class ProviderError(RankTrackerError):
    """外部 SERP API の失敗.

    status には HTTP ステータス、またはタスク単位のステータスコードが入る。
    通信エラー時は None。
    """

    status_code = 502

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class JobLoadError(RankTrackerError):
    """ジョブ開始時のトラッカー読み込み失敗（ジョブ全体が失敗する唯一のケース）."""

    status_code = 500
