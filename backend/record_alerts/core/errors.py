"""
Pipeline exception hierarchy.

Each class carries a fixed, user-safe ``public_message`` that is what gets stored in
notification_history; the exception text itself is only ever logged.
"""

from __future__ import annotations


class PipelineError(Exception):
    public_message = "Unexpected processing error"


class ValidationError(PipelineError):
    """Bad job input or a map UID the API rejects. Never retried."""

    public_message = "Invalid input for notification check"


class LeaderboardApiError(PipelineError):
    public_message = "Leaderboard API request failed"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthError(LeaderboardApiError):
    """Still unauthorized after renewing the token, or the login itself failed."""

    public_message = "Leaderboard API authentication failed"


class RateLimitError(LeaderboardApiError):
    public_message = "Leaderboard API rate limit exceeded"


class TransientApiError(LeaderboardApiError):
    public_message = "Leaderboard API unavailable"


class EmailDeliveryError(PipelineError):
    public_message = "Email delivery failed"


def public_message_for(exc: BaseException) -> str:
    """Sanitized message to persist for an exception; never includes exception text."""
    if isinstance(exc, PipelineError):
        return exc.public_message
    if isinstance(exc, TimeoutError):
        return "Notification check timed out"
    return PipelineError.public_message
