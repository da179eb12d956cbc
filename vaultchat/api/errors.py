"""Error taxonomy for the request client and agent loop.

ApiError carries a classified ErrorKind. Only OVERLOADED is retried by
the client; everything else surfaces immediately. user_notice() turns
any of these into a short notice plus a longer explanation with next
steps for the chat surface.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class ErrorKind(StrEnum):
    OVERLOADED = "overloaded"
    RATE_LIMITED = "rate_limited"
    INVALID_REQUEST = "invalid_request"
    UNAUTHENTICATED = "unauthenticated"
    SERVER_ERROR = "server_error"
    NETWORK = "network"
    UNKNOWN = "unknown"


def classify_status(status: int) -> ErrorKind:
    """Map an HTTP status code to an ErrorKind."""
    if status == 529:
        return ErrorKind.OVERLOADED
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status == 400:
        return ErrorKind.INVALID_REQUEST
    if status in (401, 403):
        return ErrorKind.UNAUTHENTICATED
    if 500 <= status < 600:
        return ErrorKind.SERVER_ERROR
    return ErrorKind.UNKNOWN


class VaultChatError(Exception):
    """Base class for all vaultchat errors."""


class ConfigurationError(VaultChatError):
    """Missing or invalid configuration (e.g. no API key)."""


class ApiError(VaultChatError):
    """Non-success outcome of a Messages API request."""

    def __init__(
        self,
        status: int,
        kind: ErrorKind,
        message: str,
        retry_after: float | None = None,
        retries_exhausted: bool = False,
    ) -> None:
        self.status = status
        self.kind = kind
        self.message = message
        self.retry_after = retry_after
        self.retries_exhausted = retries_exhausted
        super().__init__(f"API error ({status}, {kind}): {message}")

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.OVERLOADED


class UnexpectedStopReason(VaultChatError):
    """Model returned a stop_reason the loop has no branch for."""

    def __init__(self, stop_reason: str) -> None:
        self.stop_reason = stop_reason
        super().__init__(f"Unexpected stop reason: {stop_reason!r}")


class ToolExecutionError(VaultChatError):
    """A tool handler failed unexpectedly (not a business failure)."""

    def __init__(self, name: str, cause: BaseException) -> None:
        self.name = name
        self.cause = cause
        super().__init__(f"{type(cause).__name__}: {cause}")


class TurnInProgressError(VaultChatError):
    """A turn is already running for this conversation."""

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(f"A turn is already in progress for conversation {conversation_id}")


@dataclass
class UserNotice:
    """Short actionable notice plus a longer explanation."""

    notice: str
    detail: str


def user_notice(exc: BaseException) -> UserNotice:
    """Build the user-visible notice for a failed turn."""
    if isinstance(exc, ApiError):
        return _api_error_notice(exc)
    if isinstance(exc, ConfigurationError):
        return UserNotice(
            notice="Please configure your Anthropic API key",
            detail=(
                f"{exc}\n\nSuggestions:\n"
                "- Set ANTHROPIC_API_KEY in the environment or .env file\n"
                "- Generate a key at https://console.anthropic.com"
            ),
        )
    if isinstance(exc, UnexpectedStopReason):
        return UserNotice(
            notice=f"Unexpected stop reason: {exc.stop_reason}",
            detail=(
                f"The model stopped with an unsupported reason ({exc.stop_reason!r}).\n\n"
                "Your conversation so far has been kept. Try sending the message "
                "again; if this persists, please report it as a bug."
            ),
        )
    text = str(exc) or type(exc).__name__
    return UserNotice(
        notice="Error: " + text[:50],
        detail=(
            f"Unexpected error occurred.\n\nDetails: {text}\n\n"
            "If this persists, please report it as a bug."
        ),
    )


def _api_error_notice(exc: ApiError) -> UserNotice:
    if exc.kind == ErrorKind.OVERLOADED:
        return UserNotice(
            notice="API overloaded - please try again in a moment",
            detail=(
                "API is overloaded. All retry attempts failed.\n\nSuggestions:\n"
                "- Wait a minute and try again\n"
                "- The API is experiencing high traffic\n"
                "- Your request will work once servers are less busy"
            ),
        )
    if exc.kind == ErrorKind.RATE_LIMITED:
        wait = (
            f"Wait {exc.retry_after:g} seconds before trying again"
            if exc.retry_after is not None
            else "Wait 1 minute before trying again"
        )
        return UserNotice(
            notice="Rate limit exceeded - wait a minute or clear history",
            detail=(
                "Rate limit exceeded. You're sending too many tokens too quickly.\n\n"
                "Suggestions:\n"
                "- Clear conversation history (removes old messages)\n"
                "- Work with smaller files\n"
                f"- {wait}\n"
                "- Switch to Claude Haiku (uses fewer tokens)"
            ),
        )
    if exc.kind == ErrorKind.INVALID_REQUEST:
        return UserNotice(
            notice="Invalid API request - please report this bug",
            detail=(
                f"Invalid request sent to API.\n\nDetails: {exc.message}\n\n"
                "This is usually a bug in vaultchat. Reducing the conversation "
                "history may help; please report it."
            ),
        )
    if exc.kind == ErrorKind.UNAUTHENTICATED:
        return UserNotice(
            notice="Invalid API key - check settings",
            detail=(
                "API key is invalid or expired.\n\nSuggestions:\n"
                "- Check your API key in settings\n"
                "- Generate a new key at https://console.anthropic.com\n"
                "- Make sure you have credits available"
            ),
        )
    if exc.kind == ErrorKind.SERVER_ERROR:
        return UserNotice(
            notice="Server error - try again in a few minutes",
            detail=(
                "Server error on Anthropic's side.\n\nSuggestions:\n"
                "- Wait a few minutes and try again\n"
                "- Check https://status.anthropic.com for outages\n"
                "- Your request was not processed"
            ),
        )
    if exc.kind == ErrorKind.NETWORK:
        return UserNotice(
            notice="Network error - check your connection",
            detail=(
                f"Could not reach the API.\n\nDetails: {exc.message}\n\n"
                "Suggestions:\n- Check your internet connection\n- Try again in a moment"
            ),
        )
    return UserNotice(
        notice="Error: " + exc.message[:50],
        detail=(
            f"Unexpected error occurred.\n\nDetails: {exc}\n\n"
            "If this persists, please report it as a bug."
        ),
    )
