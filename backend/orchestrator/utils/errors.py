"""Custom exception classes for orchestration errors.

Provides structured error handling with error codes and operator-facing messages.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Standard error codes for orchestration errors."""

    # General errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    INVALID_REQUEST = "INVALID_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"

    # Validation errors
    VALIDATION_FAILED = "VALIDATION_FAILED"
    INVALID_BRACKET = "INVALID_BRACKET"
    INVALID_VETO_ACTION = "INVALID_VETO_ACTION"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"

    # Lookup errors
    TOURNAMENT_NOT_FOUND = "TOURNAMENT_NOT_FOUND"
    MATCH_NOT_FOUND = "MATCH_NOT_FOUND"
    SERVER_NOT_FOUND = "SERVER_NOT_FOUND"
    TEAM_NOT_FOUND = "TEAM_NOT_FOUND"

    # State errors
    INVALID_TOURNAMENT_STATE = "INVALID_TOURNAMENT_STATE"
    STATE_CONFLICT = "STATE_CONFLICT"

    # Resource errors (reported per match, never raised by allocation)
    NO_AVAILABLE_SERVERS = "NO_AVAILABLE_SERVERS"
    SERVER_CLAIMED = "SERVER_CLAIMED"

    # Protocol errors (reported per server / per match)
    COMMAND_FAILED = "COMMAND_FAILED"
    COMMAND_TIMEOUT = "COMMAND_TIMEOUT"
    AUTH_FAILED = "AUTH_FAILED"
    SERVER_DISABLED = "SERVER_DISABLED"


class OrchestratorError(Exception):
    """Base exception for orchestration errors.

    Attributes:
        code: Error code for programmatic handling
        message: Operator-facing error message
        details: Additional error details
        recoverable: Whether retrying the operation can succeed
    """

    def __init__(
        self,
        code: ErrorCode | str,
        message: str,
        details: dict[str, Any] | None = None,
        recoverable: bool = True,
    ):
        self.code = code.value if isinstance(code, ErrorCode) else code
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "errorCode": self.code,
            "errorMessage": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


# =============================================================================
# Validation Errors
# =============================================================================


class ValidationError(OrchestratorError):
    """Raised when input is rejected before any state change."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
    ):
        super().__init__(
            code=code,
            message=message,
            details=details,
            recoverable=True,
        )


class BracketValidationError(ValidationError):
    """Raised when a team list does not fit the bracket topology."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, details, code=ErrorCode.INVALID_BRACKET)


class InvalidVetoActionError(ValidationError):
    """Raised when a veto action is out of turn, of the wrong kind, or late."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, details, code=ErrorCode.INVALID_VETO_ACTION)


# =============================================================================
# Lookup Errors
# =============================================================================


class TournamentNotFoundError(OrchestratorError):
    """Raised when a tournament is not found."""

    def __init__(self, tournament_id: str | None = None):
        message = "No tournament found"
        if tournament_id:
            message = f"Tournament not found: {tournament_id}"
        super().__init__(
            code=ErrorCode.TOURNAMENT_NOT_FOUND,
            message=message,
            details={"tournamentId": tournament_id} if tournament_id else {},
            recoverable=False,
        )


class MatchNotFoundError(OrchestratorError):
    """Raised when a match is not found."""

    def __init__(self, slug: str):
        super().__init__(
            code=ErrorCode.MATCH_NOT_FOUND,
            message=f"Match not found: {slug}",
            details={"matchSlug": slug},
            recoverable=False,
        )


class ServerNotFoundError(OrchestratorError):
    """Raised when a server is not found."""

    def __init__(self, server_id: str):
        super().__init__(
            code=ErrorCode.SERVER_NOT_FOUND,
            message=f"Server not found: {server_id}",
            details={"serverId": server_id},
            recoverable=False,
        )


class TeamNotFoundError(OrchestratorError):
    """Raised when a team referenced by a tournament does not exist."""

    def __init__(self, team_id: str):
        super().__init__(
            code=ErrorCode.TEAM_NOT_FOUND,
            message=f"Team not found: {team_id}",
            details={"teamId": team_id},
            recoverable=False,
        )


# =============================================================================
# State Errors
# =============================================================================


class TournamentStateError(OrchestratorError):
    """Raised when a tournament is not in a status that allows the operation."""

    def __init__(self, message: str, status: str | None = None):
        super().__init__(
            code=ErrorCode.INVALID_TOURNAMENT_STATE,
            message=message,
            details={"status": status} if status else {},
            recoverable=True,
        )


class StateConflictError(OrchestratorError):
    """Raised when an administrator action targets a match in the wrong status."""

    def __init__(self, slug: str, current: str, expected: list[str]):
        super().__init__(
            code=ErrorCode.STATE_CONFLICT,
            message=f"Match {slug} is {current}, expected one of: {', '.join(expected)}",
            details={"matchSlug": slug, "current": current, "expected": expected},
            recoverable=True,
        )


class WebhookAuthError(OrchestratorError):
    """Raised when a server callback presents a bad shared secret."""

    def __init__(self, message: str = "Invalid or missing webhook token"):
        super().__init__(
            code=ErrorCode.UNAUTHORIZED,
            message=message,
            recoverable=False,
        )
