from __future__ import annotations


SAFE_MESSAGES = {
    "unreachable": "Calendar link unreachable",
    "expired": "Calendar link expired, replace it",
    "auth_required": "Calendar requires login, use a public link",
    "invalid_format": "Invalid calendar format",
    "too_large": "Calendar file too large",
    "too_many_events": "Too many recurring events. Use a smaller calendar.",
    "timeout": "Calendar took too long to load",
    "unknown": "Could not sync calendar",
}


class HomeSyncError(Exception):
    """Base error; ``message`` is safe to show to the user."""

    default_message = SAFE_MESSAGES["unknown"]

    def __init__(self, message: str | None = None, *, detail: str = "") -> None:
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)


class ProviderUnavailable(HomeSyncError):
    default_message = SAFE_MESSAGES["unreachable"]


class InvalidCredential(HomeSyncError):
    default_message = SAFE_MESSAGES["auth_required"]


class ReconciliationConflict(HomeSyncError):
    default_message = "Calendar data conflict, sync aborted"


class SyncInProgress(HomeSyncError):
    default_message = "A sync for this calendar is already running"


class SourceNotFound(HomeSyncError):
    default_message = "Calendar not found"


class RuleNotFound(HomeSyncError):
    default_message = "Mapping rule not found"


class EventNotFound(HomeSyncError):
    default_message = "Event not found"


class RuleConflict(HomeSyncError):
    default_message = "An active rule with the same pattern already exists"


class InvalidLocator(HomeSyncError):
    default_message = "Invalid calendar link"


class InvalidTransition(HomeSyncError):
    default_message = "Event is not awaiting confirmation"


class InvalidRule(HomeSyncError):
    default_message = "Invalid mapping rule"
