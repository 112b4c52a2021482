"""
Error kinds surfaced by the broadcast control plane.

Every failure carries a message fit for direct display; the operator hint is
looked up from the kind so call sites never hardcode guidance.
"""

HINTS = {
    "no_scheduled_content": "Add programs with playable media to the schedule first.",
    "no_active_session": "Start the channel before using this action.",
    "channel_not_found": "Check the channel id or create the channel first.",
    "access_denied": "Sign in with the account that owns this channel.",
    "external_provider_error": "The transcoding provider rejected the request; retry or check the provider dashboard.",
    "persistence_inconsistency": "The provider accepted the command but local state was not saved; run status to resync.",
    "invalid_action": "Check the action name and payload.",
    "channel_busy": "Another command for this channel is still running; retry in a moment.",
    "persistence_error": "Nothing was changed; retry the action.",
}


class OnAirError(Exception):
    """Raised when a broadcast operation cannot be completed."""

    kind = "onair_error"
    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    @property
    def hint(self) -> str | None:
        return HINTS.get(self.kind)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, "hint": self.hint}


class NoScheduledContent(OnAirError):
    kind = "no_scheduled_content"
    status_code = 409


class NoActiveSession(OnAirError):
    kind = "no_active_session"
    status_code = 409


class ChannelNotFound(OnAirError):
    kind = "channel_not_found"
    status_code = 404


class AccessDenied(OnAirError):
    kind = "access_denied"
    status_code = 403


class ExternalProviderError(OnAirError):
    kind = "external_provider_error"
    status_code = 502


class PersistenceInconsistency(OnAirError):
    kind = "persistence_inconsistency"
    status_code = 500


class InvalidAction(OnAirError):
    kind = "invalid_action"
    status_code = 400


class ChannelBusy(OnAirError):
    kind = "channel_busy"
    status_code = 409


class PersistenceError(OnAirError):
    kind = "persistence_error"
    status_code = 500


STATUS_BY_KIND = {cls.kind: cls.status_code for cls in OnAirError.__subclasses__()}
