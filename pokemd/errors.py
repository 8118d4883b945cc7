"""Failure taxonomy for relay requests and room state changes."""

from __future__ import annotations


class RelayError(Exception):
    """A relay request ended without delivering its message.

    ``status`` is the HTTP status the listener answers with.
    """

    status = 500
    public_message = "Failed to send message"


class EmptyMessage(RelayError):
    status = 400
    public_message = "Message must not be empty"


class InvalidBody(RelayError):
    status = 400
    public_message = "Message must be UTF-8 text"


class UnresolvedRoom(RelayError):
    status = 404
    public_message = "Room not found"

    def __init__(self, reference: str) -> None:
        super().__init__(f"no room matches {reference!r}")
        self.reference = reference


class AuthError(RelayError):
    # Same answer for both subclasses: a wrong token looks like a missing one.
    status = 401
    public_message = "Incorrect Authentication Token"


class AuthRequired(AuthError):
    pass


class AuthMismatch(AuthError):
    pass


class RoomBlocked(RelayError):
    status = 403
    public_message = "Room has blocked notifications"


class DeliveryFailed(RelayError):
    status = 503
    public_message = "Failed to send message"


class AdmissionRejected(Exception):
    """An invite was declined. Only ever logged."""

    def __init__(self, room_id: str, reason: str) -> None:
        super().__init__(f"{room_id}: {reason}")
        self.room_id = room_id
        self.reason = reason


class PersistenceError(Exception):
    """The state file could not be written; the change was rolled back."""
