"""
Session error taxonomy.

Every failure that can reach the UI layer is expressed as one of these
exceptions. Library exceptions (PortAudio, websockets, httpx) are translated
at the seam that owns the library.
"""


class SessionError(Exception):
    """Base class for all conversational session errors."""

    code = "session_error"
    terminal = True
    user_message = "Es ist ein Fehler aufgetreten. Bitte versuche es erneut."

    def __init__(self, message: str | None = None, *, status_code: int | None = None) -> None:
        super().__init__(message or self.user_message)
        self.message = message or self.user_message
        self.status_code = status_code


class PermissionDenied(SessionError):
    """The user (or the OS) declined microphone access."""

    code = "permission_denied"
    user_message = "Mikrofon-Zugriff fehlgeschlagen. Bitte erlaube den Zugriff auf dein Mikrofon."


class DeviceNotFound(SessionError):
    """No usable audio input device matches the request."""

    code = "device_not_found"
    user_message = "Kein Mikrofon gefunden. Bitte schließe ein Mikrofon an."


class ConnectionFailed(SessionError):
    """The transport could not be established (network or firewall)."""

    code = "connection_failed"
    user_message = "Verbindung fehlgeschlagen. Bitte prüfe deine Internetverbindung."


class AuthFailed(SessionError):
    """Bad agent id or credentials."""

    code = "auth_failed"
    user_message = "Anmeldung beim Gesprächsdienst fehlgeschlagen."


class Timeout(SessionError):
    """A handshake or turn exceeded its time budget."""

    code = "timeout"
    user_message = "Zeitüberschreitung beim Verbindungsaufbau."


class DecodeError(SessionError):
    """A single audio chunk could not be decoded."""

    code = "decode_error"
    terminal = False
    user_message = "Audio konnte nicht abgespielt werden."


class ServerError(SessionError):
    """The remote agent or backend reported an error."""

    code = "server_error"
    terminal = False
    user_message = "Der Server hat einen Fehler gemeldet."


class EmptyTranscript(SessionError):
    """The session ended without any exchanged utterance."""

    code = "empty_transcript"
    terminal = False
    user_message = "Das Gespräch war zu kurz. Bitte versuche es erneut."


class InvalidTransition(RuntimeError):
    """Raised when a state machine is asked for a transition it does not allow."""

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Invalid transition {current} -> {requested}")
        self.current = current
        self.requested = requested
