"""
Session state management.

Single source of truth for the lifecycle of one live session: its status,
the transport it runs on, timing and the last error. Status only changes
through the transitions defined here.
"""

import time
from datetime import datetime, timezone
from typing import Callable
from uuid import UUID, uuid4

from bewerbungstrainer.errors import InvalidTransition, SessionError
from bewerbungstrainer.orchestrator.schemas import SessionStatus, TransportKind

SESSION_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.IDLE: frozenset({SessionStatus.CONNECTING, SessionStatus.DISCONNECTED, SessionStatus.ERROR}),
    SessionStatus.CONNECTING: frozenset(
        {SessionStatus.CONNECTED, SessionStatus.ENDING, SessionStatus.DISCONNECTED, SessionStatus.ERROR}
    ),
    SessionStatus.CONNECTED: frozenset({SessionStatus.ENDING, SessionStatus.DISCONNECTED, SessionStatus.ERROR}),
    SessionStatus.ENDING: frozenset({SessionStatus.DISCONNECTED, SessionStatus.ERROR}),
    SessionStatus.DISCONNECTED: frozenset(),
    SessionStatus.ERROR: frozenset({SessionStatus.DISCONNECTED}),
}


class SessionState:
    """
    Manages the mutable state of a live session.

    Duration counts from ``connected`` and freezes once the session stops
    being connected.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        """
        Initialize session state.

        Args:
            clock: Monotonic clock used for the duration.
        """
        self._session_id: UUID = uuid4()
        self._clock = clock
        self._status = SessionStatus.IDLE
        self._transport_kind: TransportKind | None = None
        self._created_at: datetime = datetime.now(timezone.utc)
        self._connected_at: float | None = None
        self._stopped_at: float | None = None
        self._last_error: SessionError | None = None
        self._muted = False

    @property
    def session_id(self) -> UUID:
        """Get the unique session identifier."""
        return self._session_id

    @property
    def status(self) -> SessionStatus:
        """Get the current session status."""
        return self._status

    @property
    def transport_kind(self) -> TransportKind | None:
        """Get the transport chosen for this session."""
        return self._transport_kind

    @property
    def created_at(self) -> datetime:
        return self._created_at

    @property
    def last_error(self) -> SessionError | None:
        """Get the most recent error, terminal or not."""
        return self._last_error

    @property
    def muted(self) -> bool:
        return self._muted

    @property
    def is_active(self) -> bool:
        """Check whether the session is connecting or connected."""
        return self._status in (SessionStatus.CONNECTING, SessionStatus.CONNECTED)

    @property
    def is_finished(self) -> bool:
        return self._status == SessionStatus.DISCONNECTED

    @property
    def duration_seconds(self) -> int:
        """Whole seconds spent connected."""
        if self._connected_at is None:
            return 0
        end = self._stopped_at if self._stopped_at is not None else self._clock()
        return max(0, int(end - self._connected_at))

    def can_transition(self, status: SessionStatus) -> bool:
        return status == self._status or status in SESSION_TRANSITIONS[self._status]

    def transition(self, status: SessionStatus) -> None:
        """
        Move to ``status``.

        Raises:
            InvalidTransition: If the move is not allowed from the current status.
        """
        if status == self._status:
            return
        if status not in SESSION_TRANSITIONS[self._status]:
            raise InvalidTransition(self._status.value, status.value)

        if status == SessionStatus.CONNECTED:
            self._connected_at = self._clock()
        elif self._status == SessionStatus.CONNECTED:
            self._stopped_at = self._clock()
        self._status = status

    def set_transport(self, kind: TransportKind) -> None:
        """
        Record the transport. Fixed once connecting has begun.

        Raises:
            InvalidTransition: If the session already left ``idle``.
        """
        if self._status != SessionStatus.IDLE and kind != self._transport_kind:
            raise InvalidTransition(self._status.value, f"transport:{kind.value}")
        self._transport_kind = kind

    def record_error(self, error: SessionError) -> None:
        """Remember ``error``; terminal errors also move the session to ``error``."""
        self._last_error = error
        if error.terminal and self.can_transition(SessionStatus.ERROR):
            self.transition(SessionStatus.ERROR)

    def set_muted(self, muted: bool) -> None:
        self._muted = muted

    def to_dict(self) -> dict[str, object]:
        """Get a summary of the session state."""
        return {
            "session_id": str(self._session_id),
            "status": self._status.value,
            "transport": self._transport_kind.value if self._transport_kind else None,
            "duration_seconds": self.duration_seconds,
            "muted": self._muted,
            "last_error": self._last_error.code if self._last_error else None,
        }
