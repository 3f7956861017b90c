from __future__ import annotations

import logging
from typing import Literal

from pydantic import BaseModel

from validator import db
from validator.events import EventBus, SessionStatusChanged
from validator.requirements import DocumentType, UnitReference, normalize_document_type

logger = logging.getLogger("validator.sessions")


SessionStatus = Literal["pending", "indexing", "validating", "validated", "failed", "cancelled"]

# Forward path is pending -> indexing -> validating -> validated. failed may be retried,
# validated may be explicitly re-validated, cancelled is final.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"indexing", "failed", "cancelled"}),
    "indexing": frozenset({"validating", "failed", "cancelled"}),
    "validating": frozenset({"validated", "failed", "cancelled"}),
    "validated": frozenset({"validating"}),
    "failed": frozenset({"indexing", "validating"}),
    "cancelled": frozenset(),
}
TERMINAL_STATUSES = frozenset({"validated", "failed", "cancelled"})


class SessionNotFoundError(LookupError):
    """Raised when a validation session id does not exist."""


class SessionTransitionError(RuntimeError):
    """Raised when a requested session status change is not allowed from the current status."""


class SessionContext(BaseModel):
    session_id: str
    namespace: str
    unit: UnitReference
    document_type: DocumentType
    store_name: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, object]) -> "SessionContext":
        return cls(
            session_id=str(row["id"]),
            namespace=str(row["namespace"]),
            unit=UnitReference(
                code=str(row["unit_code"]),
                url=row.get("unit_url") or None,  # type: ignore[arg-type]
                title=row.get("unit_title") or None,  # type: ignore[arg-type]
            ),
            document_type=normalize_document_type(str(row["document_type"])),
            store_name=row.get("store_name") or None,  # type: ignore[arg-type]
        )


def _sources_for(to_status: str) -> tuple[str, ...]:
    return tuple(source for source, targets in ALLOWED_TRANSITIONS.items() if to_status in targets)


class SessionStore:
    """Authoritative session state; every status change goes through a compare-and-set."""

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus

    @property
    def bus(self) -> EventBus:
        return self._bus

    def create(self, unit: UnitReference, document_type: str) -> dict[str, object]:
        session = db.create_session(
            unit_code=unit.code,
            unit_url=unit.url,
            unit_title=unit.title,
            document_type=normalize_document_type(document_type),
        )
        db.append_session_event(str(session["id"]), "session_created", {"status": "pending"})
        logger.info(
            "session_created",
            extra={"event": "session_created", "session_id": session["id"], "unit_code": unit.code},
        )
        return session

    def get(self, session_id: str) -> dict[str, object]:
        session = db.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Validation session '{session_id}' not found.")
        return session

    def context(self, session_id: str) -> SessionContext:
        return SessionContext.from_row(self.get(session_id))

    def status(self, session_id: str) -> str:
        return str(self.get(session_id)["status"])

    def transition(
        self,
        session_id: str,
        to_status: SessionStatus,
        *,
        expected: tuple[str, ...] | None = None,
        error: str | None = None,
        partial_failure: bool = False,
    ) -> bool:
        """Attempt ``current -> to_status``.

        ``expected`` narrows the source statuses that are accepted; it defaults to every status
        with an allowed edge into ``to_status``. Returns False without side effects when the
        session is not in an accepted status (including when another caller won the race).
        """
        allowed_sources = _sources_for(to_status)
        sources = allowed_sources if expected is None else tuple(expected)
        illegal = [source for source in sources if source not in allowed_sources]
        if illegal:
            raise ValueError(f"Transition {illegal[0]} -> {to_status} is not allowed.")

        while True:
            current = self.status(session_id)
            if current not in sources:
                return False
            if db.compare_and_set_session_status(
                session_id,
                expected=(current,),
                new_status=to_status,
                error=error,
                partial_failure=partial_failure,
            ):
                break

        db.append_session_event(
            session_id,
            "status_changed",
            {"from": current, "to": to_status, "error": error, "partial_failure": partial_failure},
        )
        logger.info(
            "session_status_changed",
            extra={
                "event": "session_status_changed",
                "session_id": session_id,
                "from_status": current,
                "to_status": to_status,
                "error": error,
            },
        )
        self._bus.publish(
            SessionStatusChanged(session_id=session_id, from_status=current, to_status=to_status, error=error)
        )
        return True

    def require_transition(
        self,
        session_id: str,
        to_status: SessionStatus,
        *,
        expected: tuple[str, ...] | None = None,
        error: str | None = None,
    ) -> None:
        if not self.transition(session_id, to_status, expected=expected, error=error):
            current = self.status(session_id)
            raise SessionTransitionError(f"Session '{session_id}' cannot move from '{current}' to '{to_status}'.")

    def fail(self, session_id: str, error: str) -> bool:
        return self.transition(
            session_id,
            "failed",
            expected=("pending", "indexing", "validating"),
            error=error,
        )

    def cancel(self, session_id: str) -> bool:
        return self.transition(session_id, "cancelled", expected=("pending", "indexing", "validating"))

    def is_cancelled(self, session_id: str) -> bool:
        return self.status(session_id) == "cancelled"

    def mark_partial_failure(self, session_id: str, partial_failure: bool) -> None:
        db.set_session_partial_failure(session_id, partial_failure)
        db.append_session_event(session_id, "partial_failure", {"partial_failure": partial_failure})
