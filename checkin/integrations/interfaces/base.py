"""Base interfaces for directory adapters.

The check-in core reads participants and sessions from systems it does not
own (club roster, training calendar). These interfaces define the contract
an adapter must implement so the core never depends on a concrete source.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

from checkin.models.qr_token import SessionKind


@dataclass(frozen=True)
class ParticipantInfo:
    """Participant as seen by the external directory."""

    participant_id: str
    display_name: str
    group_affiliation: str | None = None  # e.g. team name


@dataclass(frozen=True)
class SessionInfo:
    """Scheduled activity as seen by the external session directory."""

    session_id: str
    session_kind: SessionKind
    title: str
    scheduled_at: datetime | None = None
    location: str | None = None


class ParticipantDirectory(ABC):
    """Interface for resolving participants."""

    @abstractmethod
    async def resolve_participant(self, participant_id: str) -> ParticipantInfo | None:
        """
        Resolve a participant by ID.

        Returns:
            ParticipantInfo or None if not found
        """
        pass


class SessionDirectory(ABC):
    """Interface for resolving sessions. Used for response enrichment only."""

    @abstractmethod
    async def resolve_session(self, session_id: str, session_kind: SessionKind) -> SessionInfo | None:
        """
        Resolve a session by ID and kind.

        Returns:
            SessionInfo or None if not found
        """
        pass
