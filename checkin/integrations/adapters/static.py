"""Static directory adapter for development and testing.

Serves participants and sessions from an in-memory mapping, optionally
loaded from a JSON fixture file of the form::

    {
        "participants": [
            {"participant_id": "42", "display_name": "Sam Okafor", "group_affiliation": "U12 Lions"}
        ],
        "sessions": [
            {"session_id": "7", "session_kind": "training", "title": "Tuesday drills",
             "scheduled_at": "2026-10-20T17:00:00+00:00", "location": "Pitch 2"}
        ]
    }
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from checkin.integrations.interfaces.base import (
    ParticipantDirectory,
    ParticipantInfo,
    SessionDirectory,
    SessionInfo,
)
from checkin.models.qr_token import SessionKind

logger = logging.getLogger(__name__)


class StaticDirectoryAdapter(ParticipantDirectory, SessionDirectory):
    """In-memory participant and session directory."""

    def __init__(
        self,
        participants: Iterable[ParticipantInfo] = (),
        sessions: Iterable[SessionInfo] = (),
    ):
        self._participants = {p.participant_id: p for p in participants}
        self._sessions = {(s.session_id, s.session_kind): s for s in sessions}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StaticDirectoryAdapter":
        participants = [
            ParticipantInfo(
                participant_id=str(p["participant_id"]),
                display_name=p["display_name"],
                group_affiliation=p.get("group_affiliation"),
            )
            for p in data.get("participants", [])
        ]
        sessions = [
            SessionInfo(
                session_id=str(s["session_id"]),
                session_kind=SessionKind(s["session_kind"]),
                title=s["title"],
                scheduled_at=datetime.fromisoformat(s["scheduled_at"]) if s.get("scheduled_at") else None,
                location=s.get("location"),
            )
            for s in data.get("sessions", [])
        ]
        return cls(participants=participants, sessions=sessions)

    @classmethod
    def from_file(cls, path: str | Path) -> "StaticDirectoryAdapter":
        path = Path(path)
        with path.open(encoding="utf-8") as fh:
            data = json.load(fh)
        adapter = cls.from_dict(data)
        logger.info(
            "Loaded static directory fixture",
            extra={
                "event_type": "system.directory.loaded",
                "path": str(path),
                "participants": len(adapter._participants),
                "sessions": len(adapter._sessions),
            },
        )
        return adapter

    async def resolve_participant(self, participant_id: str) -> ParticipantInfo | None:
        return self._participants.get(participant_id)

    async def resolve_session(self, session_id: str, session_kind: SessionKind) -> SessionInfo | None:
        return self._sessions.get((session_id, session_kind))
