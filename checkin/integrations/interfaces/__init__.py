"""Interface definitions for directory adapters."""

from checkin.integrations.interfaces.base import (
    ParticipantDirectory,
    ParticipantInfo,
    SessionDirectory,
    SessionInfo,
)

__all__ = [
    "ParticipantDirectory",
    "SessionDirectory",
    "ParticipantInfo",
    "SessionInfo",
]
