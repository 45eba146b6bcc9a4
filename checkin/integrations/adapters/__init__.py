"""Directory adapter implementations."""

from checkin.integrations.adapters.factory import (
    DirectoryFactory,
    get_participant_directory,
    get_session_directory,
)
from checkin.integrations.adapters.static import StaticDirectoryAdapter

__all__ = [
    "StaticDirectoryAdapter",
    "DirectoryFactory",
    "get_participant_directory",
    "get_session_directory",
]
