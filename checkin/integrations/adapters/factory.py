"""Adapter factory for creating directory adapters."""

from checkin.core.config import settings
from checkin.integrations.interfaces.base import ParticipantDirectory, SessionDirectory


class DirectoryFactory:
    """Factory for creating directory adapters based on configuration."""

    _instance: ParticipantDirectory | SessionDirectory | None = None

    @classmethod
    def get_adapter(cls):
        """Get the configured directory adapter (singleton)."""
        if cls._instance is None:
            cls._instance = cls._create_adapter()
        return cls._instance

    @classmethod
    def _create_adapter(cls):
        adapter_type = getattr(settings, "DIRECTORY_ADAPTER", "static")

        if adapter_type == "static":
            from checkin.integrations.adapters.static import StaticDirectoryAdapter

            if settings.DIRECTORY_FIXTURE_PATH:
                return StaticDirectoryAdapter.from_file(settings.DIRECTORY_FIXTURE_PATH)
            return StaticDirectoryAdapter()

        raise ValueError(f"Unknown directory adapter type: {adapter_type}")

    @classmethod
    def reset(cls) -> None:
        """Reset the adapter instance (useful for testing)."""
        cls._instance = None


def get_participant_directory() -> ParticipantDirectory:
    return DirectoryFactory.get_adapter()


def get_session_directory() -> SessionDirectory:
    return DirectoryFactory.get_adapter()
