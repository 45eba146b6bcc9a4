"""Signing key provider for QR tokens.

Key Rotation:
- New tokens are always signed with the current key
- Validation accepts the current key and, while configured, the prior key
- During rotation, set QR_SIGNING_KEY_PRIOR and QR_SIGNING_KEY_PRIOR_VERSION
- After one token TTL window has passed, clear the prior key settings
"""

from dataclasses import dataclass

from checkin.core.config import settings


@dataclass(frozen=True)
class SigningKey:
    """A versioned HMAC key."""

    version: int
    secret: bytes


class SecretProvider:
    """Supplies the current signing key and, during rotation, the prior one."""

    def __init__(
        self,
        current: str | None = None,
        current_version: int | None = None,
        prior: str | None = None,
        prior_version: int | None = None,
    ):
        current = current if current is not None else settings.QR_SIGNING_KEY
        if not current:
            raise ValueError("QR signing key is not configured")

        self._current = SigningKey(
            version=current_version if current_version is not None else settings.QR_SIGNING_KEY_VERSION,
            secret=current.encode("utf-8"),
        )

        prior = prior if prior is not None else settings.QR_SIGNING_KEY_PRIOR
        prior_version = prior_version if prior_version is not None else settings.QR_SIGNING_KEY_PRIOR_VERSION
        self._prior = (
            SigningKey(version=prior_version, secret=prior.encode("utf-8"))
            if prior and prior_version > 0
            else None
        )

    @property
    def current(self) -> SigningKey:
        return self._current

    @property
    def prior(self) -> SigningKey | None:
        return self._prior

    @property
    def has_prior(self) -> bool:
        return self._prior is not None

    def validation_keys(self) -> list[SigningKey]:
        """Keys accepted during validation, current first."""
        keys = [self._current]
        if self._prior is not None:
            keys.append(self._prior)
        return keys


_provider: SecretProvider | None = None


def get_secret_provider() -> SecretProvider:
    """Dependency returning the process-wide secret provider."""
    global _provider
    if _provider is None:
        _provider = SecretProvider()
    return _provider
