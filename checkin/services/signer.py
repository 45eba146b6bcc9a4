"""
QR Token Signing Service.

Signatures are HMAC-SHA256 over the canonical message
``participant_id|session_id|issued_at_millis`` keyed with the server-held
secret from the SecretProvider.

Security Notes:
- The same function signs at issuance and re-derives at redemption
- Client-presented signatures are only ever compared, never trusted
- Comparison is constant-time over the full 64-char hex digest
- Validation tries the prior key while a rotation window is open
"""

import hashlib
import hmac

from checkin.core.secrets import SecretProvider, SigningKey

SIGNATURE_HEX_LENGTH = 64


class QRSigner:
    """Derives and verifies keyed signatures for QR tokens."""

    def __init__(self, secrets: SecretProvider):
        self._secrets = secrets

    @property
    def current_key_version(self) -> int:
        return self._secrets.current.version

    @staticmethod
    def canonical_message(participant_id: str, session_id: str, issued_at_millis: int) -> bytes:
        """Build the byte string covered by the signature."""
        return f"{participant_id}|{session_id}|{int(issued_at_millis)}".encode("utf-8")

    def _digest(self, key: SigningKey, message: bytes) -> str:
        return hmac.new(key.secret, message, hashlib.sha256).hexdigest()

    def sign(self, participant_id: str, session_id: str, issued_at_millis: int) -> str:
        """
        Compute the signature with the current key.

        Args:
            participant_id: Participant the token is bound to
            session_id: Session id, or the identity sentinel
            issued_at_millis: Issuance time in epoch milliseconds

        Returns:
            Lower-case hex digest of HMAC-SHA256
        """
        message = self.canonical_message(participant_id, session_id, issued_at_millis)
        return self._digest(self._secrets.current, message)

    def verify(
        self,
        participant_id: str,
        session_id: str,
        issued_at_millis: int,
        signature: str,
    ) -> int | None:
        """
        Re-derive the signature and compare against a presented one.

        Returns:
            The version of the key that matched, or None on mismatch
        """
        if not isinstance(signature, str) or len(signature) != SIGNATURE_HEX_LENGTH:
            return None

        presented = signature.encode("ascii", errors="replace")
        message = self.canonical_message(participant_id, session_id, issued_at_millis)

        matched_version = None
        # Check every key so timing does not reveal which key matched
        for key in self._secrets.validation_keys():
            expected = self._digest(key, message).encode("ascii")
            if hmac.compare_digest(expected, presented) and matched_version is None:
                matched_version = key.version

        return matched_version
