"""QR check-in token model.

Security Properties:
- One-time use: state moves Active -> Consumed through a single conditional UPDATE
- Short-lived: expiry is derived from issued_at_millis (default 30 minutes)
- Signed: signature is HMAC-SHA256 over participant, session and issuance time
- Forward-only: Consumed and Expired are terminal, never reset to Active
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import BigInteger, Enum as SQLEnum, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from checkin.db.session import Base
from checkin.models.base import TimestampMixin, UTCDateTime, UUIDMixin

# Session id carried by tokens that are not bound to a specific session
IDENTITY_SESSION_ID = "participant-id"


class SessionKind(str, Enum):
    """Kind of activity a token (or attendance record) refers to."""

    TRAINING = "training"
    MATCH = "match"
    EVENT = "event"
    IDENTITY = "identity"


class TokenState(str, Enum):
    """Token lifecycle states. Consumed and Expired are terminal."""

    ACTIVE = "active"
    CONSUMED = "consumed"
    EXPIRED = "expired"


class QRToken(Base, UUIDMixin, TimestampMixin):
    """One issued QR token.

    Rows are written by the issuer and only ever transitioned by the
    redeemer (consume) or the administrative expire operation, both via
    conditional updates guarded on state = 'active'.
    """

    __tablename__ = "qr_tokens"

    participant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    session_id: Mapped[str] = mapped_column(
        String(64), nullable=False, default=IDENTITY_SESSION_ID
    )
    session_kind: Mapped[SessionKind] = mapped_column(
        SQLEnum(SessionKind, name="session_kind", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )

    # Full HMAC-SHA256 hex digest and the key version that produced it
    signature: Mapped[str] = mapped_column(String(64), nullable=False)
    key_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Lifecycle
    issued_at_millis: Mapped[int] = mapped_column(BigInteger, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
    state: Mapped[TokenState] = mapped_column(
        SQLEnum(TokenState, name="qr_token_state", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=TokenState.ACTIVE,
    )

    # Set only on the Active -> Consumed transition
    consumed_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    consumed_by: Mapped[str | None] = mapped_column(String(64))

    # Set only on the administrative Active -> Expired transition
    expired_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    expired_by: Mapped[str | None] = mapped_column(String(64))

    created_by: Mapped[str | None] = mapped_column(String(64))

    __table_args__ = (
        # Redemption looks tokens up by the presented trust envelope
        Index("ix_qr_tokens_envelope", "participant_id", "signature", "issued_at_millis"),
        Index("ix_qr_tokens_participant_state", "participant_id", "state"),
    )
