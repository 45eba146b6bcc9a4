"""Administrative token expiry."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from checkin.audit.service import AuditContext, QRAuditService
from checkin.core.clock import Clock
from checkin.core.metrics import track_token_expired
from checkin.models.audit import QRAuditAction
from checkin.models.qr_token import TokenState
from checkin.schemas.audit import ExpireMetadata
from checkin.services.errors import QRNotFoundError
from checkin.services.token_store import TokenStore

logger = logging.getLogger(__name__)


class TokenExpirer:
    """Moves Active tokens to Expired ahead of their natural expiry."""

    def __init__(self, db: AsyncSession, clock: Clock):
        self.db = db
        self.clock = clock
        self.store = TokenStore(db)
        self.audit = QRAuditService(db, clock)

    async def expire(self, token_id: str, context: AuditContext) -> TokenState:
        """
        Expire an Active token.

        A token that is missing, consumed or already expired is reported as
        not found and left untouched; the attempt is still audited.

        Raises:
            QRNotFoundError: no Active token with this id
        """
        existing = await self.store.get(token_id)
        # Snapshot before the UPDATE; the row object is not refreshed by it
        prior_state = existing.state if existing else None
        participant_id = existing.participant_id if existing else None
        session_id = existing.session_id if existing else None
        session_kind = existing.session_kind if existing else None

        expired = await self.store.expire(token_id, context.actor_id or "unknown", self.clock.now())

        await self.audit.log(
            action=QRAuditAction.EXPIRE if expired else QRAuditAction.EXPIRE_NOT_FOUND,
            context=context,
            participant_id=participant_id,
            session_id=session_id,
            session_kind=session_kind,
            token_id=token_id if existing else None,
            metadata=ExpireMetadata(
                found=existing is not None,
                prior_state=prior_state.value if prior_state else None,
                extra={} if existing else {"requested_token_id": token_id[:64]},
            ),
        )
        await self.db.commit()

        if not expired:
            logger.info(
                "Expire requested for unavailable token",
                extra={
                    "event_type": "checkin.token.expire_not_found",
                    "token_id": token_id,
                    "prior_state": prior_state.value if prior_state else None,
                    "actor_id": context.actor_id,
                },
            )
            raise QRNotFoundError(f"No active token {token_id}", reason="not_active")

        track_token_expired()
        logger.info(
            "QR token expired",
            extra={
                "event_type": "checkin.token.expire",
                "token_id": token_id,
                "participant_id": participant_id,
                "actor_id": context.actor_id,
            },
        )
        return TokenState.EXPIRED
