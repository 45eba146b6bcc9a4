"""
Token persistence and atomic state transitions.

The only shared mutable state in the service is the token row. Both
transitions out of Active are a single conditional UPDATE guarded on
state = 'active'; the affected row count decides which caller won.
No read-then-write sequence is ever used to change state.
"""

import asyncio
from collections.abc import Awaitable
from datetime import datetime
from typing import TypeVar

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from checkin.core.config import settings
from checkin.models.qr_token import QRToken, TokenState
from checkin.services.errors import StorageTimeoutError

T = TypeVar("T")


class TokenStore:
    """Owns QRToken rows. Callers own the surrounding transaction."""

    def __init__(self, db: AsyncSession, timeout_seconds: float | None = None):
        self.db = db
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.STORAGE_TIMEOUT_SECONDS
        )

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise StorageTimeoutError(reason="timeout") from exc

    async def insert(self, token: QRToken) -> QRToken:
        """Stage a freshly issued token."""
        self.db.add(token)
        await self._bounded(self.db.flush())
        return token

    async def get(self, token_id: str) -> QRToken | None:
        result = await self._bounded(
            self.db.execute(
                select(QRToken)
                .where(QRToken.id == token_id)
                .execution_options(populate_existing=True)
            )
        )
        return result.scalar_one_or_none()

    async def find_by_envelope(
        self,
        participant_id: str,
        signature: str,
        issued_at_millis: int,
    ) -> QRToken | None:
        """Find the token matching a presented trust envelope."""
        result = await self._bounded(
            self.db.execute(
                select(QRToken)
                .where(
                    QRToken.participant_id == participant_id,
                    QRToken.signature == signature,
                    QRToken.issued_at_millis == issued_at_millis,
                )
                .execution_options(populate_existing=True)
            )
        )
        return result.scalars().first()

    async def get_state(self, token_id: str) -> TokenState | None:
        """Read the committed state directly, bypassing the identity map."""
        result = await self._bounded(
            self.db.execute(select(QRToken.state).where(QRToken.id == token_id))
        )
        return result.scalar_one_or_none()

    async def consume(self, token_id: str, consumed_by: str, now: datetime) -> bool:
        """
        Atomically move Active -> Consumed.

        Returns:
            True if this call performed the transition, False if the token
            was no longer Active.

        Raises:
            StorageTimeoutError: the UPDATE did not complete in time
        """
        result = await self._bounded(
            self.db.execute(
                update(QRToken)
                .where(QRToken.id == token_id, QRToken.state == TokenState.ACTIVE)
                .values(
                    state=TokenState.CONSUMED,
                    consumed_at=now,
                    consumed_by=consumed_by,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
        )
        return result.rowcount == 1

    async def expire(self, token_id: str, expired_by: str, now: datetime) -> bool:
        """
        Atomically move Active -> Expired.

        Returns:
            True if this call performed the transition. False when the token
            is missing, already consumed or already expired.
        """
        result = await self._bounded(
            self.db.execute(
                update(QRToken)
                .where(QRToken.id == token_id, QRToken.state == TokenState.ACTIVE)
                .values(
                    state=TokenState.EXPIRED,
                    expired_at=now,
                    expired_by=expired_by,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
        )
        return result.rowcount == 1
