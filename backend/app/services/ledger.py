"""Token ledger for user balances and the transaction log.

This service provides:
- Atomic debits (balance decrement + USED record in one transaction)
- Atomic credits (refunds, grants, purchases)
- Balance lookups and transaction history
- Account opening with the starting grant

Read-modify-write on a balance is serialized per user twice over: an
in-process asyncio lock, and a row lock plus conditional UPDATE in the
database so separate processes cannot both spend the same tokens.
"""

import asyncio
import logging
import weakref
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.token_balance import TokenBalance
from app.models.token_transaction import TokenTransaction, TransactionType
from app.models.user import User

logger = logging.getLogger(__name__)

LOW_BALANCE_THRESHOLD = 10  # Warning threshold


class InsufficientTokensError(Exception):
    """Raised when user doesn't have enough tokens for an operation."""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient tokens: required {required}, available {available}"
        )


class UserLockRegistry:
    """One asyncio.Lock per user id.

    Locks are held weakly; a user's lock goes away once nobody holds or
    waits on it.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[int, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def __len__(self) -> int:
        return len(self._locks)

    def lock_for(self, user_id: int) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks.setdefault(user_id, asyncio.Lock())
        return lock


_default_locks = UserLockRegistry()


class TokenLedger:
    """Owns TokenBalance and TokenTransaction rows."""

    def __init__(self, db: AsyncSession, locks: Optional[UserLockRegistry] = None):
        """Initialize the ledger.

        Args:
            db: Database session for ledger operations
            locks: Per-user lock registry (shared process default if omitted)
        """
        self.db = db
        self.locks = locks or _default_locks

    async def balance_of(self, user_id: int) -> int:
        """Current balance, 0 for users without an account."""
        tokens = await self.db.scalar(
            select(TokenBalance.tokens).where(TokenBalance.user_id == user_id)
        )
        return tokens or 0

    async def get_balance_details(self, user_id: int) -> dict:
        """Balance plus the low-balance flag."""
        tokens = await self.balance_of(user_id)
        return {
            "tokens": tokens,
            "is_low_balance": tokens <= LOW_BALANCE_THRESHOLD,
        }

    async def debit(self, user_id: int, amount: int, description: str) -> int:
        """Spend tokens.

        The balance decrement and the USED record commit together or not
        at all.

        Args:
            user_id: The user's ID
            amount: Number of tokens to spend (must be positive)
            description: Human description stored on the transaction

        Returns:
            New balance after the debit

        Raises:
            ValueError: If amount is not positive
            InsufficientTokensError: If balance is below amount
        """
        if amount <= 0:
            raise ValueError("Amount must be positive")

        async with self.locks.lock_for(user_id):
            try:
                available = await self._locked_tokens(user_id)
                if available is None or available < amount:
                    raise InsufficientTokensError(required=amount, available=available or 0)

                result = await self.db.execute(
                    update(TokenBalance)
                    .where(
                        TokenBalance.user_id == user_id,
                        TokenBalance.tokens >= amount,
                    )
                    .values(tokens=TokenBalance.tokens - amount)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    # Another writer got there first (other process)
                    raise InsufficientTokensError(required=amount, available=available)

                self.db.add(
                    TokenTransaction(
                        user_id=user_id,
                        kind=TransactionType.USED,
                        amount=-amount,
                        description=description,
                    )
                )
                await self.db.flush()
                new_balance = await self._locked_tokens(user_id)
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

        logger.info(
            f"Debited {amount} tokens from user {user_id} ({description}). "
            f"New balance: {new_balance}"
        )
        return new_balance

    async def credit(
        self,
        user_id: int,
        amount: int,
        description: str,
        kind: TransactionType = TransactionType.EARNED,
    ) -> int:
        """Add tokens (refund, grant or purchase).

        Args:
            user_id: The user's ID
            amount: Number of tokens to add (must be positive)
            description: Human description stored on the transaction
            kind: EARNED or PURCHASED

        Returns:
            New balance after the credit

        Raises:
            ValueError: If amount is not positive or kind is USED
        """
        if amount <= 0:
            raise ValueError("Amount must be positive")

        if kind == TransactionType.USED:
            raise ValueError("Use debit for spending tokens")

        async with self.locks.lock_for(user_id):
            try:
                current = await self._locked_tokens(user_id)
                if current is None:
                    self.db.add(TokenBalance(user_id=user_id, tokens=0))
                    await self.db.flush()

                await self.db.execute(
                    update(TokenBalance)
                    .where(TokenBalance.user_id == user_id)
                    .values(tokens=TokenBalance.tokens + amount)
                    .execution_options(synchronize_session=False)
                )
                self.db.add(
                    TokenTransaction(
                        user_id=user_id,
                        kind=kind,
                        amount=amount,
                        description=description,
                    )
                )
                await self.db.flush()
                new_balance = await self._locked_tokens(user_id)
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

        logger.info(
            f"Credited {amount} tokens to user {user_id} ({kind.value}: {description}). "
            f"New balance: {new_balance}"
        )
        return new_balance

    async def ensure_account(
        self, user_id: int, starting_tokens: Optional[int] = None
    ) -> int:
        """Open a balance for a user seen for the first time.

        Creates the user row if the identity provider has not synced it
        yet. The balance row and the EARNED grant commit together.

        Returns:
            Current balance
        """
        grant = settings.DEFAULT_STARTING_TOKENS if starting_tokens is None else starting_tokens

        async with self.locks.lock_for(user_id):
            existing = await self.db.scalar(
                select(TokenBalance.tokens).where(TokenBalance.user_id == user_id)
            )
            if existing is not None:
                return existing

            try:
                if await self.db.get(User, user_id) is None:
                    self.db.add(User(id=user_id))
                    await self.db.flush()

                self.db.add(TokenBalance(user_id=user_id, tokens=grant))
                if grant > 0:
                    self.db.add(
                        TokenTransaction(
                            user_id=user_id,
                            kind=TransactionType.EARNED,
                            amount=grant,
                            description="Welcome bonus",
                        )
                    )
                await self.db.commit()
            except IntegrityError:
                # Opened by another process in the meantime
                await self.db.rollback()
                logger.info(f"Token account for user {user_id} already opened elsewhere")
                return await self.balance_of(user_id)

        logger.info(f"Opened token account for user {user_id} with {grant} starting tokens")
        return grant

    async def get_transaction_history(
        self,
        user_id: int,
        limit: int = 50,
        offset: int = 0,
        kind: Optional[TransactionType] = None,
    ) -> tuple[list[TokenTransaction], int]:
        """Get transaction history for a user.

        Args:
            user_id: The user's ID
            limit: Maximum number of transactions to return
            offset: Offset for pagination
            kind: Optional filter by transaction kind

        Returns:
            Tuple of (list of transactions, total count)
        """
        base_query = select(TokenTransaction).where(TokenTransaction.user_id == user_id)

        if kind:
            base_query = base_query.where(TokenTransaction.kind == kind)

        count_query = select(func.count()).select_from(base_query.subquery())
        total = await self.db.scalar(count_query) or 0

        query = (
            base_query
            .order_by(TokenTransaction.created_at.desc(), TokenTransaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await self.db.execute(query)
        transactions = list(result.scalars().all())

        return transactions, total

    async def _locked_tokens(self, user_id: int) -> Optional[int]:
        """Read the balance row under a row lock (no-op lock on SQLite)."""
        return await self.db.scalar(
            select(TokenBalance.tokens)
            .where(TokenBalance.user_id == user_id)
            .with_for_update()
        )


def get_ledger(db: AsyncSession) -> TokenLedger:
    """Factory function to create a TokenLedger.

    Args:
        db: Database session

    Returns:
        Configured TokenLedger instance
    """
    return TokenLedger(db)
