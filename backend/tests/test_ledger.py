"""Unit tests for the token ledger.

Tests cover:
- Account opening with the starting grant
- Debits (balance decrement + USED record)
- Credits (refunds, grants, purchases)
- Insufficient balance handling
- Concurrent debits for one user
- Transaction history
"""

import asyncio
import gc
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from app.core.config import settings
from app.models import TokenBalance, TokenTransaction, User
from app.models.token_transaction import TransactionType
from app.services.ledger import InsufficientTokensError, TokenLedger, UserLockRegistry


async def _transactions(db_session, user_id: int) -> list[TokenTransaction]:
    result = await db_session.execute(
        select(TokenTransaction)
        .where(TokenTransaction.user_id == user_id)
        .order_by(TokenTransaction.id)
    )
    return list(result.scalars().all())


async def _ledger_sum(db_session, user_id: int) -> int:
    return await db_session.scalar(
        select(func.coalesce(func.sum(TokenTransaction.amount), 0)).where(
            TokenTransaction.user_id == user_id
        )
    )


class TestEnsureAccount:
    @pytest.mark.asyncio
    async def test_new_user_gets_starting_grant(self, ledger, db_session):
        balance = await ledger.ensure_account(7)

        assert balance == settings.DEFAULT_STARTING_TOKENS
        assert await db_session.get(User, 7) is not None
        transactions = await _transactions(db_session, 7)
        assert len(transactions) == 1
        assert transactions[0].kind == TransactionType.EARNED
        assert transactions[0].description == "Welcome bonus"

    @pytest.mark.asyncio
    async def test_is_idempotent(self, ledger, db_session):
        await ledger.ensure_account(7, starting_tokens=50)
        balance = await ledger.ensure_account(7, starting_tokens=50)

        assert balance == 50
        assert len(await _transactions(db_session, 7)) == 1

    @pytest.mark.asyncio
    async def test_zero_grant_records_nothing(self, ledger, db_session):
        assert await ledger.ensure_account(8, starting_tokens=0) == 0
        assert await _transactions(db_session, 8) == []

    @pytest.mark.asyncio
    async def test_account_opened_concurrently_elsewhere(self, ledger, db_session, session_factory):
        async def get_before_other_process_commits(entity, ident, **kwargs):
            # The other process opens the account between our read and insert
            async with session_factory() as other:
                await TokenLedger(other, UserLockRegistry()).ensure_account(7, starting_tokens=50)
            return None

        with patch.object(db_session, "get", new=get_before_other_process_commits):
            balance = await ledger.ensure_account(7, starting_tokens=50)

        assert balance == 50
        assert len(await _transactions(db_session, 7)) == 1


class TestDebit:
    @pytest.mark.asyncio
    async def test_debit_reduces_balance_and_logs(self, ledger, make_user, db_session):
        await make_user(1, tokens=100)

        new_balance = await ledger.debit(1, 40, "Image generation - realistic style")

        assert new_balance == 60
        assert await ledger.balance_of(1) == 60
        used = (await _transactions(db_session, 1))[-1]
        assert used.kind == TransactionType.USED
        assert used.amount == -40
        assert used.description == "Image generation - realistic style"

    @pytest.mark.asyncio
    async def test_insufficient_balance_changes_nothing(self, ledger, make_user, db_session):
        await make_user(1, tokens=20)

        with pytest.raises(InsufficientTokensError) as exc_info:
            await ledger.debit(1, 30, "Image generation")

        assert exc_info.value.required == 30
        assert exc_info.value.available == 20
        assert await ledger.balance_of(1) == 20
        assert len(await _transactions(db_session, 1)) == 1  # only the grant

    @pytest.mark.asyncio
    async def test_exact_balance_can_be_spent(self, ledger, make_user):
        await make_user(1, tokens=30)
        assert await ledger.debit(1, 30, "Image generation") == 0

    @pytest.mark.asyncio
    async def test_user_without_account(self, ledger):
        with pytest.raises(InsufficientTokensError) as exc_info:
            await ledger.debit(99, 5, "Image generation")
        assert exc_info.value.available == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5])
    async def test_non_positive_amount_rejected(self, ledger, make_user, amount):
        await make_user(1)
        with pytest.raises(ValueError):
            await ledger.debit(1, amount, "bad")


class TestCredit:
    @pytest.mark.asyncio
    async def test_refund_restores_balance(self, ledger, make_user, db_session):
        await make_user(1, tokens=100)
        await ledger.debit(1, 30, "Image generation")

        new_balance = await ledger.credit(1, 30, "Refund: image generation failed")

        assert new_balance == 100
        refund = (await _transactions(db_session, 1))[-1]
        assert refund.kind == TransactionType.EARNED
        assert refund.amount == 30

    @pytest.mark.asyncio
    async def test_purchase(self, ledger, make_user, db_session):
        await make_user(1, tokens=0)

        assert await ledger.credit(1, 500, "Token pack", TransactionType.PURCHASED) == 500
        assert (await _transactions(db_session, 1))[-1].kind == TransactionType.PURCHASED

    @pytest.mark.asyncio
    async def test_credit_opens_missing_balance_row(self, ledger, db_session):
        db_session.add(User(id=5))
        await db_session.commit()

        assert await ledger.credit(5, 10, "Promotion") == 10
        assert await db_session.get(TokenBalance, 5) is not None

    @pytest.mark.asyncio
    async def test_used_kind_rejected(self, ledger, make_user):
        await make_user(1)
        with pytest.raises(ValueError):
            await ledger.credit(1, 10, "nope", TransactionType.USED)


@pytest.mark.asyncio
async def test_transactions_reconcile_to_balance(ledger, make_user, db_session):
    await make_user(1, tokens=100)
    await ledger.debit(1, 30, "a")
    await ledger.debit(1, 25, "b")
    await ledger.credit(1, 25, "refund b")
    await ledger.credit(1, 200, "pack", TransactionType.PURCHASED)

    assert await ledger.balance_of(1) == 270
    assert await _ledger_sum(db_session, 1) == 270


@pytest.mark.asyncio
async def test_concurrent_debits_never_overspend(make_user, session_factory, locks):
    await make_user(1, tokens=100)

    async def attempt() -> bool:
        async with session_factory() as session:
            try:
                await TokenLedger(session, locks).debit(1, 30, "Image generation")
                return True
            except InsufficientTokensError:
                return False

    results = await asyncio.gather(*(attempt() for _ in range(10)))

    assert sum(results) == 3  # floor(100 / 30)
    async with session_factory() as session:
        ledger = TokenLedger(session, locks)
        assert await ledger.balance_of(1) == 10
        assert await _ledger_sum(session, 1) == 10


@pytest.mark.asyncio
async def test_history_newest_first_with_filter(ledger, make_user):
    await make_user(1, tokens=100)
    await ledger.debit(1, 10, "first")
    await ledger.debit(1, 20, "second")

    transactions, total = await ledger.get_transaction_history(1)
    assert total == 3
    assert [t.description for t in transactions] == ["second", "first", "Welcome bonus"]

    used, used_total = await ledger.get_transaction_history(1, kind=TransactionType.USED)
    assert used_total == 2
    assert all(t.kind == TransactionType.USED for t in used)

    page, _ = await ledger.get_transaction_history(1, limit=1, offset=1)
    assert [t.description for t in page] == ["first"]


@pytest.mark.asyncio
async def test_balance_details_low_balance_flag(ledger, make_user):
    await make_user(1, tokens=10)
    details = await ledger.get_balance_details(1)
    assert details == {"tokens": 10, "is_low_balance": True}


def test_lock_registry_forgets_idle_locks():
    locks = UserLockRegistry()
    lock = locks.lock_for(1)
    assert locks.lock_for(1) is lock
    assert len(locks) == 1

    del lock
    gc.collect()

    assert len(locks) == 0
