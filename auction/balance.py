"""
Balance service: atomic money primitives over Account + Transaction.

Every mutation writes exactly one ledger row and moves the account balance
in the same unit of work. Balance changes are issued as conditional UPDATE
statements so two writers can never both spend the same money; the stored
before/after balances are read back inside the same transaction.
"""
import random
import string
import time
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Dict, Any
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from database import (
    Account,
    Transaction,
    TransactionType,
    TransactionStatus,
    PaymentMethod,
    transactional,
)
from . import config
from .errors import AccountNotFound, InsufficientBalance, InvalidAmount, InvalidHold, InvalidPaymentMethod

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
DEPOSIT_METHODS = {PaymentMethod.DEMO_CARD.value, PaymentMethod.DEMO_BANK.value, PaymentMethod.DEMO_MOBILE.value}


def to_money(value) -> Decimal:
    """Normalize any numeric input to a 2-place Decimal."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def _demo_reference() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"DEMO_{int(time.time() * 1000)}_{suffix}"


class BalanceService:
    """Deposit, hold, release and deduction primitives."""

    def __init__(self, hold_duration_days: int = config.HOLD_DURATION_DAYS):
        self.hold_duration_days = hold_duration_days

    # ------------------------------------------------------------------
    # Low-level balance movement
    # ------------------------------------------------------------------

    def _current_balance(self, db: Session, account_id: int) -> Decimal:
        balance = db.query(Account.balance).filter(Account.id == account_id).scalar()
        if balance is None:
            raise AccountNotFound(account_id)
        return to_money(balance)

    def _credit(self, db: Session, account_id: int, amount: Decimal):
        rows = db.query(Account).filter(Account.id == account_id).update(
            {Account.balance: Account.balance + amount, Account.updated_at: datetime.utcnow()},
            synchronize_session="fetch",
        )
        if rows == 0:
            raise AccountNotFound(account_id)
        after = self._current_balance(db, account_id)
        return after - amount, after

    def _debit(self, db: Session, account_id: int, amount: Decimal):
        rows = db.query(Account).filter(
            Account.id == account_id,
            Account.balance >= amount,
        ).update(
            {Account.balance: Account.balance - amount, Account.updated_at: datetime.utcnow()},
            synchronize_session="fetch",
        )
        if rows == 0:
            available = self._current_balance(db, account_id)
            raise InsufficientBalance(account_id, available, amount, self.held_total(db, account_id))
        after = self._current_balance(db, account_id)
        return after + amount, after

    # ------------------------------------------------------------------
    # Public primitives
    # ------------------------------------------------------------------

    def deposit(
        self,
        db: Session,
        account_id: int,
        amount,
        method: str = PaymentMethod.SYSTEM.value,
        description: str = "Deposit",
        auction_id: Optional[int] = None,
        bid_id: Optional[int] = None,
        payment_reference: Optional[str] = None,
        commit: bool = True,
    ) -> Transaction:
        """Credit an account with a DEPOSIT row."""
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidAmount("Deposit amount must be positive", {"amount": amount})

        with transactional(db, commit):
            before, after = self._credit(db, account_id, amount)
            txn = Transaction(
                account_id=account_id,
                type=TransactionType.DEPOSIT.value,
                amount=amount,
                balance_before=before,
                balance_after=after,
                status=TransactionStatus.COMPLETED.value,
                description=description,
                payment_method=method,
                payment_reference=payment_reference,
                auction_id=auction_id,
                bid_id=bid_id,
            )
            db.add(txn)

        logger.info(f"Deposit of {amount} to account {account_id} ({method}); balance {before} -> {after}")
        return txn

    def add_balance(self, db: Session, account_id: int, amount, method: str = PaymentMethod.DEMO_CARD.value,
                    description: Optional[str] = None) -> Transaction:
        """Simulated payment intake: validate limits and method, then deposit."""
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidAmount("Please provide a valid amount", {"amount": amount})
        if amount < config.MIN_DEPOSIT:
            raise InvalidAmount(
                f"Minimum deposit amount is {config.MIN_DEPOSIT}",
                {"amount": amount, "minimum": config.MIN_DEPOSIT},
            )
        if amount > config.MAX_DEPOSIT:
            raise InvalidAmount(
                f"Maximum deposit amount is {config.MAX_DEPOSIT} per transaction",
                {"amount": amount, "maximum": config.MAX_DEPOSIT},
            )
        if method not in DEPOSIT_METHODS:
            raise InvalidPaymentMethod(
                "Invalid payment method",
                {"method": method, "allowed": sorted(DEPOSIT_METHODS)},
            )

        return self.deposit(
            db,
            account_id,
            amount,
            method=method,
            description=description or f"Demo payment deposit of {amount} via {method}",
            payment_reference=_demo_reference(),
        )

    def hold_amount(
        self,
        db: Session,
        account_id: int,
        amount,
        auction_id: Optional[int] = None,
        bid_id: Optional[int] = None,
        description: str = "Bid hold",
        commit: bool = True,
    ) -> Transaction:
        """Pre-authorize a bid by debiting the balance immediately."""
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidAmount("Hold amount must be positive", {"amount": amount})

        with transactional(db, commit):
            before, after = self._debit(db, account_id, amount)
            txn = Transaction(
                account_id=account_id,
                type=TransactionType.BID_HOLD.value,
                amount=amount,
                balance_before=before,
                balance_after=after,
                status=TransactionStatus.COMPLETED.value,
                description=description,
                auction_id=auction_id,
                bid_id=bid_id,
                is_held=True,
                held_until=datetime.utcnow() + timedelta(days=self.hold_duration_days),
            )
            db.add(txn)

        logger.info(f"Held {amount} from account {account_id} for auction {auction_id}")
        return txn

    def _claim_open_hold(self, db: Session, hold_transaction_id: Optional[int]) -> Transaction:
        """Flip an open hold to not-held; fails unless it was still open."""
        if hold_transaction_id is None:
            raise InvalidHold(None)
        rows = db.query(Transaction).filter(
            Transaction.id == hold_transaction_id,
            Transaction.type == TransactionType.BID_HOLD.value,
            Transaction.status == TransactionStatus.COMPLETED.value,
            Transaction.is_held.is_(True),
        ).update({Transaction.is_held: False}, synchronize_session="fetch")
        if rows == 0:
            raise InvalidHold(hold_transaction_id)
        return db.get(Transaction, hold_transaction_id)

    def release_hold(self, db: Session, hold_transaction_id: Optional[int], description: str = "Bid hold released",
                     commit: bool = True) -> Transaction:
        """Credit a held amount back to its owner."""
        with transactional(db, commit):
            hold = self._claim_open_hold(db, hold_transaction_id)
            amount = to_money(hold.amount)
            before, after = self._credit(db, hold.account_id, amount)
            txn = Transaction(
                account_id=hold.account_id,
                type=TransactionType.BID_RELEASE.value,
                amount=amount,
                balance_before=before,
                balance_after=after,
                status=TransactionStatus.COMPLETED.value,
                description=description,
                auction_id=hold.auction_id,
                bid_id=hold.bid_id,
                related_hold_transaction_id=hold.id,
            )
            db.add(txn)

        logger.info(f"Released hold {hold.id} ({amount}) back to account {hold.account_id}")
        return txn

    def convert_hold_to_deduction(self, db: Session, hold_transaction_id: Optional[int],
                                  description: str = "Winning bid payment", commit: bool = True) -> Transaction:
        """Finalize a hold. The money already left the balance at hold time."""
        with transactional(db, commit):
            hold = self._claim_open_hold(db, hold_transaction_id)
            txn = Transaction(
                account_id=hold.account_id,
                type=TransactionType.BID_DEDUCTION.value,
                amount=hold.amount,
                balance_before=hold.balance_after,
                balance_after=hold.balance_after,
                status=TransactionStatus.COMPLETED.value,
                description=description,
                auction_id=hold.auction_id,
                bid_id=hold.bid_id,
                related_hold_transaction_id=hold.id,
            )
            db.add(txn)

        logger.info(f"Converted hold {hold.id} ({hold.amount}) to deduction for account {hold.account_id}")
        return txn

    def is_hold_open(self, db: Session, hold_transaction_id: Optional[int]) -> bool:
        if hold_transaction_id is None:
            return False
        return db.query(Transaction.id).filter(
            Transaction.id == hold_transaction_id,
            Transaction.type == TransactionType.BID_HOLD.value,
            Transaction.is_held.is_(True),
        ).first() is not None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def held_total(self, db: Session, account_id: int) -> Decimal:
        total = db.query(func.coalesce(func.sum(Transaction.amount), 0)).filter(
            Transaction.account_id == account_id,
            Transaction.type == TransactionType.BID_HOLD.value,
            Transaction.status == TransactionStatus.COMPLETED.value,
            Transaction.is_held.is_(True),
        ).scalar()
        return to_money(total)

    def available_balance(self, db: Session, account_id: int) -> Dict[str, Any]:
        total = self._current_balance(db, account_id)
        held = self.held_total(db, account_id)
        held_count = db.query(func.count(Transaction.id)).filter(
            Transaction.account_id == account_id,
            Transaction.type == TransactionType.BID_HOLD.value,
            Transaction.is_held.is_(True),
        ).scalar()
        return {
            "total": total,
            "held": held,
            "available": max(Decimal("0.00"), total - held),
            "held_transactions": held_count,
        }

    def transaction_history(self, db: Session, account_id: int, page: int = 1, limit: int = 20,
                            type: Optional[str] = None) -> Dict[str, Any]:
        query = db.query(Transaction).filter(Transaction.account_id == account_id)
        if type:
            query = query.filter(Transaction.type == type)
        total = query.count()
        transactions = (
            query.order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return {
            "transactions": transactions,
            "total_pages": (total + limit - 1) // limit,
            "current_page": page,
            "total": total,
        }

    def reconstruct_balance(self, db: Session, account_id: int) -> Decimal:
        """Rebuild an account balance from its completed ledger rows."""
        rows = db.query(Transaction).filter(
            Transaction.account_id == account_id,
            Transaction.status == TransactionStatus.COMPLETED.value,
        ).all()
        return to_money(sum((t.balance_delta for t in rows), Decimal("0")))
