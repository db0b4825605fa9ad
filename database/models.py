from datetime import datetime
from decimal import Decimal
from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, Text, Boolean, UniqueConstraint, Index
from sqlalchemy.orm import declarative_base, relationship
from enum import Enum

Base = declarative_base()

MONEY = Numeric(12, 2)


class AuctionType(str, Enum):
    LIVE = "Live"
    TIMED = "Timed"
    BUY_NOW = "BuyNow"


class AuctionEndReason(str, Enum):
    INSTANT_PURCHASE = "instant_purchase"
    TIME_EXPIRED = "time_expired"
    ADMIN_ENDED = "admin_ended"


class AuctionOutcome(str, Enum):
    SOLD = "sold"
    RESERVE_NOT_MET = "reserve_not_met"
    NO_BIDS = "no_bids"
    UNFUNDED = "unfunded"


class BidType(str, Enum):
    MANUAL = "Manual"
    PROXY = "Proxy"


class BidStatus(str, Enum):
    ACTIVE = "Active"
    OUTBID = "Outbid"
    WINNING = "Winning"
    WON = "Won"
    LOST = "Lost"


class LostReason(str, Enum):
    INSTANT_PURCHASE_BY_OTHER_BIDDER = "instant_purchase_by_other_bidder"
    CONCURRENT_INSTANT_PURCHASE_CONFLICT = "concurrent_instant_purchase_conflict"
    OUTBID_AT_CLOSE = "outbid_at_close"
    RESERVE_NOT_MET = "reserve_not_met"
    AUCTION_CLOSED = "auction_closed"
    INSUFFICIENT_BALANCE = "insufficient_balance"


class TransactionType(str, Enum):
    DEPOSIT = "DEPOSIT"
    BID_HOLD = "BID_HOLD"
    BID_RELEASE = "BID_RELEASE"
    BID_DEDUCTION = "BID_DEDUCTION"
    REFUND = "REFUND"
    COMMISSION_PAYMENT = "COMMISSION_PAYMENT"
    WITHDRAWAL = "WITHDRAWAL"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class PaymentMethod(str, Enum):
    DEMO_CARD = "DEMO_CARD"
    DEMO_BANK = "DEMO_BANK"
    DEMO_MOBILE = "DEMO_MOBILE"
    SYSTEM = "SYSTEM"


CREDIT_TYPES = {TransactionType.DEPOSIT.value, TransactionType.BID_RELEASE.value, TransactionType.REFUND.value}
DEBIT_TYPES = {
    TransactionType.BID_HOLD.value,
    TransactionType.BID_DEDUCTION.value,
    TransactionType.COMMISSION_PAYMENT.value,
    TransactionType.WITHDRAWAL.value,
}


class Account(Base):
    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, nullable=False, unique=True, index=True)
    email = Column(String, nullable=True)
    is_admin = Column(Boolean, nullable=False, default=False)
    balance = Column(MONEY, nullable=False, default=Decimal("0.00"))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    transactions = relationship("Transaction", back_populates="account", order_by="Transaction.id")


class Transaction(Base):
    """Append-only ledger row. Only ``is_held`` is ever flipped after insert."""

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    type = Column(String, nullable=False, index=True)
    amount = Column(MONEY, nullable=False)
    balance_before = Column(MONEY, nullable=False)
    balance_after = Column(MONEY, nullable=False)
    status = Column(String, nullable=False, default=TransactionStatus.COMPLETED.value, index=True)
    description = Column(Text, nullable=False)
    payment_method = Column(String, nullable=False, default=PaymentMethod.SYSTEM.value)
    payment_reference = Column(String, nullable=True)
    auction_id = Column(Integer, ForeignKey("auctions.id"), nullable=True, index=True)
    bid_id = Column(Integer, ForeignKey("bids.id"), nullable=True, index=True)
    related_hold_transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True)
    is_held = Column(Boolean, nullable=False, default=False)
    held_until = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    account = relationship("Account", back_populates="transactions")

    __table_args__ = (
        Index("ix_transactions_held", "is_held", "held_until"),
    )

    def is_credit(self) -> bool:
        return self.type in CREDIT_TYPES

    def is_debit(self) -> bool:
        return self.type in DEBIT_TYPES

    @property
    def balance_delta(self) -> Decimal:
        """Signed effect of this row on the account balance.

        A BID_DEDUCTION finalizes money already removed by its hold, so it
        carries no balance movement of its own.
        """
        if self.status != TransactionStatus.COMPLETED.value:
            return Decimal("0")
        if self.type == TransactionType.BID_DEDUCTION.value:
            return Decimal("0")
        if self.is_credit():
            return Decimal(self.amount)
        return -Decimal(self.amount)


class Auction(Base):
    __tablename__ = "auctions"

    id = Column(Integer, primary_key=True, index=True)
    seller_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    auction_type = Column(String, nullable=False, default=AuctionType.TIMED.value)
    starting_bid = Column(MONEY, nullable=False)
    reserve_price = Column(MONEY, nullable=False, default=Decimal("0.00"))
    instant_purchase_price = Column(MONEY, nullable=True)
    bid_increment = Column(MONEY, nullable=False, default=Decimal("10.00"))
    commission = Column(Numeric(5, 2), nullable=False, default=Decimal("0.00"))
    auction_start_date = Column(DateTime, nullable=True)
    auction_end_date = Column(DateTime, nullable=True, index=True)
    is_soldout = Column(Boolean, nullable=False, default=False, index=True)
    sold_to = Column(Integer, ForeignKey("accounts.id"), nullable=True)
    final_price = Column(MONEY, nullable=True)
    auction_end_reason = Column(String, nullable=True)
    outcome = Column(String, nullable=True, index=True)
    auction_ended_at = Column(DateTime, nullable=True)
    ended_by_id = Column(Integer, ForeignKey("accounts.id"), nullable=True)
    instant_purchase_bid_id = Column(Integer, nullable=True)
    settlement_started_at = Column(DateTime, nullable=True)
    settlement_completed = Column(Boolean, nullable=False, default=False)
    settlement_date = Column(DateTime, nullable=True)
    commission_amount = Column(MONEY, nullable=False, default=Decimal("0.00"))
    seller_amount = Column(MONEY, nullable=True)
    settlement_errors = Column(Text, nullable=True)
    settlement_attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    seller = relationship("Account", foreign_keys=[seller_id])
    bids = relationship("Bid", back_populates="auction", order_by="Bid.price.desc()")


class Bid(Base):
    __tablename__ = "bids"

    id = Column(Integer, primary_key=True, index=True)
    auction_id = Column(Integer, ForeignKey("auctions.id"), nullable=False, index=True)
    bidder_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    price = Column(MONEY, nullable=False)
    bid_type = Column(String, nullable=False, default=BidType.MANUAL.value)
    max_bid = Column(MONEY, nullable=True)
    is_winning_bid = Column(Boolean, nullable=False, default=False)
    bid_status = Column(String, nullable=False, default=BidStatus.ACTIVE.value, index=True)
    bid_increment = Column(MONEY, nullable=False, default=Decimal("10.00"))
    # Weak reference: lookup only, the ledger owns the hold row.
    hold_transaction_id = Column(Integer, nullable=True)
    lost_reason = Column(String, nullable=True)
    won_at = Column(DateTime, nullable=True)
    lost_at = Column(DateTime, nullable=True)
    placed_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    auction = relationship("Auction", back_populates="bids")
    bidder = relationship("Account", foreign_keys=[bidder_id])

    __table_args__ = (
        UniqueConstraint("auction_id", "bidder_id", name="uq_bids_auction_bidder"),
    )
