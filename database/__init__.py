from .models import (
    Account,
    Transaction,
    Auction,
    Bid,
    AuctionType,
    AuctionEndReason,
    AuctionOutcome,
    BidType,
    BidStatus,
    LostReason,
    TransactionType,
    TransactionStatus,
    PaymentMethod,
)
from .session import init_db, get_db, SessionLocal, transactional

__all__ = [
    "Account",
    "Transaction",
    "Auction",
    "Bid",
    "AuctionType",
    "AuctionEndReason",
    "AuctionOutcome",
    "BidType",
    "BidStatus",
    "LostReason",
    "TransactionType",
    "TransactionStatus",
    "PaymentMethod",
    "init_db",
    "get_db",
    "SessionLocal",
    "transactional",
]
