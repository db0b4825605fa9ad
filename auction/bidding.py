"""
Bid acceptance engine.

A bid is accepted in one unit of work: the auction row is locked, the bid is
validated against the current leader, the bidder's money is held, and the
previous leader is flipped to Outbid and refunded. Instant-purchase
resolution runs afterwards against committed state.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import Account, Auction, AuctionType, Bid, BidStatus, BidType
from . import config
from .balance import BalanceService, to_money
from .errors import (
    AccountNotFound,
    AuctionNotActive,
    AuctionNotFound,
    BidNotHigherThanPrevious,
    BidTooLow,
    ConcurrentModification,
    InsufficientBalance,
    InvalidAmount,
    InvalidProxyBid,
    SelfBidNotAllowed,
    ValidationError,
)
from .notifications import Outbox, Notifier, BID_ACCEPTED, OUTBID, BALANCE_UPDATED
from .retry import Deadline

logger = logging.getLogger(__name__)


def highest_bid(db: Session, auction_id: int) -> Optional[Bid]:
    """Highest live bid on an auction; equal prices go to the earlier placement."""
    return db.query(Bid).filter(
        Bid.auction_id == auction_id,
        Bid.bid_status != BidStatus.LOST.value,
    ).order_by(
        Bid.price.desc(), Bid.placed_at.asc(), Bid.id.asc()
    ).first()


def bid_increment(auction: Auction) -> Decimal:
    return to_money(auction.bid_increment or config.DEFAULT_BID_INCREMENT)


def minimum_bid(auction: Auction, leader: Optional[Bid]) -> Decimal:
    """Lowest acceptable price: one increment over the leader.

    The opening bid may equal the starting bid.
    """
    if leader is None:
        return to_money(auction.starting_bid)
    return to_money(leader.price) + bid_increment(auction)


def ensure_auction_open(auction: Auction, now: datetime):
    if auction.is_soldout:
        raise AuctionNotActive("This auction has ended", {"auction_id": auction.id})
    if auction.auction_type == AuctionType.TIMED.value:
        if auction.auction_start_date and now < auction.auction_start_date:
            raise AuctionNotActive(
                "This auction has not started yet",
                {"auction_id": auction.id, "auction_start_date": auction.auction_start_date.isoformat()},
            )
        if auction.auction_end_date and now > auction.auction_end_date:
            raise AuctionNotActive(
                "This auction has ended",
                {"auction_id": auction.id, "auction_end_date": auction.auction_end_date.isoformat()},
            )


def qualifies_for_instant_purchase(auction: Auction, price) -> bool:
    return auction.instant_purchase_price is not None and to_money(price) >= to_money(auction.instant_purchase_price)


def secure_hold(db: Session, balance: BalanceService, auction: Auction, bid: Bid) -> bool:
    """
    Make sure a bid about to win still has its price held.

    An outbid bid had its hold released; it is held again here. Returns False
    when the bidder can no longer cover the price. Flushes only.
    """
    if balance.is_hold_open(db, bid.hold_transaction_id):
        return True
    try:
        hold = balance.hold_amount(
            db,
            bid.bidder_id,
            bid.price,
            auction_id=auction.id,
            bid_id=bid.id,
            description=f"Winning bid hold for {auction.title} - {bid.price}",
            commit=False,
        )
    except InsufficientBalance:
        logger.warning(f"Bid {bid.id} on auction {auction.id} can no longer be funded")
        return False
    bid.hold_transaction_id = hold.id
    return True


class BiddingEngine:
    """Validates and records bids."""

    def __init__(self, balance: BalanceService, resolver, notifier: Optional[Notifier] = None):
        self.balance = balance
        self.resolver = resolver
        self.notifier = notifier or Notifier()

    def place_bid(
        self,
        db: Session,
        auction_id: int,
        bidder_id: int,
        price,
        bid_type: str = BidType.MANUAL.value,
        max_bid=None,
        now: Optional[datetime] = None,
        deadline: Optional[Deadline] = None,
    ) -> Dict[str, Any]:
        """
        Accept a bid and, when it reaches the instant-purchase price, race
        for the early close.

        Returns:
            Dict with the accepted ``bid`` plus ``auction_ended``,
            ``instant_purchase``, ``final_price`` and an optional ``warning``.
        """
        now = now or datetime.utcnow()
        bid = self.accept_bid(db, auction_id, bidder_id, price, bid_type, max_bid, now, deadline)

        result = {
            "bid": bid,
            "auction_ended": False,
            "instant_purchase": False,
            "final_price": None,
            "warning": None,
        }

        auction = db.get(Auction, auction_id)
        if qualifies_for_instant_purchase(auction, bid.price):
            resolution = self.resolver.resolve(db, auction_id, bid.id, now=now)
            result["auction_ended"] = resolution["auction_ended"]
            result["instant_purchase"] = resolution["won"]
            result["final_price"] = resolution["final_price"]
            result["warning"] = resolution.get("warning")
            db.refresh(bid)

        return result

    def accept_bid(
        self,
        db: Session,
        auction_id: int,
        bidder_id: int,
        price,
        bid_type: str = BidType.MANUAL.value,
        max_bid=None,
        now: Optional[datetime] = None,
        deadline: Optional[Deadline] = None,
    ) -> Bid:
        """Validate and record a bid in a single committed unit of work."""
        now = now or datetime.utcnow()
        deadline = deadline or Deadline.none()
        price = to_money(price)
        if price <= 0:
            raise InvalidAmount("Please provide a valid bid amount", {"price": price})

        try:
            bid_type = BidType(bid_type).value
        except ValueError:
            raise ValidationError(f"Unknown bid type: {bid_type}", {"bid_type": bid_type})

        outbox = Outbox()
        try:
            # Serializes concurrent bids on the same auction where the database supports it
            auction = db.query(Auction).filter(Auction.id == auction_id).with_for_update().first()
            if auction is None:
                raise AuctionNotFound(auction_id)

            ensure_auction_open(auction, now)

            if auction.seller_id == bidder_id:
                raise SelfBidNotAllowed()
            if db.get(Account, bidder_id) is None:
                raise AccountNotFound(bidder_id)

            if bid_type == BidType.PROXY.value:
                if max_bid is None or to_money(max_bid) < price:
                    raise InvalidProxyBid(
                        "Maximum bid must be specified and at least the bid price for proxy bidding",
                        {"price": price, "max_bid": max_bid},
                    )
                max_bid = to_money(max_bid)
            else:
                max_bid = None

            leader = highest_bid(db, auction.id)
            minimum = minimum_bid(auction, leader)
            if price < minimum:
                current = to_money(leader.price) if leader else to_money(auction.starting_bid)
                raise BidTooLow(price, minimum, current)

            existing = db.query(Bid).filter(
                Bid.auction_id == auction.id,
                Bid.bidder_id == bidder_id,
            ).first()
            if existing is not None and bid_type != BidType.PROXY.value and price <= existing.price:
                raise BidNotHigherThanPrevious(price, to_money(existing.price))

            bid = self.record_bid(db, auction, bidder_id, price, bid_type, max_bid, now, outbox, existing=existing)

            deadline.check("bid_placement")
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.warning(f"Concurrent bid row insert for bidder {bidder_id} on auction {auction_id}")
            raise ConcurrentModification()
        except Exception:
            db.rollback()
            raise

        logger.info(f"Bid {bid.id} accepted: bidder {bidder_id} bid {price} ({bid_type}) on auction {auction_id}")
        self.notifier.publish(outbox)
        return bid

    def record_bid(
        self,
        db: Session,
        auction: Auction,
        bidder_id: int,
        price: Decimal,
        bid_type: str,
        max_bid: Optional[Decimal],
        now: datetime,
        outbox: Outbox,
        existing: Optional[Bid] = None,
    ) -> Bid:
        """
        Apply an already-validated bid: swap the bidder's hold, upsert the
        bid row, demote the previous leader and mark the new leader.

        Flushes only; the caller owns the commit.
        """
        if existing is None:
            existing = db.query(Bid).filter(
                Bid.auction_id == auction.id,
                Bid.bidder_id == bidder_id,
            ).first()

        if existing is not None and self.balance.is_hold_open(db, existing.hold_transaction_id):
            self.balance.release_hold(
                db,
                existing.hold_transaction_id,
                f"Released previous bid hold for {auction.title} - updating to higher bid",
                commit=False,
            )

        if existing is None:
            bid = Bid(
                auction_id=auction.id,
                bidder_id=bidder_id,
                price=price,
                bid_type=bid_type,
                max_bid=max_bid,
                bid_status=BidStatus.ACTIVE.value,
                bid_increment=bid_increment(auction),
                placed_at=now,
            )
            db.add(bid)
            db.flush()
        else:
            bid = existing
            bid.price = price
            bid.bid_type = bid_type
            bid.max_bid = max_bid
            bid.bid_status = BidStatus.ACTIVE.value
            bid.lost_reason = None
            bid.lost_at = None
            bid.placed_at = now

        hold = self.balance.hold_amount(
            db,
            bidder_id,
            price,
            auction_id=auction.id,
            bid_id=bid.id,
            description=f"Bid hold for {auction.title} - {price}",
            commit=False,
        )
        bid.hold_transaction_id = hold.id

        for previous in self._current_leaders(db, auction.id, exclude_bid_id=bid.id):
            self.demote(db, auction, previous, outbox, new_price=price)

        bid.is_winning_bid = True
        bid.bid_status = BidStatus.WINNING.value
        db.flush()

        outbox.add(BID_ACCEPTED, bidder_id, auction.id, bid_id=bid.id, price=str(price), bid_type=bid_type)
        outbox.add(BALANCE_UPDATED, bidder_id, auction.id, held=str(price))
        return bid

    def demote(self, db: Session, auction: Auction, bid: Bid, outbox: Outbox, new_price: Optional[Decimal] = None):
        """Flip a leading bid to Outbid and return its money."""
        bid.is_winning_bid = False
        bid.bid_status = BidStatus.OUTBID.value
        if self.balance.is_hold_open(db, bid.hold_transaction_id):
            self.balance.release_hold(
                db,
                bid.hold_transaction_id,
                f"Released bid hold for {auction.title} - outbid by higher bid",
                commit=False,
            )
            outbox.add(BALANCE_UPDATED, bid.bidder_id, auction.id, released=str(bid.price))
        outbox.add(
            OUTBID,
            bid.bidder_id,
            auction.id,
            bid_id=bid.id,
            your_price=str(bid.price),
            new_price=str(new_price) if new_price is not None else None,
        )
        logger.info(f"Bid {bid.id} on auction {auction.id} outbid")

    def _current_leaders(self, db: Session, auction_id: int, exclude_bid_id: int) -> List[Bid]:
        return db.query(Bid).filter(
            Bid.auction_id == auction_id,
            Bid.id != exclude_bid_id,
            (Bid.is_winning_bid.is_(True)) | (Bid.bid_status == BidStatus.WINNING.value),
        ).all()

    def list_bids(self, db: Session, auction_id: int) -> List[Bid]:
        if db.get(Auction, auction_id) is None:
            raise AuctionNotFound(auction_id)
        return db.query(Bid).filter(Bid.auction_id == auction_id).order_by(
            Bid.price.desc(), Bid.placed_at.asc(), Bid.id.asc()
        ).all()
