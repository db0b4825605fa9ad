"""
Proxy escalation engine.

Standing proxy bids are raised automatically, one placement per round, until
no proxy ceiling can beat the current price. The leading proxy only ever bids
the minimum needed over the strongest competing ceiling. Equal ceilings go to
the proxy created first, then to the lower bid id.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List, Set
import logging

from sqlalchemy.orm import Session

from database import Auction, Bid, BidStatus, BidType
from . import config
from .balance import BalanceService, to_money
from .bidding import (
    BiddingEngine,
    bid_increment,
    ensure_auction_open,
    highest_bid,
    qualifies_for_instant_purchase,
)
from .errors import AuctionNotActive, AuctionNotFound, InsufficientBalance, InvalidProxyBid
from .guards import EscalationGuard
from .notifications import Outbox, Notifier
from .retry import Deadline

logger = logging.getLogger(__name__)

STANDING_STATUSES = (BidStatus.ACTIVE.value, BidStatus.WINNING.value, BidStatus.OUTBID.value)


def proxy_rank(bid: Bid):
    """Sort key: highest ceiling first, then earliest proxy."""
    return (-to_money(bid.max_bid), bid.created_at, bid.id)


def next_proxy_price(current: Decimal, increment: Decimal, ceiling: Decimal, rival_ceiling: Optional[Decimal]) -> Decimal:
    """
    Price a proxy bids to take the lead over ``current``.

    One increment over the current price, unless a rival ceiling could still
    beat that; then one increment over the rival ceiling, capped at our own.
    """
    price = min(current + increment, ceiling)
    if rival_ceiling is not None and rival_ceiling > price:
        if ceiling > rival_ceiling:
            price = min(rival_ceiling + increment, ceiling)
        else:
            price = ceiling
    return price


class ProxyBiddingService:
    def __init__(
        self,
        balance: BalanceService,
        bidding: BiddingEngine,
        resolver,
        notifier: Optional[Notifier] = None,
        guard: Optional[EscalationGuard] = None,
        max_rounds: int = config.MAX_ESCALATION_ROUNDS,
    ):
        self.balance = balance
        self.bidding = bidding
        self.resolver = resolver
        self.notifier = notifier or Notifier()
        self.guard = guard or EscalationGuard()
        self.max_rounds = max_rounds

    def escalate(
        self,
        db: Session,
        auction_id: int,
        new_amount=None,
        excluding_bidder_id: Optional[int] = None,
        now: Optional[datetime] = None,
        deadline: Optional[Deadline] = None,
    ) -> Dict[str, Any]:
        """
        Run proxy escalation for an auction after ``new_amount`` was accepted.

        Each round works from committed state, so a run queued behind an
        in-flight one for the same auction is folded into it.
        """
        logger.info(
            f"Proxy escalation requested for auction {auction_id} at {new_amount} "
            f"(triggered by bidder {excluding_bidder_id})"
        )
        result = self.guard.run(auction_id, lambda: self._escalate(db, auction_id, now, deadline))
        if result is None:
            return {"auction_id": auction_id, "escalations": [], "rounds": 0, "auction_ended": False, "queued": True}
        return result

    def _escalate(self, db: Session, auction_id: int, now: Optional[datetime],
                  deadline: Optional[Deadline]) -> Dict[str, Any]:
        now = now or datetime.utcnow()
        deadline = deadline or Deadline.none()
        escalations = []
        unfunded: Set[int] = set()
        auction_ended = False
        rounds = 0

        while rounds < self.max_rounds:
            if deadline.expired():
                logger.warning(f"Proxy escalation for auction {auction_id} stopped at deadline")
                break
            rounds += 1
            outbox = Outbox()
            try:
                placed = self._escalation_round(db, auction_id, now, unfunded, outbox)
            except InsufficientBalance as e:
                db.rollback()
                unfunded.add(e.account_id)
                logger.warning(f"Proxy bidder {e.account_id} on auction {auction_id} cannot fund escalation")
                continue
            except Exception:
                db.rollback()
                raise

            if placed is None:
                db.rollback()
                break

            db.commit()
            self.notifier.publish(outbox)
            escalations.append({"bid_id": placed.id, "bidder_id": placed.bidder_id, "price": to_money(placed.price)})
            logger.info(f"Proxy bid {placed.id} on auction {auction_id} escalated to {placed.price}")

            auction = db.get(Auction, auction_id)
            if qualifies_for_instant_purchase(auction, placed.price):
                resolution = self.resolver.resolve(db, auction_id, placed.id, now=now)
                if resolution["auction_ended"]:
                    auction_ended = True
                    break
        else:
            logger.warning(f"Proxy escalation for auction {auction_id} hit the {self.max_rounds} round cap")

        if not auction_ended:
            self.recompute_statuses(db, auction_id)

        return {
            "auction_id": auction_id,
            "escalations": escalations,
            "rounds": rounds,
            "auction_ended": auction_ended,
        }

    def _escalation_round(self, db: Session, auction_id: int, now: datetime, unfunded: Set[int],
                          outbox: Outbox) -> Optional[Bid]:
        """Place at most one proxy bid. Returns it, or None when nobody can go higher."""
        auction = db.query(Auction).populate_existing().filter(Auction.id == auction_id).with_for_update().first()
        if auction is None:
            raise AuctionNotFound(auction_id)
        try:
            ensure_auction_open(auction, now)
        except AuctionNotActive:
            return None

        leader = highest_bid(db, auction_id)
        current = to_money(leader.price) if leader else to_money(auction.starting_bid)
        increment = bid_increment(auction)

        contenders = self._contenders(db, auction_id, current, leader, unfunded)
        if not contenders:
            return None
        top = contenders[0]

        leader_is_proxy = (
            leader is not None
            and leader.bid_type == BidType.PROXY.value
            and leader.max_bid is not None
            and leader.bidder_id not in unfunded
        )
        if leader_is_proxy and proxy_rank(leader) < proxy_rank(top):
            # The leading proxy outranks every challenger: it answers once, at the level needed
            price = next_proxy_price(current, increment, to_money(leader.max_bid), to_money(top.max_bid))
            if price <= current:
                return None
            bidder = leader
        else:
            rivals = [to_money(bid.max_bid) for bid in contenders[1:]]
            if leader_is_proxy:
                rivals.append(to_money(leader.max_bid))
            price = next_proxy_price(current, increment, to_money(top.max_bid), max(rivals) if rivals else None)
            bidder = top

        return self.bidding.record_bid(
            db,
            auction,
            bidder.bidder_id,
            price,
            BidType.PROXY.value,
            to_money(bidder.max_bid),
            now,
            outbox,
            existing=bidder,
        )

    def _contenders(self, db: Session, auction_id: int, current: Decimal, leader: Optional[Bid],
                    unfunded: Set[int]) -> List[Bid]:
        query = db.query(Bid).filter(
            Bid.auction_id == auction_id,
            Bid.bid_type == BidType.PROXY.value,
            Bid.bid_status.in_(STANDING_STATUSES),
            Bid.max_bid > current,
        )
        if leader is not None:
            query = query.filter(Bid.id != leader.id)
        if unfunded:
            query = query.filter(Bid.bidder_id.notin_(unfunded))
        return query.order_by(Bid.max_bid.desc(), Bid.created_at.asc(), Bid.id.asc()).all()

    def recompute_statuses(self, db: Session, auction_id: int):
        """Highest live bid is Winning; everything else is Outbid with its money returned."""
        outbox = Outbox()
        try:
            auction = db.query(Auction).populate_existing().filter(Auction.id == auction_id).first()
            if auction is None or auction.is_soldout:
                return
            leader = highest_bid(db, auction_id)
            if leader is None:
                return
            bids = db.query(Bid).filter(
                Bid.auction_id == auction_id,
                Bid.bid_status != BidStatus.LOST.value,
            ).all()
            for bid in bids:
                if bid.id == leader.id:
                    bid.is_winning_bid = True
                    bid.bid_status = BidStatus.WINNING.value
                elif bid.is_winning_bid or bid.bid_status in (BidStatus.WINNING.value, BidStatus.ACTIVE.value):
                    self.bidding.demote(db, auction, bid, outbox, new_price=to_money(leader.price))
                elif self.balance.is_hold_open(db, bid.hold_transaction_id):
                    self.balance.release_hold(
                        db,
                        bid.hold_transaction_id,
                        f"Released bid hold for {auction.title} - outbid by higher bid",
                        commit=False,
                    )
            db.commit()
        except Exception:
            db.rollback()
            raise
        self.notifier.publish(outbox)

    # ------------------------------------------------------------------
    # Proxy management
    # ------------------------------------------------------------------

    def _standing_proxy(self, db: Session, auction_id: int, bidder_id: int) -> Bid:
        bid = db.query(Bid).filter(
            Bid.auction_id == auction_id,
            Bid.bidder_id == bidder_id,
            Bid.bid_type == BidType.PROXY.value,
            Bid.bid_status.in_(STANDING_STATUSES),
        ).first()
        if bid is None:
            raise InvalidProxyBid("No active proxy bid found", {"auction_id": auction_id, "bidder_id": bidder_id})
        return bid

    def update_proxy_max(self, db: Session, auction_id: int, bidder_id: int, new_max,
                         now: Optional[datetime] = None) -> Dict[str, Any]:
        """Raise (or lower) a proxy ceiling, then let it compete again."""
        now = now or datetime.utcnow()
        new_max = to_money(new_max)
        auction = db.get(Auction, auction_id)
        if auction is None:
            raise AuctionNotFound(auction_id)
        ensure_auction_open(auction, now)

        bid = self._standing_proxy(db, auction_id, bidder_id)
        if new_max <= bid.price:
            raise InvalidProxyBid(
                "New maximum bid must be higher than current bid",
                {"price": to_money(bid.price), "max_bid": new_max},
            )
        bid.max_bid = new_max
        db.commit()
        logger.info(f"Proxy bid {bid.id} on auction {auction_id} ceiling set to {new_max}")

        escalation = self.escalate(db, auction_id, bid.price, bidder_id, now=now)
        db.refresh(bid)
        return {"bid": bid, "escalation": escalation}

    def cancel_proxy(self, db: Session, auction_id: int, bidder_id: int) -> Bid:
        """Turn a standing proxy back into a plain bid at its current price."""
        bid = self._standing_proxy(db, auction_id, bidder_id)
        leader = highest_bid(db, auction_id)
        if leader is not None and leader.id == bid.id:
            raise InvalidProxyBid(
                "Cannot cancel proxy bid while it's the winning bid",
                {"auction_id": auction_id, "bid_id": bid.id},
            )
        bid.bid_type = BidType.MANUAL.value
        bid.max_bid = None
        db.commit()
        logger.info(f"Proxy bid {bid.id} on auction {auction_id} cancelled")
        return bid

    def proxy_summary(self, db: Session, auction_id: int) -> List[Dict[str, Any]]:
        if db.get(Auction, auction_id) is None:
            raise AuctionNotFound(auction_id)
        bids = db.query(Bid).filter(
            Bid.auction_id == auction_id,
            Bid.bid_type == BidType.PROXY.value,
            Bid.bid_status.in_(STANDING_STATUSES),
        ).order_by(Bid.max_bid.desc(), Bid.created_at.asc(), Bid.id.asc()).all()
        return [
            {
                "bid_id": bid.id,
                "bidder_id": bid.bidder_id,
                "current_bid": to_money(bid.price),
                "max_bid": to_money(bid.max_bid),
                "remaining_capacity": to_money(bid.max_bid) - to_money(bid.price),
                "bid_status": bid.bid_status,
                "is_winning_bid": bid.is_winning_bid,
            }
            for bid in bids
        ]
