"""
Instant-purchase race resolver.

Several bids can reach the instant-purchase price before any of them has
closed the auction. Whichever call gets here first claims the auction on
behalf of the earliest qualifying bid with a conditional update, so the
auction flips to sold exactly once and the earliest bid wins regardless of
which request executes first.
"""
from datetime import datetime
from typing import Optional, Dict, Any, List
import logging

from sqlalchemy import or_
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from database import (
    Auction,
    AuctionEndReason,
    AuctionOutcome,
    AuctionType,
    Bid,
    BidStatus,
    LostReason,
)
from . import config
from .balance import BalanceService, to_money
from .bidding import secure_hold, qualifies_for_instant_purchase
from .errors import AuctionNotFound, InstantPurchaseConflict, InvalidHold
from .notifications import Outbox, Notifier, AUCTION_ENDED, BALANCE_UPDATED
from .retry import RetryPolicy
from .settlement import SettlementService

logger = logging.getLogger(__name__)


class InstantPurchaseResolver:
    def __init__(
        self,
        balance: BalanceService,
        settlement: SettlementService,
        notifier: Optional[Notifier] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.balance = balance
        self.settlement = settlement
        self.notifier = notifier or Notifier()
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=config.INSTANT_PURCHASE_MAX_ATTEMPTS,
            base_delay=config.INSTANT_PURCHASE_BASE_DELAY,
        )

    def resolve(self, db: Session, auction_id: int, bid_id: Optional[int] = None,
                now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Try to end an auction by instant purchase.

        Args:
            bid_id: the qualifying bid that triggered the call, or None when
                the sweep resolves a stranded auction.

        Returns:
            Dict with ``auction_ended``, ``won`` (the triggering bid won),
            ``winning_bid_id``, ``final_price``, ``lost_reason``, ``attempts``,
            ``settlement`` and ``warning``.
        """
        now = now or datetime.utcnow()
        result = {
            "auction_ended": False,
            "won": False,
            "winning_bid_id": None,
            "final_price": None,
            "lost_reason": None,
            "attempts": 0,
            "settlement": None,
            "warning": None,
        }

        for attempt in self.retry_policy.attempts():
            result["attempts"] = attempt
            outbox = Outbox()
            try:
                outcome = self._attempt(db, auction_id, bid_id, now, outbox)
            except (OperationalError, InstantPurchaseConflict) as e:
                db.rollback()
                logger.warning(
                    f"Instant purchase attempt {attempt}/{self.retry_policy.max_attempts} "
                    f"for auction {auction_id} failed: {e}"
                )
                continue

            self.notifier.publish(outbox)
            claimed = outcome.pop("claimed", False)
            result.update(outcome)
            if claimed:
                result["settlement"] = self.settlement.settle(db, auction_id, now)
            return result

        result["warning"] = (
            "Instant purchase could not be completed right now; "
            "your bid stands and the auction will be resolved shortly"
        )
        logger.warning(
            f"Instant purchase for auction {auction_id} gave up after "
            f"{self.retry_policy.max_attempts} attempts; bid {bid_id} left standing"
        )
        return result

    def _attempt(self, db: Session, auction_id: int, bid_id: Optional[int], now: datetime,
                 outbox: Outbox) -> Dict[str, Any]:
        auction = db.query(Auction).populate_existing().filter(Auction.id == auction_id).first()
        if auction is None:
            raise AuctionNotFound(auction_id)
        if auction.is_soldout:
            return self._after_lost_claim(db, auction, bid_id, now, outbox)
        if auction.instant_purchase_price is None:
            return {}

        qualifying = self._qualifying_bids(db, auction)
        if not qualifying:
            return {}
        leader = qualifying[0]

        # Atomic update: open -> sold by instant purchase
        claim = db.query(Auction).filter(
            Auction.id == auction_id,
            Auction.is_soldout.is_(False),
        )
        if auction.auction_type == AuctionType.TIMED.value:
            claim = claim.filter(or_(Auction.auction_end_date.is_(None), Auction.auction_end_date >= now))
        rows_updated = claim.update({
            Auction.is_soldout: True,
            Auction.sold_to: leader.bidder_id,
            Auction.final_price: leader.price,
            Auction.auction_end_reason: AuctionEndReason.INSTANT_PURCHASE.value,
            Auction.outcome: AuctionOutcome.SOLD.value,
            Auction.instant_purchase_bid_id: leader.id,
            Auction.auction_ended_at: now,
        }, synchronize_session=False)
        db.commit()

        if rows_updated == 0:
            auction = db.query(Auction).populate_existing().filter(Auction.id == auction_id).first()
            if auction.is_soldout:
                return self._after_lost_claim(db, auction, bid_id, now, outbox)
            # Timed window already closed: the expiry sweep owns this auction
            logger.info(f"Instant purchase claim on auction {auction_id} refused; auction window closed")
            return {}

        logger.info(f"Auction {auction_id} claimed by instant purchase for bid {leader.id}")
        try:
            winner = self._finalize_claim(db, auction_id, leader.id, now, outbox)
        except Exception as e:
            db.rollback()
            logger.error(f"Finalizing instant purchase on auction {auction_id} failed: {e}", exc_info=True)
            self._revert_claim(db, auction_id, leader.id)
            raise InstantPurchaseConflict(
                "Instant purchase claim was reverted",
                {"auction_id": auction_id, "bid_id": leader.id, "cause": str(e)},
            )

        if winner is None:
            self._revert_claim(db, auction_id, leader.id)
            return {}

        return {
            "claimed": True,
            "auction_ended": True,
            "won": bid_id is None or winner.id == bid_id,
            "winning_bid_id": winner.id,
            "final_price": to_money(winner.price),
            "lost_reason": self._lost_reason_for(db, bid_id) if bid_id and winner.id != bid_id else None,
        }

    def _qualifying_bids(self, db: Session, auction: Auction) -> List[Bid]:
        """Bids at or above the instant-purchase price, earliest placement first."""
        return db.query(Bid).filter(
            Bid.auction_id == auction.id,
            Bid.price >= auction.instant_purchase_price,
            Bid.bid_status != BidStatus.LOST.value,
        ).order_by(Bid.placed_at.asc(), Bid.id.asc()).all()

    def _finalize_claim(self, db: Session, auction_id: int, claimed_bid_id: int, now: datetime,
                        outbox: Outbox) -> Optional[Bid]:
        """
        Settle bid statuses after a successful claim.

        The claimed bid must still be able to pay. If its hold was released
        when it was outbid it is held again; a bid that can no longer be
        funded loses and the next qualifying bid takes its place.
        """
        auction = db.get(Auction, auction_id)
        qualifying = self._qualifying_bids(db, auction)
        qualifying_ids = {bid.id for bid in qualifying}

        winner = None
        unfunded = []
        for bid in qualifying:
            if secure_hold(db, self.balance, auction, bid):
                winner = bid
                break
            unfunded.append(bid)

        if winner is None:
            db.rollback()
            self._mark_unfunded(db, auction_id, [bid.id for bid in unfunded], now)
            logger.warning(f"No qualifying bid on auction {auction_id} can fund the instant purchase")
            return None

        if winner.id != claimed_bid_id:
            auction.sold_to = winner.bidder_id
            auction.final_price = winner.price
            auction.instant_purchase_bid_id = winner.id

        winner.bid_status = BidStatus.WON.value
        winner.is_winning_bid = True
        winner.won_at = now
        outbox.add(AUCTION_ENDED, winner.bidder_id, auction_id, result="won", price=str(winner.price),
                   reason=AuctionEndReason.INSTANT_PURCHASE.value)

        unfunded_ids = {bid.id for bid in unfunded}
        others = db.query(Bid).filter(Bid.auction_id == auction_id, Bid.id != winner.id).all()
        for bid in others:
            if bid.id in unfunded_ids:
                reason = LostReason.INSUFFICIENT_BALANCE.value
            elif bid.id in qualifying_ids:
                reason = LostReason.CONCURRENT_INSTANT_PURCHASE_CONFLICT.value
            else:
                reason = LostReason.INSTANT_PURCHASE_BY_OTHER_BIDDER.value
            self._mark_lost(db, auction, bid, reason, now, outbox)

        outbox.add(AUCTION_ENDED, auction.seller_id, auction_id, result="sold", price=str(winner.price),
                   reason=AuctionEndReason.INSTANT_PURCHASE.value)
        db.commit()
        return winner

    def _mark_lost(self, db: Session, auction: Auction, bid: Bid, reason: str, now: datetime, outbox: Outbox):
        if bid.bid_status == BidStatus.LOST.value:
            return
        bid.bid_status = BidStatus.LOST.value
        bid.is_winning_bid = False
        bid.lost_reason = reason
        bid.lost_at = now
        if self.balance.is_hold_open(db, bid.hold_transaction_id):
            self.balance.release_hold(
                db,
                bid.hold_transaction_id,
                f"Auction {auction.title} ended by instant purchase",
                commit=False,
            )
            outbox.add(BALANCE_UPDATED, bid.bidder_id, auction.id, refunded=str(bid.price))
        outbox.add(AUCTION_ENDED, bid.bidder_id, auction.id, result="lost", lost_reason=reason,
                   reason=AuctionEndReason.INSTANT_PURCHASE.value)

    def _mark_unfunded(self, db: Session, auction_id: int, bid_ids: List[int], now: datetime):
        if not bid_ids:
            return
        db.query(Bid).filter(Bid.id.in_(bid_ids)).update({
            Bid.bid_status: BidStatus.LOST.value,
            Bid.is_winning_bid: False,
            Bid.lost_reason: LostReason.INSUFFICIENT_BALANCE.value,
            Bid.lost_at: now,
        }, synchronize_session=False)
        db.commit()

    def _revert_claim(self, db: Session, auction_id: int, claimed_bid_id: int):
        """Compensate a claim whose bid bookkeeping could not be completed."""
        rows_updated = db.query(Auction).filter(
            Auction.id == auction_id,
            Auction.instant_purchase_bid_id == claimed_bid_id,
            Auction.settlement_started_at.is_(None),
        ).update({
            Auction.is_soldout: False,
            Auction.sold_to: None,
            Auction.final_price: None,
            Auction.auction_end_reason: None,
            Auction.outcome: None,
            Auction.instant_purchase_bid_id: None,
            Auction.auction_ended_at: None,
        }, synchronize_session=False)
        db.commit()
        logger.warning(f"Reverted instant purchase claim on auction {auction_id} ({rows_updated} row)")

    def _after_lost_claim(self, db: Session, auction: Auction, bid_id: Optional[int], now: datetime,
                          outbox: Outbox) -> Dict[str, Any]:
        """The auction is already closed; make sure the triggering bid reflects that."""
        outcome = {
            "auction_ended": True,
            "won": False,
            "winning_bid_id": auction.instant_purchase_bid_id,
            "final_price": to_money(auction.final_price) if auction.final_price is not None else None,
            "lost_reason": None,
        }
        if bid_id is None:
            return outcome

        bid = db.query(Bid).populate_existing().filter(Bid.id == bid_id).first()
        if bid is None:
            return outcome
        if bid.bid_status == BidStatus.WON.value or auction.instant_purchase_bid_id == bid.id:
            outcome["won"] = True
            return outcome

        if bid.bid_status != BidStatus.LOST.value:
            if auction.auction_end_reason == AuctionEndReason.INSTANT_PURCHASE.value:
                if qualifies_for_instant_purchase(auction, bid.price):
                    reason = LostReason.CONCURRENT_INSTANT_PURCHASE_CONFLICT.value
                else:
                    reason = LostReason.INSTANT_PURCHASE_BY_OTHER_BIDDER.value
            else:
                reason = LostReason.AUCTION_CLOSED.value
            bid.bid_status = BidStatus.LOST.value
            bid.is_winning_bid = False
            bid.lost_reason = reason
            bid.lost_at = now
            try:
                self.balance.release_hold(
                    db,
                    bid.hold_transaction_id,
                    f"Auction {auction.title} already ended",
                    commit=False,
                )
                outbox.add(BALANCE_UPDATED, bid.bidder_id, auction.id, refunded=str(bid.price))
            except InvalidHold:
                logger.info(f"Bid {bid.id} had no open hold to release")
            db.commit()
            outbox.add(AUCTION_ENDED, bid.bidder_id, auction.id, result="lost", lost_reason=reason,
                       reason=auction.auction_end_reason)
            logger.info(f"Bid {bid.id} lost the instant purchase race on auction {auction.id}: {reason}")

        outcome["lost_reason"] = bid.lost_reason
        return outcome

    def _lost_reason_for(self, db: Session, bid_id: int) -> Optional[str]:
        bid = db.get(Bid, bid_id)
        return bid.lost_reason if bid is not None else None
