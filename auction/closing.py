"""
Winner determination and auction closing.

An auction ends exactly once: the terminal flip is a conditional update on
``is_soldout`` and every bid status change rides in the same transaction.
Money moves afterwards, through settlement for a sale or a refund pass
otherwise.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List
import logging

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
from .bidding import secure_hold
from .errors import AlreadyEnded, AuctionNotFound, DeadlineExceeded
from .notifications import Outbox, Notifier, AUCTION_ENDED
from .retry import Deadline
from .settlement import SettlementService

logger = logging.getLogger(__name__)

REFUND_DESCRIPTIONS = {
    AuctionOutcome.RESERVE_NOT_MET.value: "Reserve price not met",
    AuctionOutcome.UNFUNDED.value: "No bid could be funded at close",
}


class ClosingEngine:
    def __init__(
        self,
        balance: BalanceService,
        settlement: SettlementService,
        resolver,
        notifier: Optional[Notifier] = None,
    ):
        self.balance = balance
        self.settlement = settlement
        self.resolver = resolver
        self.notifier = notifier or Notifier()

    def end_auction(
        self,
        db: Session,
        auction_id: int,
        reason: str = AuctionEndReason.ADMIN_ENDED.value,
        actor_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Close an auction and drive it to its terminal outcome.

        Raises:
            AuctionNotFound: unknown auction.
            AlreadyEnded: the auction was already closed, by this or any path.
        """
        now = now or datetime.utcnow()
        reason = AuctionEndReason(reason).value
        auction = db.query(Auction).populate_existing().filter(Auction.id == auction_id).first()
        if auction is None:
            raise AuctionNotFound(auction_id)
        if auction.is_soldout:
            raise AlreadyEnded(auction_id, auction.auction_end_reason)

        outbox = Outbox()
        try:
            bids = db.query(Bid).filter(
                Bid.auction_id == auction_id,
                Bid.bid_status != BidStatus.LOST.value,
            ).order_by(Bid.price.desc(), Bid.placed_at.asc(), Bid.id.asc()).all()

            reserve = to_money(auction.reserve_price or 0)
            winner, unfunded = self._pick_winner(db, auction, bids, reserve)
            remaining = [bid for bid in bids if bid not in unfunded]

            if winner is not None:
                outcome = AuctionOutcome.SOLD.value
            elif remaining:
                outcome = AuctionOutcome.RESERVE_NOT_MET.value
            elif unfunded:
                # Bids existed but none of the bidders can still pay
                outcome = AuctionOutcome.UNFUNDED.value
            else:
                outcome = AuctionOutcome.NO_BIDS.value

            values = {
                Auction.is_soldout: True,
                Auction.auction_end_reason: reason,
                Auction.outcome: outcome,
                Auction.auction_ended_at: now,
                Auction.ended_by_id: actor_id,
            }
            if winner is not None:
                values[Auction.sold_to] = winner.bidder_id
                values[Auction.final_price] = winner.price

            # Atomic update: open -> ended
            rows_updated = db.query(Auction).filter(
                Auction.id == auction_id,
                Auction.is_soldout.is_(False),
            ).update(values, synchronize_session=False)

            if rows_updated == 0:
                db.rollback()
                current = db.query(Auction).populate_existing().filter(Auction.id == auction_id).first()
                logger.info(f"Auction {auction_id} was closed concurrently ({current.auction_end_reason})")
                raise AlreadyEnded(auction_id, current.auction_end_reason)

            unfunded_ids = {bid.id for bid in unfunded}
            for bid in bids:
                if winner is not None and bid.id == winner.id:
                    bid.bid_status = BidStatus.WON.value
                    bid.is_winning_bid = True
                    bid.won_at = now
                    outbox.add(AUCTION_ENDED, bid.bidder_id, auction_id, result="won",
                               price=str(bid.price), reason=reason)
                    continue
                if bid.id in unfunded_ids:
                    lost_reason = LostReason.INSUFFICIENT_BALANCE.value
                elif outcome == AuctionOutcome.RESERVE_NOT_MET.value:
                    lost_reason = LostReason.RESERVE_NOT_MET.value
                else:
                    lost_reason = LostReason.OUTBID_AT_CLOSE.value
                bid.bid_status = BidStatus.LOST.value
                bid.is_winning_bid = False
                bid.lost_reason = lost_reason
                bid.lost_at = now
                outbox.add(AUCTION_ENDED, bid.bidder_id, auction_id, result="lost",
                           lost_reason=lost_reason, reason=reason)

            outbox.add(
                AUCTION_ENDED,
                auction.seller_id,
                auction_id,
                result=outcome,
                reason=reason,
                price=str(winner.price) if winner is not None else None,
            )
            db.commit()
        except AlreadyEnded:
            raise
        except Exception:
            db.rollback()
            raise

        logger.info(f"Auction {auction_id} ended ({reason}): {outcome}")

        if outcome == AuctionOutcome.SOLD.value:
            settlement = self.settlement.settle(db, auction_id, now)
        else:
            description = REFUND_DESCRIPTIONS.get(outcome, "Auction ended without sale")
            settlement = self.settlement.refund_all_bidders(db, auction_id, description)

        self.notifier.publish(outbox)
        return {
            "auction_id": auction_id,
            "outcome": outcome,
            "reason": reason,
            "winner": self._winner_summary(winner),
            "final_price": to_money(winner.price) if winner is not None else None,
            "unfunded_bids": sorted(unfunded_ids),
            "settlement": settlement,
        }

    def _pick_winner(self, db: Session, auction: Auction, bids: List[Bid], reserve: Decimal):
        """Highest funded bid that meets the reserve, plus the bids skipped for lack of funds."""
        unfunded = []
        for bid in bids:
            if reserve > 0 and to_money(bid.price) < reserve:
                break
            if secure_hold(db, self.balance, auction, bid):
                return bid, unfunded
            unfunded.append(bid)
        return None, unfunded

    @staticmethod
    def _winner_summary(winner: Optional[Bid]) -> Optional[Dict[str, Any]]:
        if winner is None:
            return None
        return {"bid_id": winner.id, "bidder_id": winner.bidder_id, "price": to_money(winner.price)}

    def process_expired_auctions(
        self,
        db: Session,
        now: Optional[datetime] = None,
        deadline: Optional[Deadline] = None,
    ) -> Dict[str, Any]:
        """
        Sweep entry point for the scheduler.

        Closes Timed auctions past their end date, resolves open auctions
        left holding an instant-purchase bid, settles sold auctions whose
        settlement never started, then re-runs settlements that recorded
        errors. Each auction is handled on its own; one failure does not stop
        the sweep.
        """
        now = now or datetime.utcnow()
        deadline = deadline or Deadline.none()
        results = []
        processed = 0
        deadline_exceeded = False

        expired_ids = [row[0] for row in db.query(Auction.id).filter(
            Auction.is_soldout.is_(False),
            Auction.auction_type == AuctionType.TIMED.value,
            Auction.auction_end_date.isnot(None),
            Auction.auction_end_date < now,
        ).order_by(Auction.auction_end_date.asc()).all()]

        try:
            for auction_id in expired_ids:
                deadline.check("expired_auction_sweep")
                try:
                    closed = self.end_auction(db, auction_id, AuctionEndReason.TIME_EXPIRED.value, None, now)
                    processed += 1
                    results.append({
                        "auction_id": auction_id,
                        "action": "closed",
                        "outcome": closed["outcome"],
                        "winner": closed["winner"],
                        "settlement_success": closed["settlement"].get("success"),
                    })
                except AlreadyEnded:
                    logger.info(f"Auction {auction_id} already ended before the sweep reached it")
                except Exception as e:
                    db.rollback()
                    logger.error(f"Error closing expired auction {auction_id}: {e}", exc_info=True)
                    results.append({"auction_id": auction_id, "action": "closed", "error": str(e)})

            for auction_id in self._stranded_instant_purchases(db):
                deadline.check("instant_purchase_sweep")
                try:
                    resolution = self.resolver.resolve(db, auction_id, None, now=now)
                    if resolution["auction_ended"]:
                        processed += 1
                    results.append({
                        "auction_id": auction_id,
                        "action": "instant_purchase",
                        "auction_ended": resolution["auction_ended"],
                        "winning_bid_id": resolution["winning_bid_id"],
                    })
                except Exception as e:
                    db.rollback()
                    logger.error(f"Error resolving instant purchase on auction {auction_id}: {e}", exc_info=True)
                    results.append({"auction_id": auction_id, "action": "instant_purchase", "error": str(e)})

            unsettled_ids = [row[0] for row in db.query(Auction.id).filter(
                Auction.is_soldout.is_(True),
                Auction.outcome == AuctionOutcome.SOLD.value,
                Auction.settlement_started_at.is_(None),
            ).all()]
            for auction_id in unsettled_ids:
                deadline.check("settlement_sweep")
                try:
                    settlement = self.settlement.settle(db, auction_id, now)
                    results.append({
                        "auction_id": auction_id,
                        "action": "settled",
                        "settlement_success": settlement["success"],
                    })
                except Exception as e:
                    db.rollback()
                    logger.error(f"Error settling auction {auction_id}: {e}", exc_info=True)
                    results.append({"auction_id": auction_id, "action": "settled", "error": str(e)})

            failed_ids = [row[0] for row in db.query(Auction.id).filter(
                Auction.outcome == AuctionOutcome.SOLD.value,
                Auction.settlement_completed.is_(True),
                Auction.settlement_errors.isnot(None),
                Auction.settlement_attempts < config.MAX_SETTLEMENT_RETRIES,
            ).order_by(Auction.id.asc()).all()]
            for auction_id in failed_ids:
                deadline.check("settlement_retry_sweep")
                try:
                    retry = self.settlement.retry_failed_steps(db, auction_id, now)
                    if retry["skipped"]:
                        continue
                    results.append({
                        "auction_id": auction_id,
                        "action": "settlement_retried",
                        "settlement_success": retry["success"],
                    })
                except Exception as e:
                    db.rollback()
                    logger.error(f"Error retrying settlement of auction {auction_id}: {e}", exc_info=True)
                    results.append({"auction_id": auction_id, "action": "settlement_retried", "error": str(e)})
        except DeadlineExceeded:
            deadline_exceeded = True
            logger.warning(f"Expired auction sweep stopped at deadline after {processed} auction(s)")

        if processed:
            logger.info(f"Expired auction sweep processed {processed} auction(s)")
        return {
            "processed_count": processed,
            "results": results,
            "deadline_exceeded": deadline_exceeded,
        }

    def _stranded_instant_purchases(self, db: Session) -> List[int]:
        rows = db.query(Auction.id).join(Bid, Bid.auction_id == Auction.id).filter(
            Auction.is_soldout.is_(False),
            Auction.instant_purchase_price.isnot(None),
            Bid.price >= Auction.instant_purchase_price,
            Bid.bid_status != BidStatus.LOST.value,
        ).distinct().all()
        return [row[0] for row in rows]
