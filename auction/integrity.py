"""
Integrity sweep.

Finds and repairs money left in the wrong state after a timeout or crash:
holds no live bid refers to, holds that outlived their auction, stale holds,
and accounts whose balance disagrees with their ledger.
"""
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List, Set
import logging

from sqlalchemy.orm import Session

from database import Account, Auction, Bid, BidStatus, Transaction, TransactionType
from . import config
from .balance import BalanceService, to_money
from .errors import AuctionNotFound

logger = logging.getLogger(__name__)

LIVE_STATUSES = (BidStatus.ACTIVE.value, BidStatus.WINNING.value)
PROTECTED_STATUSES = LIVE_STATUSES + (BidStatus.WON.value,)


class IntegrityService:
    def __init__(self, balance: BalanceService):
        self.balance = balance

    def _open_holds(self, db: Session, *criteria) -> List[Transaction]:
        return db.query(Transaction).filter(
            Transaction.type == TransactionType.BID_HOLD.value,
            Transaction.is_held.is_(True),
            *criteria
        ).order_by(Transaction.id.asc()).all()

    def _protected_hold_ids(self, db: Session, auction_id: Optional[int] = None) -> Set[int]:
        """Holds backing a leading bid or a winner. A winner's hold is only ever turned into a deduction."""
        query = db.query(Bid.hold_transaction_id).filter(
            Bid.hold_transaction_id.isnot(None),
            Bid.bid_status.in_(PROTECTED_STATUSES),
        )
        if auction_id is not None:
            query = query.filter(Bid.auction_id == auction_id)
        return {row[0] for row in query.all()}

    def _release(self, db: Session, hold: Transaction, description: str, action: str,
                 results: Dict[str, Any], bucket: str = "cleanup_actions"):
        try:
            self.balance.release_hold(db, hold.id, description)
            results[bucket].append({
                "type": action,
                "transaction_id": hold.id,
                "account_id": hold.account_id,
                "auction_id": hold.auction_id,
                "amount": to_money(hold.amount),
            })
        except Exception as e:
            db.rollback()
            logger.error(f"Releasing hold {hold.id} failed: {e}", exc_info=True)
            results["errors"].append({"type": "HOLD_RELEASE_FAILED", "transaction_id": hold.id, "error": str(e)})

    def check_auction(self, db: Session, auction_id: int) -> Dict[str, Any]:
        """Release orphaned holds on one auction and report bids missing their hold."""
        if db.get(Auction, auction_id) is None:
            raise AuctionNotFound(auction_id)
        results = {"success": True, "cleanup_actions": [], "errors": []}

        protected = self._protected_hold_ids(db, auction_id)
        for hold in self._open_holds(db, Transaction.auction_id == auction_id):
            if hold.id not in protected:
                self._release(
                    db, hold, f"Cleanup: Released orphaned hold for auction {auction_id}",
                    "ORPHANED_HOLD_RELEASED", results,
                )

        live_bids = db.query(Bid).filter(Bid.auction_id == auction_id, Bid.bid_status.in_(LIVE_STATUSES)).all()
        for bid in live_bids:
            if not self.balance.is_hold_open(db, bid.hold_transaction_id):
                logger.warning(f"Bid {bid.id} on auction {auction_id} is {bid.bid_status} without a hold")
                results["cleanup_actions"].append({
                    "type": "BID_WITHOUT_HOLD",
                    "bid_id": bid.id,
                    "bidder_id": bid.bidder_id,
                    "amount": to_money(bid.price),
                })

        results["success"] = not results["errors"]
        return results

    def cleanup_expired_holds(self, db: Session, days_old: int = config.HOLD_DURATION_DAYS,
                              now: Optional[datetime] = None) -> Dict[str, Any]:
        """Release holds older than ``days_old`` whose auction has ended."""
        now = now or datetime.utcnow()
        cutoff = now - timedelta(days=days_old)
        results = {"success": True, "cleaned_holds": [], "errors": []}

        protected = self._protected_hold_ids(db)
        holds = self._open_holds(db, Transaction.created_at < cutoff, Transaction.auction_id.isnot(None))
        for hold in holds:
            if hold.id in protected:
                continue
            auction = db.get(Auction, hold.auction_id)
            if auction is None or not auction.is_soldout:
                continue
            self._release(
                db, hold, f"Cleanup: Released expired hold for ended auction: {auction.title}",
                "EXPIRED_HOLD_RELEASED", results, bucket="cleaned_holds",
            )

        results["success"] = not results["errors"]
        return results

    def validate_system(self, db: Session, now: Optional[datetime] = None,
                        stale_days: int = config.STALE_HOLD_DAYS) -> Dict[str, Any]:
        """System-wide checks, auto-fixing stale holds."""
        now = now or datetime.utcnow()
        results = {"success": True, "checks": [], "fixes": [], "errors": []}

        negative = db.query(Account).filter(Account.balance < 0).all()
        results["checks"].append({
            "name": "NEGATIVE_BALANCE_CHECK",
            "count": len(negative),
            "accounts": [{"id": a.id, "balance": to_money(a.balance)} for a in negative],
        })

        protected = self._protected_hold_ids(db)
        stale = [
            hold for hold in self._open_holds(db, Transaction.created_at < now - timedelta(days=stale_days))
            if hold.id not in protected
        ]
        results["checks"].append({"name": "OLD_HELD_TRANSACTIONS", "count": len(stale)})
        for hold in stale:
            self._release(db, hold, "System cleanup: Released old held transaction", "OLD_HOLD_RELEASED",
                          results, bucket="fixes")

        without_holds = [
            bid for bid in db.query(Bid).filter(Bid.bid_status.in_(LIVE_STATUSES)).all()
            if not self.balance.is_hold_open(db, bid.hold_transaction_id)
        ]
        results["checks"].append({
            "name": "BIDS_WITHOUT_HOLDS",
            "count": len(without_holds),
            "bids": [bid.id for bid in without_holds],
        })

        mismatched = []
        for account in db.query(Account).order_by(Account.id.asc()).all():
            expected = self.balance.reconstruct_balance(db, account.id)
            actual = to_money(account.balance)
            if expected != actual:
                mismatched.append({"id": account.id, "balance": actual, "ledger_balance": expected})
        if mismatched:
            logger.warning(f"{len(mismatched)} account(s) disagree with their ledger: {mismatched}")
        results["checks"].append({"name": "LEDGER_RECONCILIATION", "count": len(mismatched), "accounts": mismatched})

        results["success"] = not results["errors"]
        return results

    def run(self, db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Full sweep: per-auction checks, expired-hold cleanup, system validation."""
        now = now or datetime.utcnow()
        auction_ids = [row[0] for row in db.query(Transaction.auction_id).filter(
            Transaction.type == TransactionType.BID_HOLD.value,
            Transaction.is_held.is_(True),
            Transaction.auction_id.isnot(None),
        ).distinct().all()]

        auctions = {}
        for auction_id in auction_ids:
            try:
                auctions[auction_id] = self.check_auction(db, auction_id)
            except Exception as e:
                db.rollback()
                logger.error(f"Integrity check failed for auction {auction_id}: {e}", exc_info=True)
                auctions[auction_id] = {"success": False, "cleanup_actions": [], "errors": [str(e)]}

        expired = self.cleanup_expired_holds(db, now=now)
        system = self.validate_system(db, now=now)
        success = expired["success"] and system["success"] and all(r["success"] for r in auctions.values())
        logger.info(f"Integrity sweep finished over {len(auction_ids)} auction(s); success={success}")
        return {"success": success, "auctions": auctions, "expired_holds": expired, "system": system}
