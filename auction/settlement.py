"""
Settlement engine.

Runs once per sold auction. Each step commits on its own and a failing
step is recorded rather than aborting the rest: the winner's payment, the
loser refunds and the payouts are independent of each other. A settlement
that recorded errors is re-run by the sweep; the ledger rows already written
for the auction decide which steps still have to happen.
"""
import json
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, Tuple
import logging

from sqlalchemy.orm import Session

from database import (
    Account,
    Auction,
    AuctionOutcome,
    Bid,
    BidStatus,
    PaymentMethod,
    Transaction,
    TransactionType,
)
from . import config
from .balance import BalanceService, to_money, CENT
from .bidding import secure_hold
from .errors import AuctionNotFound
from .notifications import Outbox, Notifier, BALANCE_UPDATED

logger = logging.getLogger(__name__)

COMMISSION_REFERENCE = "COMMISSION:{}"
PAYOUT_REFERENCE = "PAYOUT:{}"


class SettlementService:
    def __init__(self, balance: BalanceService, notifier: Optional[Notifier] = None, rounding: Optional[str] = None):
        self.balance = balance
        self.notifier = notifier or Notifier()
        self.rounding = config.rounding_mode(rounding)

    def compute_commission(self, final_price, rate) -> Tuple[Decimal, Decimal]:
        """Split a sale price into (commission, seller amount)."""
        final_price = to_money(final_price)
        commission = (final_price * Decimal(str(rate or 0)) / Decimal("100")).quantize(CENT, rounding=self.rounding)
        return commission, final_price - commission

    def platform_account_id(self, db: Session) -> Optional[int]:
        configured = config.platform_account_id()
        if configured is not None:
            return configured
        admin = db.query(Account.id).filter(Account.is_admin.is_(True)).order_by(Account.id.asc()).first()
        return admin[0] if admin else None

    def _winning_bid(self, db: Session, auction: Auction) -> Optional[Bid]:
        if auction.instant_purchase_bid_id:
            bid = db.get(Bid, auction.instant_purchase_bid_id)
            if bid is not None:
                return bid
        return db.query(Bid).filter(
            Bid.auction_id == auction.id,
            Bid.bid_status == BidStatus.WON.value,
        ).first()

    @staticmethod
    def _empty_results() -> Dict[str, Any]:
        return {
            "success": True,
            "skipped": False,
            "winner_settlement": None,
            "loser_refunds": [],
            "commission_payment": None,
            "seller_payment": None,
            "commission_amount": None,
            "seller_amount": None,
            "errors": [],
        }

    def settle(self, db: Session, auction_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Settle a sold auction exactly once.

        Returns:
            Dict with ``success``, ``skipped``, per-step results and ``errors``.
        """
        now = now or datetime.utcnow()
        results = self._empty_results()

        # Atomic claim: only one caller ever settles an auction
        rows_updated = db.query(Auction).filter(
            Auction.id == auction_id,
            Auction.is_soldout.is_(True),
            Auction.outcome == AuctionOutcome.SOLD.value,
            Auction.settlement_started_at.is_(None),
        ).update({Auction.settlement_started_at: now}, synchronize_session=False)
        db.commit()

        if rows_updated == 0:
            logger.info(f"Auction {auction_id} not eligible for settlement or already being settled")
            results["success"] = False
            results["skipped"] = True
            return results

        return self._run_steps(db, auction_id, now, results)

    def retry_failed_steps(self, db: Session, auction_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Re-run the steps of a settlement that finished with errors.

        Steps already reflected in the ledger are not repeated, so a winner is
        charged once and each payout is credited once however often this runs.
        """
        now = now or datetime.utcnow()
        results = self._empty_results()
        auction = db.query(Auction).populate_existing().filter(Auction.id == auction_id).first()
        if auction is None:
            raise AuctionNotFound(auction_id)

        attempts = auction.settlement_attempts or 0
        # Atomic claim: one retry per recorded failure
        rows_updated = db.query(Auction).filter(
            Auction.id == auction_id,
            Auction.settlement_completed.is_(True),
            Auction.settlement_errors.isnot(None),
            Auction.settlement_attempts == attempts,
        ).update({Auction.settlement_attempts: attempts + 1}, synchronize_session=False)
        db.commit()

        if rows_updated == 0:
            results["success"] = False
            results["skipped"] = True
            return results

        logger.info(f"Retrying failed settlement steps for auction {auction_id} (attempt {attempts + 1})")
        return self._run_steps(db, auction_id, now, results)

    def _winner_deduction(self, db: Session, auction: Auction, bid: Bid) -> Optional[Transaction]:
        return db.query(Transaction).filter(
            Transaction.auction_id == auction.id,
            Transaction.account_id == bid.bidder_id,
            Transaction.type == TransactionType.BID_DEDUCTION.value,
        ).first()

    def _collect_winner_payment(self, db: Session, auction: Auction, bid: Bid, final_price: Decimal):
        if self._winner_deduction(db, auction, bid) is not None:
            return None
        if not secure_hold(db, self.balance, auction, bid):
            raise RuntimeError(f"Winning bid {bid.id} is no longer funded")
        return self.balance.convert_hold_to_deduction(
            db,
            bid.hold_transaction_id,
            f"Final payment for winning auction: {auction.title} - {final_price}",
        )

    def _credit_once(self, db: Session, account_id: int, amount: Decimal, reference: str, description: str,
                     auction_id: int, bid_id: Optional[int]) -> Optional[Transaction]:
        """Credit a settlement payout unless the ledger already holds it."""
        paid = db.query(Transaction.id).filter(
            Transaction.auction_id == auction_id,
            Transaction.type == TransactionType.DEPOSIT.value,
            Transaction.payment_reference == reference,
        ).first()
        if paid is not None:
            return None
        return self.balance.deposit(
            db,
            account_id,
            amount,
            method=PaymentMethod.SYSTEM.value,
            description=description,
            auction_id=auction_id,
            bid_id=bid_id,
            payment_reference=reference,
        )

    def _run_steps(self, db: Session, auction_id: int, now: datetime, results: Dict[str, Any]) -> Dict[str, Any]:
        errors = results["errors"]
        auction = db.get(Auction, auction_id)
        db.refresh(auction)
        winning_bid = self._winning_bid(db, auction)
        if winning_bid is None:
            errors.append("Winning bid not found")
            winner_id = None
            final_price = to_money(auction.final_price or 0)
        else:
            winner_id = winning_bid.id
            final_price = to_money(auction.final_price if auction.final_price is not None else winning_bid.price)

        outbox = Outbox()

        # 1. Winner's hold becomes a permanent deduction
        if winning_bid is not None:
            try:
                results["winner_settlement"] = self._collect_winner_payment(db, auction, winning_bid, final_price)
                if results["winner_settlement"] is not None:
                    outbox.add(BALANCE_UPDATED, winning_bid.bidder_id, auction_id, paid=str(final_price))
            except Exception as e:
                db.rollback()
                logger.error(f"Winner settlement failed for auction {auction_id}: {e}", exc_info=True)
                errors.append(f"Winner settlement failed: {e}")

        # 2. Refund every other bid still holding money
        losing_bids = db.query(Bid).filter(
            Bid.auction_id == auction_id,
            Bid.id != winner_id,
            Bid.hold_transaction_id.isnot(None),
        ).all()
        for bid in losing_bids:
            if not self.balance.is_hold_open(db, bid.hold_transaction_id):
                continue
            try:
                refund = self.balance.release_hold(
                    db,
                    bid.hold_transaction_id,
                    f"Refund for losing bid on auction: {auction.title}",
                )
                results["loser_refunds"].append({
                    "bid_id": bid.id,
                    "bidder_id": bid.bidder_id,
                    "amount": refund.amount,
                    "transaction_id": refund.id,
                })
                outbox.add(BALANCE_UPDATED, bid.bidder_id, auction_id, refunded=str(refund.amount))
            except Exception as e:
                db.rollback()
                logger.error(f"Refund failed for bid {bid.id}: {e}", exc_info=True)
                errors.append(f"Refund failed for bid {bid.id}: {e}")

        # 3. Commission split
        auction = db.get(Auction, auction_id)
        commission_rate = auction.commission or 0
        commission_amount, seller_amount = self.compute_commission(final_price, commission_rate)
        results["commission_amount"] = commission_amount
        results["seller_amount"] = seller_amount

        # 4. Platform commission
        if commission_amount > 0:
            try:
                platform_id = self.platform_account_id(db)
                if platform_id is None:
                    raise RuntimeError("No platform account configured")
                results["commission_payment"] = self._credit_once(
                    db,
                    platform_id,
                    commission_amount,
                    COMMISSION_REFERENCE.format(auction_id),
                    f"Commission from auction: {auction.title} ({commission_rate}% of {final_price})",
                    auction_id,
                    winner_id,
                )
                if results["commission_payment"] is not None:
                    outbox.add(BALANCE_UPDATED, platform_id, auction_id, commission=str(commission_amount))
            except Exception as e:
                db.rollback()
                logger.error(f"Commission payment failed for auction {auction_id}: {e}", exc_info=True)
                errors.append(f"Commission payment failed: {e}")

        # 5. Seller payout
        if seller_amount > 0:
            try:
                results["seller_payment"] = self._credit_once(
                    db,
                    auction.seller_id,
                    seller_amount,
                    PAYOUT_REFERENCE.format(auction_id),
                    (
                        f"Payment for sold auction: {auction.title} - {seller_amount} "
                        f"(after {commission_rate}% commission)"
                    ),
                    auction_id,
                    winner_id,
                )
                if results["seller_payment"] is not None:
                    outbox.add(BALANCE_UPDATED, auction.seller_id, auction_id, payout=str(seller_amount))
            except Exception as e:
                db.rollback()
                logger.error(f"Seller payment failed for auction {auction_id}: {e}", exc_info=True)
                errors.append(f"Seller payment failed: {e}")

        # 6. Record the outcome on the auction
        auction = db.get(Auction, auction_id)
        auction.settlement_completed = True
        auction.settlement_date = now
        auction.final_price = final_price
        auction.commission_amount = commission_amount
        auction.seller_amount = seller_amount
        auction.settlement_errors = json.dumps(errors) if errors else None
        db.commit()

        results["success"] = not errors
        if errors:
            logger.warning(f"Auction {auction_id} settled with {len(errors)} error(s): {errors}")
        else:
            logger.info(
                f"Auction {auction_id} settled: final {final_price}, commission {commission_amount}, "
                f"seller {seller_amount}"
            )
        self.notifier.publish(outbox)
        return results

    def refund_all_bidders(self, db: Session, auction_id: int, reason: str = "Auction ended without sale") -> Dict[str, Any]:
        """Release every open hold on an auction that did not sell."""
        results = {"success": True, "refunds": [], "errors": []}
        auction = db.get(Auction, auction_id)
        if auction is None:
            raise AuctionNotFound(auction_id)

        outbox = Outbox()
        bids = db.query(Bid).filter(
            Bid.auction_id == auction_id,
            Bid.hold_transaction_id.isnot(None),
        ).all()
        for bid in bids:
            if not self.balance.is_hold_open(db, bid.hold_transaction_id):
                continue
            try:
                refund = self.balance.release_hold(db, bid.hold_transaction_id, f"{reason}: {auction.title}")
                results["refunds"].append({
                    "bid_id": bid.id,
                    "bidder_id": bid.bidder_id,
                    "amount": refund.amount,
                    "transaction_id": refund.id,
                })
                outbox.add(BALANCE_UPDATED, bid.bidder_id, auction_id, refunded=str(refund.amount))
            except Exception as e:
                db.rollback()
                logger.error(f"Refund failed for bid {bid.id}: {e}", exc_info=True)
                results["errors"].append(f"Refund failed for bid {bid.id}: {e}")

        results["success"] = not results["errors"]
        self.notifier.publish(outbox)
        return results

    def settlement_status(self, db: Session, auction_id: int) -> Dict[str, Any]:
        auction = db.get(Auction, auction_id)
        if auction is None:
            raise AuctionNotFound(auction_id)

        bids = db.query(Bid).filter(Bid.auction_id == auction_id).order_by(Bid.price.desc(), Bid.id.asc()).all()
        bid_rows = []
        open_holds = 0
        for bid in bids:
            has_hold = self.balance.is_hold_open(db, bid.hold_transaction_id)
            open_holds += int(has_hold)
            bid_rows.append({
                "bid_id": bid.id,
                "bidder_id": bid.bidder_id,
                "price": bid.price,
                "bid_status": bid.bid_status,
                "has_open_hold": has_hold,
            })

        winning_bid = self._winning_bid(db, auction)
        return {
            "auction_id": auction.id,
            "is_soldout": auction.is_soldout,
            "outcome": auction.outcome,
            "auction_end_reason": auction.auction_end_reason,
            "settlement_completed": auction.settlement_completed,
            "settlement_date": auction.settlement_date,
            "final_price": auction.final_price,
            "commission_amount": auction.commission_amount,
            "seller_amount": auction.seller_amount,
            "settlement_errors": json.loads(auction.settlement_errors) if auction.settlement_errors else [],
            "settlement_attempts": auction.settlement_attempts or 0,
            "winning_bid": next((row for row in bid_rows if winning_bid and row["bid_id"] == winning_bid.id), None),
            "bids": bid_rows,
            "open_holds": open_holds,
        }
