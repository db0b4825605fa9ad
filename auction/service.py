"""
AuctionHouse: one object wiring the engines together.

Collaborators (notification sink, escalation dispatcher, retry policy,
session factory) are injected so the server, the worker and the tests each
choose their own.
"""
from datetime import datetime
from typing import Optional, Dict, Any, Callable
import logging

from sqlalchemy.orm import Session

from database import AuctionEndReason, BidType
from . import config
from .balance import BalanceService
from .bidding import BiddingEngine
from .closing import ClosingEngine
from .dispatch import InlineDispatcher
from .guards import EscalationGuard
from .instant_purchase import InstantPurchaseResolver
from .integrity import IntegrityService
from .notifications import Notifier, NotificationSink, Outbox, BALANCE_UPDATED
from .proxy import ProxyBiddingService
from .retry import Deadline, RetryPolicy
from .settlement import SettlementService

logger = logging.getLogger(__name__)


class AuctionHouse:
    def __init__(
        self,
        sink: Optional[NotificationSink] = None,
        dispatcher=None,
        session_factory: Optional[Callable[[], Session]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        commission_rounding: Optional[str] = None,
        guard: Optional[EscalationGuard] = None,
    ):
        """
        Args:
            sink: where notifications go; logged when omitted.
            dispatcher: runs proxy escalation after a bid commits; inline when omitted.
            session_factory: opens a fresh session for dispatched escalation.
                Without one, escalation reuses the caller's session, which is
                only safe with the inline dispatcher.
        """
        self.notifier = Notifier(sink)
        self.dispatcher = dispatcher or InlineDispatcher()
        self.session_factory = session_factory

        self.balance = BalanceService()
        self.settlement = SettlementService(self.balance, self.notifier, commission_rounding)
        self.resolver = InstantPurchaseResolver(self.balance, self.settlement, self.notifier, retry_policy)
        self.bidding = BiddingEngine(self.balance, self.resolver, self.notifier)
        self.proxy = ProxyBiddingService(
            self.balance,
            self.bidding,
            self.resolver,
            self.notifier,
            guard=guard,
            max_rounds=config.MAX_ESCALATION_ROUNDS,
        )
        self.closing = ClosingEngine(self.balance, self.settlement, self.resolver, self.notifier)
        self.integrity = IntegrityService(self.balance)

    # ------------------------------------------------------------------
    # Bidding
    # ------------------------------------------------------------------

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
        result = self.bidding.place_bid(db, auction_id, bidder_id, price, bid_type, max_bid, now, deadline)
        if not result["auction_ended"]:
            self._dispatch_escalation(db, auction_id, result["bid"].price, bidder_id, now)
        return result

    def _dispatch_escalation(self, db: Session, auction_id: int, amount, bidder_id: int,
                             now: Optional[datetime]):
        if self.session_factory is None:
            self.dispatcher.submit(lambda: self.proxy.escalate(db, auction_id, amount, bidder_id, now=now))
            return

        def run():
            session = self.session_factory()
            try:
                self.proxy.escalate(session, auction_id, amount, bidder_id, now=now)
            finally:
                session.close()

        self.dispatcher.submit(run)

    def update_proxy_max(self, db: Session, auction_id: int, bidder_id: int, new_max,
                         now: Optional[datetime] = None) -> Dict[str, Any]:
        return self.proxy.update_proxy_max(db, auction_id, bidder_id, new_max, now)

    def cancel_proxy(self, db: Session, auction_id: int, bidder_id: int):
        return self.proxy.cancel_proxy(db, auction_id, bidder_id)

    def proxy_summary(self, db: Session, auction_id: int):
        return self.proxy.proxy_summary(db, auction_id)

    def list_bids(self, db: Session, auction_id: int):
        return self.bidding.list_bids(db, auction_id)

    # ------------------------------------------------------------------
    # Closing
    # ------------------------------------------------------------------

    def end_auction(
        self,
        db: Session,
        auction_id: int,
        reason: str = AuctionEndReason.ADMIN_ENDED.value,
        actor_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        return self.closing.end_auction(db, auction_id, reason, actor_id, now)

    def process_expired_auctions(self, db: Session, now: Optional[datetime] = None,
                                 deadline: Optional[Deadline] = None) -> Dict[str, Any]:
        return self.closing.process_expired_auctions(db, now, deadline)

    def settlement_status(self, db: Session, auction_id: int) -> Dict[str, Any]:
        return self.settlement.settlement_status(db, auction_id)

    # ------------------------------------------------------------------
    # Balance
    # ------------------------------------------------------------------

    def get_balance_info(self, db: Session, account_id: int) -> Dict[str, Any]:
        return self.balance.available_balance(db, account_id)

    def add_balance(self, db: Session, account_id: int, amount, method: str):
        txn = self.balance.add_balance(db, account_id, amount, method)
        outbox = Outbox()
        outbox.add(BALANCE_UPDATED, account_id, None, deposited=str(txn.amount))
        self.notifier.publish(outbox)
        return txn

    def transaction_history(self, db: Session, account_id: int, page: int = 1, limit: int = 20,
                            type: Optional[str] = None) -> Dict[str, Any]:
        return self.balance.transaction_history(db, account_id, page, limit, type)

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    def run_integrity_sweep(self, db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
        return self.integrity.run(db, now)
