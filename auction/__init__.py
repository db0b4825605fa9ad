from .balance import BalanceService
from .bidding import BiddingEngine
from .closing import ClosingEngine
from .dispatch import InlineDispatcher, ThreadPoolDispatcher
from .errors import AuctionError
from .instant_purchase import InstantPurchaseResolver
from .integrity import IntegrityService
from .notifications import Notifier, NotificationSink, LoggingNotificationSink
from .proxy import ProxyBiddingService
from .retry import Deadline, RetryPolicy
from .service import AuctionHouse
from .settlement import SettlementService

__all__ = [
    "AuctionHouse",
    "AuctionError",
    "BalanceService",
    "BiddingEngine",
    "ClosingEngine",
    "Deadline",
    "InlineDispatcher",
    "InstantPurchaseResolver",
    "IntegrityService",
    "LoggingNotificationSink",
    "NotificationSink",
    "Notifier",
    "ProxyBiddingService",
    "RetryPolicy",
    "SettlementService",
    "ThreadPoolDispatcher",
]
