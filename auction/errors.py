"""
Error taxonomy for the auction core.

Every error carries a machine-readable ``kind``, a human message and a
``details`` dict with whatever the caller needs to act on it (minimum bid,
shortfall, ...). The HTTP layer maps the categories to status codes.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional


class AuctionError(Exception):
    """Base class for all auction core errors."""

    kind = "AUCTION_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.kind,
            "message": self.message,
            "details": _jsonable(self.details),
        }


def _jsonable(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


# =============================================================================
# Validation errors: rejected synchronously, no state mutation
# =============================================================================


class ValidationError(AuctionError):
    kind = "VALIDATION_ERROR"


class AuctionNotFound(ValidationError):
    kind = "AUCTION_NOT_FOUND"

    def __init__(self, auction_id: int):
        self.auction_id = auction_id
        super().__init__(f"Auction {auction_id} not found", {"auction_id": auction_id})


class AccountNotFound(ValidationError):
    kind = "ACCOUNT_NOT_FOUND"

    def __init__(self, account_id: int):
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found", {"account_id": account_id})


class AuctionNotActive(ValidationError):
    kind = "AUCTION_NOT_ACTIVE"


class SelfBidNotAllowed(ValidationError):
    kind = "SELF_BIDDING_NOT_ALLOWED"

    def __init__(self):
        super().__init__("You cannot bid on your own auction")


class InvalidProxyBid(ValidationError):
    kind = "INVALID_PROXY_BID"


class BidTooLow(ValidationError):
    kind = "BID_TOO_LOW"

    def __init__(self, price: Decimal, minimum_bid: Decimal, current_bid: Decimal):
        super().__init__(
            f"Your bid must be at least {minimum_bid} (current bid + increment)",
            {
                "price": price,
                "minimum_bid": minimum_bid,
                "current_bid": current_bid,
                "suggestions": [
                    {"action": "INCREASE_BID", "message": f"Bid {minimum_bid} or more"},
                ],
            },
        )


class BidNotHigherThanPrevious(ValidationError):
    kind = "BID_NOT_HIGHER_THAN_PREVIOUS"

    def __init__(self, price: Decimal, previous_price: Decimal):
        super().__init__(
            f"Your bid must be higher than your previous bid ({previous_price})",
            {"price": price, "previous_price": previous_price},
        )


class InvalidAmount(ValidationError):
    kind = "INVALID_AMOUNT"


class InvalidPaymentMethod(ValidationError):
    kind = "INVALID_PAYMENT_METHOD"


class Forbidden(ValidationError):
    kind = "FORBIDDEN"


# =============================================================================
# Funds
# =============================================================================


class InsufficientBalance(AuctionError):
    kind = "INSUFFICIENT_BALANCE"

    def __init__(self, account_id: int, available: Decimal, required: Decimal, held: Decimal = Decimal("0")):
        shortfall = required - available
        self.account_id = account_id
        self.shortfall = shortfall
        super().__init__(
            f"Insufficient balance. Available: {available}, Required: {required}",
            {
                "account_id": account_id,
                "available": available,
                "required": required,
                "shortfall": shortfall,
                "suggestions": _funding_suggestions(shortfall, held),
            },
        )


def _funding_suggestions(shortfall: Decimal, held: Decimal) -> List[Dict[str, Any]]:
    suggestions = []
    if held > 0:
        suggestions.append({
            "type": "RELEASE_HOLDS",
            "message": f"You have {held} held for other bids.",
            "amount": held,
        })
    if shortfall <= Decimal("1000"):
        suggestions.append({
            "type": "ADD_SMALL_AMOUNT",
            "message": f"Add just {shortfall} more to place this bid.",
            "amount": shortfall,
        })
    else:
        suggestions.append({
            "type": "ADD_BALANCE",
            "message": f"Add {shortfall} to your account to place this bid.",
            "amount": shortfall,
        })
    return suggestions


class InvalidHold(AuctionError):
    kind = "INVALID_HOLD"

    def __init__(self, transaction_id: Optional[int]):
        self.transaction_id = transaction_id
        super().__init__(
            f"Transaction {transaction_id} is not an open bid hold",
            {"transaction_id": transaction_id},
        )


# =============================================================================
# Conflicts: caller should re-fetch state and retry deliberately
# =============================================================================


class ConflictError(AuctionError):
    kind = "CONFLICT"


class AlreadyEnded(ConflictError):
    kind = "ALREADY_ENDED"

    def __init__(self, auction_id: int, reason: Optional[str] = None):
        self.auction_id = auction_id
        super().__init__(
            f"Auction {auction_id} already ended",
            {"auction_id": auction_id, "auction_end_reason": reason},
        )


class InstantPurchaseConflict(ConflictError):
    kind = "CONCURRENT_INSTANT_PURCHASE"


class ConcurrentModification(ConflictError):
    kind = "CONCURRENT_MODIFICATION"

    def __init__(self, message: str = "Another bid was placed at the same time. Please try again."):
        super().__init__(message, {"suggestions": [{"action": "RETRY", "message": "Refresh and place your bid again"}]})


class DeadlineExceeded(AuctionError):
    kind = "DEADLINE_EXCEEDED"

    def __init__(self, stage: str):
        self.stage = stage
        super().__init__(f"Deadline exceeded during {stage}", {"stage": stage})
