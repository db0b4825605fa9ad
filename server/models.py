from pydantic import BaseModel
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Dict, Any


class AuthRequest(BaseModel):
    username: str
    password: str


class AuthResponse(BaseModel):
    token: str


class CreateAccountRequest(BaseModel):
    username: str
    email: Optional[str] = None


class AccountResponse(BaseModel):
    id: int
    username: str
    email: Optional[str]
    is_admin: bool
    balance: Decimal

    model_config = {"from_attributes": True}


class CreateAuctionRequest(BaseModel):
    title: str
    description: Optional[str] = None
    auction_type: str = "Timed"
    starting_bid: Decimal
    reserve_price: Decimal = Decimal("0")
    instant_purchase_price: Optional[Decimal] = None
    bid_increment: Optional[Decimal] = None
    commission: Decimal = Decimal("0")
    auction_start_date: Optional[datetime] = None
    auction_end_date: Optional[datetime] = None


class AuctionResponse(BaseModel):
    id: int
    seller_id: int
    title: str
    description: Optional[str]
    auction_type: str
    starting_bid: Decimal
    reserve_price: Decimal
    instant_purchase_price: Optional[Decimal]
    bid_increment: Decimal
    commission: Decimal
    auction_start_date: Optional[datetime]
    auction_end_date: Optional[datetime]
    is_soldout: bool
    sold_to: Optional[int]
    final_price: Optional[Decimal]
    auction_end_reason: Optional[str]
    outcome: Optional[str]
    auction_ended_at: Optional[datetime]
    settlement_completed: bool
    commission_amount: Decimal
    seller_amount: Optional[Decimal]

    model_config = {"from_attributes": True}


class PlaceBidRequest(BaseModel):
    price: Decimal
    bid_type: str = "Manual"
    max_bid: Optional[Decimal] = None


class BidResponse(BaseModel):
    id: int
    auction_id: int
    bidder_id: int
    price: Decimal
    bid_type: str
    max_bid: Optional[Decimal]
    is_winning_bid: bool
    bid_status: str
    lost_reason: Optional[str]
    placed_at: datetime

    model_config = {"from_attributes": True}


class PlaceBidResponse(BaseModel):
    bid: BidResponse
    auction_ended: bool
    instant_purchase: bool
    final_price: Optional[Decimal] = None
    warning: Optional[str] = None


class EndAuctionRequest(BaseModel):
    reason: str = "admin_ended"


class WinnerResponse(BaseModel):
    bid_id: int
    bidder_id: int
    price: Decimal


class EndAuctionResponse(BaseModel):
    auction_id: int
    outcome: str
    reason: str
    winner: Optional[WinnerResponse]
    final_price: Optional[Decimal]
    settlement_success: bool
    settlement_errors: List[str]


class SweepResponse(BaseModel):
    processed_count: int
    results: List[Dict[str, Any]]
    deadline_exceeded: bool


class ProxyUpdateRequest(BaseModel):
    max_bid: Decimal


class ProxySummaryItem(BaseModel):
    bid_id: int
    bidder_id: int
    current_bid: Decimal
    max_bid: Decimal
    remaining_capacity: Decimal
    bid_status: str
    is_winning_bid: bool


class BalanceResponse(BaseModel):
    total: Decimal
    held: Decimal
    available: Decimal
    held_transactions: int


class DepositRequest(BaseModel):
    amount: Decimal
    method: str = "DEMO_CARD"


class TransactionResponse(BaseModel):
    id: int
    type: str
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    status: str
    description: str
    payment_method: str
    payment_reference: Optional[str]
    auction_id: Optional[int]
    bid_id: Optional[int]
    is_held: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class TransactionHistoryResponse(BaseModel):
    transactions: List[TransactionResponse]
    total_pages: int
    current_page: int
    total: int


class SettlementBid(BaseModel):
    bid_id: int
    bidder_id: int
    price: Decimal
    bid_status: str
    has_open_hold: bool


class SettlementStatusResponse(BaseModel):
    auction_id: int
    is_soldout: bool
    outcome: Optional[str]
    auction_end_reason: Optional[str]
    settlement_completed: bool
    settlement_date: Optional[datetime]
    final_price: Optional[Decimal]
    commission_amount: Decimal
    seller_amount: Optional[Decimal]
    settlement_errors: List[str]
    settlement_attempts: int = 0
    winning_bid: Optional[SettlementBid]
    bids: List[SettlementBid]
    open_holds: int
