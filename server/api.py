from fastapi import FastAPI, Depends, HTTPException, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from datetime import datetime, timedelta
from typing import Optional, List
import jwt
import os
from dotenv import load_dotenv
from database import get_db, Account, Auction, AuctionType, SessionLocal
from auction import AuctionHouse, ThreadPoolDispatcher, Deadline
from auction import config
from auction.errors import (
    AuctionError,
    AuctionNotFound,
    AccountNotFound,
    ConflictError,
    DeadlineExceeded,
    Forbidden,
    InvalidAmount,
    SelfBidNotAllowed,
    ValidationError,
)
from .models import (
    AuthRequest,
    AuthResponse,
    CreateAccountRequest,
    AccountResponse,
    CreateAuctionRequest,
    AuctionResponse,
    PlaceBidRequest,
    PlaceBidResponse,
    BidResponse,
    EndAuctionRequest,
    EndAuctionResponse,
    SweepResponse,
    ProxyUpdateRequest,
    ProxySummaryItem,
    BalanceResponse,
    DepositRequest,
    TransactionResponse,
    TransactionHistoryResponse,
    SettlementStatusResponse,
)
import logging

# Load environment variables before creating any services
load_dotenv()

logger = logging.getLogger(__name__)

app = FastAPI()
SECRET_KEY = os.getenv("SECRET_KEY", "change-me-in-production")

BID_DEADLINE_SECONDS = 10
SWEEP_DEADLINE_SECONDS = 120

auction_house = AuctionHouse(dispatcher=ThreadPoolDispatcher(), session_factory=SessionLocal)


def get_auction_house() -> AuctionHouse:
    return auction_house


def _status_code_for(error: AuctionError) -> int:
    if isinstance(error, (AuctionNotFound, AccountNotFound)):
        return 404
    if isinstance(error, (SelfBidNotAllowed, Forbidden)):
        return 403
    if isinstance(error, ConflictError):
        return 409
    if isinstance(error, DeadlineExceeded):
        return 504
    return 400


@app.exception_handler(AuctionError)
def auction_error_handler(request: Request, exc: AuctionError):
    status_code = _status_code_for(exc)
    if status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def verify_token(authorization: str = Header(None), db: Session = Depends(get_db)) -> Account:
    """Verify token from Authorization header and load its account."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid authorization header")

    token = authorization.split(" ")[1]
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=["HS256"])
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    account = db.query(Account).filter(Account.username == payload.get("sub", "")).first()
    if not account:
        raise HTTPException(status_code=401, detail="Unknown account")
    return account


def require_admin(account: Account = Depends(verify_token)) -> Account:
    if not account.is_admin:
        raise Forbidden("Admin access required")
    return account


def _get_auction(db: Session, auction_id: int) -> Auction:
    auction = db.query(Auction).filter(Auction.id == auction_id).first()
    if not auction:
        raise AuctionNotFound(auction_id)
    return auction


@app.post("/auth", response_model=AuthResponse)
def auth(request: AuthRequest, db: Session = Depends(get_db)):
    """Authenticate an account and return an API token."""
    # Simplified auth - in production, verify credentials properly
    # For now, accept any password for an existing account
    account = db.query(Account).filter(Account.username == request.username).first()
    if not account:
        raise HTTPException(status_code=401, detail="Unknown account")
    token = jwt.encode(
        {"sub": account.username, "exp": datetime.utcnow() + timedelta(days=30)},
        SECRET_KEY,
        algorithm="HS256"
    )
    return AuthResponse(token=token)


@app.post("/accounts", response_model=AccountResponse)
def create_account(request: CreateAccountRequest, db: Session = Depends(get_db)):
    """Register a bidder/seller account."""
    existing = db.query(Account).filter(Account.username == request.username).first()
    if existing:
        raise HTTPException(status_code=400, detail="Account already exists")

    account = Account(username=request.username, email=request.email)
    db.add(account)
    db.commit()
    db.refresh(account)
    logger.info(f"Account {account.id} created for {account.username}")
    return AccountResponse.model_validate(account)


@app.get("/accounts/me", response_model=AccountResponse)
def get_me(account: Account = Depends(verify_token)):
    return AccountResponse.model_validate(account)


@app.post("/auctions", response_model=AuctionResponse)
def create_auction(request: CreateAuctionRequest, db: Session = Depends(get_db), account: Account = Depends(verify_token)):
    """List an item for auction."""
    try:
        auction_type = AuctionType(request.auction_type).value
    except ValueError:
        raise ValidationError(f"Unknown auction type: {request.auction_type}", {"auction_type": request.auction_type})

    if request.starting_bid <= 0:
        raise InvalidAmount("Starting bid must be positive", {"starting_bid": request.starting_bid})
    if request.reserve_price and request.reserve_price < request.starting_bid:
        raise InvalidAmount("Reserve price cannot be lower than the starting bid", {
            "reserve_price": request.reserve_price,
            "starting_bid": request.starting_bid,
        })
    if request.instant_purchase_price is not None and request.instant_purchase_price <= request.starting_bid:
        raise InvalidAmount("Instant purchase price must be above the starting bid", {
            "instant_purchase_price": request.instant_purchase_price,
            "starting_bid": request.starting_bid,
        })
    if auction_type == AuctionType.TIMED.value and not request.auction_end_date:
        raise ValidationError("Timed auctions need an end date")
    if (request.auction_start_date and request.auction_end_date
            and request.auction_end_date <= request.auction_start_date):
        raise ValidationError("Auction end date must be after its start date")

    auction = Auction(
        seller_id=account.id,
        title=request.title,
        description=request.description,
        auction_type=auction_type,
        starting_bid=request.starting_bid,
        reserve_price=request.reserve_price or 0,
        instant_purchase_price=request.instant_purchase_price,
        bid_increment=request.bid_increment or config.DEFAULT_BID_INCREMENT,
        commission=request.commission,
        auction_start_date=request.auction_start_date,
        auction_end_date=request.auction_end_date,
    )
    db.add(auction)
    db.commit()
    db.refresh(auction)
    logger.info(f"Auction {auction.id} listed by account {account.id}")
    return AuctionResponse.model_validate(auction)


@app.get("/auctions/{auction_id}", response_model=AuctionResponse)
def get_auction(auction_id: int, db: Session = Depends(get_db), account: Account = Depends(verify_token)):
    return AuctionResponse.model_validate(_get_auction(db, auction_id))


@app.post("/auctions/process-expired", response_model=SweepResponse)
def process_expired(
    db: Session = Depends(get_db),
    admin: Account = Depends(require_admin),
    house: AuctionHouse = Depends(get_auction_house),
):
    """Close expired auctions. Meant for cron or the admin CLI."""
    result = house.process_expired_auctions(db, deadline=Deadline.after(SWEEP_DEADLINE_SECONDS))
    return SweepResponse(**result)


@app.post("/auctions/{auction_id}/bids", response_model=PlaceBidResponse)
def place_bid(
    auction_id: int,
    request: PlaceBidRequest,
    db: Session = Depends(get_db),
    account: Account = Depends(verify_token),
    house: AuctionHouse = Depends(get_auction_house),
):
    result = house.place_bid(
        db,
        auction_id,
        account.id,
        request.price,
        bid_type=request.bid_type,
        max_bid=request.max_bid,
        deadline=Deadline.after(BID_DEADLINE_SECONDS),
    )
    db.refresh(result["bid"])
    return PlaceBidResponse(
        bid=BidResponse.model_validate(result["bid"]),
        auction_ended=result["auction_ended"],
        instant_purchase=result["instant_purchase"],
        final_price=result["final_price"],
        warning=result["warning"],
    )


@app.get("/auctions/{auction_id}/bids", response_model=List[BidResponse])
def list_bids(
    auction_id: int,
    db: Session = Depends(get_db),
    account: Account = Depends(verify_token),
    house: AuctionHouse = Depends(get_auction_house),
):
    return [BidResponse.model_validate(b) for b in house.list_bids(db, auction_id)]


@app.post("/auctions/{auction_id}/end", response_model=EndAuctionResponse)
def end_auction(
    auction_id: int,
    request: Optional[EndAuctionRequest] = None,
    db: Session = Depends(get_db),
    admin: Account = Depends(require_admin),
    house: AuctionHouse = Depends(get_auction_house),
):
    """End an auction now (admin)."""
    reason = request.reason if request else "admin_ended"
    if reason not in ("admin_ended", "time_expired"):
        raise ValidationError(f"Unsupported end reason: {reason}", {"reason": reason})

    result = house.end_auction(db, auction_id, reason=reason, actor_id=admin.id)
    settlement = result["settlement"]
    return EndAuctionResponse(
        auction_id=result["auction_id"],
        outcome=result["outcome"],
        reason=result["reason"],
        winner=result["winner"],
        final_price=result["final_price"],
        settlement_success=settlement.get("success", False),
        settlement_errors=[str(e) for e in settlement.get("errors", [])],
    )


@app.get("/auctions/{auction_id}/settlement", response_model=SettlementStatusResponse)
def settlement_status(
    auction_id: int,
    db: Session = Depends(get_db),
    account: Account = Depends(verify_token),
    house: AuctionHouse = Depends(get_auction_house),
):
    auction = _get_auction(db, auction_id)
    if not account.is_admin and account.id not in (auction.seller_id, auction.sold_to):
        raise Forbidden("Only the seller, the buyer or an admin can view settlement details")
    return SettlementStatusResponse(**house.settlement_status(db, auction_id))


@app.get("/auctions/{auction_id}/proxy", response_model=List[ProxySummaryItem])
def proxy_summary(
    auction_id: int,
    db: Session = Depends(get_db),
    account: Account = Depends(verify_token),
    house: AuctionHouse = Depends(get_auction_house),
):
    return [ProxySummaryItem(**item) for item in house.proxy_summary(db, auction_id)]


@app.put("/auctions/{auction_id}/proxy", response_model=BidResponse)
def update_proxy(
    auction_id: int,
    request: ProxyUpdateRequest,
    db: Session = Depends(get_db),
    account: Account = Depends(verify_token),
    house: AuctionHouse = Depends(get_auction_house),
):
    result = house.update_proxy_max(db, auction_id, account.id, request.max_bid)
    return BidResponse.model_validate(result["bid"])


@app.delete("/auctions/{auction_id}/proxy", response_model=BidResponse)
def cancel_proxy(
    auction_id: int,
    db: Session = Depends(get_db),
    account: Account = Depends(verify_token),
    house: AuctionHouse = Depends(get_auction_house),
):
    bid = house.cancel_proxy(db, auction_id, account.id)
    db.refresh(bid)
    return BidResponse.model_validate(bid)


@app.get("/balance", response_model=BalanceResponse)
def get_balance(
    db: Session = Depends(get_db),
    account: Account = Depends(verify_token),
    house: AuctionHouse = Depends(get_auction_house),
):
    return BalanceResponse(**house.get_balance_info(db, account.id))


@app.post("/balance/deposit", response_model=TransactionResponse)
def deposit(
    request: DepositRequest,
    db: Session = Depends(get_db),
    account: Account = Depends(verify_token),
    house: AuctionHouse = Depends(get_auction_house),
):
    """Simulated payment intake."""
    txn = house.add_balance(db, account.id, request.amount, request.method)
    db.refresh(txn)
    return TransactionResponse.model_validate(txn)


@app.get("/balance/transactions", response_model=TransactionHistoryResponse)
def transaction_history(
    page: int = 1,
    limit: int = 20,
    type: Optional[str] = None,
    db: Session = Depends(get_db),
    account: Account = Depends(verify_token),
    house: AuctionHouse = Depends(get_auction_house),
):
    if page < 1 or limit < 1 or limit > 100:
        raise ValidationError("page must be >= 1 and limit between 1 and 100", {"page": page, "limit": limit})
    history = house.transaction_history(db, account.id, page=page, limit=limit, type=type)
    return TransactionHistoryResponse(
        transactions=[TransactionResponse.model_validate(t) for t in history["transactions"]],
        total_pages=history["total_pages"],
        current_page=history["current_page"],
        total=history["total"],
    )


@app.post("/admin/integrity")
def run_integrity(
    db: Session = Depends(get_db),
    admin: Account = Depends(require_admin),
    house: AuctionHouse = Depends(get_auction_house),
):
    """Run the integrity sweep now and return its report."""
    return house.run_integrity_sweep(db)
