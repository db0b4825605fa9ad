import pytest
from datetime import timedelta
from decimal import Decimal

from database.models import Account, Auction, AuctionType, Bid, BidStatus, BidType, Transaction, TransactionType
from auction import AuctionHouse, Deadline, InlineDispatcher
from auction.bidding import minimum_bid, highest_bid
from auction.errors import (
    AccountNotFound,
    AuctionNotActive,
    AuctionNotFound,
    BidTooLow,
    DeadlineExceeded,
    InsufficientBalance,
    InvalidAmount,
    InvalidProxyBid,
    SelfBidNotAllowed,
    ValidationError,
)
from auction.notifications import NotificationSink, BID_ACCEPTED, OUTBID
from conftest import NOW


def _bid(house, db, auction, bidder, price, **kwargs):
    kwargs.setdefault("now", NOW)
    return house.place_bid(db, auction.id, bidder.id, Decimal(price), **kwargs)


def test_opening_bid_at_starting_price(db_session, house, make_account, make_auction):
    """Test the first bid may equal the starting bid and takes the lead."""
    alice = make_account("alice")
    auction = make_auction()

    result = _bid(house, db_session, auction, alice, "100.00")

    bid = result["bid"]
    assert result["auction_ended"] is False
    assert result["instant_purchase"] is False
    assert bid.bid_status == BidStatus.WINNING.value
    assert bid.is_winning_bid is True
    assert house.balance.is_hold_open(db_session, bid.hold_transaction_id)
    db_session.refresh(alice)
    assert alice.balance == Decimal("900.00")


def test_opening_bid_below_starting_price(db_session, house, make_account, make_auction):
    alice = make_account("alice")
    auction = make_auction()

    with pytest.raises(BidTooLow) as exc_info:
        _bid(house, db_session, auction, alice, "99.99")
    assert exc_info.value.details["minimum_bid"] == Decimal("100.00")


def test_minimum_bid_boundary(db_session, house, make_account, make_auction):
    """Test a bid of exactly leader + increment is accepted and one cent less is not."""
    alice = make_account("alice")
    bob = make_account("bob")
    auction = make_auction()
    _bid(house, db_session, auction, alice, "100.00")

    with pytest.raises(BidTooLow) as exc_info:
        _bid(house, db_session, auction, bob, "109.99")
    details = exc_info.value.details
    assert details["minimum_bid"] == Decimal("110.00")
    assert details["current_bid"] == Decimal("100.00")

    result = _bid(house, db_session, auction, bob, "110.00")
    assert result["bid"].bid_status == BidStatus.WINNING.value


def test_new_leader_outbids_and_refunds_previous(db_session, house, sink, make_account, make_auction):
    """Test the previous leader is flipped to Outbid and gets their hold back."""
    alice = make_account("alice")
    bob = make_account("bob")
    auction = make_auction()
    first = _bid(house, db_session, auction, alice, "100.00")["bid"]
    _bid(house, db_session, auction, bob, "110.00")

    db_session.refresh(first)
    db_session.refresh(alice)
    assert first.bid_status == BidStatus.OUTBID.value
    assert first.is_winning_bid is False
    assert not house.balance.is_hold_open(db_session, first.hold_transaction_id)
    assert alice.balance == Decimal("1000.00")
    assert OUTBID in sink.kinds_for(alice.id)
    assert BID_ACCEPTED in sink.kinds_for(bob.id)


def test_single_winning_bid_while_open(db_session, house, make_account, make_auction):
    """Test at most one bid is marked winning while the auction is open."""
    bidders = [make_account(f"bidder{i}") for i in range(4)]
    auction = make_auction()
    price = Decimal("100.00")
    for bidder in bidders + bidders[:2]:
        _bid(house, db_session, auction, bidder, price)
        price += Decimal("10.00")

    winning = db_session.query(Bid).filter(Bid.auction_id == auction.id, Bid.is_winning_bid.is_(True)).all()
    assert len(winning) == 1
    assert winning[0].price == price - Decimal("10.00")
    open_holds = db_session.query(Transaction).filter(
        Transaction.auction_id == auction.id,
        Transaction.type == TransactionType.BID_HOLD.value,
        Transaction.is_held.is_(True),
    ).count()
    assert open_holds == 1


def test_rebid_swaps_hold(db_session, house, make_account, make_auction, assert_ledger_consistent):
    """Test raising your own bid releases the old hold and holds the new price on one row."""
    alice = make_account("alice")
    auction = make_auction()
    first = _bid(house, db_session, auction, alice, "100.00")["bid"]
    old_hold = first.hold_transaction_id

    second = _bid(house, db_session, auction, alice, "150.00")["bid"]

    assert second.id == first.id
    assert second.hold_transaction_id != old_hold
    assert not house.balance.is_hold_open(db_session, old_hold)
    db_session.refresh(alice)
    assert alice.balance == Decimal("850.00")
    assert db_session.query(Bid).filter(Bid.auction_id == auction.id).count() == 1
    assert_ledger_consistent()


def test_self_bid_rejected(db_session, house, seller, make_auction):
    house.balance.deposit(db_session, seller.id, "500.00")
    auction = make_auction()
    with pytest.raises(SelfBidNotAllowed):
        _bid(house, db_session, auction, seller, "100.00")


def test_ended_auction_rejects_bids(db_session, house, make_account, make_auction):
    alice = make_account("alice")
    auction = make_auction(is_soldout=True)
    with pytest.raises(AuctionNotActive):
        _bid(house, db_session, auction, alice, "100.00")


def test_timed_auction_window(db_session, house, make_account, make_auction):
    """Test timed auctions only accept bids inside their start/end window."""
    alice = make_account("alice")
    auction = make_auction(auction_type=AuctionType.TIMED.value)

    with pytest.raises(AuctionNotActive):
        _bid(house, db_session, auction, alice, "100.00", now=auction.auction_start_date - timedelta(seconds=1))
    with pytest.raises(AuctionNotActive):
        _bid(house, db_session, auction, alice, "100.00", now=auction.auction_end_date + timedelta(seconds=1))

    result = _bid(house, db_session, auction, alice, "100.00", now=auction.auction_end_date)
    assert result["bid"].bid_status == BidStatus.WINNING.value


def test_proxy_requires_max_bid(db_session, house, make_account, make_auction):
    alice = make_account("alice")
    auction = make_auction()
    with pytest.raises(InvalidProxyBid):
        _bid(house, db_session, auction, alice, "100.00", bid_type=BidType.PROXY.value)
    with pytest.raises(InvalidProxyBid):
        _bid(house, db_session, auction, alice, "100.00", bid_type=BidType.PROXY.value, max_bid=Decimal("90.00"))


def test_invalid_input(db_session, house, make_account, make_auction):
    alice = make_account("alice")
    auction = make_auction()
    with pytest.raises(InvalidAmount):
        _bid(house, db_session, auction, alice, "0")
    with pytest.raises(ValidationError):
        _bid(house, db_session, auction, alice, "100.00", bid_type="Reserve")
    with pytest.raises(AuctionNotFound):
        house.place_bid(db_session, 9999, alice.id, Decimal("100.00"), now=NOW)
    with pytest.raises(AccountNotFound):
        house.place_bid(db_session, auction.id, 9999, Decimal("100.00"), now=NOW)


def test_insufficient_balance_leaves_no_trace(db_session, house, make_account, make_auction):
    """Test an unfunded bid is rejected and the current leader is untouched."""
    alice = make_account("alice")
    poor = make_account("poor", balance="50.00")
    auction = make_auction()
    leader = _bid(house, db_session, auction, alice, "100.00")["bid"]

    with pytest.raises(InsufficientBalance) as exc_info:
        _bid(house, db_session, auction, poor, "110.00")

    assert exc_info.value.details["shortfall"] == Decimal("60.00")
    assert db_session.query(Bid).filter(Bid.bidder_id == poor.id).count() == 0
    db_session.refresh(leader)
    assert leader.bid_status == BidStatus.WINNING.value
    assert house.balance.is_hold_open(db_session, leader.hold_transaction_id)


def test_deadline_exceeded_rolls_back(db_session, house, make_account, make_auction):
    """Test a bid that misses its deadline leaves no bid and no hold behind."""
    alice = make_account("alice")
    auction = make_auction()
    expired = Deadline(NOW - timedelta(seconds=1), clock=lambda: NOW)

    with pytest.raises(DeadlineExceeded):
        _bid(house, db_session, auction, alice, "100.00", deadline=expired)

    db_session.refresh(alice)
    assert alice.balance == Decimal("1000.00")
    assert db_session.query(Bid).count() == 0
    assert db_session.query(Transaction).filter(Transaction.type == TransactionType.BID_HOLD.value).count() == 0


class ExplodingSink(NotificationSink):
    def send(self, event):
        raise ConnectionError("socket room unavailable")


def test_notification_failure_does_not_fail_bid(db_session, no_sleep_policy, make_account, make_auction):
    """Test a broken notification transport never fails the bid."""
    house = AuctionHouse(sink=ExplodingSink(), dispatcher=InlineDispatcher(), retry_policy=no_sleep_policy)
    alice = make_account("alice")
    auction = make_auction()

    result = house.place_bid(db_session, auction.id, alice.id, Decimal("100.00"), now=NOW)

    assert result["bid"].bid_status == BidStatus.WINNING.value


def test_minimum_bid_helper(db_session, make_account, make_auction):
    auction = make_auction(starting_bid=Decimal("50.00"), bid_increment=Decimal("5.00"))
    assert minimum_bid(auction, None) == Decimal("50.00")
    assert highest_bid(db_session, auction.id) is None

    bidder = make_account("alice")
    db_session.add(Bid(auction_id=auction.id, bidder_id=bidder.id, price=Decimal("70.00"), placed_at=NOW))
    db_session.commit()
    assert minimum_bid(auction, highest_bid(db_session, auction.id)) == Decimal("75.00")


def test_list_bids(db_session, house, make_account, make_auction):
    alice = make_account("alice")
    bob = make_account("bob")
    auction = make_auction()
    _bid(house, db_session, auction, alice, "100.00")
    _bid(house, db_session, auction, bob, "120.00")

    bids = house.list_bids(db_session, auction.id)
    assert [b.bidder_id for b in bids] == [bob.id, alice.id]
    with pytest.raises(AuctionNotFound):
        house.list_bids(db_session, 9999)
    assert db_session.get(Account, alice.id) is not None
    assert db_session.get(Auction, auction.id).is_soldout is False
