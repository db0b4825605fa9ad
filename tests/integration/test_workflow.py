import pytest
import threading
from datetime import datetime, timedelta
from decimal import Decimal
from freezegun import freeze_time

from database.models import (
    Account,
    Auction,
    AuctionEndReason,
    AuctionOutcome,
    AuctionType,
    Bid,
    BidStatus,
    BidType,
    LostReason,
    Transaction,
    TransactionType,
)
from auction.notifications import AUCTION_ENDED
from server.worker import Worker
from conftest import NOW


def _balances(db, *accounts):
    db.expire_all()
    return [db.get(Account, account.id).balance for account in accounts]


def test_manual_bidding_then_instant_purchase(client, auth_headers_for, db_session, admin, seller, make_account,
                                              make_auction, assert_ledger_consistent):
    """Test bids climb by the increment and an instant purchase closes and settles the auction."""
    alice = make_account("alice")
    bob = make_account("bob")
    carol = make_account("carol")
    auction = make_auction(instant_purchase_price=Decimal("200.00"))
    url = f"/auctions/{auction.id}/bids"

    assert client.post(url, headers=auth_headers_for(alice), json={"price": "100"}).status_code == 200
    rejected = client.post(url, headers=auth_headers_for(bob), json={"price": "105"})
    assert rejected.status_code == 400
    assert Decimal(rejected.json()["details"]["minimum_bid"]) == Decimal("110.00")
    assert client.post(url, headers=auth_headers_for(bob), json={"price": "110"}).status_code == 200
    assert _balances(db_session, alice, bob) == [Decimal("1000.00"), Decimal("890.00")]

    bought = client.post(url, headers=auth_headers_for(carol), json={"price": "200"}).json()

    assert bought["auction_ended"] is True
    assert bought["instant_purchase"] is True
    db_session.expire_all()
    auction = db_session.get(Auction, auction.id)
    assert auction.sold_to == carol.id
    assert auction.final_price == Decimal("200.00")
    assert auction.settlement_completed is True
    assert _balances(db_session, alice, bob, carol, seller, admin) == [
        Decimal("1000.00"),
        Decimal("1000.00"),
        Decimal("800.00"),
        Decimal("180.00"),
        Decimal("20.00"),
    ]
    lost = db_session.query(Bid).filter(Bid.auction_id == auction.id, Bid.bidder_id == bob.id).one()
    assert lost.lost_reason == LostReason.INSTANT_PURCHASE_BY_OTHER_BIDDER.value
    assert_ledger_consistent()


def test_proxy_answers_with_one_increment(client, auth_headers_for, db_session, make_account, make_auction):
    dora = make_account("dora")
    ed = make_account("ed")
    auction = make_auction()
    url = f"/auctions/{auction.id}/bids"

    client.post(url, headers=auth_headers_for(dora), json={"price": "100", "bid_type": "Proxy", "max_bid": "150"})
    client.post(url, headers=auth_headers_for(ed), json={"price": "120"})

    bids = client.get(url, headers=auth_headers_for(ed)).json()
    assert [(b["bidder_id"], Decimal(b["price"]), b["bid_status"]) for b in bids] == [
        (dora.id, Decimal("130.00"), BidStatus.WINNING.value),
        (ed.id, Decimal("120.00"), BidStatus.OUTBID.value),
    ]
    assert _balances(db_session, dora, ed) == [Decimal("870.00"), Decimal("1000.00")]


def test_timed_auction_expires_below_reserve(client, auth_headers_for, db_session, sink, admin, seller,
                                             make_account):
    """Test a timed auction listed over the API ends reserve-not-met at expiry."""
    bidder = make_account("bidder")

    with freeze_time("2026-03-14 12:00:00"):
        listed = client.post("/auctions", headers=auth_headers_for(seller), json={
            "title": "Edwardian inlaid writing box",
            "auction_type": "Timed",
            "starting_bid": "50",
            "reserve_price": "500",
            "bid_increment": "5",
            "commission": "10",
            "auction_start_date": "2026-03-14T00:00:00",
            "auction_end_date": "2026-03-15T12:00:00",
        }).json()
        bid = client.post(f"/auctions/{listed['id']}/bids", headers=auth_headers_for(bidder), json={"price": "60"})
        assert bid.status_code == 200
        early = client.post("/auctions/process-expired", headers=auth_headers_for(admin)).json()
        assert early["processed_count"] == 0

    with freeze_time("2026-03-15 12:00:01"):
        late_bid = client.post(f"/auctions/{listed['id']}/bids", headers=auth_headers_for(bidder),
                               json={"price": "70"})
        assert late_bid.json()["error"] == "AUCTION_NOT_ACTIVE"
        sweep = client.post("/auctions/process-expired", headers=auth_headers_for(admin)).json()

    assert sweep["processed_count"] == 1
    assert sweep["results"][0]["outcome"] == AuctionOutcome.RESERVE_NOT_MET.value
    db_session.expire_all()
    auction = db_session.get(Auction, listed["id"])
    assert auction.sold_to is None
    assert _balances(db_session, bidder, seller) == [Decimal("1000.00"), Decimal("0.00")]
    assert AUCTION_ENDED in sink.kinds_for(seller.id)
    assert AUCTION_ENDED in sink.kinds_for(bidder.id)


def test_simultaneous_instant_purchases(session_factory, db_session, house, admin, make_account, make_auction,
                                        assert_ledger_consistent):
    """Test two qualifying bids resolved on separate sessions sell exactly once, to the earlier bid."""
    first_bidder = make_account("first")
    second_bidder = make_account("second")
    auction = make_auction(instant_purchase_price=Decimal("200.00"))
    first = house.bidding.accept_bid(db_session, auction.id, first_bidder.id, Decimal("200.00"), now=NOW)
    second = house.bidding.accept_bid(db_session, auction.id, second_bidder.id, Decimal("210.00"), now=NOW)

    session_a = session_factory()
    session_b = session_factory()
    try:
        result_b = house.resolver.resolve(session_b, auction.id, second.id, now=NOW)
        result_a = house.resolver.resolve(session_a, auction.id, first.id, now=NOW)
    finally:
        session_a.close()
        session_b.close()

    assert result_b["auction_ended"] and result_a["auction_ended"]
    assert [result_a["won"], result_b["won"]] == [True, False]
    assert result_b["lost_reason"] == LostReason.CONCURRENT_INSTANT_PURCHASE_CONFLICT.value
    db_session.expire_all()
    won = db_session.query(Bid).filter(Bid.auction_id == auction.id, Bid.bid_status == BidStatus.WON.value).all()
    assert [bid.id for bid in won] == [first.id]
    assert db_session.get(Auction, auction.id).sold_to == first_bidder.id
    assert _balances(db_session, first_bidder, second_bidder) == [Decimal("800.00"), Decimal("1000.00")]
    assert_ledger_consistent()


def test_threaded_instant_purchase_race(session_factory, db_session, house, admin, make_account, make_auction,
                                        assert_ledger_consistent):
    """Test qualifying bids resolved from concurrent threads sell the lot once, to the earliest bid."""
    bidders = [make_account(f"racer{i}") for i in range(5)]
    auction = make_auction(instant_purchase_price=Decimal("200.00"))
    bids = [
        house.bidding.accept_bid(db_session, auction.id, bidder.id, Decimal("200.00") + 10 * i, now=NOW)
        for i, bidder in enumerate(bidders)
    ]
    barrier = threading.Barrier(len(bids))
    errors = []

    def race(bid_id):
        session = session_factory()
        try:
            barrier.wait(timeout=5)
            house.resolver.resolve(session, auction.id, bid_id, now=NOW)
        except Exception as e:
            errors.append(e)
        finally:
            session.close()

    threads = [threading.Thread(target=race, args=(bid.id,)) for bid in reversed(bids)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    db_session.expire_all()
    statuses = [db_session.get(Bid, bid.id).bid_status for bid in bids]
    assert statuses == [BidStatus.WON.value] + [BidStatus.LOST.value] * 4
    auction = db_session.get(Auction, auction.id)
    assert auction.is_soldout is True
    assert auction.sold_to == bidders[0].id
    deductions = db_session.query(Transaction).filter(
        Transaction.auction_id == auction.id,
        Transaction.type == TransactionType.BID_DEDUCTION.value,
    ).count()
    assert deductions == 1
    assert _balances(db_session, *bidders) == [Decimal("800.00")] + [Decimal("1000.00")] * 4
    assert_ledger_consistent()


def test_admin_ends_live_auction_like_natural_expiry(client, auth_headers_for, db_session, house, admin, seller,
                                                     make_account, make_auction):
    """Test an early admin close settles exactly like a timed auction expiring at the same price."""
    bidders = [make_account(name) for name in ("amy", "ben", "cy")]
    live = make_auction(commission=Decimal("12.5"))
    timed = make_auction(auction_type=AuctionType.TIMED.value, commission=Decimal("12.5"), title="Bracket clock")
    for price, bidder in zip(("100", "110", "125.55"), bidders):
        client.post(f"/auctions/{live.id}/bids", headers=auth_headers_for(bidder), json={"price": price})
        house.place_bid(db_session, timed.id, bidder.id, Decimal(price), now=NOW)

    ended = client.post(f"/auctions/{live.id}/end", headers=auth_headers_for(admin)).json()
    house.process_expired_auctions(db_session, now=timed.auction_end_date + timedelta(seconds=1))

    assert ended["outcome"] == AuctionOutcome.SOLD.value
    assert ended["winner"]["bidder_id"] == bidders[2].id
    db_session.expire_all()
    for auction_id in (live.id, timed.id):
        auction = db_session.get(Auction, auction_id)
        assert auction.final_price == Decimal("125.55")
        assert auction.commission_amount == Decimal("15.69")
        assert auction.seller_amount == Decimal("109.86")
        statuses = [b.bid_status for b in db_session.query(Bid).filter(Bid.auction_id == auction_id)
                    .order_by(Bid.price.desc())]
        assert statuses == [BidStatus.WON.value, BidStatus.LOST.value, BidStatus.LOST.value]
    assert _balances(db_session, *bidders) == [Decimal("1000.00"), Decimal("1000.00"), Decimal("748.90")]


def test_worker_closes_expired_auction(session_factory, db_session, house, admin, make_account, make_auction):
    """Test the background worker closes and settles an auction once its end date passes."""
    alice = make_account("alice")
    auction = make_auction(
        auction_type=AuctionType.TIMED.value,
        auction_start_date=datetime(2026, 3, 14, 0, 0, 0),
        auction_end_date=datetime(2026, 3, 14, 18, 0, 0),
    )
    house.place_bid(db_session, auction.id, alice.id, Decimal("150.00"), now=NOW)
    worker = Worker(auction_house=house, session_factory=session_factory)

    with freeze_time("2026-03-14 17:59:00"):
        worker.tick()
    db_session.expire_all()
    assert db_session.get(Auction, auction.id).is_soldout is False

    with freeze_time("2026-03-14 18:30:00"):
        worker.tick()
    db_session.expire_all()
    auction = db_session.get(Auction, auction.id)
    assert auction.is_soldout is True
    assert auction.sold_to == alice.id
    assert auction.settlement_completed is True


def test_invariants_hold_across_busy_market(db_session, house, admin, seller, make_account, make_auction,
                                            assert_ledger_consistent):
    """Test money and winner invariants over a mixed run of manual, proxy and instant bids."""
    bidders = [make_account(f"collector{i}", balance="2000.00") for i in range(5)]
    auctions = [
        make_auction(title="Lot 1"),
        make_auction(title="Lot 2", instant_purchase_price=Decimal("300.00")),
        make_auction(title="Lot 3", reserve_price=Decimal("300.00")),
    ]

    for auction in auctions:
        house.place_bid(db_session, auction.id, bidders[0].id, Decimal("100.00"),
                        bid_type=BidType.PROXY.value, max_bid=Decimal("260.00"), now=NOW)
        house.place_bid(db_session, auction.id, bidders[1].id, Decimal("110.00"),
                        bid_type=BidType.PROXY.value, max_bid=Decimal("240.00"), now=NOW)
        for bidder, price in ((bidders[2], "280.00"), (bidders[3], "300.00"), (bidders[4], "320.00")):
            db_session.expire_all()
            if db_session.get(Auction, auction.id).is_soldout:
                break
            house.place_bid(db_session, auction.id, bidder.id, Decimal(price), now=NOW)

    for auction in auctions:
        db_session.expire_all()
        if not db_session.get(Auction, auction.id).is_soldout:
            house.end_auction(db_session, auction.id, actor_id=admin.id, now=NOW)

    db_session.expire_all()
    for auction in auctions:
        auction = db_session.get(Auction, auction.id)
        winners = db_session.query(Bid).filter(Bid.auction_id == auction.id, Bid.bid_status == BidStatus.WON.value)
        assert winners.count() <= 1
        if auction.outcome == AuctionOutcome.SOLD.value:
            assert auction.commission_amount + auction.seller_amount == auction.final_price
        open_holds = db_session.query(Transaction).filter(
            Transaction.auction_id == auction.id,
            Transaction.type == TransactionType.BID_HOLD.value,
            Transaction.is_held.is_(True),
        ).count()
        assert open_holds == 0

    assert db_session.get(Auction, auctions[1].id).auction_end_reason == AuctionEndReason.INSTANT_PURCHASE.value
    assert db_session.get(Auction, auctions[2].id).outcome == AuctionOutcome.SOLD.value
    assert house.run_integrity_sweep(db_session, now=NOW)["success"] is True
    assert_ledger_consistent()
