import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from database.models import Account
from auction.errors import AuctionNotFound
from conftest import NOW


def _later(days):
    # Hold rows are stamped with the real clock
    return datetime.utcnow() + timedelta(days=days)


def _check(result, name):
    return next(check for check in result["checks"] if check["name"] == name)


def test_orphaned_hold_released(db_session, house, make_account, make_auction):
    """Test a hold no live bid points at is released while the leader's hold stays."""
    alice = make_account("alice")
    auction = make_auction()
    bid = house.place_bid(db_session, auction.id, alice.id, Decimal("100.00"), now=NOW)["bid"]
    stray = house.balance.hold_amount(db_session, alice.id, "50.00", auction_id=auction.id)

    result = house.integrity.check_auction(db_session, auction.id)

    assert result["success"] is True
    assert result["cleanup_actions"] == [{
        "type": "ORPHANED_HOLD_RELEASED",
        "transaction_id": stray.id,
        "account_id": alice.id,
        "auction_id": auction.id,
        "amount": Decimal("50.00"),
    }]
    assert house.balance.is_hold_open(db_session, bid.hold_transaction_id)
    db_session.expire_all()
    assert db_session.get(Account, alice.id).balance == Decimal("900.00")


def test_bid_without_hold_reported(db_session, house, make_account, make_auction):
    alice = make_account("alice")
    auction = make_auction()
    bid = house.place_bid(db_session, auction.id, alice.id, Decimal("100.00"), now=NOW)["bid"]
    house.balance.release_hold(db_session, bid.hold_transaction_id)

    result = house.integrity.check_auction(db_session, auction.id)

    assert [action["type"] for action in result["cleanup_actions"]] == ["BID_WITHOUT_HOLD"]
    assert result["cleanup_actions"][0]["bid_id"] == bid.id


def test_check_unknown_auction(db_session, house):
    with pytest.raises(AuctionNotFound):
        house.integrity.check_auction(db_session, 9999)


def test_cleanup_expired_holds(db_session, house, admin, make_account, make_auction):
    """Test old holds are released only once their auction has ended."""
    alice = make_account("alice")
    ended = make_auction()
    still_open = make_auction(title="Art deco mantel clock")
    house.place_bid(db_session, ended.id, alice.id, Decimal("100.00"), now=NOW)
    house.end_auction(db_session, ended.id, actor_id=admin.id, now=NOW)
    leftover = house.balance.hold_amount(db_session, alice.id, "25.00", auction_id=ended.id)
    open_bid = house.place_bid(db_session, still_open.id, alice.id, Decimal("100.00"), now=NOW)["bid"]
    unrelated = house.balance.hold_amount(db_session, alice.id, "5.00", auction_id=still_open.id)

    fresh = house.integrity.cleanup_expired_holds(db_session, days_old=7, now=_later(1))
    assert fresh["cleaned_holds"] == []

    result = house.integrity.cleanup_expired_holds(db_session, days_old=7, now=_later(8))

    assert [hold["transaction_id"] for hold in result["cleaned_holds"]] == [leftover.id]
    assert result["cleaned_holds"][0]["type"] == "EXPIRED_HOLD_RELEASED"
    assert house.balance.is_hold_open(db_session, open_bid.hold_transaction_id)
    assert house.balance.is_hold_open(db_session, unrelated.id)


def test_validate_system_releases_stale_holds(db_session, house, make_account, make_auction):
    """Test unprotected holds past the stale age are released and counted."""
    alice = make_account("alice")
    auction = make_auction()
    bid = house.place_bid(db_session, auction.id, alice.id, Decimal("100.00"), now=NOW)["bid"]
    stale = house.balance.hold_amount(db_session, alice.id, "40.00")

    result = house.integrity.validate_system(db_session, now=_later(31), stale_days=30)

    assert _check(result, "OLD_HELD_TRANSACTIONS")["count"] == 1
    assert [fix["transaction_id"] for fix in result["fixes"]] == [stale.id]
    assert house.balance.is_hold_open(db_session, bid.hold_transaction_id)
    assert _check(result, "BIDS_WITHOUT_HOLDS")["count"] == 0
    assert _check(result, "LEDGER_RECONCILIATION")["count"] == 0
    assert result["success"] is True


def test_validate_system_flags_drifted_balances(db_session, house, make_account):
    """Test accounts whose balance disagrees with the ledger or went negative are reported."""
    alice = make_account("alice", balance="100.00")
    bob = make_account("bob", balance="100.00")
    db_session.query(Account).filter(Account.id == alice.id).update({Account.balance: Decimal("150.00")})
    db_session.query(Account).filter(Account.id == bob.id).update({Account.balance: Decimal("-5.00")})
    db_session.commit()

    result = house.integrity.validate_system(db_session, now=NOW)

    negative = _check(result, "NEGATIVE_BALANCE_CHECK")
    assert negative["count"] == 1
    assert negative["accounts"][0]["id"] == bob.id
    drift = _check(result, "LEDGER_RECONCILIATION")
    assert drift["count"] == 2
    assert {a["id"]: a["ledger_balance"] for a in drift["accounts"]} == {
        alice.id: Decimal("100.00"),
        bob.id: Decimal("100.00"),
    }


def test_full_sweep(db_session, house, make_account, make_auction):
    alice = make_account("alice")
    auction = make_auction()
    house.place_bid(db_session, auction.id, alice.id, Decimal("100.00"), now=NOW)
    house.balance.hold_amount(db_session, alice.id, "30.00", auction_id=auction.id)

    result = house.run_integrity_sweep(db_session, now=NOW)

    assert result["success"] is True
    assert list(result["auctions"]) == [auction.id]
    assert result["auctions"][auction.id]["cleanup_actions"][0]["type"] == "ORPHANED_HOLD_RELEASED"
    assert result["expired_holds"]["cleaned_holds"] == []
    assert {check["name"] for check in result["system"]["checks"]} == {
        "NEGATIVE_BALANCE_CHECK",
        "OLD_HELD_TRANSACTIONS",
        "BIDS_WITHOUT_HOLDS",
        "LEDGER_RECONCILIATION",
    }
    db_session.expire_all()
    assert db_session.get(Account, alice.id).balance == Decimal("900.00")
