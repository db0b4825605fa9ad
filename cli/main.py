#!/usr/bin/env python3
import click
from decimal import Decimal, InvalidOperation
from .client import AuctionClient
from .config import save_token, clear_token, save_timezone
import pytz
import sys


def parse_amount(value: str) -> Decimal:
    """Parse "$1,250.00" style input into a Decimal."""
    amount = Decimal(value.replace("$", "").replace(",", "").strip())
    if not amount.is_finite():
        raise InvalidOperation(value)
    return amount


def money(value) -> str:
    if value is None:
        return "N/A"
    return f"${Decimal(str(value)):,.2f}"


def print_table(headers, rows, min_widths=None):
    """Print rows as a box-drawn table."""
    col_widths = [len(h) for h in headers]
    for row in rows:
        for i, value in enumerate(row):
            col_widths[i] = max(col_widths[i], len(str(value)))
    if min_widths:
        col_widths = [max(w, m) for w, m in zip(col_widths, min_widths)]

    def build_separator(left, middle, right):
        return left + middle.join("─" * (w + 2) for w in col_widths) + right

    click.echo(build_separator("┌", "┬", "┐"))
    click.echo("│ " + " │ ".join(f"{headers[i]:<{col_widths[i]}}" for i in range(len(headers))) + " │")
    click.echo(build_separator("├", "┼", "┤"))
    for row in rows:
        click.echo("│ " + " │ ".join(f"{str(row[i]):<{col_widths[i]}}" for i in range(len(row))) + " │")
    click.echo(build_separator("└", "┴", "┘"))


@click.group()
def cli():
    """Antique Auction Marketplace CLI"""
    pass


@cli.command()
@click.option("--username", prompt="Username")
@click.option("--password", prompt="Password", hide_input=True)
def auth(username, password):
    """Authenticate with the server."""
    try:
        client = AuctionClient()
        token = client.authenticate(username, password)
        save_token(token)
        click.echo("Authentication successful!")
    except Exception as e:
        click.echo(f"Authentication failed: {e}", err=True)
        sys.exit(1)


@cli.command()
def logout():
    """Forget the stored token."""
    clear_token()
    click.echo("Logged out.")


@cli.command()
@click.argument("username")
@click.option("--email", default=None)
def register(username, email):
    """Create a new account."""
    try:
        account = AuctionClient().register(username, email)
        click.echo(f"Account {account['id']} created for {account['username']}")
    except Exception as e:
        click.echo(f"Registration failed: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("tz_name")
def timezone(tz_name):
    """Set the timezone used to display dates."""
    if tz_name not in pytz.all_timezones_set:
        click.echo(f"Unknown timezone: {tz_name}", err=True)
        sys.exit(1)
    save_timezone(tz_name)
    click.echo(f"Timezone set to {tz_name}")


@cli.command()
def balance():
    """Show total, held and available balance."""
    try:
        info = AuctionClient().get_balance()
        click.echo(f"Total:     {money(info['total'])}")
        click.echo(f"Held:      {money(info['held'])} ({info['held_transactions']} open hold(s))")
        click.echo(f"Available: {money(info['available'])}")
    except Exception as e:
        click.echo(f"Failed to get balance: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("amount", type=str)
@click.option("--method", type=click.Choice(["DEMO_CARD", "DEMO_BANK"]), default="DEMO_CARD")
def deposit(amount, method):
    """Add funds to your balance (simulated payment)."""
    try:
        client = AuctionClient()
        txn = client.deposit(parse_amount(amount), method)
        click.echo(f"Deposited {money(txn['amount'])} (ref {txn['payment_reference']})")
        click.echo(f"New balance: {money(txn['balance_after'])}")
    except InvalidOperation:
        click.echo(f"Invalid amount format: {amount}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Deposit failed: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option("--page", type=int, default=1)
@click.option("--limit", type=int, default=20)
@click.option("--type", "txn_type", default=None, help="Filter by transaction type, e.g. BID_HOLD")
def history(page, limit, txn_type):
    """Show your transaction history, newest first."""
    try:
        client = AuctionClient()
        data = client.get_transactions(page=page, limit=limit, type=txn_type)
        if not data["transactions"]:
            click.echo("No transactions found.")
            return

        rows = []
        for txn in data["transactions"]:
            rows.append((
                str(txn["id"]),
                client.to_local_time(txn["created_at"]),
                txn["type"],
                money(txn["amount"]),
                money(txn["balance_after"]),
                str(txn["auction_id"] or "-"),
                "held" if txn["is_held"] else "",
            ))
        print_table(["ID", "When", "Type", "Amount", "Balance", "Auction", "Hold"], rows)
        click.echo(f"Page {data['current_page']} of {data['total_pages']} ({data['total']} transactions)")
    except Exception as e:
        click.echo(f"Failed to get history: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("auction_id", type=int)
@click.argument("price", type=str)
@click.option("--max", "max_bid", type=str, default=None, help="Place a proxy bid with this ceiling")
def bid(auction_id, price, max_bid):
    """Place a bid. With --max the bid is a proxy bid."""
    try:
        price_decimal = parse_amount(price)
        max_decimal = parse_amount(max_bid) if max_bid else None
    except InvalidOperation:
        click.echo(f"Invalid amount format: {price if max_bid is None else max_bid}", err=True)
        sys.exit(1)

    try:
        client = AuctionClient()
        result = client.place_bid(
            auction_id,
            price_decimal,
            bid_type="Proxy" if max_decimal is not None else "Manual",
            max_bid=max_decimal,
        )
        placed = result["bid"]
        click.echo(f"Bid {placed['id']} placed at {money(placed['price'])} ({placed['bid_status']})")
        if placed.get("max_bid"):
            click.echo(f"Proxy ceiling: {money(placed['max_bid'])}")
        if result["instant_purchase"]:
            click.echo(f"Instant purchase! You won at {money(result['final_price'])}")
        elif result["auction_ended"]:
            click.echo(f"The auction has ended ({placed.get('lost_reason') or 'closed'})")
        if result.get("warning"):
            click.echo(f"Warning: {result['warning']}", err=True)
    except Exception as e:
        click.echo(f"Failed to place bid: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("auction_id", type=int)
@click.argument("max_bid", type=str)
def proxy(auction_id, max_bid):
    """Raise or lower the ceiling of your proxy bid."""
    try:
        updated = AuctionClient().update_proxy(auction_id, parse_amount(max_bid))
        click.echo(f"Proxy ceiling for bid {updated['id']} is now {money(updated['max_bid'])}")
    except InvalidOperation:
        click.echo(f"Invalid amount format: {max_bid}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Failed to update proxy bid: {e}", err=True)
        sys.exit(1)


@cli.command("cancel-proxy")
@click.argument("auction_id", type=int)
def cancel_proxy(auction_id):
    """Turn your proxy bid into a plain bid at its current price."""
    try:
        updated = AuctionClient().cancel_proxy(auction_id)
        click.echo(f"Bid {updated['id']} is now a manual bid at {money(updated['price'])}")
    except Exception as e:
        click.echo(f"Failed to cancel proxy bid: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("auction_id", type=int)
def status(auction_id):
    """Show an auction and its bids."""
    try:
        client = AuctionClient()
        auction = client.get_auction(auction_id)
        bids = client.list_bids(auction_id)

        click.echo(f"Auction {auction['id']}: {auction['title']}")
        click.echo(f"Type: {auction['auction_type']}")
        click.echo(f"Starting bid: {money(auction['starting_bid'])}  Increment: {money(auction['bid_increment'])}")
        if auction.get("instant_purchase_price"):
            click.echo(f"Instant purchase: {money(auction['instant_purchase_price'])}")
        if auction.get("auction_end_date"):
            click.echo(
                f"Ends at: {client.to_local_time(auction['auction_end_date'])} "
                f"({client.time_until_auction_end(auction['auction_end_date'])})"
            )

        if auction["is_soldout"]:
            click.echo(f"Outcome: {auction['outcome']} ({auction['auction_end_reason']})")
            if auction.get("final_price"):
                click.echo(f"Final price: {money(auction['final_price'])}")
            click.echo(f"Settled: {'yes' if auction['settlement_completed'] else 'no'}")

        if not bids:
            click.echo("No bids yet.")
            return

        rows = [
            (
                str(b["id"]),
                str(b["bidder_id"]),
                money(b["price"]),
                b["bid_type"],
                money(b["max_bid"]) if b.get("max_bid") else "-",
                b["bid_status"],
                b.get("lost_reason") or "",
                client.to_local_time_no_year(b["placed_at"]),
            )
            for b in bids
        ]
        print_table(["ID", "Bidder", "Price", "Type", "Max", "Status", "Reason", "Placed"], rows)
    except Exception as e:
        click.echo(f"Failed to get status: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("auction_id", type=int)
@click.option("--reason", type=click.Choice(["admin_ended", "time_expired"]), default="admin_ended")
def end(auction_id, reason):
    """End an auction now and settle it (admin)."""
    try:
        result = AuctionClient().end_auction(auction_id, reason)
        click.echo(f"Auction {result['auction_id']} ended: {result['outcome']}")
        if result.get("winner"):
            winner = result["winner"]
            click.echo(f"Winner: account {winner['bidder_id']} at {money(winner['price'])}")
        if result["settlement_success"]:
            click.echo("Settlement completed.")
        else:
            for error in result["settlement_errors"]:
                click.echo(f"Settlement error: {error}", err=True)
    except Exception as e:
        click.echo(f"Failed to end auction: {e}", err=True)
        sys.exit(1)


@cli.command()
def sweep():
    """Close every expired auction now (admin)."""
    try:
        result = AuctionClient().process_expired()
        click.echo(f"Processed: {result['processed_count']}")
        for item in result["results"]:
            click.echo(f"  Auction {item['auction_id']}: {item['action']}")
        if result["deadline_exceeded"]:
            click.echo("Sweep stopped at its deadline; run it again to continue.", err=True)
    except Exception as e:
        click.echo(f"Sweep failed: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("auction_id", type=int)
def settlement(auction_id):
    """Show settlement details for an auction."""
    try:
        info = AuctionClient().get_settlement(auction_id)
        click.echo(f"Completed: {'yes' if info['settlement_completed'] else 'no'}")
        click.echo(f"Final price: {money(info['final_price'])}")
        click.echo(f"Commission: {money(info['commission_amount'])}")
        click.echo(f"Seller amount: {money(info['seller_amount'])}")
        click.echo(f"Open holds: {info['open_holds']}")
        for error in info["settlement_errors"]:
            click.echo(f"Error: {error}", err=True)
    except Exception as e:
        click.echo(f"Failed to get settlement: {e}", err=True)
        sys.exit(1)


@cli.command()
def integrity():
    """Run the integrity sweep (admin)."""
    try:
        report = AuctionClient().run_integrity()
        system = report["system"]
        click.echo(f"Success: {report['success']}")
        click.echo(f"Expired holds released: {len(report['expired_holds']['cleaned_holds'])}")
        for check in system["checks"]:
            click.echo(f"  {check['name']}: {check['count']}")
    except Exception as e:
        click.echo(f"Integrity sweep failed: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    cli()
