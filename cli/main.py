#!/usr/bin/env python3
import click
from decimal import Decimal, InvalidOperation
from .client import AuctionClient
from .config import DEFAULT_SERVER_URL, get_username, load_settings, save_session, update_settings
import pytz
import sys

AUCTION_TYPES = ["time_based", "buy_now", "dutch", "sealed"]


def _money(value) -> str:
    if value is None:
        return "-"
    return f"${Decimal(str(value)):.2f}"


def _parse_amount(value: str) -> Decimal:
    return Decimal(value.replace("$", "").replace(",", ""))


def _build_separator(left, middle, right, widths):
    return left + middle.join("─" * (w + 2) for w in widths) + right


def _print_table(headers, rows, min_widths=None):
    col_widths = [max([len(headers[i])] + [len(str(row[i])) for row in rows]) for i in range(len(headers))]
    if min_widths:
        col_widths = [max(col_widths[i], min_widths[i]) for i in range(len(headers))]

    click.echo(_build_separator("┌", "┬", "┐", col_widths))
    click.echo("│ " + " │ ".join(f"{headers[i]:<{col_widths[i]}}" for i in range(len(headers))) + " │")
    click.echo(_build_separator("├", "┼", "┤", col_widths))
    for row in rows:
        click.echo("│ " + " │ ".join(f"{str(row[i]):<{col_widths[i]}}" for i in range(len(row))) + " │")
    click.echo(_build_separator("└", "┴", "┘", col_widths))


@click.group()
def cli():
    """Auction bidding and settlement CLI"""
    pass


@cli.command()
@click.option("--username", prompt="Username")
@click.option("--password", prompt="Password", hide_input=True)
def auth(username, password):
    """Authenticate with the server."""
    try:
        client = AuctionClient()
        token = client.authenticate(username, password)
        save_session(token, username)
        click.echo(f"Authenticated as {username}.")
    except Exception as e:
        click.echo(f"Authentication failed: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option("--server", "server_url", default=None, help="Auction server base URL")
@click.option("--timezone", default=None, help="Timezone for displayed times, e.g. Europe/London")
def configure(server_url, timezone):
    """Set the server URL and display timezone, then show the stored settings."""
    if timezone is not None:
        try:
            pytz.timezone(timezone)
        except pytz.UnknownTimeZoneError:
            click.echo(f"Unknown timezone: {timezone}", err=True)
            sys.exit(1)
    changes = {k: v for k, v in {"server_url": server_url, "timezone": timezone}.items() if v is not None}
    if changes:
        update_settings(**changes)
    settings = load_settings()
    click.echo(f"Server: {settings.get('server_url', DEFAULT_SERVER_URL)}")
    click.echo(f"Timezone: {settings.get('timezone', 'UTC')}")
    click.echo(f"User: {settings.get('username', 'not authenticated')}")


@cli.command()
@click.argument("product_ref")
@click.argument("title")
@click.option("--type", "auction_type", type=click.Choice(AUCTION_TYPES), default="time_based", show_default=True)
@click.option("--starting-price", default="0")
@click.option("--start", "start_time", required=True, help="Local time, YYYY-MM-DD HH:MM")
@click.option("--end", "end_time", required=True, help="Local time, YYYY-MM-DD HH:MM")
@click.option("--increment", default="1", show_default=True)
@click.option("--reserve", default=None)
@click.option("--buy-now", "buy_now_price", default=None)
@click.option("--dutch-start", default=None)
@click.option("--dutch-end", default=None)
@click.option("--dutch-step", default=None, help="Price drop per interval")
@click.option("--dutch-interval", type=int, default=None, help="Seconds between price drops")
@click.option("--max-bids", type=int, default=None, help="Bid limit per user")
@click.option("--extend-minutes", type=int, default=5, show_default=True)
@click.option("--max-extensions", type=int, default=None)
def create(product_ref, title, auction_type, starting_price, start_time, end_time, increment, reserve,
           buy_now_price, dutch_start, dutch_end, dutch_step, dutch_interval, max_bids, extend_minutes,
           max_extensions):
    """Create a draft auction."""
    try:
        client = AuctionClient()
        optional_amounts = {
            "reserve_price": reserve,
            "buy_now_price": buy_now_price,
            "dutch_start_price": dutch_start,
            "dutch_end_price": dutch_end,
            "dutch_decrement_amount": dutch_step,
        }
        payload = {
            "product_ref": product_ref,
            "title": title,
            "auction_type": auction_type,
            "starting_price": str(_parse_amount(starting_price)),
            "start_time": client.to_utc_iso(start_time),
            "end_time": client.to_utc_iso(end_time),
            "min_bid_increment": str(_parse_amount(increment)),
            "dutch_decrement_interval": dutch_interval,
            "max_bids_per_user": max_bids,
            "auto_extend_minutes": extend_minutes,
            "max_extensions": max_extensions,
        }
        for field, value in optional_amounts.items():
            payload[field] = str(_parse_amount(value)) if value is not None else None
        result = client.create_auction(payload)
        click.echo(f"Draft auction {result['id']} created: {result['title']}")
        click.echo(f"Starts at: {client.to_local_time(result['start_time'])}")
        click.echo(f"Ends at: {client.to_local_time(result['end_time'])}")
        click.echo(f"Run 'auction publish {result['id']}' to open it.")
    except (InvalidOperation, ValueError) as e:
        click.echo(f"Invalid input: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Failed to create auction: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("auction_id", type=int)
def publish(auction_id):
    """Publish a draft auction."""
    try:
        result = AuctionClient().publish(auction_id)
        click.echo(f"Auction {auction_id} is now {result['status']}.")
    except Exception as e:
        click.echo(f"Failed to publish auction: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("auction_id", type=int)
def cancel(auction_id):
    """Cancel an active auction."""
    try:
        AuctionClient().cancel(auction_id)
        click.echo(f"Auction {auction_id} cancelled.")
    except Exception as e:
        click.echo(f"Failed to cancel auction: {e}", err=True)
        sys.exit(1)


@cli.command("list")
@click.option("--status", type=click.Choice(["draft", "active", "ended", "cancelled", "sold"]), default=None,
              help="Only auctions in this status (default: active and not yet ended)")
@click.option("--seller", "seller_id", default=None, help="Only auctions from this seller")
@click.option("--mine", is_flag=True, help="Only your own auctions, drafts included")
def list_auctions(status, seller_id, mine):
    """List auctions."""
    try:
        if mine:
            seller_id = get_username()
            if seller_id is None:
                raise ValueError("Not authenticated. Run 'auction auth' first.")
        client = AuctionClient()
        auctions = client.list_auctions(status=status, seller_id=seller_id)
        if not auctions:
            click.echo("No matching auctions." if status or seller_id else "No active auctions.")
            return

        rows = []
        for auction in auctions:
            title = auction['title']
            if len(title) > 40:
                title = title[:37] + "..."
            rows.append((
                str(auction['id']),
                auction['auction_type'],
                auction['status'],
                _money(auction['current_price']),
                _money(auction.get('buy_now_price')),
                str(auction['bid_count']),
                client.time_until(auction['end_time']),
                title,
            ))
        _print_table(
            ["ID", "Type", "Status", "Price", "Buy Now", "Bids", "End", "Title"],
            rows,
            min_widths=[4, 10, 6, 8, 8, 4, 6, 20],
        )
    except Exception as e:
        click.echo(f"Failed to list auctions: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("auction_id", type=int)
@click.option("--title", default=None)
@click.option("--product", "product_ref", default=None)
@click.option("--starting-price", default=None)
@click.option("--start", "start_time", default=None, help="Local time, YYYY-MM-DD HH:MM")
@click.option("--end", "end_time", default=None, help="Local time, YYYY-MM-DD HH:MM")
@click.option("--increment", default=None)
@click.option("--reserve", default=None)
@click.option("--buy-now", "buy_now_price", default=None)
def edit(auction_id, title, product_ref, starting_price, start_time, end_time, increment, reserve,
         buy_now_price):
    """Edit a draft auction before publishing it."""
    try:
        client = AuctionClient()
        changes = {"title": title, "product_ref": product_ref}
        amounts = {
            "starting_price": starting_price,
            "min_bid_increment": increment,
            "reserve_price": reserve,
            "buy_now_price": buy_now_price,
        }
        for field, value in amounts.items():
            changes[field] = str(_parse_amount(value)) if value is not None else None
        changes["start_time"] = client.to_utc_iso(start_time) if start_time else None
        changes["end_time"] = client.to_utc_iso(end_time) if end_time else None
        changes = {k: v for k, v in changes.items() if v is not None}
        if not changes:
            click.echo("Nothing to change.")
            return
        result = client.update_auction(auction_id, changes)
        click.echo(f"Draft auction {result['id']} updated: {', '.join(sorted(changes))}")
    except (InvalidOperation, ValueError) as e:
        click.echo(f"Invalid input: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Failed to edit auction: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("auction_id", type=int)
def show(auction_id):
    """Show detailed information for an auction."""
    try:
        client = AuctionClient()
        auction = client.get_auction(auction_id)
        rows = [
            ("ID", str(auction['id'])),
            ("Title", auction['title']),
            ("Product", auction['product_ref']),
            ("Seller", auction['seller_id']),
            ("Type", auction['auction_type']),
            ("Status", auction['status']),
            ("Current Price", _money(auction['current_price'])),
            ("Minimum Increment", _money(auction['min_bid_increment'])),
            ("Buy Now Price", _money(auction.get('buy_now_price'))),
            ("Bids", str(auction['bid_count'])),
            ("Views", str(auction['view_count'])),
            ("Starts At", client.to_local_time(auction['start_time'])),
            ("Ends At", client.to_local_time(auction['end_time'])),
        ]
        if auction.get('close_reason'):
            rows.append(("Close Reason", auction['close_reason']))
        if auction.get('winner_id'):
            rows.append(("Winner", auction['winner_id']))
            rows.append(("Final Price", _money(auction.get('final_price'))))
        _print_table(["Field", "Value"], rows, min_widths=[20, 40])
    except Exception as e:
        click.echo(f"Failed to show auction: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("auction_id", type=int)
def bids(auction_id):
    """Show the bid history of an auction."""
    try:
        client = AuctionClient()
        history = client.get_bids(auction_id)
        if not history:
            click.echo("No bids yet.")
            return
        rows = []
        for bid in history:
            flags = []
            if bid['is_winning']:
                flags.append("winning")
            if bid['is_auto_bid']:
                flags.append("auto")
            if bid['is_sealed']:
                flags.append("sealed")
            amount = _money(bid['amount']) if bid['amount'] is not None else "hidden"
            rows.append((str(bid['id']), bid['bidder_id'], amount, ", ".join(flags),
                         client.to_local_time(bid['created_at'])))
        _print_table(["Seq", "Bidder", "Amount", "Flags", "Placed At"], rows)
    except Exception as e:
        click.echo(f"Failed to get bids: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("auction_id", type=int)
@click.argument("amount", type=str)
@click.option("--max-auto", default=None, help="Auto-bid ceiling")
def bid(auction_id, amount, max_auto):
    """Place a bid on an auction."""
    try:
        amount_decimal = _parse_amount(amount)
        max_auto_decimal = _parse_amount(max_auto) if max_auto is not None else None
        client = AuctionClient()
        result = client.place_bid(auction_id, amount_decimal, max_auto_decimal)
        if result['sealed']:
            click.echo(f"Sealed bid {result['bid_id']} recorded.")
            return
        click.echo(f"Bid {result['bid_id']} accepted. Current price: {_money(result['current_price'])}")
        click.echo(f"Leading bidder: {result['winning_bidder_id']}")
        if result['auto_bids']:
            click.echo(f"{result['auto_bids']} auto-bid(s) were placed in response.")
        if result['extended']:
            click.echo(f"Auction extended to {client.to_local_time(result['end_time'])}")
    except InvalidOperation:
        click.echo(f"Invalid amount: {amount}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Failed to place bid: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("auction_id", type=int)
@click.option("--price", default=None, help="Price you expect to pay; defaults to the price shown now")
def buy(auction_id, price):
    """Buy an auction outright."""
    try:
        client = AuctionClient()
        if price is None:
            auction = client.get_auction(auction_id)
            if auction['auction_type'] == "dutch":
                expected = Decimal(str(auction['current_price']))
            elif auction.get('buy_now_price') is not None:
                expected = Decimal(str(auction['buy_now_price']))
            else:
                click.echo(f"Auction {auction_id} has no buy-now price.", err=True)
                sys.exit(1)
            click.confirm(f"Buy auction {auction_id} for {_money(expected)}?", abort=True)
        else:
            expected = _parse_amount(price)
        result = client.buy_now(auction_id, expected)
        click.echo(f"Purchased for {_money(result['amount'])}. Order number: {result['order_number']}")
    except InvalidOperation:
        click.echo(f"Invalid price: {price}", err=True)
        sys.exit(1)
    except click.Abort:
        raise
    except Exception as e:
        click.echo(f"Failed to buy auction: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("auction_id", type=int)
def watch(auction_id):
    """Watch an auction for starting-soon and end notifications."""
    try:
        AuctionClient().watch(auction_id)
        click.echo(f"Watching auction {auction_id}.")
    except Exception as e:
        click.echo(f"Failed to watch auction: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("auction_id", type=int)
def unwatch(auction_id):
    """Stop watching an auction."""
    try:
        AuctionClient().unwatch(auction_id)
        click.echo(f"No longer watching auction {auction_id}.")
    except Exception as e:
        click.echo(f"Failed to unwatch auction: {e}", err=True)
        sys.exit(1)


@cli.command()
def balance():
    """Show your wallet balance."""
    try:
        result = AuctionClient().get_wallet()
        click.echo(f"Balance: {_money(result['balance'])}")
    except Exception as e:
        click.echo(f"Failed to get balance: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("amount", type=str)
def deposit(amount):
    """Add funds to your wallet."""
    try:
        result = AuctionClient().deposit(_parse_amount(amount))
        click.echo(f"Deposited. Balance: {_money(result['balance'])}")
    except InvalidOperation:
        click.echo(f"Invalid amount: {amount}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Failed to deposit: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    cli()
