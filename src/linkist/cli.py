"""Command-line interface for linkist."""

import argparse
import json
import sys
from decimal import Decimal, InvalidOperation

from . import __version__
from .config import configure_logging, load_config
from .errors import LinkistError
from .notifications import OrderMailer, build_sender, parse_email_type
from .order_store import OrderStore, order_totals
from .pricing import amount_due, compute_pricing, founder_discount
from .utils import format_order, money_str
from .vouchers import quote_voucher


def get_order_store() -> OrderStore:
    """Get the OrderStore for the configured data directory."""
    return OrderStore(load_config().data_dir)


def cmd_quote(args: argparse.Namespace) -> int:
    """Print the price breakdown for an order."""
    pricing = compute_pricing(args.material, args.quantity, args.country, args.founder)

    if args.json:
        data = pricing.to_dict()
        data["founder_discount"] = money_str(founder_discount(pricing, args.founder))
        data["amount_due"] = money_str(amount_due(pricing, args.founder))
        print(json.dumps(data, indent=2))
        return 0

    print(f"Base price:  {money_str(pricing.base_price):>9} x{pricing.quantity}")
    print(f"Subtotal:    {money_str(pricing.subtotal):>9}")
    print(f"{pricing.tax_label + ':':<12} {money_str(pricing.tax_amount):>9}")
    print(f"Shipping:    {money_str(pricing.shipping_cost):>9}")
    print(f"Total:       {money_str(pricing.total):>9}")
    if args.founder:
        print(f"Founder:    -{money_str(founder_discount(pricing, True)):>9}")
        print(f"Amount due:  {money_str(amount_due(pricing, True)):>9}")
    return 0


def cmd_voucher(args: argparse.Namespace) -> int:
    """Check a voucher code, optionally against an amount."""
    try:
        amount = Decimal(args.amount) if args.amount is not None else Decimal("0")
    except InvalidOperation:
        print(f"Error: Invalid amount: {args.amount}", file=sys.stderr)
        return 1

    quote = quote_voucher(args.code, amount)
    result = quote.result
    print(f"{result.code or args.code}: {result.message}")
    if result.valid:
        print(f"  Discount: {result.discount_percent}%")
        if args.amount is not None:
            print(f"  {money_str(quote.order_amount)} -> {money_str(quote.final_amount)}")
    return 0 if result.valid else 1


def cmd_orders_list(args: argparse.Namespace) -> int:
    """List orders."""
    try:
        store = get_order_store()
        orders = store.list_orders(search=args.search, status=args.status)

        if args.json:
            print(json.dumps([o.to_dict() for o in orders], indent=2))
            return 0

        if not orders:
            print("No orders found.")
            return 0

        totals = order_totals(orders)
        print(
            f"{totals['total_orders']} order(s), revenue {money_str(totals['total_revenue'])}, "
            f"average {money_str(totals['average_order_value'])}"
        )
        print()
        for order in orders:
            print(format_order(order, verbose=args.verbose))
        return 0

    except LinkistError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_orders_show(args: argparse.Namespace) -> int:
    """Show one order."""
    try:
        order = get_order_store().get_order(args.order_id)
        if args.json:
            print(json.dumps(order.to_dict(), indent=2))
            return 0

        print(format_order(order, verbose=True))
        if order.status_history:
            print("         History:")
            for change in order.status_history:
                print(f"           {change.changed_at}  {change.status.value:<10} {change.note or ''}")
        return 0

    except LinkistError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_orders_set_status(args: argparse.Namespace) -> int:
    """Change an order's status."""
    try:
        strict = load_config().strict_transitions and not args.force
        order = get_order_store().set_status(args.order_id, args.status, strict=strict, note=args.note)
        print(f"Order {order.order_number} is now {order.status.value}")
        return 0

    except LinkistError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_orders_resend_email(args: argparse.Namespace) -> int:
    """Send an order email again."""
    try:
        email_type = parse_email_type(args.email_type)
        store = get_order_store()
        order = store.get_order(args.order_id)

        mailer = OrderMailer(build_sender(load_config()))
        result = mailer.send_order_email(email_type, order)
        if not result.success:
            print(f"Error: Failed to send {email_type.value} email: {result.error}", file=sys.stderr)
            return 1

        store.record_email(order.id, email_type, result.message_id)
        print(f"Sent {email_type.value} email for {order.order_number} to {order.email}")
        return 0

    except LinkistError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_serve(args: argparse.Namespace) -> int:
    """Start the API server."""
    try:
        import uvicorn

        config = load_config()
        print("Starting linkist API server...")
        print(f"Data directory: {config.data_dir}")
        print(f"API docs: http://{args.host}:{args.port}/docs")
        if not config.stripe_secret_key:
            print("Warning: STRIPE_SECRET_KEY not set, card payments are disabled.", file=sys.stderr)
        print()

        # When reload is enabled, uvicorn requires the app as an import string
        app_target = "linkist.api:app" if args.reload else None
        if app_target is None:
            from .api import app
            app_target = app

        uvicorn.run(
            app_target,
            host=args.host,
            port=args.port,
            reload=args.reload,
            workers=1,  # Single worker; the JSON stores lock per process
            log_level=config.log_level.lower(),
        )
        return 0

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="linkist",
        description="Price, take and manage Linkist NFC card orders.",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument(
        "--host", default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)"
    )
    serve_parser.add_argument(
        "--port", "-p", type=int, default=8000, help="Port to bind to (default: 8000)"
    )
    serve_parser.add_argument(
        "--reload", action="store_true", help="Enable auto-reload for development"
    )

    # quote
    quote_parser = subparsers.add_parser("quote", help="Show the price breakdown for an order")
    quote_parser.add_argument("material", help="pvc, wood, metal or stainless_steel")
    quote_parser.add_argument("--quantity", "-q", type=int, default=1, help="Number of cards (default: 1)")
    quote_parser.add_argument("--country", "-c", default="US", help="Shipping country code (default: US)")
    quote_parser.add_argument("--founder", action="store_true", help="Apply the founder member discount")
    quote_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # voucher
    voucher_parser = subparsers.add_parser("voucher", help="Check a voucher code")
    voucher_parser.add_argument("code", help="Voucher code")
    voucher_parser.add_argument("--amount", "-a", help="Order amount to apply the voucher to")

    # orders (subcommand group)
    orders_parser = subparsers.add_parser("orders", help="Manage orders")
    orders_subparsers = orders_parser.add_subparsers(dest="orders_command")

    # orders list
    orders_list_parser = orders_subparsers.add_parser("list", help="List orders")
    orders_list_parser.add_argument("--status", "-s", help="Only orders with this status")
    orders_list_parser.add_argument("--search", help="Match order number, customer name or email")
    orders_list_parser.add_argument("--json", action="store_true", help="Output as JSON")
    orders_list_parser.add_argument("--verbose", "-v", action="store_true", help="Show details")

    # orders show
    orders_show_parser = orders_subparsers.add_parser("show", help="Show an order")
    orders_show_parser.add_argument("order_id", help="Order ID, ID prefix or order number")
    orders_show_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # orders set-status
    set_status_parser = orders_subparsers.add_parser("set-status", help="Change an order's status")
    set_status_parser.add_argument("order_id", help="Order ID, ID prefix or order number")
    set_status_parser.add_argument("status", help="New status")
    set_status_parser.add_argument("--note", "-n", help="Note for the status history")
    set_status_parser.add_argument(
        "--force", action="store_true", help="Skip the transition check"
    )

    # orders resend-email
    resend_parser = orders_subparsers.add_parser("resend-email", help="Send an order email again")
    resend_parser.add_argument("order_id", help="Order ID, ID prefix or order number")
    resend_parser.add_argument(
        "email_type", help="confirmation, receipt, production, shipped or delivered"
    )

    return parser


def main() -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 0

    configure_logging(load_config().log_level)

    # Handle orders subcommands
    if args.command == "orders":
        if not hasattr(args, "orders_command") or not args.orders_command:
            parser.parse_args(["orders", "--help"])
            return 0
        orders_commands = {
            "list": cmd_orders_list,
            "show": cmd_orders_show,
            "set-status": cmd_orders_set_status,
            "resend-email": cmd_orders_resend_email,
        }
        return orders_commands[args.orders_command](args)

    commands = {
        "serve": cmd_serve,
        "quote": cmd_quote,
        "voucher": cmd_voucher,
    }

    cmd_func = commands.get(args.command)
    if cmd_func:
        return cmd_func(args)

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
