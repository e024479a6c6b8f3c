"""Run a scheduled job once, outside the API process.

Usage:
    python scripts/run_job.py currency:refresh [--show]
    python scripts/run_job.py bookings:send-reminders
    python scripts/run_job.py notifications:dispatch
    python scripts/run_job.py promotions:archive
    python scripts/run_job.py payments:reconcile
"""

import argparse
import asyncio
import sys
from decimal import Decimal

from app import models  # noqa: F401
from app.services import scheduler
from app.services.currency import currency_service, format_usd, format_vnd

SAMPLE_VND = Decimal("1000000")


async def refresh_currency(show: bool) -> int:
    rate = await scheduler.refresh_exchange_rate()
    if rate is None:
        if currency_service.is_fixed:
            print("Fixed exchange rate mode, nothing to refresh.")
        else:
            print("Rate not refreshed: the source failed or another worker holds the lock. The cached rate is kept.")
    else:
        print(f"Exchange rate refreshed: 1 USD = {format_vnd(rate)}")
    if show:
        details = await currency_service.conversion_details(SAMPLE_VND)
        print(f"Mode: {details['mode']}")
        print(f"Rate: 1 USD = {format_vnd(details['exchange_rate'])}")
        print(f"{details['formatted_vnd']} = {details['formatted_usd']}")
        print(f"$100.00 = {format_vnd(await currency_service.to_vnd(Decimal('100')))}")
    return 0


async def send_reminders() -> int:
    queued = await scheduler.send_booking_reminders()
    print(f"Reminders queued: {queued}")
    return 0


async def dispatch_notifications() -> int:
    sent = await scheduler.dispatch_notifications()
    print(f"Notifications sent: {sent}")
    return 0


async def archive_promotions() -> int:
    archived = await scheduler.archive_expired_promotions()
    print(f"Promotions archived: {archived}")
    return 0


async def reconcile_payments() -> int:
    settled = await scheduler.reconcile_pending_payments()
    print(f"Pending payments settled: {settled}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run a car rental background job once.")
    commands = parser.add_subparsers(dest="job", required=True)

    refresh = commands.add_parser("currency:refresh", help="Fetch a new VND/USD exchange rate")
    refresh.add_argument("--show", action="store_true", help="Print the rate and a sample conversion")

    commands.add_parser("bookings:send-reminders", help="Queue reminders for pickups 23-25 hours away")
    commands.add_parser("notifications:dispatch", help="Deliver queued booking emails")
    commands.add_parser("promotions:archive", help="Archive expired or exhausted promotions")
    commands.add_parser("payments:reconcile", help="Resend captures and refunds left pending by gateway timeouts")
    return parser


async def run(args: argparse.Namespace) -> int:
    if args.job == "currency:refresh":
        return await refresh_currency(args.show)
    if args.job == "bookings:send-reminders":
        return await send_reminders()
    if args.job == "notifications:dispatch":
        return await dispatch_notifications()
    if args.job == "payments:reconcile":
        return await reconcile_payments()
    return await archive_promotions()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
