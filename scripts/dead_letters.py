"""
Dead letter inspection - operator tooling for manual recovery.

Nothing reprocesses dead letters automatically. This script lists them and
decrypts a single payload so an operator can replay it by hand.

Usage:
    python -m scripts.dead_letters list                          # latest 50
    python -m scripts.dead_letters list --provider razorpay --limit 10
    python -m scripts.dead_letters show pay_ABC123 razorpay     # decrypt payload
    python -m scripts.dead_letters generate-key                 # new ENCRYPTION_KEY
"""
import argparse
import asyncio
import base64
import json
import logging
import os

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


async def list_entries(provider: str | None, limit: int) -> None:
    from webhook_intake.database import async_session_factory
    from webhook_intake.services.dead_letter import list_dead_letters

    async with async_session_factory() as db:
        entries = await list_dead_letters(db, provider=provider, limit=limit)

    if not entries:
        logger.info("No dead letters%s.", f" for {provider}" if provider else "")
        return

    for entry in entries:
        logger.info(
            "%s  %-9s %-40s stage=%-7s retries=%d  %s",
            entry.failed_at.isoformat(), entry.provider, entry.event_id,
            entry.failure_stage, entry.retry_count, entry.error_message[:80],
        )
    logger.info("%d dead letter(s)", len(entries))


async def show_entry(event_id: str, provider: str) -> int:
    from webhook_intake.database import async_session_factory
    from webhook_intake.services.dead_letter import get_dead_letter, decrypt_dead_letter_payload

    async with async_session_factory() as db:
        entry = await get_dead_letter(db, event_id, provider)

    if entry is None:
        logger.error("No dead letter for %s/%s", provider, event_id)
        return 1

    logger.info("Dead letter %s (%s/%s)", entry.id, entry.provider, entry.event_id)
    logger.info("  correlation_id=%s stage=%s retries=%d", entry.correlation_id, entry.failure_stage, entry.retry_count)
    logger.info("  received_at=%s failed_at=%s", entry.received_at, entry.failed_at)
    logger.info("  error=%s", entry.error_message)

    # Decrypted payload goes to stdout only, never to the log pipeline
    print(json.dumps(decrypt_dead_letter_payload(entry), indent=2, sort_keys=True))
    return 0


def main():
    parser = argparse.ArgumentParser(description="Inspect webhook dead letters")
    sub = parser.add_subparsers(dest="command", required=True)

    list_parser = sub.add_parser("list", help="List recent dead letters")
    list_parser.add_argument("--provider", help="Filter by provider")
    list_parser.add_argument("--limit", type=int, default=50)

    show_parser = sub.add_parser("show", help="Decrypt and print one dead letter payload")
    show_parser.add_argument("event_id")
    show_parser.add_argument("provider")

    sub.add_parser("generate-key", help="Print a new base64 ENCRYPTION_KEY")

    args = parser.parse_args()

    if args.command == "generate-key":
        print(f"ENCRYPTION_KEY={base64.b64encode(os.urandom(32)).decode()}")
        return
    if args.command == "list":
        asyncio.run(list_entries(args.provider, args.limit))
        return
    raise SystemExit(asyncio.run(show_entry(args.event_id, args.provider)))


if __name__ == "__main__":
    main()
