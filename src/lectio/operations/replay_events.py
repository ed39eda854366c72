"""Replay recent Stripe events through the reconciliation pipeline.

Recovers from webhook deliveries that never reached the service (outage,
misconfigured endpoint, exhausted Stripe retries). Events already recorded
as processed are reported as duplicates, so running it repeatedly is safe.

Usage:
    python -m lectio.operations.replay_events --hours 24 [--dry-run]
"""

from __future__ import annotations

import argparse
import sys
from collections import Counter
from datetime import timedelta

from lectio.domain.reconcile import HANDLED_EVENT_TYPES, dispatch_event
from lectio.infra.time import utc_now
from lectio.observability.correlation import (
    bind_event_correlation,
    reset_correlation_id,
)
from lectio.observability.logging import get_logger
from lectio.observability.redaction import id_prefix, safe_log_context
from lectio.stripe.client import StripeClient
from lectio.stripe.webhook import InvalidPayloadError, parse_event

logger = get_logger(__name__)

DEFAULT_HOURS = 24


def replay(
    stripe_client: StripeClient,
    *,
    hours: int = DEFAULT_HOURS,
    dry_run: bool = False,
) -> Counter:
    """Dispatch every handled event from the last `hours` hours, oldest first.

    A failing event is logged and counted as "failed"; the rest still run.

    Returns:
        Counter of dispatch outcomes (plus "failed", "invalid", "listed").
    """
    since = utc_now() - timedelta(hours=hours)
    raw_events = list(stripe_client.list_events(created_gte=since, types=HANDLED_EVENT_TYPES))
    # Stripe lists newest first
    raw_events.reverse()

    counts: Counter = Counter()
    counts["listed"] = len(raw_events)

    for raw in raw_events:
        try:
            event = parse_event(raw)
        except InvalidPayloadError as e:
            counts["invalid"] += 1
            logger.warning(
                "replay skipped malformed event",
                extra={"extra_fields": safe_log_context(reason=str(e))},
            )
            continue

        token = bind_event_correlation(event.event_id)
        try:
            if dry_run:
                logger.info(
                    "replay dry run",
                    extra={
                        "extra_fields": safe_log_context(
                            event_id_prefix=id_prefix(event.event_id),
                            event_type=event.event_type,
                        )
                    },
                )
                counts["would_replay"] += 1
                continue

            try:
                outcome = dispatch_event(event, stripe_client=stripe_client)
            except Exception:
                counts["failed"] += 1
                logger.exception(
                    "replay failed for event",
                    extra={
                        "extra_fields": safe_log_context(
                            event_id_prefix=id_prefix(event.event_id),
                            event_type=event.event_type,
                        )
                    },
                )
                continue

            counts[outcome] += 1
        finally:
            reset_correlation_id(token)

    logger.info(
        "replay finished",
        extra={"extra_fields": safe_log_context(hours=hours, dry_run=dry_run, **counts)},
    )
    return counts


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="python -m lectio.operations.replay_events",
        description="Re-dispatch recent Stripe events through billing reconciliation.",
    )
    parser.add_argument(
        "--hours",
        type=int,
        default=DEFAULT_HOURS,
        help=f"How far back to look (default: {DEFAULT_HOURS})",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List the events that would be replayed without dispatching them",
    )
    args = parser.parse_args(argv)
    if args.hours <= 0:
        parser.error("--hours must be positive")
    return args


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    counts = replay(StripeClient(), hours=args.hours, dry_run=args.dry_run)
    return 1 if counts["failed"] else 0


if __name__ == "__main__":
    sys.exit(main())
