"""Tests for the failed-event replay job."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from lectio.domain.reconcile import HANDLED_EVENT_TYPES
from lectio.operations import replay_events

from .helpers import future_epoch


def _raw_event(event_id: str, event_type: str = "customer.subscription.deleted", created: int | None = None):
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created or future_epoch(),
        "data": {"object": {"id": "sub_A"}},
    }


def _seed_subscription(store):
    store.subscriptions["sub_A"] = {
        "stripe_subscription_id": "sub_A",
        "status": "active",
        "last_event_at": None,
    }


def test_replays_oldest_first(stripe_client):
    # Stripe lists newest first
    stripe_client.events = [_raw_event("evt_new"), _raw_event("evt_old")]
    seen: list[str] = []

    def _dispatch(event, *, stripe_client):
        seen.append(event.event_id)
        return "processed"

    with patch.object(replay_events, "dispatch_event", _dispatch):
        counts = replay_events.replay(stripe_client, hours=6)

    assert seen == ["evt_old", "evt_new"]
    assert counts["processed"] == 2
    assert stripe_client.list_calls[0]["types"] == HANDLED_EVENT_TYPES


def test_replay_is_idempotent(store, stripe_client):
    _seed_subscription(store)
    stripe_client.events = [_raw_event("evt_del")]

    first = replay_events.replay(stripe_client)
    second = replay_events.replay(stripe_client)

    assert first["processed"] == 1
    assert second["duplicate"] == 1
    assert store.subscriptions["sub_A"]["status"] == "cancelled"


def test_failure_does_not_stop_the_batch(stripe_client):
    stripe_client.events = [_raw_event("evt_2"), _raw_event("evt_1")]

    def _dispatch(event, *, stripe_client):
        if event.event_id == "evt_1":
            raise RuntimeError("db down")
        return "processed"

    with patch.object(replay_events, "dispatch_event", _dispatch):
        counts = replay_events.replay(stripe_client)

    assert counts["failed"] == 1
    assert counts["processed"] == 1


def test_dry_run_dispatches_nothing(store, stripe_client):
    _seed_subscription(store)
    stripe_client.events = [_raw_event("evt_del")]

    counts = replay_events.replay(stripe_client, dry_run=True)

    assert counts["would_replay"] == 1
    assert store.writes == []


def test_malformed_event_counted(stripe_client):
    stripe_client.events = [{"id": "evt_bad", "type": "invoice.paid", "data": {}}]

    counts = replay_events.replay(stripe_client)

    assert counts["invalid"] == 1


def test_main_exit_code(stripe_client):
    stripe_client.events = [_raw_event("evt_1")]

    def _dispatch(event, *, stripe_client):
        raise RuntimeError("db down")

    with patch.object(replay_events, "StripeClient", return_value=stripe_client), \
            patch.object(replay_events, "dispatch_event", _dispatch):
        assert replay_events.main(["--hours", "1"]) == 1


def test_rejects_non_positive_hours():
    with pytest.raises(SystemExit):
        replay_events.main(["--hours", "0"])
