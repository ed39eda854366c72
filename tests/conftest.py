"""Shared pytest fixtures for Lectio billing tests."""
import sys
sys.dont_write_bytecode = True

import importlib  # noqa: E402

import pytest  # noqa: E402

from .helpers import PATCH_TARGETS, WEBHOOK_SECRET, FakeStore, FakeStripeClient  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_stripe_client_singleton():
    """Reset the route's cached Stripe client between tests."""
    import lectio.api.routes.webhooks_stripe as route_module

    route_module._stripe_client = None
    yield
    route_module._stripe_client = None


@pytest.fixture
def store(monkeypatch) -> FakeStore:
    """In-memory content store wired in at the txn / repository boundary."""
    fake = FakeStore()
    for module_name, names in PATCH_TARGETS.items():
        module = importlib.import_module(module_name)
        for name in names:
            monkeypatch.setattr(module, name, getattr(fake, name))
    return fake


@pytest.fixture
def stripe_client() -> FakeStripeClient:
    return FakeStripeClient()


@pytest.fixture
def webhook_env(monkeypatch, stripe_client):
    """Configure the webhook route with a known secret and the fake client."""
    import lectio.api.routes.webhooks_stripe as route_module

    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(route_module, "_get_stripe_client", lambda: stripe_client)
    return stripe_client
