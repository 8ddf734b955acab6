"""
Sticky routing.

- Same identity + experiment always yields the same key.
- Registration order of keys does not matter.
- Hash construction: sha256(identity + U+0001 + experiment)[:8] mod n over sorted keys.
- Zero keys is a configuration defect; one key is returned as-is.
- Identities spread across keys.
- Provider: no identity means no preference; identity routes by selector name.
"""
import hashlib

import pytest

from trialgate.core.errors import StickyRoutingError
from trialgate.core.models import SelectionContext
from trialgate.selection.sticky import StickyRoutingProvider, select_trial


def test_same_inputs_same_key():
    keys = ["control", "variant-a", "variant-b"]
    first = select_trial("user-42", "checkout", keys)
    for _ in range(20):
        assert select_trial("user-42", "checkout", keys) == first


def test_key_order_does_not_matter():
    for i in range(50):
        identity = f"user-{i}"
        assert select_trial(identity, "exp", ["a", "b", "c"]) == select_trial(identity, "exp", ["c", "a", "b"])


def test_hash_construction():
    keys = ["b", "a", "c"]
    digest = hashlib.sha256("user-7\u0001pricing".encode("utf-8")).digest()
    expected = sorted(keys)[int.from_bytes(digest[:8], "big") % 3]
    assert select_trial("user-7", "pricing", keys) == expected


def test_zero_keys_raises():
    with pytest.raises(StickyRoutingError):
        select_trial("user-1", "exp", [])


def test_single_key_returned():
    assert select_trial("anyone", "exp", ["only"]) == "only"


def test_identities_spread_across_keys():
    counts = {"a": 0, "b": 0}
    for i in range(1000):
        counts[select_trial(f"user-{i}", "spread", ["a", "b"])] += 1
    assert 400 <= counts["a"] <= 600
    assert counts["a"] + counts["b"] == 1000


def _ctx(services=None):
    return SelectionContext(
        service_type="Checkout",
        selector_name="checkout",
        default_key="a",
        trial_keys=("a", "b", "c"),
        services=services or {},
    )


@pytest.mark.asyncio
async def test_provider_without_identity_has_no_preference():
    provider = StickyRoutingProvider(lambda ctx: None)
    assert await provider.select_trial_key(_ctx()) is None


@pytest.mark.asyncio
async def test_provider_routes_identity_with_selector_name():
    provider = StickyRoutingProvider(lambda ctx: ctx.services["user"])
    key = await provider.select_trial_key(_ctx({"user": "u-99"}))
    assert key == select_trial("u-99", "checkout", ["a", "b", "c"])


@pytest.mark.asyncio
async def test_provider_accepts_async_identity():
    async def identity(ctx):
        return "u-1"

    provider = StickyRoutingProvider(identity)
    assert await provider.select_trial_key(_ctx()) == select_trial("u-1", "checkout", ["a", "b", "c"])
