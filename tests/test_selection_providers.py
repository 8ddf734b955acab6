"""
Selection providers and registry.

- Feature flag provider maps on/off to "true"/"false" (sync and async flag stores).
- Configuration provider reads live values; blank or missing means no preference.
- Sticky provider routes by identity; no identity means no preference.
- Registry lookups ignore case; built-ins are only registered when backed.
- Custom modes resolve by identifier; the provider supplies the selector name.
- Builder-derived selector names follow the naming convention.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from trialgate.core.builder import RegistrationBuilder
from trialgate.core.models import SelectionContext
from trialgate.core.naming import DEFAULT_NAMING, to_kebab_case
from trialgate.core.router import InvocationRouter
from trialgate.selection.base import SelectionModeProvider, SelectionModeRegistry
from trialgate.selection.config_value import ConfigurationValueProvider
from trialgate.selection.flag import BooleanFeatureFlagProvider, StaticFlags
from trialgate.selection.sticky import StickyRoutingProvider, select_trial


class Greeter:
    async def greet(self, name):
        raise NotImplementedError


class Labelled(Greeter):
    def __init__(self, label):
        self.label = label

    async def greet(self, name):
        return f"{self.label}:{name}"


def _context(selector_name, keys=("false", "true")):
    return SelectionContext(service_type=Greeter, selector_name=selector_name, default_key=keys[0], trial_keys=keys)


@pytest.mark.asyncio
async def test_flag_provider_sync_store():
    flags = StaticFlags({"Greeter": True})
    provider = BooleanFeatureFlagProvider(flags)
    assert await provider.select_trial_key(_context("Greeter")) == "true"
    flags.set("Greeter", False)
    assert await provider.select_trial_key(_context("Greeter")) == "false"
    assert await provider.select_trial_key(_context("Unknown")) == "false"


@pytest.mark.asyncio
async def test_flag_provider_async_store():
    class RemoteFlags:
        async def is_enabled(self, name):
            return name == "beta"

    provider = BooleanFeatureFlagProvider(RemoteFlags())
    assert await provider.select_trial_key(_context("beta")) == "true"
    assert await provider.select_trial_key(_context("gamma")) == "false"


@pytest.mark.asyncio
async def test_flag_provider_queries_selector_name():
    flags = MagicMock()
    flags.is_enabled = AsyncMock(return_value=True)
    provider = BooleanFeatureFlagProvider(flags)
    assert await provider.select_trial_key(_context("Checkout.NewFlow")) == "true"
    flags.is_enabled.assert_awaited_once_with("Checkout.NewFlow")


@pytest.mark.asyncio
async def test_configuration_provider_reads_live_values():
    values = {"Experiments:Greeter": " b "}
    provider = ConfigurationValueProvider(values)
    assert await provider.select_trial_key(_context("Experiments:Greeter")) == "b"
    values["Experiments:Greeter"] = "   "
    assert await provider.select_trial_key(_context("Experiments:Greeter")) is None
    del values["Experiments:Greeter"]
    assert await provider.select_trial_key(_context("Experiments:Greeter")) is None


@pytest.mark.asyncio
async def test_sticky_provider_uses_identity():
    async def identity(context):
        return context.services.get("user")

    provider = StickyRoutingProvider(identity)
    keys = ("a", "b", "c")
    with_user = SelectionContext(Greeter, "greeter", "a", keys, services={"user": "u-7"})
    without_user = SelectionContext(Greeter, "greeter", "a", keys)
    assert await provider.select_trial_key(with_user) == select_trial("u-7", "greeter", keys)
    assert await provider.select_trial_key(without_user) is None


def test_registry_lookup_ignores_case():
    provider = ConfigurationValueProvider({})
    registry = SelectionModeRegistry([provider])
    assert registry.get("configurationvalue") is provider
    assert registry.get("CONFIGURATIONVALUE") is provider
    assert "ConfigurationValue" in registry
    assert registry.get("") is None
    assert registry.get("StickyRouting") is None


def test_builtin_registry_skips_unbacked_providers():
    registry = SelectionModeRegistry.with_builtin_providers(values={})
    assert registry.mode_identifiers() == ["ConfigurationValue"]

    registry = SelectionModeRegistry.with_builtin_providers(
        flags=StaticFlags(), values={}, identity_provider=lambda ctx: None,
    )
    assert registry.mode_identifiers() == ["BooleanFeatureFlag", "ConfigurationValue", "StickyRouting"]


class RegionProvider(SelectionModeProvider):
    def __init__(self):
        self.selector_names = []

    @property
    def mode_identifier(self):
        return "Region"

    async def select_trial_key(self, context):
        self.selector_names.append(context.selector_name)
        return "eu"

    def default_selector_name(self, service_type, naming):
        return f"region:{naming.kebab_name_for(service_type)}"


@pytest.mark.asyncio
async def test_custom_mode_provider():
    provider = RegionProvider()
    reg = (
        RegistrationBuilder(Greeter)
        .add_default_trial("us", Labelled("us"))
        .add_trial("eu", Labelled("eu"))
        .using_custom_mode("region")
        .build()
    )
    assert reg.selector_name == ""
    assert reg.mode_identifier == "region"

    router = InvocationRouter(reg, selection_registry=SelectionModeRegistry([provider]))
    assert await router.invoke("greet", "x") == "eu:x"
    assert provider.selector_names == ["region:greeter"]


@pytest.mark.asyncio
async def test_unregistered_custom_mode_uses_default():
    reg = (
        RegistrationBuilder(Greeter)
        .add_default_trial("us", Labelled("us"))
        .add_trial("eu", Labelled("eu"))
        .using_custom_mode("Region")
        .build()
    )
    router = InvocationRouter(reg, selection_registry=SelectionModeRegistry())
    assert await router.invoke("greet", "x") == "us:x"


def test_builder_derives_selector_names():
    base = lambda: RegistrationBuilder(Greeter).add_default_trial("a", Labelled("a"))  # noqa: E731
    assert base().using_feature_flag().build().selector_name == "Greeter"
    assert base().using_configuration_key().build().selector_name == "Experiments:Greeter"
    assert base().using_sticky_routing().build().selector_name == "greeter"
    assert base().using_sticky_routing().named("greet-v2").build().selector_name == "greet-v2"
    assert base().using_configuration_key("Custom:Key").build().selector_name == "Custom:Key"


def test_naming_convention():
    assert DEFAULT_NAMING.configuration_key_for("PaymentProcessor") == "Experiments:PaymentProcessor"
    assert to_kebab_case("PaymentProcessor") == "payment-processor"
    assert to_kebab_case("IMyService") == "my-service"
    assert to_kebab_case("HTTPClient") == "http-client"
