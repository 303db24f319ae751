"""Unit tests for CLI wiring: provider registry and startup validation."""

from unittest.mock import MagicMock, patch

import pytest

from external_lb import cli
from external_lb.config import ConfigError, Settings
from external_lb.providers.base import ProviderError, ProviderRegistry


def test_build_registry_knows_both_providers() -> None:
    registry = cli.build_registry()

    assert registry.names() == ["f5_BigIP", "zevenet"]


def test_registry_rejects_duplicate_registration() -> None:
    registry = ProviderRegistry()
    registry.register("dummy", MagicMock())

    with pytest.raises(ValueError, match="register twice"):
        registry.register("dummy", MagicMock())


def test_registry_create_unknown_slug() -> None:
    with pytest.raises(KeyError, match="No such provider"):
        ProviderRegistry().create("nope", {})


def test_create_provider_passes_options_to_factory() -> None:
    registry = ProviderRegistry()
    factory = MagicMock()
    registry.register("dummy", factory)
    settings = Settings(provider="dummy", provider_options={"DUMMY_HOST": "x"})

    provider = cli.create_provider(settings, registry)

    factory.assert_called_once_with({"DUMMY_HOST": "x"})
    assert provider is factory.return_value


def test_create_provider_unsupported() -> None:
    settings = Settings(provider="haproxy")

    with pytest.raises(ConfigError, match="Unsupported provider: 'haproxy'"):
        cli.create_provider(settings, cli.build_registry())


def test_create_provider_missing_option() -> None:
    settings = Settings(provider="zevenet", provider_options={"ZAPI_HOST": "lb"})

    with pytest.raises(ProviderError, match="ZAPI_KEY is not set"):
        cli.create_provider(settings, cli.build_registry())


def test_create_registrar_disabled_without_cattle_url() -> None:
    assert cli.create_registrar(Settings(provider="zevenet")) is None


def test_create_registrar_tolerates_unreachable_cattle() -> None:
    settings = Settings(
        provider="zevenet",
        cattle_url="http://rancher/v1",
        cattle_access_key="a",
        cattle_secret_key="s",
    )
    with patch.object(cli.CattleClient, "test_connection", return_value=False):
        registrar = cli.create_registrar(settings)

    assert isinstance(registrar, cli.CattleClient)


def test_main_exits_on_missing_provider(monkeypatch) -> None:
    monkeypatch.delenv("LB_PROVIDER", raising=False)
    monkeypatch.delenv("EXTERNAL_LB_CONFIG_PATH", raising=False)

    with pytest.raises(SystemExit) as exc_info:
        cli.main()

    assert exc_info.value.code == 1


def test_main_exits_when_provider_unreachable(monkeypatch) -> None:
    monkeypatch.setenv("LB_PROVIDER", "zevenet")
    monkeypatch.delenv("EXTERNAL_LB_CONFIG_PATH", raising=False)

    with patch.object(cli, "create_provider", side_effect=ProviderError("unreachable")):
        with pytest.raises(SystemExit) as exc_info:
            cli.main()

    assert exc_info.value.code == 1
