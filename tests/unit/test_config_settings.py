"""
Tests for configuration loading: YAML expansion, env overrides, validation
and the dotenv loader.
"""
import os
import pytest
from pathlib import Path
from pydantic import ValidationError

from usdm_core.config.config import Config, ExchangeConfig, GatewayConfig, load_config
from usdm_core.config.dotenv_loader import load_dotenv_files

PACKAGED_CONFIG = Path(__file__).resolve().parents[2] / "usdm_core" / "config" / "config.yaml"


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("ENVIRONMENT", "BINANCE_API_KEY", "BINANCE_API_SECRET"):
        monkeypatch.delenv(name, raising=False)


def test_packaged_config_loads_with_unset_credentials():
    config = Config.from_yaml(PACKAGED_CONFIG)

    assert config.environment == "dev"
    assert config.exchange.api_key is None
    assert config.exchange.api_secret is None
    assert config.exchange.instruments == ["BTCUSDT", "ETHUSDT"]
    assert config.gateway.client_id_prefix == "usdm-"
    assert config.reconciliation.pending_grace_seconds == 60.0


def test_env_credentials_are_expanded(monkeypatch):
    monkeypatch.setenv("BINANCE_API_KEY", "key-123")
    monkeypatch.setenv("BINANCE_API_SECRET", "secret-456")

    config = Config.from_yaml(PACKAGED_CONFIG)

    assert config.exchange.api_key == "key-123"
    assert config.exchange.api_secret == "secret-456"


def test_environment_override_and_prod_guard(monkeypatch, tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("exchange:\n  use_testnet: true\n")
    monkeypatch.setenv("ENVIRONMENT", "prod")

    with pytest.raises(ValidationError):
        Config.from_yaml(path)


def test_prod_requires_credentials(monkeypatch, tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("environment: prod\nexchange:\n  use_testnet: false\n")

    config = Config.from_yaml(path)
    with pytest.raises(ValueError):
        config.validate_config()

    monkeypatch.setenv("BINANCE_API_KEY", "k")
    monkeypatch.setenv("BINANCE_API_SECRET", "s")
    Config.from_yaml(path).validate_config()


def test_missing_file():
    with pytest.raises(FileNotFoundError):
        Config.from_yaml("/nonexistent/config.yaml")


def test_instruments_upper_cased():
    assert ExchangeConfig(instruments=[" btcusdt", "ethusdt", ""]).instruments == ["BTCUSDT", "ETHUSDT"]


@pytest.mark.parametrize("prefix", ["bad prefix", "x" * 21, "émoji"])
def test_client_id_prefix_validation(prefix):
    with pytest.raises(ValidationError):
        GatewayConfig(client_id_prefix=prefix)


def test_load_config_defaults_to_packaged_file(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)

    config = load_config()

    assert config.ledger.decimal_precision == 34
    assert config.reconciliation.auto_resync is True


def test_dotenv_local_overrides_env(monkeypatch, tmp_path):
    for name in ("USDM_DOTENV_A", "USDM_DOTENV_B"):
        monkeypatch.setenv(name, "placeholder")
        monkeypatch.delenv(name)
    (tmp_path / ".env").write_text("USDM_DOTENV_A=base\nUSDM_DOTENV_B=base\n")
    (tmp_path / ".env.local").write_text("USDM_DOTENV_B=local\n")

    loaded = load_dotenv_files(root=tmp_path)

    assert [p.name for p in loaded] == [".env", ".env.local"]
    assert os.environ["USDM_DOTENV_A"] == "base"
    assert os.environ["USDM_DOTENV_B"] == "local"


def test_dotenv_skipped_in_prod(monkeypatch, tmp_path):
    (tmp_path / ".env").write_text("USDM_DOTENV_C=base\n")
    monkeypatch.setenv("ENVIRONMENT", "prod")

    assert load_dotenv_files(root=tmp_path) == []
    assert "USDM_DOTENV_C" not in os.environ
