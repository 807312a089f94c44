from decimal import Decimal

import pytest

from condexec.config import EngineConfig, RiskConfig
from condexec.errors import InvalidParameter


def test_defaults():
    config = EngineConfig()
    assert config.monitoring.tick_interval == 1.0
    assert config.cache_ttl.funding == 60.0
    assert config.retry.max_attempts == 3
    assert config.risk.max_leverage == 20
    assert config.persistence.backend == "sqlite"


def test_from_yaml_with_env_interpolation(tmp_path, monkeypatch):
    monkeypatch.setenv("STATE_DIR", "/var/lib/condexec")
    config_file = tmp_path / "config.yaml"
    config_file.write_text(
        """
monitoring:
  tick_interval: 0.5
  spot_enabled: false
cache_ttl:
  funding: 30
risk:
  max_order_value: 10000
  liquidation_buffer: "0.05"
  reference_prices:
    BTCUSDT: 50000
persistence:
  db_path: "${STATE_DIR}/condexec.db"
"""
    )

    config = EngineConfig.from_yaml(str(config_file))
    assert config.monitoring.tick_interval == 0.5
    assert config.monitoring.spot_enabled is False
    assert config.cache_ttl.funding == 30
    assert config.risk.max_order_value == Decimal("10000")
    assert config.risk.liquidation_buffer == Decimal("0.05")
    assert config.risk.reference_prices == {"BTCUSDT": Decimal("50000")}
    assert config.persistence.db_path == "/var/lib/condexec/condexec.db"


def test_yaml_round_trip(tmp_path):
    config = EngineConfig()
    config.risk = RiskConfig(max_order_value=Decimal("2500.5"), reference_prices={"ETHUSDT": Decimal("3000")})
    path = tmp_path / "out" / "config.yaml"

    config.to_yaml(str(path))
    assert EngineConfig.from_yaml(str(path)) == config


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        EngineConfig.from_yaml(str(tmp_path / "missing.yaml"))


@pytest.mark.parametrize(
    "data",
    [
        {"risk": {"max_leverage": 0}},
        {"risk": {"max_order_value": -1}},
        {"risk": {"default_leverage": 30}},
        {"monitoring": {"tick_interval": 0}},
        {"retry": {"max_attempts": 0}},
        {"venue": {"api_token": "x"}},
    ],
)
def test_invalid_values_are_rejected(data):
    with pytest.raises(InvalidParameter):
        EngineConfig.from_dict(data)
