import json
from decimal import Decimal

import pytest

from sale_indexer.config import load_config
from sale_indexer.errors import ConfigError


def write_config(tmp_path, payload):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return str(path)


def test_defaults_without_file(tmp_path):
    cfg = load_config(str(tmp_path / "missing.json"), use_env=False)
    assert cfg.rpc_url is None
    assert cfg.confirmations == 20
    assert cfg.reorg_buffer_blocks == 200
    assert cfg.log_query_range == 2000
    assert cfg.max_rpc_retries == 1
    assert cfg.sales == []


def test_file_values_and_sales(tmp_path):
    path = write_config(
        tmp_path,
        {
            "RPC_URL": "https://rpc.example",
            "CONFIRMATIONS": 5,
            "LOG_QUERY_RANGE": "500",
            "SALES": [
                {
                    "slug": "demo",
                    "chain_id": 1,
                    "payment_token": "0x833589FCD6EDB6E08F4C7C32D4F71B54BDA02913",
                    "payment_token_decimals": 6,
                    "recipient": "0x1111111111111111111111111111111111111111",
                    "start_ts": 1000,
                    "end_ts": 2000,
                    "target_raise": "1000000",
                }
            ],
        },
    )
    cfg = load_config(path, use_env=False)
    assert cfg.rpc_url == "https://rpc.example"
    assert cfg.confirmations == 5
    assert cfg.log_query_range == 500
    sale = cfg.sales[0]
    assert sale.payment_token == "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"
    assert sale.target_raise == Decimal("1000000")
    assert sale.cap_removed_ts is None


def test_env_overrides_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    path = write_config(tmp_path, {"RPC_URL": "https://file.example", "CONFIRMATIONS": 5})
    monkeypatch.setenv("RPC_URL", "https://env.example")
    monkeypatch.setenv("CONFIRMATIONS", "7")
    cfg = load_config(path)
    assert cfg.rpc_url == "https://env.example"
    assert cfg.confirmations == 7


def test_invalid_integer_is_config_error(tmp_path):
    path = write_config(tmp_path, {"REORG_BUFFER_BLOCKS": "lots"})
    with pytest.raises(ConfigError):
        load_config(path, use_env=False)


def test_zero_log_query_range_rejected(tmp_path):
    path = write_config(tmp_path, {"LOG_QUERY_RANGE": 0})
    with pytest.raises(ConfigError):
        load_config(path, use_env=False)


def test_sale_missing_recipient(tmp_path):
    path = write_config(
        tmp_path,
        {"SALES": [{"slug": "x", "payment_token": "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"}]},
    )
    with pytest.raises(ConfigError, match="recipient"):
        load_config(path, use_env=False)


def test_duplicate_sale_slugs(tmp_path):
    sale = {"slug": "x", "payment_token": "0x1", "recipient": "0x2"}
    path = write_config(tmp_path, {"SALES": [sale, sale]})
    with pytest.raises(ConfigError, match="duplicate"):
        load_config(path, use_env=False)
