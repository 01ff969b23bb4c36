import pytest

from paidquery.config import Settings
from paidquery.errors import ConfigurationError


def test_defaults_target_mainnet():
    s = Settings()
    assert s.pocketd_node == "https://shannon-grove-rpc.mainnet.poktroll.com"
    assert s.chain_id == "pocket"
    assert s.min_payment_amount == 20_000_000
    assert s.poll_interval_seconds == 5.0
    assert s.payment_timeout_seconds == 150.0


def test_from_env(monkeypatch):
    monkeypatch.setenv("CHAIN_ENV", "beta")
    monkeypatch.setenv("PAYMENT_TIMEOUT_SECONDS", "30")
    monkeypatch.setenv("JOB_STORE_BACKEND", "REDIS")
    s = Settings.from_env()
    assert s.chain_id == "pocket-beta"
    assert s.payment_timeout_seconds == 30.0
    assert s.job_store_backend == "redis"


@pytest.mark.parametrize(
    "kwargs",
    [{"chain_env": "TESTNET"}, {"job_store_backend": "postgres"}, {"poll_interval_seconds": 0}],
)
def test_bad_settings_are_rejected(kwargs):
    with pytest.raises(ConfigurationError):
        Settings(**kwargs)
