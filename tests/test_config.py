from decimal import Decimal

import pytest

from vault_accounting.config import Settings, load_settings
from vault_accounting.constants import DEFAULT_CHUNK_SIZE, MULTICALL3_ADDRESS


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "MULTICALL_ADDRESS",
        "CHUNK_SIZE",
        "MAX_WORKERS",
        "CLAIM_DELAY",
        "MAX_VAULT_APY",
        "IS_GNOSIS",
        "LEGACY_VAULTS",
        "LEVERAGE_STRATEGY",
        "LENDING_POOL",
        "PRICE_ORACLE",
        "OS_TOKEN",
        "ASSET_TOKEN",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    settings = load_settings()
    assert settings.multicall_address == MULTICALL3_ADDRESS
    assert settings.chunk_size == DEFAULT_CHUNK_SIZE
    assert settings.is_gnosis is False
    assert settings.legacy_vaults == frozenset()
    assert settings.lending_pool is None


def test_environment_is_read(monkeypatch):
    monkeypatch.setenv("CHUNK_SIZE", "25")
    monkeypatch.setenv("MAX_VAULT_APY", "12.5")
    monkeypatch.setenv("IS_GNOSIS", "true")
    monkeypatch.setenv("LEGACY_VAULTS", "0xAA, 0xbb,,")
    settings = load_settings()
    assert settings.chunk_size == 25
    assert settings.max_vault_apy == Decimal("12.5")
    assert settings.is_gnosis is True
    assert settings.legacy_vaults == frozenset({"0xaa", "0xbb"})


def test_overrides_win_and_none_is_ignored(monkeypatch):
    monkeypatch.setenv("CHUNK_SIZE", "25")
    settings = load_settings(chunk_size=5, max_workers=None)
    assert settings.chunk_size == 5
    assert settings.max_workers == 1


def test_non_positive_chunk_size_is_rejected():
    with pytest.raises(ValueError, match="chunk sizes"):
        load_settings(chunk_size=0)


def test_is_legacy_vault_ignores_case():
    settings = Settings(legacy_vaults=frozenset({"0xabcd"}))
    assert settings.is_legacy_vault("0xABCD")
    assert not settings.is_legacy_vault("0x1234")
