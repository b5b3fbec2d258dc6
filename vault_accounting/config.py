"""Runtime settings for vault accounting."""

import os
from dataclasses import dataclass, field
from decimal import Decimal

from vault_accounting.constants import (
    DEFAULT_BULK_CHUNK_SIZE,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_CLAIM_DELAY,
    DEFAULT_MAX_VAULT_APY,
    MULTICALL3_ADDRESS,
    SNAPSHOTS_PER_WEEK,
)


@dataclass(frozen=True)
class Settings:
    """Network-wide settings shared by every component during a tick."""

    multicall_address: str = MULTICALL3_ADDRESS
    chunk_size: int = DEFAULT_CHUNK_SIZE
    # Less latency-sensitive paths (e.g. refreshing minted shares of all allocators).
    bulk_chunk_size: int = DEFAULT_BULK_CHUNK_SIZE
    max_workers: int = 1
    claim_delay: int = DEFAULT_CLAIM_DELAY
    max_vault_apy: Decimal = DEFAULT_MAX_VAULT_APY
    apy_window_size: int = SNAPSHOTS_PER_WEEK
    is_gnosis: bool = False
    # Vaults with a non-standard version layout that are also exempt from the APY clamp.
    legacy_vaults: frozenset[str] = field(default_factory=frozenset)
    leverage_strategy: str | None = None
    lending_pool: str | None = None
    price_oracle: str | None = None
    os_token: str | None = None
    asset_token: str | None = None

    def is_legacy_vault(self, vault_id: str) -> bool:
        """Check whether the vault is one of the configured legacy exceptions."""
        return vault_id.lower() in self.legacy_vaults


def _env_addresses(name: str) -> frozenset[str]:
    raw = os.getenv(name, "")
    return frozenset(a.strip().lower() for a in raw.split(",") if a.strip())


def load_settings(**overrides) -> Settings:
    """
    Build settings from environment variables, then apply explicit overrides.

    Recognized variables: MULTICALL_ADDRESS, CHUNK_SIZE, MAX_WORKERS, CLAIM_DELAY,
    MAX_VAULT_APY, IS_GNOSIS, LEGACY_VAULTS (comma separated), LEVERAGE_STRATEGY,
    LENDING_POOL, PRICE_ORACLE, OS_TOKEN, ASSET_TOKEN.
    """
    values = {
        "multicall_address": os.getenv("MULTICALL_ADDRESS", MULTICALL3_ADDRESS),
        "chunk_size": int(os.getenv("CHUNK_SIZE", DEFAULT_CHUNK_SIZE)),
        "max_workers": int(os.getenv("MAX_WORKERS", 1)),
        "claim_delay": int(os.getenv("CLAIM_DELAY", DEFAULT_CLAIM_DELAY)),
        "max_vault_apy": Decimal(os.getenv("MAX_VAULT_APY", str(DEFAULT_MAX_VAULT_APY))),
        "is_gnosis": os.getenv("IS_GNOSIS", "").lower() in ("1", "true", "yes"),
        "legacy_vaults": _env_addresses("LEGACY_VAULTS"),
        "leverage_strategy": os.getenv("LEVERAGE_STRATEGY") or None,
        "lending_pool": os.getenv("LENDING_POOL") or None,
        "price_oracle": os.getenv("PRICE_ORACLE") or None,
        "os_token": os.getenv("OS_TOKEN") or None,
        "asset_token": os.getenv("ASSET_TOKEN") or None,
    }
    values.update({k: v for k, v in overrides.items() if v is not None})
    settings = Settings(**values)
    if settings.chunk_size <= 0 or settings.bulk_chunk_size <= 0:
        raise ValueError("chunk sizes must be > 0")
    return settings
