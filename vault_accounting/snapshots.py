"""Daily snapshots of period earnings."""

from dataclasses import replace
from decimal import Decimal

from vault_accounting.apy import calculate_apy
from vault_accounting.constants import SECONDS_IN_DAY, SECONDS_IN_HOUR
from vault_accounting.models import (
    Allocator,
    AllocatorSnapshot,
    ExitRequest,
    ExitRequestSnapshot,
    LeveragePositionSnapshot,
    LeverageStrategyPosition,
    Network,
    Vault,
    VaultSnapshot,
)


def _snapshots_count(timestamp: int) -> int:
    # snapshot days roll over one hour before midnight UTC
    return (timestamp + SECONDS_IN_HOUR) // SECONDS_IN_DAY


def should_snapshot(network: Network, timestamp: int) -> bool:
    return _snapshots_count(timestamp) > _snapshots_count(network.last_snapshot_timestamp)


def advance_snapshot_clock(network: Network, timestamp: int) -> tuple[Network, int | None]:
    """
    Move the network's snapshot clock to timestamp if a new snapshot is due.

    Returns the updated network and the snapshot period duration, or None when no
    snapshot should be taken: either none is due, or this is the very first one.
    """
    if not should_snapshot(network, timestamp):
        return network, None
    updated = replace(network, last_snapshot_timestamp=timestamp)
    if network.last_snapshot_timestamp == 0:
        return updated, None
    return updated, timestamp - network.last_snapshot_timestamp


def snapshot_vault(vault: Vault, timestamp: int, duration: int) -> tuple[VaultSnapshot, Vault]:
    """Snapshot the vault's period earnings and reset its period accumulators."""
    earned_assets = vault.period_stake_earned_assets + vault.period_extra_earned_assets
    snapshot = VaultSnapshot(
        vault=vault.id,
        timestamp=timestamp,
        stake_earned_assets=vault.period_stake_earned_assets,
        extra_earned_assets=vault.period_extra_earned_assets,
        earned_assets=earned_assets,
        total_assets=vault.total_assets,
        total_shares=vault.total_shares,
        apy=calculate_apy(earned_assets, vault.total_assets - vault.period_stake_earned_assets, duration),
    )
    return snapshot, replace(vault, period_stake_earned_assets=0, period_extra_earned_assets=0)


def snapshot_allocator(allocator: Allocator, timestamp: int, duration: int) -> tuple[AllocatorSnapshot, Allocator]:
    """Snapshot the allocator's period earnings, roll them into its totals and reset the period."""
    stake_and_boost = allocator.period_stake_earned_assets + allocator.period_boost_earned_assets
    earned_assets = stake_and_boost + allocator.period_extra_earned_assets
    snapshot = AllocatorSnapshot(
        allocator=allocator.id,
        timestamp=timestamp,
        stake_earned_assets=allocator.period_stake_earned_assets,
        boost_earned_assets=allocator.period_boost_earned_assets,
        extra_earned_assets=allocator.period_extra_earned_assets,
        earned_assets=earned_assets,
        total_assets=allocator.assets,
        apy=calculate_apy(stake_and_boost, allocator.assets - stake_and_boost, duration),
    )
    updated = replace(
        allocator,
        total_earned_assets=allocator.total_earned_assets + earned_assets,
        period_stake_earned_assets=0,
        period_boost_earned_assets=0,
        period_extra_earned_assets=0,
    )
    return snapshot, updated


def snapshot_exit_request(
    request: ExitRequest, earned_assets: int, timestamp: int, vault_apy: Decimal = Decimal(0)
) -> ExitRequestSnapshot:
    """
    Snapshot one reconciliation of an exit request.

    The part of the request that has not exited yet keeps earning the vault APY; claimed
    requests are recorded with zero value.
    """
    apy = Decimal(0)
    counts_yield = not (request.is_v2_position or request.is_claimed)
    if counts_yield and 0 < request.total_assets and request.exited_assets < request.total_assets:
        apy = vault_apy - vault_apy * Decimal(request.exited_assets) / Decimal(request.total_assets)
    return ExitRequestSnapshot(
        exit_request=request.id,
        timestamp=timestamp,
        earned_assets=0 if request.is_claimed else earned_assets,
        total_assets=0 if request.is_claimed else request.total_assets,
        apy=apy,
    )


def snapshot_leverage_position(
    position: LeverageStrategyPosition, timestamp: int
) -> tuple[LeveragePositionSnapshot, LeverageStrategyPosition]:
    snapshot = LeveragePositionSnapshot(
        position=position.id,
        timestamp=timestamp,
        earned_assets=position.period_earned_assets,
        total_assets=position.total_assets,
    )
    return snapshot, replace(position, period_earned_assets=0)
