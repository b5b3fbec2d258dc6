"""Tick pipeline: rewards updates, periodic tasks and snapshots.

Every entity update is isolated: an AccountingError abandons that entity for the
current tick, keeps its stored state and moves on to the next one.
"""

import sys
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from vault_accounting.config import Settings
from vault_accounting.constants import DISTRIBUTOR_ID, NETWORK_ID, WAD
from vault_accounting.distribution import (
    accumulate_rewards,
    distribute_reward,
    distribute_to_selected_users,
    leverage_position_weights,
    update_periodic_distributions,
    vault_user_weights,
)
from vault_accounting.exceptions import AccountingError
from vault_accounting.exit_queue import propagate_exit_earnings, reconcile_exit_requests, refresh_claimability
from vault_accounting.formatters import normalize_address
from vault_accounting.leverage import fetch_prices, update_leverage_positions
from vault_accounting.models import (
    Distribution,
    DistributionType,
    Network,
    NetworkContext,
    OsToken,
    Vault,
)
from vault_accounting.multicall import Caller
from vault_accounting.parsing import RewardsUpdate, reward_period_assets
from vault_accounting.snapshots import (
    advance_snapshot_clock,
    snapshot_allocator,
    snapshot_leverage_position,
    snapshot_vault,
)
from vault_accounting.storage import Repository
from vault_accounting.validation import validate_exit_tickets_monotonic
from vault_accounting.vaults import apply_rewards_update, get_vault_apy, refresh_minted_os_token_shares, sync_vault


@dataclass
class TickSummary:
    """Counters reported at the end of a tick."""

    vaults_synced: int = 0
    exit_requests_updated: int = 0
    leverage_positions_updated: int = 0
    distributions_active: int = 0
    snapshots_taken: int = 0
    errors: list[str] = field(default_factory=list)

    def report_error(self, message: str) -> None:
        self.errors.append(message)
        print(f"⚠️  {message}", file=sys.stderr)


def build_context(
    repo: Repository,
    settings: Settings,
    *,
    timestamp: int,
    block_number: int,
    os_token: OsToken | None = None,
    leverage_borrow_ltv: int = 0,
) -> NetworkContext:
    """Load the network-wide state for one tick."""
    network = repo.load("Network", NETWORK_ID) or Network()
    if os_token is None:
        os_token = repo.load("OsToken", NETWORK_ID) or OsToken()
    distributions = tuple(d for d in repo.list_by_parent("Distribution", DISTRIBUTOR_ID) if not d.is_finished)
    return NetworkContext(
        settings=settings,
        timestamp=timestamp,
        block_number=block_number,
        network=network,
        os_token=os_token,
        leverage_borrow_ltv=leverage_borrow_ltv,
        distributions=distributions,
    )


def _vaults(repo: Repository) -> list[Vault]:
    return repo.list_by_parent("Vault", NETWORK_ID)


def process_rewards_update(
    ctx: NetworkContext, caller: Caller, repo: Repository, update: RewardsUpdate, summary: TickSummary
) -> NetworkContext:
    """Commit a keeper rewards update into every vault it covers and sync them."""
    is_gnosis = ctx.settings.is_gnosis
    for reward in update.vaults:
        vault = repo.load("Vault", reward.vault)
        if vault is None:
            summary.report_error(f"Rewards update: vault {reward.vault} not found")
            continue

        try:
            period_assets = reward_period_assets(vault, reward, is_gnosis=is_gnosis)
            vault_with_commit = apply_rewards_update(vault, reward, update.rewards_root, is_gnosis=is_gnosis)
            result = sync_vault(
                ctx,
                caller,
                vault_with_commit,
                repo.list_by_parent("Allocator", vault.id),
                update.update_timestamp,
                period_assets=period_assets,
            )
        except AccountingError as ex:
            summary.report_error(f"Vault {vault.id}: sync failed: {ex}")
            continue

        repo.save(result.vault)
        repo.save_all(result.allocators)
        ctx = replace(ctx, network=result.network)
        summary.vaults_synced += 1

    repo.save(ctx.network)
    return ctx


def _weights_provider(repo: Repository) -> Callable[[Distribution], list[tuple[str, int]] | None]:
    def weights_for(distribution: Distribution) -> list[tuple[str, int]] | None:
        target = normalize_address(distribution.data)
        if repo.load("Vault", target) is None:
            return None
        positions = repo.list_by_parent("LeverageStrategyPosition", target)
        if distribution.distribution_type == DistributionType.VAULT:
            return vault_user_weights(target, repo.list_by_parent("Allocator", target), positions)
        if distribution.distribution_type == DistributionType.LEVERAGE_STRATEGY:
            return leverage_position_weights(target, positions)
        return None

    return weights_for


def process_distributions(
    ctx: NetworkContext, repo: Repository, summary: TickSummary, asset_rates: Mapping[str, int] | None = None
) -> NetworkContext:
    """Vest and distribute every active periodic distribution."""
    if asset_rates is None:
        asset_rates = {}
        if ctx.settings.asset_token:
            asset_rates = {normalize_address(ctx.settings.asset_token): WAD}

    rewards = {r.id: r for r in repo.list_all("DistributorReward")}
    update = update_periodic_distributions(
        ctx.distributions,
        ctx.timestamp,
        weights_for=_weights_provider(repo),
        rewards=rewards,
        asset_rates=asset_rates,
        window_size=ctx.settings.apy_window_size,
    )
    repo.save_all((*update.active, *update.finished))
    repo.save_all(update.rewards.values())
    summary.distributions_active = len(update.active)
    return replace(ctx, distributions=update.active)


def process_one_time_distribution(
    repo: Repository,
    summary: TickSummary,
    *,
    vault_id: str,
    token: str,
    amount: int,
    allocations: Sequence[Any] | None = None,
) -> int:
    """
    Credit a one-time distribution targeting a vault's users.

    Explicit allocations go to the listed users only; without them the amount is
    split between the vault's users by their assets. Returns the distributed amount.
    """
    vault_id = normalize_address(vault_id)
    if repo.load("Vault", vault_id) is None:
        summary.report_error(f"One-time distribution: vault {vault_id} not found")
        return 0

    rewards = {r.id: r for r in repo.list_all("DistributorReward")}
    if allocations is not None:
        rewards, distributed = distribute_to_selected_users(token, amount, allocations, rewards)
    else:
        weights = vault_user_weights(
            vault_id,
            repo.list_by_parent("Allocator", vault_id),
            repo.list_by_parent("LeverageStrategyPosition", vault_id),
        )
        shares = distribute_reward(weights, amount)
        if not shares:
            print(f"⚠️  One-time distribution: no users found for vault {vault_id}", file=sys.stderr)
        rewards = accumulate_rewards(rewards, token, shares)
        distributed = sum(reward for _, reward in shares)

    repo.save_all(rewards.values())
    return distributed


def process_vault_periodic_tasks(
    ctx: NetworkContext, caller: Caller, repo: Repository, vault: Vault, summary: TickSummary
) -> None:
    """Exit queue, minted osToken shares and leverage positions of a single vault."""
    allocators = repo.list_by_parent("Allocator", vault.id)
    positions = repo.list_by_parent("LeverageStrategyPosition", vault.id)
    exit_requests = repo.list_by_parent("ExitRequest", vault.id)
    for issue in validate_exit_tickets_monotonic(exit_requests):
        print(f"⚠️  {issue}", file=sys.stderr)

    try:
        reconciliation = reconcile_exit_requests(ctx, caller, vault, exit_requests)
    except AccountingError as ex:
        summary.report_error(f"Vault {vault.id}: exit queue reconciliation failed: {ex}")
    else:
        exit_requests = list(reconciliation.requests)
        allocators, positions = propagate_exit_earnings(reconciliation.earned_by_owner, allocators, positions)
        repo.save_all(reconciliation.snapshots)
        summary.exit_requests_updated += len(reconciliation.snapshots)

    exit_requests = refresh_claimability(exit_requests, ctx.timestamp, ctx.settings.claim_delay)
    repo.save_all(exit_requests)

    try:
        allocators = refresh_minted_os_token_shares(ctx, caller, vault, allocators)
    except AccountingError as ex:
        summary.report_error(f"Vault {vault.id}: minted osToken shares refresh failed: {ex}")

    if positions and ctx.settings.lending_pool:
        try:
            leverage = update_leverage_positions(ctx, caller, positions, allocators, exit_requests)
        except AccountingError as ex:
            summary.report_error(f"Vault {vault.id}: leverage positions update failed: {ex}")
        else:
            positions = list(leverage.positions)
            allocators = list(leverage.allocators)
            summary.leverage_positions_updated += len(positions)

    repo.save_all(allocators)
    repo.save_all(positions)

    apy = get_vault_apy(vault, ctx.distributions)
    if apy != vault.apy:
        repo.save(replace(vault, apy=apy))


def process_snapshots(ctx: NetworkContext, repo: Repository, summary: TickSummary) -> NetworkContext:
    """Take the daily snapshots when one is due."""
    network, duration = advance_snapshot_clock(ctx.network, ctx.timestamp)
    ctx = replace(ctx, network=network)
    repo.save(network)
    if duration is None:
        return ctx

    for vault in _vaults(repo):
        snapshot, vault = snapshot_vault(vault, ctx.timestamp, duration)
        repo.save(snapshot)
        repo.save(vault)
        summary.snapshots_taken += 1
        for allocator in repo.list_by_parent("Allocator", vault.id):
            allocator_snapshot, allocator = snapshot_allocator(allocator, ctx.timestamp, duration)
            repo.save(allocator_snapshot)
            repo.save(allocator)
            summary.snapshots_taken += 1
        for position in repo.list_by_parent("LeverageStrategyPosition", vault.id):
            position_snapshot, position = snapshot_leverage_position(position, ctx.timestamp)
            repo.save(position_snapshot)
            repo.save(position)
            summary.snapshots_taken += 1
    return ctx


def process_periodic_tasks(
    ctx: NetworkContext,
    caller: Caller,
    repo: Repository,
    summary: TickSummary,
    *,
    vaults: Iterable[Vault] | None = None,
    asset_rates: Mapping[str, int] | None = None,
) -> NetworkContext:
    """Run the periodic tasks of one tick: distributions, per-vault updates, snapshots."""
    ctx = process_distributions(ctx, repo, summary, asset_rates)
    if ctx.prices is None and ctx.settings.lending_pool and repo.list_all("LeverageStrategyPosition"):
        try:
            ctx = replace(ctx, prices=fetch_prices(ctx, caller))
        except AccountingError as ex:
            summary.report_error(f"Leverage oracle prices unavailable: {ex}")
    for vault in vaults if vaults is not None else _vaults(repo):
        if vault.is_genesis and not ctx.network.v2_pool_migrated:
            continue
        process_vault_periodic_tasks(ctx, caller, repo, vault, summary)
    return process_snapshots(ctx, repo, summary)


def run_tick(
    ctx: NetworkContext,
    caller: Caller,
    repo: Repository,
    *,
    rewards_update: RewardsUpdate | None = None,
    vaults_progress: Callable[[list[Vault]], Iterable[Vault]] | None = None,
) -> tuple[NetworkContext, TickSummary]:
    """
    Process one tick to completion and commit the store.

    vaults_progress wraps the per-vault loop, e.g. with a progress bar.
    """
    summary = TickSummary()
    if rewards_update is not None:
        ctx = process_rewards_update(ctx, caller, repo, rewards_update, summary)

    vaults = _vaults(repo)
    ctx = process_periodic_tasks(
        ctx, caller, repo, summary, vaults=vaults_progress(vaults) if vaults_progress else vaults
    )
    repo.save(ctx.os_token)
    repo.commit()
    return ctx, summary
