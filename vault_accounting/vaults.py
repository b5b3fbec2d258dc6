"""Vault state synchronization against the ledger."""

import sys
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from decimal import Decimal

from vault_accounting.apy import calculate_average, push_rate, rate_change_to_apy
from vault_accounting.config import Settings
from vault_accounting.constants import SNAPSHOTS_PER_DAY, WAD
from vault_accounting.contracts import (
    convert_to_assets_call,
    exit_queue_data_call,
    exiting_assets_call,
    get_shares_call,
    get_update_state_call,
    os_token_positions_call,
    queued_shares_call,
    total_assets_call,
    total_shares_call,
)
from vault_accounting.decoding import ExitQueueData, decode_optional, decode_uint
from vault_accounting.distribution import get_distribution_apy
from vault_accounting.exceptions import AccountingError, CallFailedError, DecodeError
from vault_accounting.formatters import normalize_address
from vault_accounting.models import (
    Allocator,
    Distribution,
    DistributionType,
    Network,
    NetworkContext,
    Vault,
    VaultRewardUpdate,
)
from vault_accounting.multicall import Caller, chunked_multicall
from vault_accounting.validation import validate_vault_state


@dataclass(frozen=True)
class VaultState:
    """Vault state read from the ledger after committing pending rewards."""

    rate: int
    total_assets: int
    total_shares: int
    queued_shares: int
    exiting_assets: int
    exiting_tickets: int
    # None when there was no pending rewards commit to measure against.
    fee_recipient_earned_shares: int | None


@dataclass(frozen=True)
class StateCallsLayout:
    """Which optional state reads a vault version supports."""

    has_queued_shares: bool
    has_exiting_assets: bool
    has_exit_queue_data: bool


@dataclass(frozen=True)
class VaultSyncResult:
    vault: Vault
    allocators: tuple[Allocator, ...]
    network: Network


def convert_shares_to_assets(vault: Vault, shares: int) -> int:
    if vault.total_shares == 0:
        return shares
    return shares * vault.total_assets // vault.total_shares


def convert_assets_to_shares(vault: Vault, assets: int) -> int:
    if vault.total_assets == 0:
        return assets
    return assets * vault.total_shares // vault.total_assets


def get_state_calls_layout(vault: Vault, settings: Settings) -> StateCallsLayout:
    version = vault.version
    if settings.is_gnosis:
        last_legacy_version = 3 if vault.is_genesis else 2
        return StateCallsLayout(
            has_queued_shares=version <= last_legacy_version,
            has_exiting_assets=version <= last_legacy_version,
            has_exit_queue_data=version > last_legacy_version,
        )
    if settings.is_legacy_vault(vault.id):
        return StateCallsLayout(
            has_queued_shares=version <= 1,
            has_exiting_assets=False,
            has_exit_queue_data=version >= 2,
        )
    return StateCallsLayout(
        has_queued_shares=version <= 4,
        has_exiting_assets=2 <= version <= 4,
        has_exit_queue_data=version >= 5,
    )


def fetch_vault_state(caller: Caller, vault: Vault, settings: Settings) -> VaultState:
    """
    Read the vault state, committing the pending rewards first when there are any.

    The fee recipient balance is read once without the commit and once with it; the
    difference is the fee minted by the commit. Rate and totals are required reads,
    the queue figures fall back to the last known values.
    """
    update_state_call = get_update_state_call(vault)

    fee_recipient_shares_before = 0
    if update_state_call is not None:
        before_call = get_shares_call(vault, vault.fee_recipient)
        (before,) = chunked_multicall(caller, [before_call], chunk_size=settings.chunk_size)
        fee_recipient_shares_before = decode_uint(before, description=before_call.description)

    calls = []
    if update_state_call is not None:
        calls.append(get_shares_call(vault, vault.fee_recipient))
    calls.extend([convert_to_assets_call(vault, WAD), total_assets_call(vault), total_shares_call(vault)])

    layout = get_state_calls_layout(vault, settings)
    if layout.has_queued_shares:
        calls.append(queued_shares_call(vault))
    if layout.has_exiting_assets:
        calls.append(exiting_assets_call(vault))
    if layout.has_exit_queue_data:
        calls.append(exit_queue_data_call(vault))

    results = chunked_multicall(
        caller,
        calls,
        update_state_call=update_state_call,
        chunk_size=settings.chunk_size,
        max_workers=settings.max_workers,
    )
    slots = list(zip(calls, results))

    fee_recipient_earned_shares = None
    if update_state_call is not None:
        call, result = slots.pop(0)
        fee_recipient_earned_shares = decode_uint(result, description=call.description) - fee_recipient_shares_before

    rate, total_assets, total_shares = (decode_uint(result, description=call.description) for call, result in slots[:3])
    slots = slots[3:]

    queued_shares = vault.queued_shares
    exiting_assets = vault.exiting_assets
    exiting_tickets = vault.exiting_tickets
    if layout.has_queued_shares:
        call, result = slots.pop(0)
        (queued_shares,) = decode_optional(result, ["uint256"], (queued_shares,), description=call.description)
    if layout.has_exiting_assets:
        call, result = slots.pop(0)
        (exiting_assets,) = decode_optional(result, ["uint256"], (exiting_assets,), description=call.description)
    if layout.has_exit_queue_data:
        call, result = slots.pop(0)
        try:
            exit_queue_data = ExitQueueData.decode(result, description=call.description)
        except (CallFailedError, DecodeError) as ex:
            print(f"⚠️  {ex}, using last known exit queue state", file=sys.stderr)
        else:
            queued_shares = exit_queue_data.queued_shares
            exiting_assets = exit_queue_data.total_exiting_assets
            exiting_tickets = exit_queue_data.total_exiting_tickets

    return VaultState(
        rate=rate,
        total_assets=total_assets,
        total_shares=total_shares,
        queued_shares=queued_shares,
        exiting_assets=exiting_assets,
        exiting_tickets=exiting_tickets,
        fee_recipient_earned_shares=fee_recipient_earned_shares,
    )


def apply_rewards_update(vault: Vault, update: VaultRewardUpdate, rewards_root: str, *, is_gnosis: bool) -> Vault:
    """Store the commit data of a keeper rewards update on the vault."""
    if vault.mev_escrow:
        # own mev escrow: nothing is locked, execution rewards are harvested separately
        proof_reward = update.consensus_reward
        proof_unlocked_mev_reward = 0
    elif is_gnosis:
        # execution rewards are received in a different token and converted separately
        proof_reward = update.consensus_reward
        proof_unlocked_mev_reward = update.unlocked_mev_reward
    else:
        proof_reward = update.consensus_reward + update.locked_mev_reward + update.unlocked_mev_reward
        proof_unlocked_mev_reward = update.unlocked_mev_reward

    return replace(
        vault,
        rewards_root=rewards_root,
        proof_reward=proof_reward,
        proof_unlocked_mev_reward=proof_unlocked_mev_reward,
        proof=tuple(update.proof),
        consensus_reward=update.consensus_reward,
        locked_execution_reward=0 if vault.mev_escrow else update.locked_mev_reward,
        unlocked_execution_reward=update.unlocked_mev_reward,
    )


def get_vault_apy(vault: Vault, distributions: Iterable[Distribution], *, use_day_apy: bool = False) -> Decimal:
    """Base APY plus the APY of active incentive distributions targeting the vault."""
    if use_day_apy and len(vault.base_apys) > SNAPSHOTS_PER_DAY:
        apy = calculate_average(vault.base_apys[-SNAPSHOTS_PER_DAY:])
    else:
        apy = vault.base_apy

    for distribution in distributions:
        if distribution.distribution_type != DistributionType.VAULT or normalize_address(distribution.data) != vault.id:
            continue
        distribution_apy = get_distribution_apy(distribution, use_day_apy=use_day_apy)
        if distribution_apy > 0:
            apy += distribution_apy
    return apy


def update_vault_apy(
    vault: Vault,
    settings: Settings,
    distributions: Sequence[Distribution],
    *,
    from_timestamp: int | None,
    to_timestamp: int,
    rate_change: int,
) -> Vault:
    """Push the period rate into the vault's APY window."""
    if from_timestamp is None:
        # first observation is the baseline
        return vault
    duration = to_timestamp - from_timestamp
    if duration <= 0:
        print(
            f"⚠️  Vault {vault.id}: non-positive APY period from={from_timestamp} to={to_timestamp}, skipping",
            file=sys.stderr,
        )
        return vault

    current_apy = rate_change_to_apy(rate_change, duration)
    if vault.version == 2 and not settings.is_legacy_vault(vault.id) and current_apy > settings.max_vault_apy:
        current_apy = settings.max_vault_apy

    base_apys = push_rate(vault.base_apys, current_apy, settings.apy_window_size)
    vault = replace(vault, base_apys=base_apys, base_apy=calculate_average(base_apys))
    return replace(vault, apy=get_vault_apy(vault, distributions))


def sync_allocators(vault: Vault, allocators: Iterable[Allocator]) -> list[Allocator]:
    """Re-value allocator shares at the vault's current rate."""
    out: list[Allocator] = []
    for allocator in allocators:
        if allocator.shares <= 0:
            out.append(allocator)
            continue
        assets = convert_shares_to_assets(vault, allocator.shares)
        out.append(
            replace(
                allocator,
                assets=assets,
                period_stake_earned_assets=allocator.period_stake_earned_assets + assets - allocator.assets,
            )
        )
    return out


def _credit_fee_recipient(
    vault: Vault, allocators: list[Allocator], earned_shares: int
) -> tuple[list[Allocator], int]:
    """Credit fee shares minted by the pending commit to the fee recipient, returns earned assets."""
    fee_recipient = normalize_address(vault.fee_recipient)
    index = next((i for i, a in enumerate(allocators) if a.address == fee_recipient), None)
    if index is None:
        allocators.append(Allocator(vault=vault.id, address=fee_recipient))
        index = len(allocators) - 1

    allocator = allocators[index]
    shares = allocator.shares + earned_shares - vault.unclaimed_fee_recipient_shares
    assets = convert_shares_to_assets(vault, shares)
    earned_assets = assets - convert_shares_to_assets(vault, allocator.shares)
    allocators[index] = replace(
        allocator,
        shares=shares,
        assets=assets,
        period_extra_earned_assets=allocator.period_extra_earned_assets + earned_assets,
    )
    return allocators, earned_assets


def sync_vault(
    ctx: NetworkContext,
    caller: Caller,
    vault: Vault,
    allocators: Sequence[Allocator],
    update_timestamp: int,
    *,
    period_assets: int | None = None,
) -> VaultSyncResult:
    """
    Replicate the ledger state of a vault and propagate it to its allocators.

    period_assets are the assets the vault earned since its last sync, derived from the
    rewards update when there is one; otherwise they are estimated from the rate change.
    Raises AccountingError when a required read fails; nothing is mutated in that case.
    """
    if vault.is_genesis and not ctx.network.v2_pool_migrated:
        print(f"ℹ️  Vault {vault.id}: waiting for the legacy pool migration", file=sys.stderr)
        return VaultSyncResult(vault=vault, allocators=tuple(allocators), network=ctx.network)

    state = fetch_vault_state(caller, vault, ctx.settings)

    if period_assets is None:
        period_assets = 0
        if vault.rewards_timestamp is not None:
            period_assets = (state.rate - vault.rate) * vault.total_shares // WAD

    updated = update_vault_apy(
        vault,
        ctx.settings,
        ctx.distributions,
        from_timestamp=vault.rewards_timestamp,
        to_timestamp=update_timestamp,
        rate_change=state.rate - vault.rate,
    )
    updated = replace(
        updated,
        rate=state.rate,
        total_assets=state.total_assets,
        total_shares=state.total_shares,
        queued_shares=state.queued_shares,
        exiting_assets=state.exiting_assets,
        exiting_tickets=state.exiting_tickets,
        rewards_timestamp=update_timestamp,
        period_stake_earned_assets=vault.period_stake_earned_assets + period_assets,
    )
    for issue in validate_vault_state(updated):
        print(f"⚠️  {issue}", file=sys.stderr)

    synced = sync_allocators(updated, allocators)
    if state.fee_recipient_earned_shares is not None:
        if state.fee_recipient_earned_shares > 0:
            synced, fee_assets = _credit_fee_recipient(updated, synced, state.fee_recipient_earned_shares)
            updated = replace(updated, period_stake_earned_assets=updated.period_stake_earned_assets - fee_assets)
        updated = replace(updated, unclaimed_fee_recipient_shares=state.fee_recipient_earned_shares)

    network = replace(
        ctx.network,
        total_assets=ctx.network.total_assets - vault.total_assets + state.total_assets,
        total_earned_assets=ctx.network.total_earned_assets + period_assets,
    )
    return VaultSyncResult(vault=updated, allocators=tuple(synced), network=network)


def refresh_minted_os_token_shares(
    ctx: NetworkContext, caller: Caller, vault: Vault, allocators: Sequence[Allocator]
) -> list[Allocator]:
    """
    Refresh the osToken shares minted by every staking allocator.

    Minted shares only grow through fees; a decrease means the read is inconsistent and
    the whole refresh for the vault is abandoned. A failed read leaves that allocator unchanged.
    """
    if not vault.is_os_token_enabled:
        return list(allocators)

    to_update = [a for a in allocators if a.shares > 0]
    calls = [os_token_positions_call(vault.id, a.address) for a in to_update]
    results = chunked_multicall(
        caller, calls, chunk_size=ctx.settings.bulk_chunk_size, max_workers=ctx.settings.max_workers
    )

    refreshed: dict[str, Allocator] = {}
    for allocator, call, result in zip(to_update, calls, results):
        try:
            minted = decode_uint(result, description=call.description)
        except AccountingError as ex:
            print(f"⚠️  Allocator {allocator.id}: {ex}, minted shares unchanged", file=sys.stderr)
            continue
        if minted < allocator.minted_os_token_shares:
            raise AccountingError(
                f"Vault {vault.id}: minted osToken shares decreased for allocator {allocator.address}: "
                f"{allocator.minted_os_token_shares} -> {minted}"
            )
        refreshed[allocator.id] = replace(allocator, minted_os_token_shares=minted)
    return [refreshed.get(a.id, a) for a in allocators]
