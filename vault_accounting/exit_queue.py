"""Exit queue reconciliation.

Two sequential batches: the exited-assets calldata depends on the queue index read
by the first batch.
"""

import sys
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, replace

from vault_accounting.config import Settings
from vault_accounting.constants import MAX_UINT255
from vault_accounting.contracts import calculate_exited_assets_call, exit_queue_index_call, get_update_state_call
from vault_accounting.decoding import ExitedAssets, decode_required
from vault_accounting.exceptions import AccountingError
from vault_accounting.models import (
    Allocator,
    ExitRequest,
    ExitRequestSnapshot,
    LeverageStrategyPosition,
    NetworkContext,
    Vault,
)
from vault_accounting.multicall import Caller, ContractCall, chunked_multicall
from vault_accounting.snapshots import snapshot_exit_request
from vault_accounting.validation import validate_exit_request_transition
from vault_accounting.vaults import convert_shares_to_assets, get_vault_apy


@dataclass(frozen=True)
class ExitQueueReconciliation:
    # Every input request, reconciled ones replaced by their updated version.
    requests: tuple[ExitRequest, ...]
    snapshots: tuple[ExitRequestSnapshot, ...]
    # Earned assets per (vault, owner) to credit to period accumulators.
    earned_by_owner: dict[tuple[str, str], int]


def fetch_exit_queue_indexes(
    caller: Caller,
    vault_id: str,
    requests: Sequence[ExitRequest],
    settings: Settings,
    *,
    update_state_call: ContractCall | None = None,
) -> dict[str, int | None]:
    """
    Phase 1: read the queue index of every request.

    A negative index means the checkpoint has not reached the ticket yet and maps to
    None. Requests whose read failed are missing from the result.
    """
    calls = [exit_queue_index_call(vault_id, r.position_ticket) for r in requests]
    results = chunked_multicall(
        caller,
        calls,
        update_state_call=update_state_call,
        chunk_size=settings.chunk_size,
        max_workers=settings.max_workers,
    )

    indexes: dict[str, int | None] = {}
    for request, call, result in zip(requests, calls, results):
        try:
            (index,) = decode_required(result, ["int256"], description=call.description)
        except AccountingError as ex:
            print(f"⚠️  Exit request {request.id}: {ex}, skipping", file=sys.stderr)
            continue
        indexes[request.id] = None if index < 0 else int(index)
    return indexes


def fetch_exited_assets(
    caller: Caller,
    vault_id: str,
    requests: Sequence[ExitRequest],
    settings: Settings,
    *,
    update_state_call: ContractCall | None = None,
) -> dict[str, ExitedAssets]:
    """
    Phase 2: compute the exited assets of every request at its queue index.

    Requests without an index are evaluated against the queue tail (MAX_UINT255).
    """
    calls = [
        calculate_exited_assets_call(
            vault_id,
            r.receiver,
            r.position_ticket,
            r.timestamp,
            r.exit_queue_index if r.exit_queue_index is not None else MAX_UINT255,
        )
        for r in requests
    ]
    results = chunked_multicall(
        caller,
        calls,
        update_state_call=update_state_call,
        chunk_size=settings.chunk_size,
        max_workers=settings.max_workers,
    )

    exited: dict[str, ExitedAssets] = {}
    for request, call, result in zip(requests, calls, results):
        try:
            exited[request.id] = ExitedAssets.decode(result, description=call.description)
        except AccountingError as ex:
            print(f"⚠️  Exit request {request.id}: {ex}, skipping", file=sys.stderr)
    return exited


def is_exit_claimable(request: ExitRequest, exited_assets: int, now: int, claim_delay: int) -> bool:
    """Nothing exited is never claimable; otherwise the claim delay must have passed."""
    if exited_assets == 0:
        return False
    # a request exactly claim_delay old is already claimable
    return now - request.timestamp >= claim_delay


def apply_exited_assets(
    vault: Vault, request: ExitRequest, exited: ExitedAssets, now: int, claim_delay: int
) -> ExitRequest:
    """Value an exit request from its exited assets and the tickets still waiting in its tranche."""
    if exited.left_tickets > 1:
        if request.is_v2_position:
            if vault.exiting_tickets == 0:
                share_portion = 0
            else:
                share_portion = exited.left_tickets * vault.exiting_assets // vault.exiting_tickets
        else:
            share_portion = convert_shares_to_assets(vault, exited.left_tickets)
        total_assets = share_portion + exited.exited_assets
    else:
        total_assets = exited.exited_assets

    return replace(
        request,
        total_assets=total_assets,
        exited_assets=exited.exited_assets,
        is_claimable=is_exit_claimable(request, exited.exited_assets, now, claim_delay),
    )


def reconcile_exit_requests(
    ctx: NetworkContext, caller: Caller, vault: Vault, exit_requests: Sequence[ExitRequest]
) -> ExitQueueReconciliation:
    """Reconcile every unclaimed exit request of the vault against the ledger."""
    if vault.is_genesis and not ctx.network.v2_pool_migrated:
        return ExitQueueReconciliation(requests=tuple(exit_requests), snapshots=(), earned_by_owner={})

    pending = [r for r in exit_requests if not r.is_claimed and r.vault == vault.id]
    if not pending:
        return ExitQueueReconciliation(requests=tuple(exit_requests), snapshots=(), earned_by_owner={})

    update_state_call = get_update_state_call(vault)
    indexes = fetch_exit_queue_indexes(
        caller, vault.id, pending, ctx.settings, update_state_call=update_state_call
    )
    indexed = [replace(r, exit_queue_index=indexes[r.id]) for r in pending if r.id in indexes]
    exited_by_id = fetch_exited_assets(caller, vault.id, indexed, ctx.settings, update_state_call=update_state_call)

    vault_apy = get_vault_apy(vault, ctx.distributions, use_day_apy=True)
    updated: dict[str, ExitRequest] = {}
    snapshots: list[ExitRequestSnapshot] = []
    earned_by_owner: dict[tuple[str, str], int] = {}
    for request in indexed:
        exited = exited_by_id.get(request.id)
        if exited is None:
            continue
        previous = next(r for r in pending if r.id == request.id)
        new_request = apply_exited_assets(vault, request, exited, ctx.timestamp, ctx.settings.claim_delay)
        for issue in validate_exit_request_transition(previous, new_request):
            print(f"⚠️  {issue}", file=sys.stderr)

        earned_assets = new_request.total_assets - previous.total_assets
        # a request valued at zero is not realized yet, its delta is not an earning
        if new_request.total_assets > 0 and earned_assets != 0:
            key = (vault.id, new_request.owner)
            earned_by_owner[key] = earned_by_owner.get(key, 0) + earned_assets

        updated[new_request.id] = new_request
        snapshots.append(snapshot_exit_request(new_request, earned_assets, ctx.timestamp, vault_apy))

    return ExitQueueReconciliation(
        requests=tuple(updated.get(r.id, r) for r in exit_requests),
        snapshots=tuple(snapshots),
        earned_by_owner=earned_by_owner,
    )


def propagate_exit_earnings(
    earned_by_owner: Mapping[tuple[str, str], int],
    allocators: Sequence[Allocator],
    positions: Sequence[LeverageStrategyPosition] = (),
) -> tuple[list[Allocator], list[LeverageStrategyPosition]]:
    """
    Credit exit request earnings to their owners' period accumulators.

    Requests owned by a leverage proxy credit the leverage position; every other owner
    gets the earnings as stake earnings of its allocator in the vault.
    """
    position_by_proxy = {(p.vault, p.proxy): i for i, p in enumerate(positions)}
    allocator_by_key = {(a.vault, a.address): i for i, a in enumerate(allocators)}
    out_allocators = list(allocators)
    out_positions = list(positions)

    for (vault_id, owner), earned in earned_by_owner.items():
        position_index = position_by_proxy.get((vault_id, owner))
        if position_index is not None:
            position = out_positions[position_index]
            out_positions[position_index] = replace(
                position,
                period_earned_assets=position.period_earned_assets + earned,
                total_earned_boost_assets=position.total_earned_boost_assets + max(earned, 0),
            )
            continue

        allocator_index = allocator_by_key.get((vault_id, owner))
        if allocator_index is None:
            out_allocators.append(Allocator(vault=vault_id, address=owner, period_stake_earned_assets=earned))
            allocator_by_key[(vault_id, owner)] = len(out_allocators) - 1
            continue
        allocator = out_allocators[allocator_index]
        out_allocators[allocator_index] = replace(
            allocator, period_stake_earned_assets=allocator.period_stake_earned_assets + earned
        )
    return out_allocators, out_positions


def refresh_claimability(requests: Iterable[ExitRequest], now: int, claim_delay: int) -> list[ExitRequest]:
    """Flip requests to claimable once their claim delay has passed, without any ledger read."""
    out: list[ExitRequest] = []
    for request in requests:
        if (
            request.exited_assets > 0
            and not request.is_claimed
            and not request.is_claimable
            and is_exit_claimable(request, request.exited_assets, now, claim_delay)
        ):
            request = replace(request, is_claimable=True)
        out.append(request)
    return out
