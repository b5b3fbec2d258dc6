"""Validation logic for synced vaults and exit requests."""

from collections.abc import Sequence

from vault_accounting.constants import WAD
from vault_accounting.models import ExitRequest, Vault


def validate_vault_state(vault: Vault, *, warn_only: bool = True) -> list[str]:
    """
    Validate vault state invariants after a sync.

    Returns list of validation warnings/errors. If warn_only=False, raises ValueError on the first one.
    """
    issues: list[str] = []

    # 1. Rate consistency: rate ~= totalAssets / totalShares (1 wei of rounding allowed)
    if vault.total_shares > 0 and vault.rate > 0:
        expected_rate = vault.total_assets * WAD // vault.total_shares
        if abs(expected_rate - vault.rate) > 1:
            msg = (
                f"Vault {vault.id}: rate inconsistency: rate={vault.rate} != "
                f"totalAssets({vault.total_assets}) * WAD / totalShares({vault.total_shares}) = {expected_rate}"
            )
            issues.append(msg)
            if not warn_only:
                raise ValueError(msg)

    # 2. Queued shares cannot exceed total shares
    if vault.queued_shares > vault.total_shares:
        msg = f"Vault {vault.id}: queuedShares {vault.queued_shares} > totalShares {vault.total_shares}"
        issues.append(msg)
        if not warn_only:
            raise ValueError(msg)

    # 3. Non-negative values (all uint256 on-chain fields)
    non_negative_fields = {
        "rate": vault.rate,
        "totalAssets": vault.total_assets,
        "totalShares": vault.total_shares,
        "queuedShares": vault.queued_shares,
        "exitingAssets": vault.exiting_assets,
        "exitingTickets": vault.exiting_tickets,
    }
    for name, value in non_negative_fields.items():
        if value < 0:
            msg = f"Vault {vault.id}: negative {name}: {value}"
            issues.append(msg)
            if not warn_only:
                raise ValueError(msg)

    return issues


def validate_exit_request_transition(prev: ExitRequest, cur: ExitRequest, *, warn_only: bool = True) -> list[str]:
    """
    Validate that an exit request only moves forward between two reconciliations.

    Exited assets never decrease and a claimable request never becomes unclaimable again.
    """
    issues: list[str] = []

    if cur.exited_assets < prev.exited_assets:
        issues.append(
            f"Exit request {cur.id}: exitedAssets decreased: {prev.exited_assets} -> {cur.exited_assets}"
        )
    if prev.is_claimable and not cur.is_claimable:
        issues.append(f"Exit request {cur.id}: claimable request became unclaimable")
    if cur.total_assets < 0:
        issues.append(f"Exit request {cur.id}: negative totalAssets: {cur.total_assets}")

    if issues and not warn_only:
        raise ValueError(issues[0])
    return issues


def validate_exit_tickets_monotonic(requests: Sequence[ExitRequest]) -> list[str]:
    """Position tickets of one vault must be unique; sorted order follows request time."""
    issues: list[str] = []
    by_vault: dict[str, list[ExitRequest]] = {}
    for request in requests:
        by_vault.setdefault(request.vault, []).append(request)

    for vault, vault_requests in by_vault.items():
        ordered = sorted(vault_requests, key=lambda r: r.position_ticket)
        for prev, cur in zip(ordered, ordered[1:]):
            if prev.position_ticket == cur.position_ticket:
                issues.append(f"Vault {vault}: duplicate exit ticket {cur.position_ticket}")
            elif cur.timestamp < prev.timestamp:
                issues.append(
                    f"Vault {vault}: exit ticket {cur.position_ticket} requested at {cur.timestamp} "
                    f"before ticket {prev.position_ticket} at {prev.timestamp}"
                )
    return issues
