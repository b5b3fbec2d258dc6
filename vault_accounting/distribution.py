"""Proportional reward distribution and periodic incentive vesting."""

import sys
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any

from vault_accounting.apy import calculate_apy, calculate_average, push_rate
from vault_accounting.constants import SNAPSHOTS_PER_DAY, SNAPSHOTS_PER_WEEK, WAD
from vault_accounting.formatters import normalize_address
from vault_accounting.models import Allocator, Distribution, DistributorReward, LeverageStrategyPosition

WeightsProvider = Callable[[Distribution], Sequence[tuple[str, int]] | None]


@dataclass(frozen=True)
class DistributionsUpdate:
    """Result of one periodic distributions pass."""

    active: tuple[Distribution, ...]
    finished: tuple[Distribution, ...]
    rewards: dict[str, DistributorReward]


def distribute_reward(participants: Sequence[tuple[str, int]], total_reward: int) -> list[tuple[str, int]]:
    """
    Split total_reward proportionally to participant weights.

    Participants with a non-positive weight take no part. Every participant but the last
    gets a truncated share; the last one gets the remainder, so the returned amounts
    always sum to exactly total_reward. Order of the result follows the input.
    """
    eligible = [(participant, weight) for participant, weight in participants if weight > 0]
    total_weight = sum(weight for _, weight in eligible)
    if total_weight == 0:
        return []

    out: list[tuple[str, int]] = []
    distributed = 0
    for i, (participant, weight) in enumerate(eligible):
        if i == len(eligible) - 1:
            reward = total_reward - distributed
        else:
            reward = total_reward * weight // total_weight
        distributed += reward
        out.append((participant, reward))
    return out


def vault_user_weights(
    vault_id: str,
    allocators: Iterable[Allocator],
    positions: Iterable[LeverageStrategyPosition] = (),
) -> list[tuple[str, int]]:
    """
    Weights of a vault's users: their staked assets plus the assets held by their leverage proxy.

    Proxies themselves are not users and receive nothing directly.
    """
    vault_id = normalize_address(vault_id)
    vault_allocators = [a for a in allocators if a.vault == vault_id]
    assets_by_address = {a.address: a.assets for a in vault_allocators}
    proxy_by_user = {p.user: p.proxy for p in positions if p.vault == vault_id}
    proxies = set(proxy_by_user.values())

    weights: list[tuple[str, int]] = []
    for allocator in vault_allocators:
        if allocator.address in proxies:
            continue
        user_assets = allocator.assets
        proxy = proxy_by_user.get(allocator.address)
        if proxy is not None:
            user_assets += assets_by_address.get(proxy, 0)
        if user_assets <= 0:
            continue
        weights.append((allocator.address, user_assets))

    # users that only stake through their proxy
    staking_users = {address for address, _ in weights}
    for user, proxy in proxy_by_user.items():
        if user in staking_users or user in assets_by_address:
            continue
        proxy_assets = assets_by_address.get(proxy, 0)
        if proxy_assets > 0:
            weights.append((user, proxy_assets))
    return weights


def leverage_position_weights(vault_id: str, positions: Iterable[LeverageStrategyPosition]) -> list[tuple[str, int]]:
    """Weights of the leverage positions of a vault: their total boosted assets."""
    vault_id = normalize_address(vault_id)
    return [(p.user, p.total_assets) for p in positions if p.vault == vault_id and p.total_assets > 0]


def accumulate_rewards(
    rewards: Mapping[str, DistributorReward], token: str, allocations: Iterable[tuple[str, int]]
) -> dict[str, DistributorReward]:
    """Add allocated amounts to the users' cumulative rewards in token."""
    out = dict(rewards)
    token = normalize_address(token)
    for user, amount in allocations:
        if amount <= 0:
            continue
        reward = DistributorReward(token=token, user=normalize_address(user))
        reward = out.get(reward.id, reward)
        out[reward.id] = replace(reward, cumulative_amount=reward.cumulative_amount + amount)
    return out


def convert_token_amount_to_assets(token: str, amount: int, asset_rates: Mapping[str, int]) -> int | None:
    """Value a token amount in vault assets; asset_rates maps token -> assets per token (WAD)."""
    rate = asset_rates.get(normalize_address(token))
    if rate is None:
        return None
    return amount * rate // WAD


def get_distribution_apy(distribution: Distribution, *, use_day_apy: bool = False) -> Decimal:
    if use_day_apy and len(distribution.apys) > SNAPSHOTS_PER_DAY:
        return calculate_average(distribution.apys[-SNAPSHOTS_PER_DAY:])
    return distribution.apy


def update_distribution_apy(
    distribution: Distribution,
    distributed_assets: int,
    principal_assets: int,
    duration: int,
    *,
    window_size: int = SNAPSHOTS_PER_WEEK,
) -> Distribution:
    if principal_assets <= 0 or distributed_assets <= 0 or duration <= 0:
        return distribution
    apys = push_rate(distribution.apys, calculate_apy(distributed_assets, principal_assets, duration), window_size)
    return replace(distribution, apys=apys, apy=calculate_average(apys))


def update_periodic_distributions(
    distributions: Sequence[Distribution],
    now: int,
    *,
    weights_for: WeightsProvider,
    rewards: Mapping[str, DistributorReward],
    asset_rates: Mapping[str, int],
    window_size: int = SNAPSHOTS_PER_WEEK,
) -> DistributionsUpdate:
    """
    Vest every active distribution up to now and distribute the vested amount.

    weights_for returns the weighted participants of a distribution, or None when its
    target is unknown; such distributions are dropped from the active set.
    """
    active: list[Distribution] = []
    finished: list[Distribution] = []
    out_rewards = dict(rewards)

    for dist in distributions:
        if dist.is_finished:
            finished.append(dist)
            continue
        if dist.start_timestamp >= now:
            # not started yet
            active.append(dist)
            continue

        weights = weights_for(dist)
        if weights is None:
            print(
                f"⚠️  Distribution {dist.id}: unknown {dist.distribution_type.value} target {dist.data}, dropping",
                file=sys.stderr,
            )
            finished.append(replace(dist, is_dropped=True))
            continue

        total_duration = dist.end_timestamp - dist.start_timestamp
        passed_duration = min(now - dist.start_timestamp, total_duration)
        distributed_amount = dist.amount * passed_duration // total_duration

        principal_assets = sum(weight for _, weight in weights if weight > 0)
        if principal_assets == 0:
            print(f"⚠️  Distribution {dist.id}: no users found for {dist.data}", file=sys.stderr)
        out_rewards = accumulate_rewards(out_rewards, dist.token, distribute_reward(weights, distributed_amount))

        distributed_assets = convert_token_amount_to_assets(dist.token, distributed_amount, asset_rates)
        if distributed_assets is None:
            print(f"⚠️  Distribution {dist.id}: no asset rate for {dist.token}, APY unchanged", file=sys.stderr)
        else:
            dist = update_distribution_apy(
                dist, distributed_assets, principal_assets, passed_duration, window_size=window_size
            )

        dist = replace(dist, amount=dist.amount - distributed_amount, start_timestamp=now)
        if dist.is_finished:
            finished.append(dist)
        else:
            active.append(dist)

    return DistributionsUpdate(active=tuple(active), finished=tuple(finished), rewards=out_rewards)


def distribute_to_selected_users(
    token: str,
    total_reward: int,
    allocations: Sequence[Any],
    rewards: Mapping[str, DistributorReward],
) -> tuple[dict[str, DistributorReward], int]:
    """
    Credit a one-time distribution with explicit per-user amounts.

    Malformed or negative entries are skipped; processing stops at the first entry that
    would push the total past total_reward. Returns the updated rewards and the amount
    actually distributed.
    """
    distributed = 0
    credited: list[tuple[str, int]] = []
    for i, entry in enumerate(allocations):
        if not isinstance(entry, Mapping):
            print(f"⚠️  One-time distribution: entry {i} is not an object, skipping", file=sys.stderr)
            continue
        user = entry.get("address")
        raw_amount = entry.get("amount")
        if not isinstance(user, str) or not isinstance(raw_amount, str):
            print(f"⚠️  One-time distribution: user or amount is invalid for entry {i}, skipping", file=sys.stderr)
            continue
        try:
            amount = int(raw_amount)
        except ValueError:
            print(f"⚠️  One-time distribution: invalid amount {raw_amount!r} for entry {i}", file=sys.stderr)
            continue
        if amount < 0:
            print(f"⚠️  One-time distribution: amount is negative for entry {i}, skipping", file=sys.stderr)
            continue
        if distributed + amount > total_reward:
            print(
                f"⚠️  One-time distribution: entry {i} exceeds the total amount {total_reward}, stopping",
                file=sys.stderr,
            )
            break
        distributed += amount
        credited.append((user, amount))

    if distributed == 0:
        print("⚠️  One-time distribution: no users credited", file=sys.stderr)
    return accumulate_rewards(rewards, token, credited), distributed
