"""Leverage strategy position accounting.

A position nets the proxy's lending market account (supplied osToken collateral,
borrowed assets) against the proxy's stake in the vault.
"""

import sys
from collections.abc import Sequence
from dataclasses import dataclass, replace
from decimal import Decimal

from vault_accounting.constants import TOKEN_DECIMALS, WAD
from vault_accounting.contracts import asset_price_call, user_account_data_call
from vault_accounting.decoding import LendingAccount, decode_uint
from vault_accounting.exceptions import AccountingError, PriceUnavailableError
from vault_accounting.models import (
    Allocator,
    ExitRequest,
    LeverageStrategyPosition,
    NetworkContext,
    OsToken,
    Prices,
)
from vault_accounting.multicall import Caller, chunked_multicall


@dataclass(frozen=True)
class LeverageUpdate:
    positions: tuple[LeverageStrategyPosition, ...]
    allocators: tuple[Allocator, ...]


def convert_os_token_shares_to_assets(os_token: OsToken, shares: int) -> int:
    if os_token.total_supply == 0:
        return shares
    return shares * os_token.total_assets // os_token.total_supply


def convert_assets_to_os_token_shares(os_token: OsToken, assets: int) -> int:
    if os_token.total_assets == 0:
        return assets
    return assets * os_token.total_supply // os_token.total_assets


def value_to_amount(value: int, price: int) -> int:
    """Convert a base currency value into token units at price."""
    if price <= 0:
        raise PriceUnavailableError(f"cannot convert value {value} at price {price}")
    return value * 10**TOKEN_DECIMALS // price


def fetch_prices(ctx: NetworkContext, caller: Caller) -> Prices:
    """Read osToken and asset prices from the oracle; both are required."""
    settings = ctx.settings
    if not settings.price_oracle or not settings.os_token or not settings.asset_token:
        raise PriceUnavailableError("price oracle, osToken and asset token must be configured")

    calls = [
        asset_price_call(settings.price_oracle, settings.os_token),
        asset_price_call(settings.price_oracle, settings.asset_token),
    ]
    results = chunked_multicall(caller, calls, chunk_size=settings.chunk_size)
    os_token_price, asset_price = (decode_uint(r, description=c.description) for c, r in zip(calls, results))
    if os_token_price == 0 or asset_price == 0:
        raise PriceUnavailableError(f"zero oracle price: osToken={os_token_price} asset={asset_price}")
    return Prices(os_token=os_token_price, asset=asset_price)


def fetch_lending_accounts(ctx: NetworkContext, caller: Caller, proxies: Sequence[str]) -> dict[str, LendingAccount]:
    """Read the lending market accounts of proxies; failed reads are reported and left out."""
    lending_pool = ctx.settings.lending_pool
    if not lending_pool:
        raise AccountingError("lending pool is not configured")

    calls = [user_account_data_call(lending_pool, proxy) for proxy in proxies]
    results = chunked_multicall(
        caller, calls, chunk_size=ctx.settings.chunk_size, max_workers=ctx.settings.max_workers
    )
    accounts: dict[str, LendingAccount] = {}
    for proxy, call, result in zip(proxies, calls, results):
        try:
            accounts[proxy] = LendingAccount.decode(result, description=call.description)
        except AccountingError as ex:
            print(f"⚠️  Leverage proxy {proxy}: {ex}, skipping", file=sys.stderr)
    return accounts


def compute_leverage_position(
    position: LeverageStrategyPosition,
    os_token: OsToken,
    *,
    supplied_os_token_shares: int,
    borrowed_assets: int,
    staked_assets: int,
    minted_os_token_shares: int,
    borrow_ltv: int,
) -> LeverageStrategyPosition:
    """
    Net the lending account against the proxy's vault stake.

    When the debt covers the whole stake, the uncovered debt is taken out of the osToken
    collateral at the strategy's borrow LTV. Negative results are clamped to zero.
    """
    if borrowed_assets >= staked_assets:
        assets = 0
        if borrow_ltv <= 0:
            print(f"⚠️  Leverage position {position.id}: zero borrow LTV, osToken shares set to 0", file=sys.stderr)
            os_token_shares = 0
        else:
            left_os_token_assets = (borrowed_assets - staked_assets) * WAD // borrow_ltv
            os_token_shares = (
                supplied_os_token_shares
                - minted_os_token_shares
                - convert_assets_to_os_token_shares(os_token, left_os_token_assets)
            )
    else:
        os_token_shares = supplied_os_token_shares - minted_os_token_shares
        assets = staked_assets - borrowed_assets

    if os_token_shares < 0:
        print(
            f"⚠️  Leverage position {position.id}: osToken shares clamped to 0 (shortfall {-os_token_shares})",
            file=sys.stderr,
        )
        os_token_shares = 0
    if assets < 0:
        print(f"⚠️  Leverage position {position.id}: assets clamped to 0 (shortfall {-assets})", file=sys.stderr)
        assets = 0

    if supplied_os_token_shares > 0:
        supplied_assets = convert_os_token_shares_to_assets(os_token, supplied_os_token_shares)
        borrow_ltv_ratio = Decimal(borrowed_assets) / Decimal(supplied_assets) if supplied_assets else Decimal(0)
    else:
        borrow_ltv_ratio = Decimal(0)

    total_assets = convert_os_token_shares_to_assets(os_token, os_token_shares) + assets
    if position.exiting_percent > 0:
        exiting_os_token_shares = os_token_shares * position.exiting_percent // WAD
        exiting_assets = assets * position.exiting_percent // WAD
    else:
        exiting_os_token_shares = 0
        exiting_assets = 0

    return replace(
        position,
        os_token_shares=os_token_shares - exiting_os_token_shares,
        assets=assets - exiting_assets,
        exiting_os_token_shares=exiting_os_token_shares,
        exiting_assets=exiting_assets,
        total_assets=total_assets,
        borrow_ltv=borrow_ltv_ratio,
    )


def _exit_request_assets(position: LeverageStrategyPosition, exit_requests: dict[str, ExitRequest]) -> int:
    if position.exit_request is None:
        return 0
    request = exit_requests.get(position.exit_request)
    if request is None or request.is_claimed:
        return 0
    return request.total_assets


def update_leverage_positions(
    ctx: NetworkContext,
    caller: Caller,
    positions: Sequence[LeverageStrategyPosition],
    allocators: Sequence[Allocator],
    exit_requests: Sequence[ExitRequest] = (),
) -> LeverageUpdate:
    """
    Recompute every leverage position and credit the boost earnings to the user's allocator.

    Changes in the value of the proxy's exit request are credited by the exit queue
    reconciliation and are left out of the earnings computed here.
    Oracle prices come from the context when the tick already read them.
    """
    if not positions:
        return LeverageUpdate(positions=(), allocators=tuple(allocators))

    prices = ctx.prices if ctx.prices is not None else fetch_prices(ctx, caller)
    accounts = fetch_lending_accounts(ctx, caller, [p.proxy for p in positions])
    allocator_index = {(a.vault, a.address): i for i, a in enumerate(allocators)}
    requests_by_id = {r.id: r for r in exit_requests}
    out_allocators = list(allocators)
    out_positions: list[LeverageStrategyPosition] = []

    for position in positions:
        account = accounts.get(position.proxy)
        if account is None:
            out_positions.append(position)
            continue
        try:
            supplied_os_token_shares = value_to_amount(account.supplied_value, prices.os_token)
            borrowed_assets = value_to_amount(account.borrowed_value, prices.asset)
        except PriceUnavailableError as ex:
            print(f"⚠️  Leverage position {position.id}: {ex}, skipping", file=sys.stderr)
            out_positions.append(position)
            continue

        proxy_index = allocator_index.get((position.vault, position.proxy))
        proxy_allocator = (
            out_allocators[proxy_index] if proxy_index is not None else Allocator(position.vault, position.proxy)
        )
        exit_assets = _exit_request_assets(position, requests_by_id)

        updated = compute_leverage_position(
            position,
            ctx.os_token,
            supplied_os_token_shares=supplied_os_token_shares,
            borrowed_assets=borrowed_assets,
            staked_assets=proxy_allocator.assets + exit_assets,
            minted_os_token_shares=proxy_allocator.minted_os_token_shares + position.exit_os_token_shares,
            borrow_ltv=ctx.leverage_borrow_ltv,
        )

        os_token_shares_diff = (updated.os_token_shares + updated.exiting_os_token_shares) - (
            position.os_token_shares + position.exiting_os_token_shares
        )
        assets_diff = (updated.assets + updated.exiting_assets) - (position.assets + position.exiting_assets)
        earned_assets = convert_os_token_shares_to_assets(ctx.os_token, os_token_shares_diff) + assets_diff
        earned_assets -= exit_assets - position.exit_request_assets
        if position.total_assets == 0 and position.exiting_assets == 0 and position.exiting_os_token_shares == 0:
            # first valuation is the opening balance
            earned_assets = 0

        updated = replace(
            updated,
            exit_request_assets=exit_assets,
            period_earned_assets=updated.period_earned_assets + earned_assets,
            total_earned_boost_assets=updated.total_earned_boost_assets + max(earned_assets, 0),
        )
        out_positions.append(updated)

        user_index = allocator_index.get((position.vault, position.user))
        if user_index is None:
            out_allocators.append(Allocator(vault=position.vault, address=position.user))
            user_index = len(out_allocators) - 1
            allocator_index[(position.vault, position.user)] = user_index
        user_allocator = out_allocators[user_index]
        out_allocators[user_index] = replace(
            user_allocator, period_boost_earned_assets=user_allocator.period_boost_earned_assets + earned_assets
        )

    return LeverageUpdate(positions=tuple(out_positions), allocators=tuple(out_allocators))
