from dataclasses import replace
from decimal import Decimal

import pytest
from eth_abi import encode

from conftest import ALICE, ASSET_TOKEN, LENDING_POOL, OS_TOKEN, PRICE_ORACLE, PROXY, VAULT, decode_args, selector_of
from vault_accounting.config import Settings
from vault_accounting.constants import WAD
from vault_accounting.decoding import LendingAccount
from vault_accounting.exceptions import PriceUnavailableError
from vault_accounting.leverage import (
    compute_leverage_position,
    convert_assets_to_os_token_shares,
    convert_os_token_shares_to_assets,
    fetch_prices,
    update_leverage_positions,
    value_to_amount,
)
from vault_accounting.models import Allocator, ExitRequest, LeverageStrategyPosition, NetworkContext, OsToken, Prices

BASE = 10**8


def _position(**kwargs):
    return LeverageStrategyPosition(vault=VAULT, user=ALICE, proxy=PROXY, **kwargs)


def test_os_token_conversions():
    os_token = OsToken(total_supply=100, total_assets=110)
    assert convert_os_token_shares_to_assets(os_token, 100) == 110
    assert convert_assets_to_os_token_shares(os_token, 110) == 100
    assert convert_os_token_shares_to_assets(OsToken(), 7) == 7


def test_value_to_amount():
    assert value_to_amount(2 * BASE, BASE) == 2 * WAD
    with pytest.raises(PriceUnavailableError):
        value_to_amount(2 * BASE, 0)


def test_debt_below_stake():
    position = compute_leverage_position(
        _position(),
        OsToken(total_supply=100, total_assets=110),
        supplied_os_token_shares=1000,
        borrowed_assets=50,
        staked_assets=100,
        minted_os_token_shares=200,
        borrow_ltv=WAD // 2,
    )
    assert position.os_token_shares == 800
    assert position.assets == 50
    assert position.total_assets == 880 + 50
    assert position.borrow_ltv == Decimal(50) / Decimal(1100)


def test_debt_above_stake_is_taken_from_collateral():
    position = compute_leverage_position(
        _position(),
        OsToken(total_supply=100, total_assets=110),
        supplied_os_token_shares=1000,
        borrowed_assets=150,
        staked_assets=100,
        minted_os_token_shares=0,
        borrow_ltv=WAD // 2,
    )
    # 50 uncovered at 50% LTV is 100 assets of collateral, 90 osToken shares
    assert position.assets == 0
    assert position.os_token_shares == 910
    assert position.total_assets == 1001


def test_zero_borrow_ltv_zeroes_os_token_shares(capsys):
    position = compute_leverage_position(
        _position(),
        OsToken(),
        supplied_os_token_shares=1000,
        borrowed_assets=150,
        staked_assets=100,
        minted_os_token_shares=0,
        borrow_ltv=0,
    )
    assert (position.os_token_shares, position.assets, position.total_assets) == (0, 0, 0)
    assert "zero borrow LTV" in capsys.readouterr().err


def test_shortfall_is_clamped(capsys):
    position = compute_leverage_position(
        _position(),
        OsToken(),
        supplied_os_token_shares=100,
        borrowed_assets=0,
        staked_assets=10,
        minted_os_token_shares=150,
        borrow_ltv=WAD,
    )
    assert position.os_token_shares == 0
    assert position.assets == 10
    assert "clamped to 0 (shortfall 50)" in capsys.readouterr().err


def test_exiting_share_is_split_out():
    position = compute_leverage_position(
        _position(exiting_percent=WAD // 4),
        OsToken(),
        supplied_os_token_shares=400,
        borrowed_assets=0,
        staked_assets=100,
        minted_os_token_shares=0,
        borrow_ltv=WAD,
    )
    assert (position.os_token_shares, position.exiting_os_token_shares) == (300, 100)
    assert (position.assets, position.exiting_assets) == (75, 25)
    assert position.total_assets == 500


class _LendingMarket:
    def __init__(self, ledger, *, supplied_value, borrowed_value, prices=None):
        self.accounts = {PROXY: (supplied_value, borrowed_value)}
        self.prices = prices or {OS_TOKEN: BASE, ASSET_TOKEN: BASE}
        ledger.on_call(PRICE_ORACLE, selector_of("getAssetPrice(address)"), self._price)
        ledger.on_call(LENDING_POOL, selector_of("getUserAccountData(address)"), self._account)

    def _price(self, args, committed):
        (asset,) = decode_args(["address"], args)
        return encode(["uint256"], [self.prices[asset.lower()]])

    def _account(self, args, committed):
        (user,) = decode_args(["address"], args)
        account = self.accounts.get(user.lower())
        if account is None:
            return None
        return encode(list(LendingAccount.TYPES), [*account, 0, 0, 0, 0])


@pytest.fixture
def leverage_ctx(ctx):
    return replace(ctx, os_token=OsToken(total_supply=WAD, total_assets=WAD), leverage_borrow_ltv=WAD // 2)


def _allocators():
    return [
        Allocator(vault=VAULT, address=PROXY, shares=8 * WAD, assets=8 * WAD, minted_os_token_shares=2 * WAD),
        Allocator(vault=VAULT, address=ALICE, shares=WAD, assets=WAD),
    ]


def test_first_valuation_is_the_baseline_then_earnings_are_credited(leverage_ctx, ledger):
    market = _LendingMarket(ledger, supplied_value=10 * BASE, borrowed_value=5 * BASE)

    first = update_leverage_positions(leverage_ctx, ledger, [_position()], _allocators())
    (position,) = first.positions
    assert position.os_token_shares == 8 * WAD
    assert position.assets == 3 * WAD
    assert position.total_assets == 11 * WAD
    assert position.period_earned_assets == 0
    assert first.allocators[1].period_boost_earned_assets == 0

    market.accounts[PROXY] = (10 * BASE + BASE // 2, 5 * BASE)
    second = update_leverage_positions(leverage_ctx, ledger, first.positions, first.allocators)
    (position,) = second.positions
    assert position.period_earned_assets == WAD // 2
    assert position.total_earned_boost_assets == WAD // 2
    assert second.allocators[1].period_boost_earned_assets == WAD // 2


def test_prices_from_the_context_are_not_read_again(leverage_ctx, ledger):
    _LendingMarket(
        ledger, supplied_value=10 * BASE, borrowed_value=5 * BASE, prices={OS_TOKEN: 0, ASSET_TOKEN: 0}
    )
    leverage_ctx = replace(leverage_ctx, prices=Prices(os_token=BASE, asset=BASE))

    result = update_leverage_positions(leverage_ctx, ledger, [_position()], _allocators())

    (position,) = result.positions
    assert position.total_assets == 11 * WAD
    assert all(target.lower() != PRICE_ORACLE for chunk in ledger.chunks for target, _ in chunk)


def test_exit_request_growth_is_not_counted_twice(leverage_ctx, ledger):
    _LendingMarket(ledger, supplied_value=10 * BASE, borrowed_value=5 * BASE)
    request = ExitRequest(
        vault=VAULT, owner=PROXY, receiver=PROXY, position_ticket=1, timestamp=0, total_assets=2 * WAD
    )
    position = _position(exit_request=request.id)

    first = update_leverage_positions(leverage_ctx, ledger, [position], _allocators(), [request])
    (position,) = first.positions
    assert position.assets == 5 * WAD
    assert position.exit_request_assets == 2 * WAD

    grown = replace(request, total_assets=2 * WAD + WAD // 2)
    second = update_leverage_positions(leverage_ctx, ledger, first.positions, first.allocators, [grown])
    (position,) = second.positions
    assert position.assets == 5 * WAD + WAD // 2
    assert position.period_earned_assets == 0
    assert position.exit_request_assets == 2 * WAD + WAD // 2


def test_failed_account_read_keeps_position(leverage_ctx, ledger, capsys):
    market = _LendingMarket(ledger, supplied_value=10 * BASE, borrowed_value=5 * BASE)
    market.accounts.clear()
    position = _position(total_assets=7)
    result = update_leverage_positions(leverage_ctx, ledger, [position], _allocators())
    assert result.positions == (position,)
    assert "Leverage proxy" in capsys.readouterr().err


def test_zero_price_is_rejected(leverage_ctx, ledger):
    _LendingMarket(ledger, supplied_value=1, borrowed_value=1, prices={OS_TOKEN: 0, ASSET_TOKEN: BASE})
    with pytest.raises(PriceUnavailableError, match="zero oracle price"):
        fetch_prices(leverage_ctx, ledger)


def test_prices_require_configuration(ledger):
    ctx = NetworkContext(settings=Settings(), timestamp=0, block_number=0)
    with pytest.raises(PriceUnavailableError, match="must be configured"):
        fetch_prices(ctx, ledger)
