from dataclasses import replace
from decimal import Decimal

import pytest
from eth_abi import encode

from conftest import ALICE, BOB, FEE_RECIPIENT, PROOF, REWARDS_ROOT, VAULT, VAULT_2, decode_args, selector_of
from vault_accounting.config import Settings
from vault_accounting.constants import (
    CONVERT_TO_ASSETS_SELECTOR,
    EXIT_QUEUE_DATA_SELECTOR,
    EXITING_ASSETS_SELECTOR,
    GET_SHARES_SELECTOR,
    QUEUED_SHARES_SELECTOR,
    SECONDS_IN_DAY,
    TOTAL_ASSETS_SELECTOR,
    TOTAL_SHARES_SELECTOR,
    UPDATE_STATE_SELECTOR,
    WAD,
)
from vault_accounting.decoding import ExitQueueData
from vault_accounting.exceptions import AccountingError, CallFailedError
from vault_accounting.models import Allocator, Distribution, DistributionType, Network, Vault, VaultRewardUpdate
from vault_accounting.vaults import (
    StateCallsLayout,
    apply_rewards_update,
    convert_assets_to_shares,
    convert_shares_to_assets,
    get_state_calls_layout,
    get_vault_apy,
    refresh_minted_os_token_shares,
    sync_vault,
    update_vault_apy,
)

DAY_AGO = 1_700_000_000 - SECONDS_IN_DAY


def _vault(version=3, **kwargs):
    return Vault(id=VAULT, version=version, fee_recipient=FEE_RECIPIENT, **kwargs)


def _serve_state(ledger, *, rate, total_assets, total_shares, queued_shares=0, exiting_assets=0):
    ledger.on(VAULT, CONVERT_TO_ASSETS_SELECTOR, ["uint256"], [rate])
    ledger.on(VAULT, TOTAL_ASSETS_SELECTOR, ["uint256"], [total_assets])
    ledger.on(VAULT, TOTAL_SHARES_SELECTOR, ["uint256"], [total_shares])
    ledger.on(VAULT, QUEUED_SHARES_SELECTOR, ["uint256"], [queued_shares])
    ledger.on(VAULT, EXITING_ASSETS_SELECTOR, ["uint256"], [exiting_assets])


def test_share_conversions():
    vault = _vault(total_assets=1100, total_shares=1000)
    assert convert_shares_to_assets(vault, 100) == 110
    assert convert_assets_to_shares(vault, 110) == 100
    assert convert_shares_to_assets(_vault(), 100) == 100
    assert convert_assets_to_shares(_vault(), 100) == 100


@pytest.mark.parametrize(
    ("version", "settings", "is_genesis", "expected"),
    [
        (1, Settings(), False, StateCallsLayout(True, False, False)),
        (2, Settings(), False, StateCallsLayout(True, True, False)),
        (4, Settings(), False, StateCallsLayout(True, True, False)),
        (5, Settings(), False, StateCallsLayout(False, False, True)),
        (1, Settings(legacy_vaults=frozenset({VAULT})), False, StateCallsLayout(True, False, False)),
        (2, Settings(legacy_vaults=frozenset({VAULT})), False, StateCallsLayout(False, False, True)),
        (2, Settings(is_gnosis=True), False, StateCallsLayout(True, True, False)),
        (3, Settings(is_gnosis=True), False, StateCallsLayout(False, False, True)),
        (3, Settings(is_gnosis=True), True, StateCallsLayout(True, True, False)),
        (4, Settings(is_gnosis=True), True, StateCallsLayout(False, False, True)),
    ],
)
def test_state_calls_layout(version, settings, is_genesis, expected):
    assert get_state_calls_layout(_vault(version, is_genesis=is_genesis), settings) == expected


def test_sync_values_allocators_at_the_new_rate(ctx, ledger):
    vault = _vault(total_assets=1000, total_shares=1000)
    allocators = [Allocator(vault=VAULT, address=ALICE, shares=1000, assets=1000)]
    ctx = replace(ctx, network=Network(total_assets=1000))

    _serve_state(ledger, rate=WAD, total_assets=1000, total_shares=1000)
    first = sync_vault(ctx, ledger, vault, allocators, DAY_AGO)
    # first observation only sets the baseline
    assert first.vault.base_apys == ()
    assert first.vault.rewards_timestamp == DAY_AGO
    assert first.allocators[0].assets == 1000
    assert first.allocators[0].period_stake_earned_assets == 0

    _serve_state(ledger, rate=WAD * 11 // 10, total_assets=1100, total_shares=1000)
    ctx = replace(ctx, network=first.network)
    second = sync_vault(ctx, ledger, first.vault, first.allocators, DAY_AGO + SECONDS_IN_DAY)

    assert second.vault.rate == WAD * 11 // 10
    assert second.vault.total_assets == 1100
    assert second.vault.period_stake_earned_assets == 100
    # 10% in a day
    assert second.vault.base_apys == (Decimal(3650),)
    assert second.vault.apy == Decimal(3650)
    (alice,) = second.allocators
    assert alice.assets == 1100
    assert alice.period_stake_earned_assets == 100
    assert second.network.total_assets == 1100
    assert second.network.total_earned_assets == 100


def test_first_sync_of_an_empty_vault_uses_identity_conversion(ctx, ledger):
    vault = _vault()
    allocators = [Allocator(vault=VAULT, address=ALICE, shares=1000)]

    _serve_state(ledger, rate=WAD, total_assets=0, total_shares=0)
    first = sync_vault(ctx, ledger, vault, allocators, DAY_AGO)
    assert first.vault.total_shares == 0
    assert first.allocators[0].assets == 1000

    _serve_state(ledger, rate=WAD * 11 // 10, total_assets=1100, total_shares=1000)
    ctx = replace(ctx, network=first.network)
    second = sync_vault(ctx, ledger, first.vault, first.allocators, DAY_AGO + SECONDS_IN_DAY)
    assert second.vault.total_shares == 1000
    assert second.allocators[0].assets == 1100


def test_commit_mints_fee_shares_to_fee_recipient(ctx, ledger):
    vault = _vault(rate=WAD, total_assets=1000, total_shares=1000, rewards_timestamp=DAY_AGO)
    update = VaultRewardUpdate(
        vault=VAULT, consensus_reward=101, unlocked_mev_reward=5, locked_mev_reward=5, proof=PROOF
    )
    vault = apply_rewards_update(vault, update, REWARDS_ROOT, is_gnosis=False)
    allocators = [Allocator(vault=VAULT, address=ALICE, shares=1000, assets=1000)]

    ledger.on(VAULT, GET_SHARES_SELECTOR, ["uint256"], [0], committed=[10])
    ledger.on(VAULT, CONVERT_TO_ASSETS_SELECTOR, ["uint256"], [WAD], committed=[WAD * 11 // 10])
    ledger.on(VAULT, TOTAL_ASSETS_SELECTOR, ["uint256"], [1000], committed=[1111])
    ledger.on(VAULT, TOTAL_SHARES_SELECTOR, ["uint256"], [1000], committed=[1010])
    ledger.on(VAULT, QUEUED_SHARES_SELECTOR, ["uint256"], [0])
    ledger.on(VAULT, EXITING_ASSETS_SELECTOR, ["uint256"], [0])

    result = sync_vault(ctx, ledger, vault, allocators, ctx.timestamp, period_assets=111)

    before_chunk, state_chunk = ledger.chunks
    assert len(before_chunk) == 1
    target, data = state_chunk[0]
    assert (target, "0x" + data[:4].hex()) == (VAULT, UPDATE_STATE_SELECTOR)
    ((root, proof_reward, unlocked_mev_reward, proof),) = decode_args(
        ["(bytes32,int160,uint160,bytes32[])"], data[4:]
    )
    assert "0x" + root.hex() == REWARDS_ROOT
    assert (proof_reward, unlocked_mev_reward) == (111, 5)
    assert tuple("0x" + p.hex() for p in proof) == PROOF

    alice, fee_recipient = result.allocators
    assert alice.assets == 1100
    assert fee_recipient.address == FEE_RECIPIENT
    assert fee_recipient.shares == 10
    assert fee_recipient.assets == 11
    assert fee_recipient.period_extra_earned_assets == 11
    assert result.vault.period_stake_earned_assets == 100
    assert result.vault.unclaimed_fee_recipient_shares == 10

    # the commit is still pending on the next tick: the same fee shares are not counted twice
    again = sync_vault(ctx, ledger, result.vault, result.allocators, ctx.timestamp)
    fee_recipient = again.allocators[1]
    assert fee_recipient.shares == 10
    assert fee_recipient.period_extra_earned_assets == 11


def test_required_read_failure_raises(ctx, ledger):
    _serve_state(ledger, rate=WAD, total_assets=1000, total_shares=1000)
    ledger.revert(VAULT, TOTAL_SHARES_SELECTOR)
    with pytest.raises(CallFailedError, match="totalShares"):
        sync_vault(ctx, ledger, _vault(), [], ctx.timestamp)
    assert issubclass(CallFailedError, AccountingError)


def test_optional_read_failure_keeps_last_value(ctx, ledger, capsys):
    _serve_state(ledger, rate=WAD, total_assets=1000, total_shares=1000, exiting_assets=3)
    ledger.revert(VAULT, QUEUED_SHARES_SELECTOR)
    result = sync_vault(ctx, ledger, _vault(queued_shares=5), [], ctx.timestamp)
    assert result.vault.queued_shares == 5
    assert result.vault.exiting_assets == 3
    assert "using last known value" in capsys.readouterr().err


def test_exit_queue_data_is_read_for_new_versions(ctx, ledger):
    _serve_state(ledger, rate=WAD, total_assets=1000, total_shares=1000)
    ledger.on(VAULT, EXIT_QUEUE_DATA_SELECTOR, ExitQueueData.TYPES, [7, 1, 30, 40, 50])
    result = sync_vault(ctx, ledger, _vault(version=5), [], ctx.timestamp)
    assert (result.vault.queued_shares, result.vault.exiting_assets, result.vault.exiting_tickets) == (7, 40, 30)
    selectors = {"0x" + data[:4].hex() for _, data in ledger.chunks[0]}
    assert QUEUED_SHARES_SELECTOR not in selectors
    assert EXITING_ASSETS_SELECTOR not in selectors


def test_genesis_vault_waits_for_migration(ctx, ledger, capsys):
    ctx = replace(ctx, network=Network(v2_pool_migrated=False))
    vault = _vault(is_genesis=True)
    result = sync_vault(ctx, ledger, vault, [], ctx.timestamp)
    assert result.vault is vault
    assert ledger.chunks == []
    assert "waiting for the legacy pool migration" in capsys.readouterr().err


def test_rate_inconsistency_is_reported(ctx, ledger, capsys):
    _serve_state(ledger, rate=2 * WAD, total_assets=1000, total_shares=1000)
    sync_vault(ctx, ledger, _vault(), [], ctx.timestamp)
    assert "rate inconsistency" in capsys.readouterr().err


@pytest.mark.parametrize(
    ("mev_escrow", "is_gnosis", "expected"),
    [
        (None, False, (110, 5, 5)),
        ("0x" + "99" * 20, False, (100, 0, 0)),
        (None, True, (100, 5, 5)),
    ],
)
def test_apply_rewards_update(mev_escrow, is_gnosis, expected):
    update = VaultRewardUpdate(
        vault=VAULT, consensus_reward=100, unlocked_mev_reward=5, locked_mev_reward=5, proof=PROOF
    )
    vault = apply_rewards_update(_vault(mev_escrow=mev_escrow), update, REWARDS_ROOT, is_gnosis=is_gnosis)
    assert (vault.proof_reward, vault.proof_unlocked_mev_reward, vault.locked_execution_reward) == expected
    assert vault.rewards_root == REWARDS_ROOT
    assert vault.proof == PROOF
    assert vault.consensus_reward == 100
    assert vault.unlocked_execution_reward == 5


def test_apy_is_clamped_for_v2_vaults():
    settings = Settings()
    vault = _vault(version=2)
    updated = update_vault_apy(
        vault, settings, (), from_timestamp=DAY_AGO, to_timestamp=DAY_AGO + SECONDS_IN_DAY, rate_change=WAD // 10
    )
    assert updated.base_apy == settings.max_vault_apy

    legacy = Settings(legacy_vaults=frozenset({VAULT}))
    updated = update_vault_apy(
        vault, legacy, (), from_timestamp=DAY_AGO, to_timestamp=DAY_AGO + SECONDS_IN_DAY, rate_change=WAD // 10
    )
    assert updated.base_apy == Decimal(3650)


def test_apy_update_skips_empty_period(capsys):
    vault = _vault()
    assert update_vault_apy(vault, Settings(), (), from_timestamp=10, to_timestamp=10, rate_change=1) is vault
    assert "non-positive APY period" in capsys.readouterr().err


def test_vault_apy_adds_vault_distributions():
    vault = _vault(base_apy=Decimal(3), base_apys=(Decimal(1), Decimal(3), Decimal(5)))

    def dist(dist_id, target, apy, distribution_type=DistributionType.VAULT):
        return Distribution(
            id=dist_id,
            token=ALICE,
            data=target,
            amount=1,
            start_timestamp=0,
            end_timestamp=1,
            distribution_type=distribution_type,
            apy=Decimal(apy),
        )

    distributions = [
        dist("a", VAULT, 2),
        dist("b", VAULT_2, 7),
        dist("c", VAULT, 11, DistributionType.LEVERAGE_STRATEGY),
        dist("d", VAULT, -1),
    ]
    assert get_vault_apy(vault, distributions) == Decimal(5)
    # day APY averages the last two base rates
    assert get_vault_apy(vault, distributions, use_day_apy=True) == Decimal(6)


def _serve_minted(ledger, minted_by_user):
    def handler(args, committed):
        (user,) = decode_args(["address"], args)
        minted = minted_by_user.get(user.lower())
        if minted is None:
            return None
        return encode(["uint256"], [minted])

    ledger.on_call(VAULT, selector_of("osTokenPositions(address)"), handler)


def test_refresh_minted_os_token_shares(ctx, ledger):
    allocators = [
        Allocator(vault=VAULT, address=ALICE, shares=10, minted_os_token_shares=1),
        Allocator(vault=VAULT, address=FEE_RECIPIENT, shares=0, minted_os_token_shares=0),
    ]
    _serve_minted(ledger, {ALICE: 3})
    refreshed = refresh_minted_os_token_shares(ctx, ledger, _vault(), allocators)
    assert [a.minted_os_token_shares for a in refreshed] == [3, 0]
    assert ledger.calls_count == 1


def test_failed_minted_read_only_skips_that_allocator(ctx, ledger, capsys):
    allocators = [
        Allocator(vault=VAULT, address=ALICE, shares=10, minted_os_token_shares=1),
        Allocator(vault=VAULT, address=BOB, shares=10, minted_os_token_shares=4),
    ]
    _serve_minted(ledger, {ALICE: 7})

    refreshed = refresh_minted_os_token_shares(ctx, ledger, _vault(), allocators)

    assert [a.minted_os_token_shares for a in refreshed] == [7, 4]
    assert refreshed[1] is allocators[1]
    err = capsys.readouterr().err
    assert f"Allocator {VAULT}-{BOB}" in err
    assert "minted shares unchanged" in err


def test_refresh_minted_os_token_shares_rejects_decrease(ctx, ledger):
    allocators = [Allocator(vault=VAULT, address=ALICE, shares=10, minted_os_token_shares=5)]
    _serve_minted(ledger, {ALICE: 3})
    with pytest.raises(AccountingError, match="minted osToken shares decreased"):
        refresh_minted_os_token_shares(ctx, ledger, _vault(), allocators)


def test_refresh_minted_os_token_shares_skips_disabled_vaults(ctx, ledger):
    allocators = [Allocator(vault=VAULT, address=ALICE, shares=10)]
    assert refresh_minted_os_token_shares(ctx, ledger, _vault(is_os_token_enabled=False), allocators) == allocators
    assert ledger.chunks == []
