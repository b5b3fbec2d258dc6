"""Calldata builders for batched reads and single contract reads."""

from collections.abc import Sequence
from typing import TYPE_CHECKING

from eth_abi import encode
from eth_utils import function_signature_to_4byte_selector

from vault_accounting.constants import (
    ASSET_PRICE_SIGNATURE,
    CALCULATE_EXITED_ASSETS_SELECTOR,
    CONVERT_TO_ASSETS_SELECTOR,
    EXIT_QUEUE_DATA_SELECTOR,
    EXIT_QUEUE_INDEX_SELECTOR,
    EXITING_ASSETS_SELECTOR,
    GET_SHARES_SELECTOR,
    LEVERAGE_STRATEGY_MIN_ABI,
    OS_TOKEN_CONTROLLER_MIN_ABI,
    OS_TOKEN_POSITIONS_SIGNATURE,
    QUEUED_SHARES_SELECTOR,
    TOTAL_ASSETS_SELECTOR,
    TOTAL_SHARES_SELECTOR,
    UPDATE_STATE_SELECTOR,
    USER_ACCOUNT_DATA_SIGNATURE,
    VAULT_MIN_ABI,
)
from vault_accounting.formatters import normalize_address
from vault_accounting.models import OsToken, Vault
from vault_accounting.multicall import ContractCall

if TYPE_CHECKING:
    from web3 import Web3  # pragma: no cover

_OS_TOKEN_POSITIONS_SELECTOR = function_signature_to_4byte_selector(OS_TOKEN_POSITIONS_SIGNATURE)
_USER_ACCOUNT_DATA_SELECTOR = function_signature_to_4byte_selector(USER_ACCOUNT_DATA_SIGNATURE)
_ASSET_PRICE_SELECTOR = function_signature_to_4byte_selector(ASSET_PRICE_SIGNATURE)


def _selector(hex_selector: str) -> bytes:
    return bytes.fromhex(hex_selector[2:])


def _encode_call(selector: bytes, types: Sequence[str] = (), args: Sequence = ()) -> bytes:
    if not types:
        return selector
    return selector + encode(list(types), list(args))


def get_update_state_call(vault: Vault) -> ContractCall | None:
    """
    Build the call that commits the vault's pending rewards, if there is one to commit.

    Meta vaults and vaults without a complete rewards proof have nothing to commit.
    """
    if (
        vault.is_meta_vault
        or vault.rewards_root is None
        or vault.proof_reward is None
        or vault.proof_unlocked_mev_reward is None
        or vault.proof is None
    ):
        return None

    rewards_root = bytes.fromhex(vault.rewards_root.removeprefix("0x"))
    proof = [bytes.fromhex(p.removeprefix("0x")) for p in vault.proof]
    data = _encode_call(
        _selector(UPDATE_STATE_SELECTOR),
        ["(bytes32,int160,uint160,bytes32[])"],
        [(rewards_root, vault.proof_reward, vault.proof_unlocked_mev_reward, proof)],
    )
    return ContractCall(vault.id, data, description=f"updateState of vault {vault.id}")


def get_shares_call(vault: Vault, user: str) -> ContractCall:
    return ContractCall(
        vault.id,
        _encode_call(_selector(GET_SHARES_SELECTOR), ["address"], [user]),
        description=f"getShares({user}) of vault {vault.id}",
    )


def convert_to_assets_call(vault: Vault, shares: int) -> ContractCall:
    return ContractCall(
        vault.id,
        _encode_call(_selector(CONVERT_TO_ASSETS_SELECTOR), ["uint256"], [shares]),
        description=f"convertToAssets of vault {vault.id}",
    )


def total_assets_call(vault: Vault) -> ContractCall:
    return ContractCall(vault.id, _selector(TOTAL_ASSETS_SELECTOR), description=f"totalAssets of vault {vault.id}")


def total_shares_call(vault: Vault) -> ContractCall:
    return ContractCall(vault.id, _selector(TOTAL_SHARES_SELECTOR), description=f"totalShares of vault {vault.id}")


def queued_shares_call(vault: Vault) -> ContractCall:
    return ContractCall(vault.id, _selector(QUEUED_SHARES_SELECTOR), description=f"queuedShares of vault {vault.id}")


def exiting_assets_call(vault: Vault) -> ContractCall:
    return ContractCall(
        vault.id, _selector(EXITING_ASSETS_SELECTOR), description=f"totalExitingAssets of vault {vault.id}"
    )


def exit_queue_data_call(vault: Vault) -> ContractCall:
    return ContractCall(
        vault.id, _selector(EXIT_QUEUE_DATA_SELECTOR), description=f"getExitQueueData of vault {vault.id}"
    )


def exit_queue_index_call(vault_id: str, position_ticket: int) -> ContractCall:
    return ContractCall(
        vault_id,
        _encode_call(_selector(EXIT_QUEUE_INDEX_SELECTOR), ["uint256"], [position_ticket]),
        description=f"getExitQueueIndex({position_ticket}) of vault {vault_id}",
    )


def calculate_exited_assets_call(
    vault_id: str, receiver: str, position_ticket: int, timestamp: int, exit_queue_index: int
) -> ContractCall:
    return ContractCall(
        vault_id,
        _encode_call(
            _selector(CALCULATE_EXITED_ASSETS_SELECTOR),
            ["address", "uint256", "uint256", "uint256"],
            [receiver, position_ticket, timestamp, exit_queue_index],
        ),
        description=f"calculateExitedAssets({position_ticket}) of vault {vault_id}",
    )


def os_token_positions_call(vault_id: str, user: str) -> ContractCall:
    return ContractCall(
        vault_id,
        _encode_call(_OS_TOKEN_POSITIONS_SELECTOR, ["address"], [user]),
        description=f"osTokenPositions({user}) of vault {vault_id}",
    )


def user_account_data_call(lending_pool: str, user: str) -> ContractCall:
    return ContractCall(
        lending_pool,
        _encode_call(_USER_ACCOUNT_DATA_SELECTOR, ["address"], [user]),
        description=f"getUserAccountData({user})",
    )


def asset_price_call(price_oracle: str, asset: str) -> ContractCall:
    return ContractCall(
        price_oracle,
        _encode_call(_ASSET_PRICE_SELECTOR, ["address"], [asset]),
        description=f"getAssetPrice({asset})",
    )


def read_leverage_borrow_ltv(w3: "Web3", leverage_strategy: str, *, block_identifier: int | str = "latest") -> int:
    """Read the strategy's borrow LTV (WAD)."""
    contract = w3.eth.contract(address=w3.to_checksum_address(leverage_strategy), abi=LEVERAGE_STRATEGY_MIN_ABI)
    return int(contract.functions.getBorrowLtv().call(block_identifier=block_identifier))


def read_os_token(
    w3: "Web3", controller: str, previous: OsToken, *, block_identifier: int | str = "latest"
) -> OsToken:
    """Refresh osToken supply and backing assets from the vault controller."""
    contract = w3.eth.contract(address=w3.to_checksum_address(controller), abi=OS_TOKEN_CONTROLLER_MIN_ABI)
    total_supply = contract.functions.totalShares().call(block_identifier=block_identifier)
    total_assets = contract.functions.totalAssets().call(block_identifier=block_identifier)
    return OsToken(total_supply=int(total_supply), total_assets=int(total_assets), apy=previous.apy)


def read_vault(w3: "Web3", vault_address: str, *, block_identifier: int | str = "latest") -> Vault:
    """Build a new vault entity from its on-chain version and fee recipient."""
    contract = w3.eth.contract(address=w3.to_checksum_address(vault_address), abi=VAULT_MIN_ABI)
    version = contract.functions.version().call(block_identifier=block_identifier)
    fee_recipient = contract.functions.feeRecipient().call(block_identifier=block_identifier)
    return Vault(
        id=normalize_address(vault_address),
        version=int(version),
        fee_recipient=normalize_address(fee_recipient),
    )
