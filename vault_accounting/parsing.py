"""Keeper rewards update parsing."""

import json
import sys
from dataclasses import dataclass
from typing import Any

from vault_accounting.formatters import as_int, normalize_address, normalize_hex_str
from vault_accounting.models import Vault, VaultRewardUpdate


@dataclass(frozen=True)
class RewardsUpdate:
    """A keeper rewards update: the committed root and the per-vault rewards behind it."""

    rewards_root: str
    update_timestamp: int
    vaults: tuple[VaultRewardUpdate, ...]


def parse_json_bytes(raw_bytes: bytes) -> Any:
    return json.loads(raw_bytes.decode("utf-8"))


def parse_vault_reward(entry: dict[str, Any]) -> VaultRewardUpdate:
    """
    Parse one entry of the rewards "vaults" list.

    locked_mev_reward is absent for vaults with their own MEV escrow and defaults to 0.
    """
    proof = entry["proof"]
    if not isinstance(proof, list):
        raise ValueError("proof must be a list")
    return VaultRewardUpdate(
        vault=normalize_address(entry["vault"]),
        consensus_reward=as_int(entry["consensus_reward"]),
        unlocked_mev_reward=as_int(entry["unlocked_mev_reward"]),
        locked_mev_reward=as_int(entry.get("locked_mev_reward")),
        proof=tuple(normalize_hex_str(p) for p in proof),
    )


def parse_rewards_update(rewards_json: Any, *, rewards_root: str, update_timestamp: int) -> RewardsUpdate:
    """
    Parse the keeper's rewards JSON into a RewardsUpdate.

    Malformed vault entries are reported and skipped; a document without a "vaults"
    list raises ValueError.
    """
    if isinstance(rewards_json, (bytes, bytearray)):
        rewards_json = parse_json_bytes(bytes(rewards_json))
    if not isinstance(rewards_json, dict) or not isinstance(rewards_json.get("vaults"), list):
        raise ValueError("Unexpected rewards format (expected JSON object with a 'vaults' list)")

    vaults: list[VaultRewardUpdate] = []
    for i, entry in enumerate(rewards_json["vaults"]):
        try:
            if not isinstance(entry, dict):
                raise ValueError("entry is not an object")
            vaults.append(parse_vault_reward(entry))
        except (KeyError, TypeError, ValueError) as ex:
            print(f"⚠️  Rewards entry {i}: invalid vault reward ({ex!r}), skipping", file=sys.stderr)

    return RewardsUpdate(
        rewards_root=normalize_hex_str(rewards_root),
        update_timestamp=update_timestamp,
        vaults=tuple(vaults),
    )


def reward_period_assets(vault: Vault, update: VaultRewardUpdate, *, is_gnosis: bool) -> int:
    """
    Assets the vault earned since its previous rewards update.

    Consensus rewards always count; execution rewards count for vaults in the shared
    smoothing pool. Gnosis execution rewards arrive in another token and are left out.
    """
    period_assets = update.consensus_reward - vault.consensus_reward
    if is_gnosis or vault.mev_escrow:
        return period_assets
    return (
        period_assets
        + update.locked_mev_reward
        + update.unlocked_mev_reward
        - vault.locked_execution_reward
        - vault.unlocked_execution_reward
    )


def parse_one_time_allocations(raw: Any) -> list[Any]:
    """Parse the allocations list of a one-time distribution."""
    if isinstance(raw, (bytes, bytearray)):
        raw = parse_json_bytes(bytes(raw))
    if not isinstance(raw, list):
        raise ValueError("Unexpected one-time distribution format (expected JSON array)")
    return raw
