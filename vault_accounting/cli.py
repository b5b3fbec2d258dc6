"""CLI and main logic."""

import argparse
import json
import os
import sys
from pathlib import Path

from tqdm import tqdm

from vault_accounting.config import load_settings
from vault_accounting.console import print_tick_summary
from vault_accounting.constants import DEFAULT_IPFS_GATEWAYS, NETWORK_ID
from vault_accounting.contracts import read_leverage_borrow_ltv, read_os_token, read_vault
from vault_accounting.formatters import normalize_address
from vault_accounting.ipfs import fetch_ipfs_bytes
from vault_accounting.models import OsToken
from vault_accounting.multicall import Web3MulticallCaller
from vault_accounting.parsing import parse_one_time_allocations, parse_rewards_update
from vault_accounting.storage import ENTITY_TYPES, JsonFileRepository, entity_from_dict
from vault_accounting.tasks import TickSummary, build_context, process_one_time_distribution, run_tick

# Internal defaults (not exposed as CLI flags)
DEFAULT_TIMEOUT = 30


def parse_args(argv: list[str]) -> argparse.Namespace:
    """Parse command-line arguments."""
    p = argparse.ArgumentParser(description="Run one vault accounting tick against an execution-layer node.")
    p.add_argument(
        "--rpc-url",
        default=None,
        help="Execution-layer RPC URL. Required if ETH_RPC_URL environment variable is not set.",
    )
    p.add_argument("--multicall", default=None, help="Multicall3 address (default: canonical deployment).")
    p.add_argument("--store", default=None, help="Store directory (default: VAULT_ACCOUNTING_STORE or XDG cache).")
    p.add_argument("--block", default="latest", help="Block number or tag to read state at (default: latest).")
    p.add_argument(
        "--register-vault",
        action="append",
        default=[],
        metavar="ADDRESS",
        help="Add a vault to the store before the tick (repeatable).",
    )
    p.add_argument("--seed", default=None, help="JSON file with entities to load into the store, keyed by kind.")
    p.add_argument("--rewards-cid", default=None, help="IPFS CID of a keeper rewards update to apply.")
    p.add_argument("--rewards-file", default=None, help="Local keeper rewards update JSON to apply.")
    p.add_argument("--rewards-root", default=None, help="Rewards root committed with the rewards update.")
    p.add_argument(
        "--update-timestamp",
        type=int,
        default=None,
        help="Timestamp of the rewards update (default: block timestamp).",
    )
    p.add_argument(
        "--one-time-vault", default=None, metavar="ADDRESS", help="Vault targeted by a one-time distribution."
    )
    p.add_argument("--one-time-token", default=None, help="Token of the one-time distribution.")
    p.add_argument("--one-time-amount", type=int, default=None, help="Total amount of the one-time distribution.")
    p.add_argument(
        "--one-time-allocations",
        default=None,
        metavar="FILE_OR_CID",
        help="Per-user allocations JSON (local file or IPFS CID). Without it the amount is split by user assets.",
    )
    p.add_argument("--os-token-controller", default=None, help="osToken vault controller address.")
    p.add_argument("--chunk-size", type=int, default=None, help="Calls per multicall chunk.")
    p.add_argument("--max-workers", type=int, default=None, help="Concurrent multicall chunks.")
    p.add_argument("--gnosis", action="store_true", help="Use the Gnosis chain vault version layout.")
    p.add_argument(
        "--no-cache",
        action="store_true",
        help="Disable caching of IPFS content for this run.",
    )
    return p.parse_args(argv)


def _load_seed(repo: JsonFileRepository, path: str) -> int:
    with open(path, encoding="utf-8") as f:
        seed = json.load(f)
    if not isinstance(seed, dict):
        raise ValueError("Unexpected seed format (expected JSON object keyed by entity kind)")
    count = 0
    for kind, entities in seed.items():
        if kind not in ENTITY_TYPES:
            print(f"⚠️  Unknown entity kind in seed: {kind}", file=sys.stderr)
            continue
        for data in entities:
            repo.save(entity_from_dict(kind, data))
            count += 1
    return count


def main(argv: list[str]) -> int:
    """Main entry point."""
    args = parse_args(argv)

    try:
        from web3 import Web3
    except ImportError as ex:  # pragma: no cover
        print("Missing dependency. Run: pip install -e .", file=sys.stderr)
        raise SystemExit(2) from ex

    # Require RPC URL to be provided either via --rpc-url or ETH_RPC_URL environment variable
    rpc_url = args.rpc_url or os.getenv("ETH_RPC_URL")
    if not rpc_url:
        print(
            "Error: RPC URL is required. Provide --rpc-url or set ETH_RPC_URL environment variable.",
            file=sys.stderr,
        )
        return 2

    try:
        settings = load_settings(
            multicall_address=args.multicall,
            chunk_size=args.chunk_size,
            max_workers=args.max_workers,
            is_gnosis=True if args.gnosis else None,
        )
    except ValueError as ex:
        print(f"Error: invalid settings: {ex}", file=sys.stderr)
        return 2

    # Test connection
    w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": DEFAULT_TIMEOUT}))
    if not w3.is_connected():
        print(f"Error: failed to connect to RPC at {rpc_url}", file=sys.stderr)
        return 2

    block_id = int(args.block) if str(args.block).isdigit() else args.block
    block = w3.eth.get_block(block_id)
    block_number = int(block["number"])
    timestamp = int(block["timestamp"])

    repo = JsonFileRepository(Path(args.store) if args.store else None)
    if args.seed:
        try:
            print(f"ℹ️ Loaded {_load_seed(repo, args.seed)} entities from {args.seed}", file=sys.stderr)
        except (OSError, ValueError, KeyError, TypeError) as ex:
            print(f"Error: failed to load seed {args.seed}: {ex}", file=sys.stderr)
            return 2

    for address in args.register_vault:
        if repo.load("Vault", normalize_address(address)) is not None:
            continue
        try:
            vault = read_vault(w3, address, block_identifier=block_number)
        except Exception as ex:  # pylint: disable=broad-exception-caught
            print(f"Error: failed to read vault {address}: {ex}", file=sys.stderr)
            return 2
        repo.save(vault)
        print(f"ℹ️ Registered vault {vault.id} (v{vault.version})", file=sys.stderr)

    os_token = repo.load("OsToken", NETWORK_ID) or OsToken()
    if args.os_token_controller:
        try:
            os_token = read_os_token(w3, args.os_token_controller, os_token, block_identifier=block_number)
        except Exception as ex:  # pylint: disable=broad-exception-caught
            print(f"⚠️  osToken refresh failed, using stored values: {ex}", file=sys.stderr)

    leverage_borrow_ltv = 0
    if settings.leverage_strategy:
        try:
            leverage_borrow_ltv = read_leverage_borrow_ltv(
                w3, settings.leverage_strategy, block_identifier=block_number
            )
        except Exception as ex:  # pylint: disable=broad-exception-caught
            print(f"⚠️  Failed to read leverage borrow LTV: {ex}", file=sys.stderr)

    ctx = build_context(
        repo,
        settings,
        timestamp=timestamp,
        block_number=block_number,
        os_token=os_token,
        leverage_borrow_ltv=leverage_borrow_ltv,
    )

    rewards_update = None
    if args.rewards_cid or args.rewards_file:
        if not args.rewards_root:
            print("Error: --rewards-root is required with a rewards update.", file=sys.stderr)
            return 2
        try:
            if args.rewards_file:
                raw = Path(args.rewards_file).read_bytes()
            else:
                raw = fetch_ipfs_bytes(
                    args.rewards_cid, DEFAULT_IPFS_GATEWAYS, timeout_s=DEFAULT_TIMEOUT, use_cache=not args.no_cache
                )
            rewards_update = parse_rewards_update(
                raw,
                rewards_root=args.rewards_root,
                update_timestamp=args.update_timestamp if args.update_timestamp is not None else timestamp,
            )
        except (OSError, RuntimeError, ValueError) as ex:
            print(f"Error: failed to load rewards update: {ex}", file=sys.stderr)
            return 2
        print(f"ℹ️ Rewards update covers {len(rewards_update.vaults)} vault(s)", file=sys.stderr)

    one_time_summary = TickSummary()
    if args.one_time_vault:
        if not args.one_time_token or args.one_time_amount is None:
            print("Error: --one-time-token and --one-time-amount are required with --one-time-vault.", file=sys.stderr)
            return 2
        allocations = None
        if args.one_time_allocations:
            source = args.one_time_allocations
            try:
                if Path(source).exists():
                    raw = Path(source).read_bytes()
                else:
                    raw = fetch_ipfs_bytes(
                        source, DEFAULT_IPFS_GATEWAYS, timeout_s=DEFAULT_TIMEOUT, use_cache=not args.no_cache
                    )
                allocations = parse_one_time_allocations(raw)
            except (OSError, RuntimeError, ValueError) as ex:
                print(f"Error: failed to load one-time allocations: {ex}", file=sys.stderr)
                return 2
        distributed = process_one_time_distribution(
            repo,
            one_time_summary,
            vault_id=args.one_time_vault,
            token=args.one_time_token,
            amount=args.one_time_amount,
            allocations=allocations,
        )
        print(f"ℹ️ One-time distribution credited {distributed} of {args.one_time_amount}", file=sys.stderr)

    caller = Web3MulticallCaller(w3, settings.multicall_address, block_identifier=block_number)
    ctx, summary = run_tick(
        ctx,
        caller,
        repo,
        rewards_update=rewards_update,
        vaults_progress=lambda vaults: tqdm(vaults, desc="🏦 Vault periodic tasks", unit="vault", file=sys.stderr),
    )

    summary.errors[:0] = one_time_summary.errors
    print_tick_summary(ctx, repo.list_by_parent("Vault", NETWORK_ID), summary)
    return 1 if summary.errors else 0
