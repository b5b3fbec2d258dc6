"""Typed decoding of multicall results.

Every call type with a multi-field return value has a named struct with its own
decode classmethod, so field order lives next to the ABI types it mirrors.
"""

import sys
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

from eth_abi import decode
from eth_abi.exceptions import DecodingError

from vault_accounting.exceptions import CallFailedError, DecodeError
from vault_accounting.multicall import CallResult

T = TypeVar("T")


def decode_result(result: CallResult, types: Sequence[str]) -> tuple[Any, ...]:
    """Decode a call result into a tuple of values matching types."""
    if not result.success:
        raise CallFailedError("call reverted")
    try:
        return tuple(decode(list(types), result.return_data))
    except (DecodingError, OverflowError, ValueError) as ex:
        raise DecodeError(f"cannot decode {len(result.return_data)} bytes as ({','.join(types)}): {ex}") from ex


def decode_required(result: CallResult, types: Sequence[str], *, description: str) -> tuple[Any, ...]:
    """Decode a read the enclosing update cannot do without."""
    try:
        return decode_result(result, types)
    except CallFailedError as ex:
        raise CallFailedError(f"{description}: call reverted") from ex
    except DecodeError as ex:
        raise DecodeError(f"{description}: {ex}") from ex


def decode_uint(result: CallResult, *, description: str) -> int:
    return int(decode_required(result, ["uint256"], description=description)[0])


def decode_optional(result: CallResult, types: Sequence[str], default: T, *, description: str) -> tuple[Any, ...] | T:
    """Decode a best-effort read, falling back to default on any failure."""
    try:
        return decode_result(result, types)
    except (CallFailedError, DecodeError) as ex:
        print(f"⚠️  {description} failed, using last known value: {ex}", file=sys.stderr)
        return default


@dataclass(frozen=True)
class ExitedAssets:
    """Return value of calculateExitedAssets(receiver, ticket, timestamp, index)."""

    left_tickets: int
    exited_tickets: int
    exited_assets: int

    TYPES = ("uint256", "uint256", "uint256")

    @classmethod
    def decode(cls, result: CallResult, *, description: str) -> "ExitedAssets":
        left_tickets, exited_tickets, exited_assets = decode_required(result, cls.TYPES, description=description)
        return cls(left_tickets=left_tickets, exited_tickets=exited_tickets, exited_assets=exited_assets)


@dataclass(frozen=True)
class ExitQueueData:
    """Return value of getExitQueueData() on vaults with the unified exit queue."""

    queued_shares: int
    unclaimed_assets: int
    total_exiting_tickets: int
    total_exiting_assets: int
    total_tickets: int

    TYPES = ("uint128", "uint128", "uint128", "uint128", "uint256")

    @classmethod
    def decode(cls, result: CallResult, *, description: str) -> "ExitQueueData":
        values = decode_required(result, cls.TYPES, description=description)
        return cls(*values)


@dataclass(frozen=True)
class LendingAccount:
    """Collateral and debt of a lending market account, nominated in the base currency.

    Mirrors the first two fields of getUserAccountData(user).
    """

    supplied_value: int
    borrowed_value: int

    TYPES = ("uint256", "uint256", "uint256", "uint256", "uint256", "uint256")

    @classmethod
    def decode(cls, result: CallResult, *, description: str) -> "LendingAccount":
        supplied_value, borrowed_value, *_ = decode_required(result, cls.TYPES, description=description)
        return cls(supplied_value=supplied_value, borrowed_value=borrowed_value)
