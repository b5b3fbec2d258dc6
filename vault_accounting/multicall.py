"""Batched read calls executed through Multicall3 tryAggregate."""

import sys
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING

from vault_accounting.constants import DEFAULT_CHUNK_SIZE, MULTICALL3_ADDRESS, MULTICALL3_MIN_ABI
from vault_accounting.exceptions import MulticallError

if TYPE_CHECKING:
    from web3 import Web3  # pragma: no cover


@dataclass(frozen=True)
class ContractCall:
    """A single read-only call: target contract and ABI-encoded calldata."""

    target: str
    data: bytes
    # Human-readable call description used in error reports.
    description: str = ""


@dataclass(frozen=True)
class CallResult:
    """Outcome of one call inside a multicall chunk."""

    success: bool
    return_data: bytes = b""


# Ledger read interface: ordered (target, calldata) pairs in, ordered (success, return data) out.
Caller = Callable[[list[tuple[str, bytes]]], Sequence[tuple[bool, bytes]]]


class Web3MulticallCaller:
    """Issues chunks as Multicall3 tryAggregate(false, calls) eth_calls."""

    def __init__(self, w3: "Web3", address: str = MULTICALL3_ADDRESS, *, block_identifier: int | str = "latest"):
        self._w3 = w3
        self._contract = w3.eth.contract(address=w3.to_checksum_address(address), abi=MULTICALL3_MIN_ABI)
        self.block_identifier = block_identifier

    def __call__(self, payload: list[tuple[str, bytes]]) -> list[tuple[bool, bytes]]:
        calls = [(self._w3.to_checksum_address(target), data) for target, data in payload]
        result = self._contract.functions.tryAggregate(False, calls).call(block_identifier=self.block_identifier)
        return [(bool(success), bytes(data)) for success, data in result]


def iter_chunks(calls: Sequence[ContractCall], chunk_size: int) -> Iterable[Sequence[ContractCall]]:
    """Split calls into consecutive chunks of at most chunk_size."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be > 0")
    for start in range(0, len(calls), chunk_size):
        yield calls[start : start + chunk_size]


def _execute_chunk(
    caller: Caller, chunk: Sequence[ContractCall], update_state_call: ContractCall | None
) -> list[CallResult]:
    payload = [(call.target, call.data) for call in chunk]
    if update_state_call is not None:
        payload.insert(0, (update_state_call.target, update_state_call.data))

    try:
        raw = list(caller(payload))
    except Exception as ex:  # pylint: disable=broad-exception-caught
        raise MulticallError(f"multicall of {len(payload)} calls failed: {ex}") from ex
    if len(raw) != len(payload):
        raise MulticallError(f"multicall returned {len(raw)} results for {len(payload)} calls")

    if update_state_call is not None:
        commit_success, _ = raw[0]
        if not commit_success:
            print(
                f"⚠️  {update_state_call.description or 'state commit'} reverted for "
                f"{update_state_call.target}, reads observe the uncommitted state",
                file=sys.stderr,
            )
        # remove the commit result so that slots line up with the chunk calls
        raw = raw[1:]
    return [CallResult(bool(success), bytes(data or b"")) for success, data in raw]


def chunked_multicall(
    caller: Caller,
    calls: Iterable[ContractCall],
    *,
    update_state_call: ContractCall | None = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    max_workers: int = 1,
) -> list[CallResult]:
    """
    Execute calls in chunks and return one result per call, in call order.

    A reverted call only marks its own slot as failed. When update_state_call is set,
    it is prefixed to every chunk so that the reads observe the committed state; its
    result is stripped. A chunk that cannot be executed at all raises MulticallError,
    in which case no results are returned for any chunk.
    """
    calls = list(calls)
    chunks = list(iter_chunks(calls, chunk_size))
    if not chunks:
        return []

    if max_workers > 1 and len(chunks) > 1:
        with ThreadPoolExecutor(max_workers=min(max_workers, len(chunks))) as pool:
            chunk_results = list(pool.map(lambda chunk: _execute_chunk(caller, chunk, update_state_call), chunks))
    else:
        chunk_results = [_execute_chunk(caller, chunk, update_state_call) for chunk in chunks]

    return [result for results in chunk_results for result in results]
