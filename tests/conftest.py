import pytest
from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector

from vault_accounting.config import Settings
from vault_accounting.constants import UPDATE_STATE_SELECTOR
from vault_accounting.models import NetworkContext

VAULT = "0x" + "11" * 20
VAULT_2 = "0x" + "12" * 20
FEE_RECIPIENT = "0x" + "fe" * 20
ALICE = "0x" + "a1" * 20
BOB = "0x" + "b0" * 20
PROXY = "0x" + "cc" * 20
LENDING_POOL = "0x" + "1e" * 20
PRICE_ORACLE = "0x" + "0c" * 20
OS_TOKEN = "0x" + "05" * 20
ASSET_TOKEN = "0x" + "ee" * 20
REWARDS_ROOT = "0x" + "ab" * 32
PROOF = ("0x" + "01" * 32, "0x" + "02" * 32)


def selector_of(signature: str) -> str:
    return "0x" + function_signature_to_4byte_selector(signature).hex()


class FakeLedger:
    """
    In-process stand-in for Multicall3 tryAggregate over a set of contracts.

    Handlers are keyed by (target, selector). A chunk that starts with a successful
    updateState call sees the committed values of every handler in that chunk.
    """

    def __init__(self):
        self._handlers = {}
        self.chunks = []
        self.commit_reverts = False
        self.transport_error = None

    def on(self, target, selector, types=(), values=(), *, committed=None):
        def reply(args, is_committed):
            chosen = committed if (is_committed and committed is not None) else values
            return encode(list(types), list(chosen))

        self._handlers[(target.lower(), selector.lower())] = reply

    def on_call(self, target, selector, handler):
        """handler(args: bytes, committed: bool) -> bytes, or None to revert."""
        self._handlers[(target.lower(), selector.lower())] = handler

    def revert(self, target, selector):
        self._handlers[(target.lower(), selector.lower())] = lambda args, committed: None

    def __call__(self, payload):
        self.chunks.append(list(payload))
        if self.transport_error is not None:
            raise self.transport_error

        committed = False
        out = []
        for target, data in payload:
            selector = "0x" + data[:4].hex()
            if selector == UPDATE_STATE_SELECTOR:
                committed = not self.commit_reverts
                out.append((committed, b""))
                continue
            handler = self._handlers.get((target.lower(), selector))
            result = handler(data[4:], committed) if handler is not None else None
            out.append((result is not None, result if result is not None else b""))
        return out

    @property
    def calls_count(self):
        return sum(len(chunk) for chunk in self.chunks)


def decode_args(types, args):
    return decode(list(types), args)


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def settings():
    return Settings(
        lending_pool=LENDING_POOL,
        price_oracle=PRICE_ORACLE,
        os_token=OS_TOKEN,
        asset_token=ASSET_TOKEN,
    )


@pytest.fixture
def ctx(settings):
    return NetworkContext(settings=settings, timestamp=1_700_000_000, block_number=100)
