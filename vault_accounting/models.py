"""Data models for vault accounting.

Entities are frozen: every update produces a new instance via dataclasses.replace,
so an update that fails half-way never leaves a partially mutated entity behind.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from vault_accounting.config import Settings
from vault_accounting.constants import DISTRIBUTOR_ID, NETWORK_ID, WAD


class DistributionType(str, Enum):
    """Selects how a periodic distribution weights its participants."""

    VAULT = "VAULT"
    LEVERAGE_STRATEGY = "LEVERAGE_STRATEGY"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_string(cls, value: str) -> "DistributionType":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True)
class Network:
    """Network-wide totals, persisted between ticks."""

    total_assets: int = 0
    total_earned_assets: int = 0
    last_snapshot_timestamp: int = 0
    # Genesis vaults wait for the legacy pool migration before they are synced.
    v2_pool_migrated: bool = True

    @property
    def id(self) -> str:
        return NETWORK_ID

    @property
    def parent_id(self) -> str:
        return NETWORK_ID


@dataclass(frozen=True)
class OsToken:
    """Supply and backing assets of the token minted against vault stakes."""

    total_supply: int = 0
    total_assets: int = 0
    apy: Decimal = Decimal(0)

    @property
    def id(self) -> str:
        return NETWORK_ID

    @property
    def parent_id(self) -> str:
        return NETWORK_ID


@dataclass(frozen=True)
class Vault:
    """Vault state replicated from the ledger."""

    id: str
    version: int
    fee_recipient: str
    # Asset value of one share (WAD fixed point).
    rate: int = WAD
    total_assets: int = 0
    total_shares: int = 0
    queued_shares: int = 0
    exiting_assets: int = 0
    exiting_tickets: int = 0
    base_apys: tuple[Decimal, ...] = ()
    base_apy: Decimal = Decimal(0)
    apy: Decimal = Decimal(0)
    # Pending rewards commit, set from the latest rewards update.
    rewards_root: str | None = None
    proof_reward: int | None = None
    proof_unlocked_mev_reward: int | None = None
    proof: tuple[str, ...] | None = None
    rewards_timestamp: int | None = None
    mev_escrow: str | None = None
    consensus_reward: int = 0
    locked_execution_reward: int = 0
    unlocked_execution_reward: int = 0
    unclaimed_fee_recipient_shares: int = 0
    is_genesis: bool = False
    is_meta_vault: bool = False
    is_os_token_enabled: bool = True
    period_stake_earned_assets: int = 0
    period_extra_earned_assets: int = 0

    @property
    def parent_id(self) -> str:
        return NETWORK_ID


@dataclass(frozen=True)
class VaultRewardUpdate:
    """Per-vault entry of a keeper rewards update."""

    vault: str
    consensus_reward: int
    unlocked_mev_reward: int
    locked_mev_reward: int
    proof: tuple[str, ...]


@dataclass(frozen=True)
class Allocator:
    """A user's stake in a vault."""

    vault: str
    address: str
    shares: int = 0
    assets: int = 0
    minted_os_token_shares: int = 0
    period_stake_earned_assets: int = 0
    period_boost_earned_assets: int = 0
    period_extra_earned_assets: int = 0
    total_earned_assets: int = 0

    @property
    def id(self) -> str:
        return f"{self.vault}-{self.address}"

    @property
    def parent_id(self) -> str:
        return self.vault


@dataclass(frozen=True)
class ExitRequest:
    """A withdrawal ticket in a vault's exit queue."""

    vault: str
    owner: str
    receiver: str
    position_ticket: int
    # Original request timestamp, the claim delay is counted from it.
    timestamp: int
    total_assets: int = 0
    exited_assets: int = 0
    exit_queue_index: int | None = None
    is_claimable: bool = False
    is_claimed: bool = False
    # Migrated from the legacy pool: valued pro-rata against the vault's exiting pool.
    is_v2_position: bool = False

    @property
    def id(self) -> str:
        return f"{self.vault}-{self.position_ticket}"

    @property
    def parent_id(self) -> str:
        return self.vault


@dataclass(frozen=True)
class LeverageStrategyPosition:
    """A boosted position held by a user's proxy in the lending market."""

    vault: str
    user: str
    proxy: str
    os_token_shares: int = 0
    assets: int = 0
    total_assets: int = 0
    borrow_ltv: Decimal = Decimal(0)
    # Portion queued for exit (WAD fixed point).
    exiting_percent: int = 0
    exiting_os_token_shares: int = 0
    exiting_assets: int = 0
    total_earned_boost_assets: int = 0
    period_earned_assets: int = 0
    # In-flight exit of the proxy's vault stake.
    exit_request: str | None = None
    exit_os_token_shares: int = 0
    # Exit request value last counted into the position.
    exit_request_assets: int = 0

    @property
    def id(self) -> str:
        return f"{self.vault}-{self.user}"

    @property
    def parent_id(self) -> str:
        return self.vault


@dataclass(frozen=True)
class Distribution:
    """A periodic reward distribution vesting linearly between two timestamps."""

    id: str
    token: str
    # Distribution target, e.g. the vault address for VAULT distributions.
    data: str
    amount: int
    start_timestamp: int
    end_timestamp: int
    distribution_type: DistributionType = DistributionType.UNKNOWN
    apy: Decimal = Decimal(0)
    apys: tuple[Decimal, ...] = ()
    # Set once the target turned out to be unknown; never reactivated.
    is_dropped: bool = False

    @property
    def is_finished(self) -> bool:
        return self.is_dropped or self.start_timestamp >= self.end_timestamp

    @property
    def parent_id(self) -> str:
        return DISTRIBUTOR_ID


@dataclass(frozen=True)
class DistributorReward:
    """Cumulative reward of a user in a single token."""

    token: str
    user: str
    cumulative_amount: int = 0

    @property
    def id(self) -> str:
        return f"{self.token}-{self.user}"

    @property
    def parent_id(self) -> str:
        return self.token


@dataclass(frozen=True)
class VaultSnapshot:
    """Vault earnings over one snapshot period."""

    vault: str
    timestamp: int
    stake_earned_assets: int
    extra_earned_assets: int
    earned_assets: int
    total_assets: int
    total_shares: int
    apy: Decimal

    @property
    def id(self) -> str:
        return f"{self.vault}-{self.timestamp}"

    @property
    def parent_id(self) -> str:
        return self.vault


@dataclass(frozen=True)
class AllocatorSnapshot:
    """Allocator earnings over one snapshot period."""

    allocator: str
    timestamp: int
    stake_earned_assets: int
    boost_earned_assets: int
    extra_earned_assets: int
    earned_assets: int
    total_assets: int
    apy: Decimal

    @property
    def id(self) -> str:
        return f"{self.allocator}-{self.timestamp}"

    @property
    def parent_id(self) -> str:
        return self.allocator


@dataclass(frozen=True)
class ExitRequestSnapshot:
    exit_request: str
    timestamp: int
    earned_assets: int
    total_assets: int
    apy: Decimal = Decimal(0)

    @property
    def id(self) -> str:
        return f"{self.exit_request}-{self.timestamp}"

    @property
    def parent_id(self) -> str:
        return self.exit_request


@dataclass(frozen=True)
class LeveragePositionSnapshot:
    position: str
    timestamp: int
    earned_assets: int
    total_assets: int

    @property
    def id(self) -> str:
        return f"{self.position}-{self.timestamp}"

    @property
    def parent_id(self) -> str:
        return self.position


@dataclass(frozen=True)
class Prices:
    """Oracle prices in the lending market's base currency."""

    os_token: int
    asset: int


@dataclass(frozen=True)
class NetworkContext:
    """Everything a tick needs that is not owned by a single entity.

    Built once per tick and passed explicitly to every entry point.
    """

    settings: Settings
    timestamp: int
    block_number: int
    network: Network = field(default_factory=Network)
    os_token: OsToken = field(default_factory=OsToken)
    # Borrow LTV of the leverage strategy (WAD fixed point).
    leverage_borrow_ltv: int = 0
    distributions: tuple[Distribution, ...] = ()
    # Read once per tick before the per-vault leverage updates.
    prices: Prices | None = None
