"""Constants and configuration for vault accounting."""

from decimal import Decimal

# Multicall3 is deployed at the same address on every supported network.
# Use --multicall to override for local forks.
MULTICALL3_ADDRESS = "0xcA11bde05977b3631167028862bE2a173976CA11"

# Minimal ABI for Multicall3 - only tryAggregate is used, it never reverts as a whole
# when requireSuccess is false and reports a success flag for every call.
# Source: https://github.com/mds1/multicall/blob/main/src/Multicall3.sol
MULTICALL3_MIN_ABI: list[dict] = [
    {
        "type": "function",
        "name": "tryAggregate",
        "stateMutability": "payable",
        "inputs": [
            {"name": "requireSuccess", "type": "bool"},
            {
                "name": "calls",
                "type": "tuple[]",
                "components": [
                    {"name": "target", "type": "address"},
                    {"name": "callData", "type": "bytes"},
                ],
            },
        ],
        "outputs": [
            {
                "name": "returnData",
                "type": "tuple[]",
                "components": [
                    {"name": "success", "type": "bool"},
                    {"name": "returnData", "type": "bytes"},
                ],
            }
        ],
    }
]

# Minimal ABI for the leverage strategy - single reads that are not batched.
LEVERAGE_STRATEGY_MIN_ABI: list[dict] = [
    {
        "type": "function",
        "name": "getBorrowLtv",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]

# Minimal ABI for the osToken vault controller - osToken supply and backing assets.
OS_TOKEN_CONTROLLER_MIN_ABI: list[dict] = [
    {
        "type": "function",
        "name": "totalShares",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "totalAssets",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]

# Minimal ABI for registering a vault - version and fee recipient are read once.
VAULT_MIN_ABI: list[dict] = [
    {
        "type": "function",
        "name": "version",
        "stateMutability": "pure",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
    {
        "type": "function",
        "name": "feeRecipient",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}],
    },
]

# Function selectors for batched vault reads. Calldata is built by hand so that a
# single Multicall3 round trip can carry calls to many vaults.
UPDATE_STATE_SELECTOR = "0x1a7ff553"  # updateState((bytes32,int160,uint160,bytes32[]))
TOTAL_ASSETS_SELECTOR = "0x01e1d114"  # totalAssets()
TOTAL_SHARES_SELECTOR = "0x3a98ef39"  # totalShares()
CONVERT_TO_ASSETS_SELECTOR = "0x07a2d13a"  # convertToAssets(uint256)
GET_SHARES_SELECTOR = "0xf04da65b"  # getShares(address)
EXITING_ASSETS_SELECTOR = "0xee3bd5df"  # totalExitingAssets()
QUEUED_SHARES_SELECTOR = "0xd83ad00c"  # queuedShares()
EXIT_QUEUE_DATA_SELECTOR = "0x3e1655d3"  # getExitQueueData()
EXIT_QUEUE_INDEX_SELECTOR = "0x60d60e6e"  # getExitQueueIndex(uint256)
CALCULATE_EXITED_ASSETS_SELECTOR = "0x76b58b90"  # calculateExitedAssets(address,uint256,uint256,uint256)

# Selectors derived from the signature at import time.
OS_TOKEN_POSITIONS_SIGNATURE = "osTokenPositions(address)"
USER_ACCOUNT_DATA_SIGNATURE = "getUserAccountData(address)"
ASSET_PRICE_SIGNATURE = "getAssetPrice(address)"

WAD = 10**18
MAX_UINT255 = 2**255 - 1
MAX_PERCENT = Decimal(100)
SECONDS_IN_YEAR = 31_536_000
SECONDS_IN_HOUR = 3_600
SECONDS_IN_DAY = 86_400

# Rewards are updated twice a day, a week of updates forms the APY window.
SNAPSHOTS_PER_WEEK = 14
SNAPSHOTS_PER_DAY = 2

DEFAULT_CHUNK_SIZE = 10
DEFAULT_BULK_CHUNK_SIZE = 100
DEFAULT_CLAIM_DELAY = SECONDS_IN_DAY
DEFAULT_MAX_VAULT_APY = Decimal(20)

# Lending market account values and oracle prices share the base currency decimals,
# so value / price only needs scaling to token units.
TOKEN_DECIMALS = 18

NETWORK_ID = "0"
DISTRIBUTOR_ID = "1"

DEFAULT_IPFS_GATEWAYS = (
    "https://ipfs.io/ipfs/",
    "https://cloudflare-ipfs.com/ipfs/",
    "https://gateway.pinata.cloud/ipfs/",
)

# Store configuration
STORE_DIR_NAME = ".vault_accounting_store"
STORE_VERSION = "1"  # Increment to invalidate all stored entities
