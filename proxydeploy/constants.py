from enum import Enum

#
# Filesystem
#

DEFAULT_LEDGER_DIR = "ledger"
LEDGER_FILE_SUFFIX = ".json"
STANDARD_JSON_FORMAT = {"indent": 4, "separators": (",", ": ")}

#
# Manifest
#

VARIABLE_PREFIX = "$"
DEPLOYER_VARIABLE = "deployer"
DEFAULT_INITIALIZER = "initialize"

#
# Proxies
#


class ProxyKind(Enum):
    TRANSPARENT = "transparent"
    UUPS = "uups"
    NONE = "none"


DEFAULT_PROXY_DEPENDENCY = ("openzeppelin", "5.0.0")
TRANSPARENT_PROXY_NAME = "TransparentUpgradeableProxy"
UUPS_PROXY_NAME = "ERC1967Proxy"
PROXY_ADMIN_NAME = "ProxyAdmin"

# EIP1967 Admin slot - https://eips.ethereum.org/EIPS/eip-1967#admin-address
EIP1967_ADMIN_SLOT = 0xB53127684A568B3173AE13B9F8A6016E243E63B6E8EE1178D6A717850B5D6103

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

#
# Execution
#

DEFAULT_WORKERS = 4
DEFAULT_RETRY_ATTEMPTS = 5
DEFAULT_RETRY_INITIAL_DELAY = 1.0
DEFAULT_RETRY_FACTOR = 2.0
DEFAULT_RETRY_MAX_DELAY = 30.0

# provider error fragments, matched case-insensitively
TRANSIENT_ERROR_MARKERS = (
    "timeout",
    "timed out",
    "nonce too low",
    "nonce too high",
    "replacement transaction underpriced",
    "already known",
    "transaction underpriced",
    "max fee per gas less than block base fee",
    "connection",
    "too many requests",
    "429",
    "503",
)

PERMANENT_ERROR_MARKERS = (
    "execution reverted",
    "revert",
    "insufficient funds",
    "out of gas",
    "invalid opcode",
)
