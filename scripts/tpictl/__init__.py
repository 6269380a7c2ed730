"""tpictl - Turing Pi BMC image flashing CLI"""

__version__ = "1.0.0"

# BMC API path constants
API_BMC = "/api/bmc"
API_AUTHENTICATE = f"{API_BMC}/authenticate"
API_UPLOAD = f"{API_BMC}/upload"
API_FIRMWARE = "/api/firmware"

# Timeouts (seconds)
DEFAULT_TIMEOUT = 3
AUTH_TIMEOUT = 3
UPLOAD_TIMEOUT = 60 * 60
POLL_TIMEOUT = 45
WATCH_TIMEOUT = 120 * 60

# Nodes are 1-based for users, 0-based on the wire
MIN_NODE = 1
MAX_NODE = 4

# Vendor default credentials, tried in order only when explicitly enabled
DEFAULT_CREDENTIALS = [
    ("root", ""),
    ("root", "turing"),
    ("root", "root"),
    ("admin", "admin"),
    ("turingpi", "turingpi"),
]
