from pathlib import Path

import rollout

#
# Filesystem
#

ROLLOUT_DIR = Path(rollout.__file__).parent
MANIFESTS_DIR = ROLLOUT_DIR / "manifests"
ARTIFACTS_DIR = ROLLOUT_DIR / "artifacts"

#
# Gas
#

# gas limit = ceil(estimate * 12 / 10)
GAS_LIMIT_MARGIN_NUMERATOR = 12
GAS_LIMIT_MARGIN_DENOMINATOR = 10

#
# Confirmations
#

DEFAULT_CONFIRMATIONS = 6
DEFAULT_CONFIRMATION_TIMEOUT = 600  # seconds
DEFAULT_POLL_INTERVAL = 5  # seconds

#
# Verification
#

DEFAULT_VERIFICATION_ATTEMPTS = 3
DEFAULT_VERIFICATION_BACKOFF = 10  # seconds, doubled after every retryable attempt
DEFAULT_VERIFICATION_STATUS_POLLS = 10
ETHERSCAN_REQUEST_TIMEOUT = 30  # seconds

# Etherscan V2 serves every supported chain from one endpoint, selected by chainid.
ETHERSCAN_V2_API_URL = "https://api.etherscan.io/v2/api"

LOCAL_CHAIN_IDS = (1337, 31337)

#
# Manifests
#

DEPLOYER_VARIABLE = "deployer"
VARIABLE_PREFIX = "$"
