import os

# Key-Value Store (Redis)

REDIS_URL               = os.environ.get("MR_REDIS_URL", "redis://localhost:6379/0")
REDIS_SOCKET_TIMEOUT    = 5          # seconds

# Auth

ROUTER_SECRET           = os.environ.get("MR_ROUTER_SECRET", "")
SECRET_HEADER           = "x-router-secret"

# Chain Oracle (Gnosis JSON-RPC)

CHAIN_RPC_URL           = os.environ.get("MR_CHAIN_RPC_URL", "https://rpc.gnosischain.com")
CHAIN_TIMEOUT_SECONDS   = 10.0
TREASURY_ADDRESS        = os.environ.get("MR_TREASURY_ADDRESS", "0xb7e493e3d226f8fE722CC9916fF164B793af13F4")
TOKEN_CONTRACT          = os.environ.get("MR_TOKEN_CONTRACT", "0xcB444e90D8198415266c6a2724b7900fb12FC56E")

# Cleartext Fallback Provider

PROVIDER_API_URL        = os.environ.get("MR_PROVIDER_API_URL", "https://mail.zoho.com/api")
PROVIDER_TOKEN_URL      = os.environ.get("MR_PROVIDER_TOKEN_URL", "https://accounts.zoho.com/oauth/v2/token")
PROVIDER_ACCOUNT_ID     = os.environ.get("MR_PROVIDER_ACCOUNT_ID", "")
PROVIDER_CLIENT_ID      = os.environ.get("MR_PROVIDER_CLIENT_ID", "")
PROVIDER_CLIENT_SECRET  = os.environ.get("MR_PROVIDER_CLIENT_SECRET", "")
PROVIDER_REFRESH_TOKEN  = os.environ.get("MR_PROVIDER_REFRESH_TOKEN", "")
PROVIDER_TIMEOUT_SECONDS = 8.0

# Off-chain Pinning

PINNING_API_URL         = os.environ.get("MR_PINNING_API_URL", "https://api.pinata.cloud/pinning/pinJSONToIPFS")
PINNING_JWT             = os.environ.get("MR_PINNING_JWT", "")
PINNING_TIMEOUT_SECONDS = 8.0

# Dual Encryption

RECOVERY_PUBLIC_KEY     = os.environ.get("MR_RECOVERY_PUBLIC_KEY", "")

# Rate Limits

DIRECT_MESSAGE_LIMIT            = 30         # per sender
DIRECT_MESSAGE_WINDOW_SECONDS   = 3_600
DURABLE_RATE_LIMITS             = os.environ.get("MR_DURABLE_RATE_LIMITS", "0") == "1"

# Sweep

SWEEP_LOCK_SECONDS      = 300
SWEEP_SEEN_TTL_SECONDS  = 2_592_000     # 30 days
SWEEP_BATCH_SIZE        = 50

# Logging

LOG_LEVEL               = os.environ.get("MR_LOG_LEVEL", "INFO")
LOG_JSON                = os.environ.get("MR_LOG_JSON", "0") == "1"
