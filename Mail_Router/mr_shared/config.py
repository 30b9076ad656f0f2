# Mail Domain

MAIL_DOMAIN             = "nftmail.box"
AGENT_MARKER            = "_"
GLASS_BOX_TLD           = "molt.gno"         # public audit log enabled
BLACK_BOX_TLD           = "vault.gno"        # audit log frozen, content private

# Key Namespace Prefixes

INBOX_KEY_PREFIX        = "blind"            # blind:{identity}:{message_id}
INBOX_INDEX_PREFIX      = "blind-index"      # blind-index:{identity}
AUDIT_KEY_PREFIX        = "audit"            # audit:{identity}
AUDIT_TRANSITION_PREFIX = "audit-transitions"  # audit-transitions:{identity}
TIER_KEY_PREFIX         = "acct-tier"        # acct-tier:{identity}
PRIVACY_KEY_PREFIX      = "privacy"          # privacy:{identity}
PUBKEY_KEY_PREFIX       = "ecies-pubkey"     # ecies-pubkey:{identity}
OWNER_KEY_PREFIX        = "owner-key"        # owner-key:{identity}
PAYMENT_KEY_PREFIX      = "payment-tx"       # payment-tx:{tx_hash}
TLD_KEY_PREFIX          = "tld"              # tld:{identity}
CALENDAR_EVENT_PREFIX   = "calendar-event"   # calendar-event:{event_id}
CALENDAR_INDEX_PREFIX   = "calendar"         # calendar:{identity}
SWEEP_SEEN_PREFIX       = "sweep-seen"       # sweep-seen:{provider_message_id}
SWEEP_LOCK_KEY          = "sweep-lock"
RATE_LIMIT_PREFIX       = "ratelimit"        # ratelimit:{scope}:{key}

# Inbox Settings

MAX_INBOX_MESSAGES          = 50
SECONDS_PER_DAY             = 86_400
MS_PER_DAY                  = 86_400_000
MISSING_KEY_NOTICE          = "undeliverable as cleartext, no key registered"

# Tier Settings (ranked low to high)

TIER_RANKS = {
    "basic":    0,
    "upgraded": 1,
    "annual":   2,
    "full":     3,
}

TIER_DECAY_DAYS = {
    "basic":    8,
    "upgraded": 30,
    "annual":   None,       # infinite retention
    "full":     None,
}

TIER_ACCOUNT_DAYS = {
    "basic":    8,          # dormant once elapsed
    "upgraded": 30,
    "annual":   365,        # informational, retention stays infinite
    "full":     None,
}

# Payment Settings

PAYMENT_BURN_TTL_SECONDS    = 31_536_000    # 365 days
MIN_CONFIRMATIONS           = 2
TIER_WRITE_RETRIES          = 3       # optimistic WATCH attempts per tier write
TX_HASH_PATTERN             = r"^0x[a-fA-F0-9]{64}$"
WALLET_PATTERN              = r"^0x[a-fA-F0-9]{40}$"
NATIVE_DECIMALS             = 18
TOKEN_DECIMALS              = 6
ERC20_TRANSFER_TOPIC        = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
ERC721_OWNER_OF_SELECTOR    = "0x6352211e"

# Whole-unit prices per tier and asset

TIER_PRICES = {
    "native": {"upgraded": 10, "annual": 24, "full": 24},
    "token":  {"upgraded": 10, "annual": 22, "full": 22},
}

VALID_ASSETS            = {"native", "token"}
VALID_TIERS             = set(TIER_RANKS)
VALID_PRIVACY_STATES    = {"exposed", "private", "hard-privacy"}
VALID_STREAMS           = {"agent", "sovereign", "social-pair", "nft-collection", "unknown"}

# ECIES (P-256 + HKDF-SHA256 + AES-256-GCM)

ECIES_VERSION           = 1
ECIES_HKDF_SALT         = b"nftmail-ecies-v1"
ECIES_HKDF_INFO         = b"aes-256-gcm"
ECIES_KEY_SIZE          = 32
ECIES_IV_SIZE           = 12
P256_PUBLIC_KEY_SIZE    = 65            # uncompressed point, 0x04 || X || Y
P256_PRIVATE_KEY_SIZE   = 32

# NFT collections recognised by the classifier (name -> contract address)

NFT_COLLECTIONS = {
    "punks":    "0xb47e3cd837ddf8e4c57f05d70ab865de6e193bbb",
    "bayc":     "0xbc4ca0eda7647a8ab7c2061c2e118a18a936f13d",
    "ghost":    "0x7d0e7d8c1ef0b2c3f3f1ea7b2c3c0a4f2b9a5e21",
}

# Redaction Rules (glass-box audit log)

REDACTED_SUBJECT        = "[REDACTED]"
REDACTED_CONTENT        = "[Content redacted: authentication material withheld from the public audit log]"

AUTH_SENDER_PATTERNS = [
    r"^(no-?reply|noreply|do-?not-?reply)@",
    r"^(security|verify|verification|auth|account|login|accounts)@",
    r"@(accounts\.google\.com|login\.microsoftonline\.com|account\.apple\.com|id\.apple\.com)$",
    r"@(auth0\.com|okta\.com|twilio\.com|clerk\.dev)$",
]

AUTH_KEYWORDS = [
    "one-time code",
    "one time code",
    "one-time password",
    "otp",
    "verification code",
    "verify your",
    "confirmation code",
    "security code",
    "login code",
    "sign-in code",
    "sign in code",
    "password reset",
    "reset your password",
    "2fa",
    "two-factor",
    "two factor",
    "magic link",
    "passcode",
]

OTP_CODE_PATTERN        = r"\b\d{4,8}\b"

# Agent Status

HEARTBEAT_WINDOW_SECONDS    = 86_400
CALENDAR_EVENT_TYPES        = {"SYNC", "TASK", "HEARTBEAT"}
CALENDAR_INVITE_TYPES       = {"REQUEST", "CANCEL", "UPDATE"}
