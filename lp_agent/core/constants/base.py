GAS_BUFFER_MULTIPLIER = 1.1
SUGGESTED_PRIORITY_FEE_MULTIPLIER = 1.5
MAX_BASE_FEE_GROWTH_MULTIPLIER = 2

BPS_DENOMINATOR = 10_000

# Swap slippage, in basis points. Values outside the recommended band are
# accepted but logged.
DEFAULT_SLIPPAGE_BPS = 50
RECOMMENDED_MIN_SLIPPAGE_BPS = 10
RECOMMENDED_MAX_SLIPPAGE_BPS = 500

# Output floor used when no quote is obtainable for a swap (1 base unit).
QUOTE_FALLBACK_MIN_OUT = 1

DEFAULT_DEADLINE_SECONDS = 20 * 60

# Operator must hold at least this much native currency before any workflow.
DEFAULT_MIN_GAS_WEI = 5 * 10**15  # 0.005 ETH

NATIVE_DECIMALS = 18
LP_TOKEN_DECIMALS = 18

# Timeout constants (seconds)
# Bounded wait for a receipt before a step is reported as unconfirmed.
DEFAULT_TRANSACTION_TIMEOUT = 180  # receipt wait (seconds)
DEFAULT_CONFIRMATIONS = 1

# Read pacing between non-write-dependent calls (status/diagnostic paths).
DEFAULT_READ_MIN_INTERVAL_S = 0.2
DEFAULT_READ_MAX_RETRIES = 4
DEFAULT_READ_BASE_DELAY_S = 0.25
DEFAULT_READ_MAX_DELAY_S = 4.0

# Pre-execution countdown before the first irreversible step.
DEFAULT_CONFIRM_DELAY_S = 5
