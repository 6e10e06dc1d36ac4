from lp_agent.core.constants.contracts import BASE_USDC, BASE_VIRTUAL, BASE_WETH

STABLE_TOKEN = BASE_USDC
POOL_TOKEN_A = BASE_WETH
POOL_TOKEN_B = BASE_VIRTUAL
POOL_STABLE = False

# An odd remainder goes to the first half, so the smallest splittable deposit is 2.
MIN_DEPOSIT_RAW = 2
