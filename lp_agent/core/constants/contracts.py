from eth_utils import to_checksum_address

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Base mainnet tokens
BASE_USDC = to_checksum_address("0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913")
BASE_WETH = to_checksum_address("0x4200000000000000000000000000000000000006")
BASE_VIRTUAL = to_checksum_address("0x0b3e328455c4059eeb9e3f84b5543f74e24e7e1b")
