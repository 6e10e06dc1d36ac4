CHAIN_ID_BASE = 8453

CHAIN_EXPLORER_URLS: dict[int, str] = {
    CHAIN_ID_BASE: "https://basescan.org/",
}


def tx_link(chain_id: int, tx_hash: str) -> str:
    base = CHAIN_EXPLORER_URLS.get(int(chain_id))
    if not base:
        return tx_hash
    return f"{base}tx/{tx_hash}"
