def _view(name: str, inputs: list[dict], out_type: str) -> dict:
    return {
        "name": name,
        "type": "function",
        "stateMutability": "view",
        "inputs": inputs,
        "outputs": [{"name": "", "type": out_type}],
    }


def _write(name: str, inputs: list[dict]) -> dict:
    return {
        "name": name,
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": inputs,
        "outputs": [{"name": "", "type": "bool"}],
    }


ERC20_ABI = [
    _view("balanceOf", [{"name": "owner", "type": "address"}], "uint256"),
    _view(
        "allowance",
        [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "uint256",
    ),
    _view("decimals", [], "uint8"),
    _view("symbol", [], "string"),
    _view("name", [], "string"),
    _write(
        "transfer",
        [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
    ),
    _write(
        "transferFrom",
        [
            {"name": "from", "type": "address"},
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
    ),
    _write(
        "approve",
        [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
    ),
]
