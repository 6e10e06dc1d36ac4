from __future__ import annotations


class LpAgentError(Exception):
    """Base class for every error raised by the agent's own layers."""


class ConfigurationError(LpAgentError):
    pass


class PreconditionError(LpAgentError):
    """A workflow prerequisite is unmet; nothing has been written on-chain."""


class InsufficientGasError(PreconditionError):
    def __init__(self, required_wei: int, available_wei: int):
        self.required_wei = int(required_wei)
        self.available_wei = int(available_wei)
        super().__init__(
            f"Insufficient gas balance. Required: {self.required_wei} wei, "
            f"Current: {self.available_wei} wei"
        )


class InsufficientBalanceError(PreconditionError):
    def __init__(self, token: str, owner: str, required: int, available: int):
        self.token = token
        self.owner = owner
        self.required = int(required)
        self.available = int(available)
        super().__init__(
            f"Insufficient balance of {token} for {owner}: "
            f"required {self.required}, available {self.available}"
        )


class NotInitializedError(LpAgentError):
    pass


class PoolNotFoundError(LpAgentError):
    pass


class GaugeNotFoundError(LpAgentError):
    pass


class RouteError(ValueError, LpAgentError):
    pass


class QuoteUnavailableError(LpAgentError):
    pass


class TransferRejectedError(LpAgentError):
    pass


class SwapRevertedError(LpAgentError):
    pass
