from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, TypedDict

from loguru import logger


class StatusDict(TypedDict):
    operator_address: str
    gas_available: str
    gassed_up: bool
    pool_address: str | None
    gauge_address: str | None
    staked_lp: str
    strategy_status: dict[str, Any]


class Strategy(ABC):
    name: str | None = None

    def __init__(self, config: dict[str, Any] | None = None, **kwargs: Any):
        self.logger = logger.bind(strategy=self.__class__.__name__)
        self.config: dict[str, Any] = config or {}

    async def setup(self) -> None:
        pass

    @abstractmethod
    async def deposit(self, intent: Any) -> Any:
        pass

    @abstractmethod
    async def withdraw(self, intent: Any) -> Any:
        pass

    @abstractmethod
    async def _status(self) -> StatusDict:
        pass

    async def status(self) -> StatusDict:
        status = await self._status()
        self.logger.debug(f"status: {status}")
        return status
