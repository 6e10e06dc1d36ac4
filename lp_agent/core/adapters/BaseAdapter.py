from __future__ import annotations

import functools
from abc import ABC
from collections.abc import Callable
from typing import Any

from loguru import logger

from lp_agent.core.errors import NotInitializedError


def require_initialized(fn: Callable) -> Callable:
    """Raise ``NotInitializedError`` unless ``self.initialize()`` has resolved its target."""

    @functools.wraps(fn)
    async def wrapper(self: BaseAdapter, *args: Any, **kwargs: Any) -> Any:
        if not self.is_initialized:
            raise NotInitializedError(
                f"{self.__class__.__name__}.{fn.__name__} called before initialize()"
            )
        return await fn(self, *args, **kwargs)

    return wrapper


class BaseAdapter(ABC):
    adapter_type: str | None = None

    def __init__(self, name: str, config: dict[str, Any] | None = None):
        self.name = name
        self.config = config or {}
        self.logger = logger.bind(adapter=self.__class__.__name__)

    @property
    def is_initialized(self) -> bool:
        return True

    async def close(self) -> None:
        pass
