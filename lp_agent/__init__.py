__version__ = "0.1.0"

from lp_agent.core import BaseAdapter, StatusDict, Strategy

__all__ = [
    "__version__",
    "BaseAdapter",
    "Strategy",
    "StatusDict",
]
