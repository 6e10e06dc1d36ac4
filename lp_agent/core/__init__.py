from lp_agent.core.adapters.BaseAdapter import BaseAdapter
from lp_agent.core.strategies.Strategy import StatusDict, Strategy

__all__ = [
    "Strategy",
    "StatusDict",
    "BaseAdapter",
]
