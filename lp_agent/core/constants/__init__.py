from lp_agent.core.constants.chains import CHAIN_ID_BASE

__all__ = ["CHAIN_ID_BASE"]
