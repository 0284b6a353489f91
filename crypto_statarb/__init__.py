"""
crypto_statarb -- statistical arbitrage (pairs trading) for crypto markets
"""

from .config import StrategyConfig, StrategyType, load_config

__version__ = "0.1.0"
