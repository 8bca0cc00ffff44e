"""Multi-bot trading orchestration core.

Runs grid, market-spread and arbitrage bots per user, tracks them by a
deterministic identity and records their activity asynchronously.
"""

__version__ = "1.0.0"
