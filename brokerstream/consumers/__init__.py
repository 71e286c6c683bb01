"""Session consumers: price ticker, quote desk, and strategy runner.

Each consumer takes an existing Session and only subscribes to what it needs,
so any number of them can share one connection.
"""

from brokerstream.consumers.quotes import ProposalDesk
from brokerstream.consumers.runner import RunnerConfig, StrategyRunner, coinflip
from brokerstream.consumers.ticker import PriceTicker

__all__ = ["PriceTicker", "ProposalDesk", "RunnerConfig", "StrategyRunner", "coinflip"]
