"""Categorization package: strategies, the strategy manager, the engine and its repositories."""

from .engine import CategoryEngine  # noqa: F401
from .manager import StrategyManager  # noqa: F401
