"""Known strategies, keyed by the names used in the configuration."""

from __future__ import annotations

from typing import Dict, List, Type

from ..config.schema import Config, ConfigError
from .base import Strategy
from .ma_crossover import MACrossoverStrategy
from .triple_confirmation import TripleConfirmationStrategy


STRATEGIES: Dict[str, Type[Strategy]] = {
    TripleConfirmationStrategy.key: TripleConfirmationStrategy,
    MACrossoverStrategy.key: MACrossoverStrategy,
}


def build_strategy(key: str, config: Config) -> Strategy:
    try:
        cls = STRATEGIES[key]
    except KeyError:
        raise ConfigError([f"Unknown strategy {key!r}; choose from {sorted(STRATEGIES)}"]) from None
    return cls(config)


def build_shadow_strategies(config: Config) -> List[Strategy]:
    """Every configured shadow strategy except the live one."""
    return [build_strategy(key, config) for key in config.strategy.shadow if key != config.strategy.live]
