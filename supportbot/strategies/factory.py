"""
Strategy selection by configured trading logic key
"""
from typing import Callable, Dict, List

from loguru import logger

from .base_strategy import SupportStrategy
from .baseline import BaselineSupportStrategy
from .data_driven import DataDrivenSupportStrategy

DEFAULT_LOGIC = "logic1_base"

_REGISTRY: Dict[str, Callable[[], SupportStrategy]] = {
    "logic1_base": BaselineSupportStrategy,
    "logic2_data_driven": DataDrivenSupportStrategy,
}


def register_strategy(key: str, factory: Callable[[], SupportStrategy]) -> None:
    _REGISTRY[key] = factory
    logger.info(f"Registered support strategy '{key}'")


def available_strategies() -> List[str]:
    return sorted(_REGISTRY)


def get_strategy(key: str) -> SupportStrategy:
    """Instantiate the strategy for a logic key; unknown keys fall back to the baseline"""
    factory = _REGISTRY.get(key)
    if factory is None:
        logger.warning(f"Unknown trading logic '{key}', falling back to {DEFAULT_LOGIC}")
        factory = _REGISTRY[DEFAULT_LOGIC]
    return factory()
