from .base_strategy import SupportStrategy
from .baseline import BaselineSupportStrategy
from .data_driven import DataDrivenSupportStrategy, dynamic_bounds
from .factory import available_strategies, get_strategy, register_strategy
