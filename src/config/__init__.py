# Config モジュール
from src.config.engine_config import (
    ConfigurationError,
    EngineConfig,
    NotificationConfig,
    SchedulerConfig,
    SelectionCriteria,
    StatisticsConfig,
    load_engine_config,
)

__all__ = [
    "ConfigurationError",
    "EngineConfig",
    "NotificationConfig",
    "SchedulerConfig",
    "SelectionCriteria",
    "StatisticsConfig",
    "load_engine_config",
]
