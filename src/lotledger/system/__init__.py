"""
System configuration package.

Exports:
    - EngineConfig: Matching engine configuration
    - LoggerFactory: Factory for creating configured loggers
    - LoggingConfig: Logging configuration model
"""

from lotledger.system.config import EngineConfig
from lotledger.system.log_system import LoggerFactory, LoggingConfig

__all__ = [
    "EngineConfig",
    "LoggerFactory",
    "LoggingConfig",
]
