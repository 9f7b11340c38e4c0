"""
Configuration Module for the Sandbox Isolation Engine

Components:
- engine_config: EngineConfig dataclass, YAML loading, ISOLATION_ overrides
"""

from .engine_config import (
    EngineConfig,
    load_engine_config,
)

__all__ = [
    'EngineConfig',
    'load_engine_config',
]
