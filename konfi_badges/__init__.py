"""
Konfi Badge Engine
"""

__version__ = "0.1.0"

from .config import EngineConfig
from .engine import BadgeEngine
from .exceptions import CriteriaConfigError, DBError

__all__ = ["EngineConfig", "BadgeEngine", "CriteriaConfigError", "DBError"]
