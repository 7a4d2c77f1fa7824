"""
State access for Slipway: durable application store and redis cache.
"""

from .db import DatabaseError, AppRecord, PostgreSQLManager, get_database_manager
from .cache import RedisCache, get_cache

__all__ = [
    'DatabaseError',
    'AppRecord',
    'PostgreSQLManager',
    'get_database_manager',
    'RedisCache',
    'get_cache',
]
