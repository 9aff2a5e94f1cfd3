"""
Storage Layer - record store
负责 agents / conversations / messages 的持久化存储（Redis，内存降级）
"""

from .base import RecordStore
from .memory_storage import MemoryRecordStore
from .redis_storage import RedisRecordStore

__all__ = [
    "RecordStore",
    "MemoryRecordStore",
    "RedisRecordStore",
]
