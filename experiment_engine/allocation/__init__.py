# Allocation モジュール
from experiment_engine.allocation.allocator import HashAllocator

__all__ = ["HashAllocator"]
