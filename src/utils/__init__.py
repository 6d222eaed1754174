"""
Rites Keeper Utility Modules

Atomic single-file operations used by the backup and rollback code.
"""

from .atomic_write import AtomicWriter

__all__ = [
    "AtomicWriter",
]
