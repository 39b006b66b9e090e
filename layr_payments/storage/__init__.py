from layr_payments.config import ENABLED_STORAGE

from .base import StorageBackend, StorageCapabilities, StorageStatus
from .database import DatabaseStorage
from .memory import MemoryStorage

__all__ = ["StorageBackend", "StorageCapabilities", "StorageStatus"]

if "memory" in ENABLED_STORAGE:
    __all__.append("MemoryStorage")
if "database" in ENABLED_STORAGE:
    __all__.append("DatabaseStorage")

# Remove disabled backends from module namespace
globals_ = globals()
if "memory" not in ENABLED_STORAGE and "MemoryStorage" in globals_:
    del globals_["MemoryStorage"]
if "database" not in ENABLED_STORAGE and "DatabaseStorage" in globals_:
    del globals_["DatabaseStorage"]
