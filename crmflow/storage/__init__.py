"""
CrmFlow Storage - sequence and automation state

- SequenceStore / AutomationStore: abstract interfaces
- MemorySequenceStore / MemoryAutomationStore: in-memory, for tests
- PostgresSequenceStore / PostgresAutomationStore: asyncpg-backed
"""

from .base import AutomationStore, SequenceStore
from .memory import MemoryAutomationStore, MemorySequenceStore
from .postgres import PostgresAutomationStore, PostgresSequenceStore

__all__ = [
    "SequenceStore",
    "AutomationStore",
    "MemorySequenceStore",
    "MemoryAutomationStore",
    "PostgresSequenceStore",
    "PostgresAutomationStore",
]
