"""
Persistence Layer for Meter Rail

SQLite storage for dedupe stamps and usage events.
"""

from .database import Database
from .models import DedupeStampRecord, UsageEventRecord, format_timestamp, parse_timestamp
from .repository import DedupeRepository, UsageEventRepository
from .adapters import DatabaseDedupeStore, DatabaseUsageSink

__all__ = [
    "Database",
    "DedupeStampRecord",
    "UsageEventRecord",
    "format_timestamp",
    "parse_timestamp",
    "DedupeRepository",
    "UsageEventRepository",
    "DatabaseDedupeStore",
    "DatabaseUsageSink",
]
