"""Record stores backing health-check, primary and setting records."""

from fw_autoscale.store.base import RecordStore
from fw_autoscale.store.sqlite import SqliteRecordStore

__all__ = ["RecordStore", "SqliteRecordStore"]
