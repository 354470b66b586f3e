"""Platform adapters."""

from fw_autoscale.platform.base import (
    PlatformAdapter,
    RecordStorePlatformAdapter,
    vm_equals,
)

__all__ = ["PlatformAdapter", "RecordStorePlatformAdapter", "vm_equals"]
