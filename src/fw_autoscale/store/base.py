"""Record store contract for health-check, primary and setting records."""

from __future__ import annotations

from abc import ABC, abstractmethod

from fw_autoscale.domain.models import HealthCheckRecord, PrimaryRecord, SettingItem


class RecordStore(ABC):
    """Key-indexed storage shared by every invocation of the fleet.

    ``create_primary_record`` is the only cross-invocation synchronization
    point: it must atomically insert ``record`` when no primary record exists
    (``old_record`` is None) or replace exactly ``old_record``, and raise
    RecordConflictError otherwise. Health-check updates never move ``seq``
    backwards; a rejected update raises RecordConflictError.
    """

    @abstractmethod
    async def get_health_check_record(self, vm_id: str) -> HealthCheckRecord | None: ...

    @abstractmethod
    async def list_health_check_records(self) -> list[HealthCheckRecord]: ...

    @abstractmethod
    async def create_health_check_record(self, record: HealthCheckRecord) -> None: ...

    @abstractmethod
    async def update_health_check_record(self, record: HealthCheckRecord) -> None: ...

    @abstractmethod
    async def delete_health_check_record(self, vm_id: str) -> None: ...

    @abstractmethod
    async def get_primary_record(self) -> PrimaryRecord | None: ...

    @abstractmethod
    async def create_primary_record(
        self, record: PrimaryRecord, old_record: PrimaryRecord | None
    ) -> None: ...

    @abstractmethod
    async def update_primary_record(self, record: PrimaryRecord, now: int) -> None:
        """Persist ``record`` only while the stored election is pending and unexpired."""

    @abstractmethod
    async def get_settings(self) -> dict[str, SettingItem]: ...

    @abstractmethod
    async def save_setting_item(self, item: SettingItem) -> None: ...

    def close(self) -> None:
        return None
