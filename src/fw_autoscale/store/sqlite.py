"""SQLite record store for single-host deployments and tests."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from pathlib import Path
from typing import Mapping, Sequence

from fw_autoscale.domain.models import (
    HealthCheckRecord,
    HealthCheckSyncState,
    PrimaryRecord,
    PrimaryRecordVoteState,
    SettingItem,
)
from fw_autoscale.errors import PersistenceError, RecordConflictError
from fw_autoscale.store.base import RecordStore

_SqlValue = str | bytes | int | float | None
_SqlParams = Sequence[_SqlValue] | Mapping[str, _SqlValue]

_HEALTH_CHECK_COLUMNS = (
    "vm_id",
    "scaling_group_name",
    "ip",
    "primary_ip",
    "heartbeat_interval",
    "heartbeat_loss_count",
    "next_heartbeat_time",
    "sync_state",
    "sync_recovery_count",
    "seq",
    "send_time",
    "device_sync_time",
    "device_sync_fail_time",
    "device_sync_status",
    "device_is_primary",
    "device_checksum",
)


def _bool_to_sql(value: bool | None) -> int | None:
    if value is None:
        return None
    return 1 if value else 0


def _sql_to_bool(value: int | None) -> bool | None:
    if value is None:
        return None
    return bool(value)


class SqliteRecordStore(RecordStore):
    def __init__(self, path: str, wal: bool = True) -> None:
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._closed = False
        if wal and path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS health_check (
                vm_id TEXT PRIMARY KEY,
                scaling_group_name TEXT NOT NULL,
                ip TEXT NOT NULL,
                primary_ip TEXT NOT NULL,
                heartbeat_interval INTEGER NOT NULL,
                heartbeat_loss_count INTEGER NOT NULL,
                next_heartbeat_time INTEGER NOT NULL,
                sync_state TEXT NOT NULL,
                sync_recovery_count INTEGER NOT NULL,
                seq INTEGER NOT NULL,
                send_time TEXT,
                device_sync_time TEXT,
                device_sync_fail_time TEXT,
                device_sync_status INTEGER,
                device_is_primary INTEGER,
                device_checksum TEXT
            );

            CREATE TABLE IF NOT EXISTS primary_election (
                scaling_group_name TEXT PRIMARY KEY,
                id TEXT NOT NULL,
                vm_id TEXT NOT NULL,
                ip TEXT NOT NULL,
                virtual_network_id TEXT NOT NULL,
                subnet_id TEXT NOT NULL,
                vote_end_time INTEGER NOT NULL,
                vote_state TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS settings (
                setting_key TEXT PRIMARY KEY,
                setting_value TEXT,
                description TEXT,
                json_encoded INTEGER NOT NULL DEFAULT 0,
                editable INTEGER NOT NULL DEFAULT 0
            );
            """
        )
        self._conn.commit()

    def execute(self, query: str, params: _SqlParams) -> int:
        with self._lock:
            try:
                cursor = self._conn.execute(query, params)
                self._conn.commit()
            except sqlite3.Error as exc:
                raise PersistenceError(str(exc)) from exc
            return cursor.rowcount

    def fetch_all(self, query: str, params: _SqlParams) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(query, params).fetchall()
            except sqlite3.Error as exc:
                raise PersistenceError(str(exc)) from exc

    def fetch_one(self, query: str, params: _SqlParams) -> sqlite3.Row | None:
        rows = self.fetch_all(query, params)
        return rows[0] if rows else None

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._conn.close()
            self._closed = True

    # health-check records

    @staticmethod
    def _row_to_health_check(row: sqlite3.Row) -> HealthCheckRecord:
        sync_state = HealthCheckSyncState(row["sync_state"])
        return HealthCheckRecord(
            vm_id=row["vm_id"],
            scaling_group_name=row["scaling_group_name"],
            ip=row["ip"],
            primary_ip=row["primary_ip"],
            heartbeat_interval=row["heartbeat_interval"],
            heartbeat_loss_count=row["heartbeat_loss_count"],
            next_heartbeat_time=row["next_heartbeat_time"],
            sync_state=sync_state,
            sync_recovery_count=row["sync_recovery_count"],
            seq=row["seq"],
            healthy=sync_state == HealthCheckSyncState.IN_SYNC,
            up_to_date=True,
            send_time=row["send_time"],
            device_sync_time=row["device_sync_time"],
            device_sync_fail_time=row["device_sync_fail_time"],
            device_sync_status=_sql_to_bool(row["device_sync_status"]),
            device_is_primary=_sql_to_bool(row["device_is_primary"]),
            device_checksum=row["device_checksum"],
        )

    @staticmethod
    def _health_check_params(record: HealthCheckRecord) -> tuple[_SqlValue, ...]:
        return (
            record.vm_id,
            record.scaling_group_name,
            record.ip,
            record.primary_ip,
            record.heartbeat_interval,
            record.heartbeat_loss_count,
            record.next_heartbeat_time,
            record.sync_state.value,
            record.sync_recovery_count,
            record.seq,
            record.send_time,
            record.device_sync_time,
            record.device_sync_fail_time,
            _bool_to_sql(record.device_sync_status),
            _bool_to_sql(record.device_is_primary),
            record.device_checksum,
        )

    def _get_health_check_sync(self, vm_id: str) -> HealthCheckRecord | None:
        row = self.fetch_one("SELECT * FROM health_check WHERE vm_id = ?", (vm_id,))
        if row is None:
            return None
        return self._row_to_health_check(row)

    async def get_health_check_record(self, vm_id: str) -> HealthCheckRecord | None:
        return await asyncio.to_thread(self._get_health_check_sync, vm_id)

    def _list_health_check_sync(self) -> list[HealthCheckRecord]:
        rows = self.fetch_all("SELECT * FROM health_check ORDER BY vm_id", ())
        return [self._row_to_health_check(row) for row in rows]

    async def list_health_check_records(self) -> list[HealthCheckRecord]:
        return await asyncio.to_thread(self._list_health_check_sync)

    def _upsert_health_check_sync(self, record: HealthCheckRecord) -> None:
        placeholders = ", ".join("?" for _ in _HEALTH_CHECK_COLUMNS)
        self.execute(
            f"INSERT OR REPLACE INTO health_check ({', '.join(_HEALTH_CHECK_COLUMNS)}) "
            f"VALUES ({placeholders})",
            self._health_check_params(record),
        )

    async def create_health_check_record(self, record: HealthCheckRecord) -> None:
        await asyncio.to_thread(self._upsert_health_check_sync, record)

    def _update_health_check_sync(self, record: HealthCheckRecord) -> None:
        assignments = ", ".join(f"{column} = ?" for column in _HEALTH_CHECK_COLUMNS[1:])
        params = self._health_check_params(record)
        rowcount = self.execute(
            f"UPDATE health_check SET {assignments} WHERE vm_id = ? AND seq <= ?",
            (*params[1:], record.vm_id, record.seq),
        )
        if rowcount != 1:
            raise RecordConflictError(
                f"Health check record (vm id: {record.vm_id}) is missing or newer than "
                f"seq {record.seq}"
            )

    async def update_health_check_record(self, record: HealthCheckRecord) -> None:
        await asyncio.to_thread(self._update_health_check_sync, record)

    async def delete_health_check_record(self, vm_id: str) -> None:
        await asyncio.to_thread(
            self.execute, "DELETE FROM health_check WHERE vm_id = ?", (vm_id,)
        )

    # primary records

    @staticmethod
    def _row_to_primary(row: sqlite3.Row) -> PrimaryRecord:
        return PrimaryRecord(
            id=row["id"],
            vm_id=row["vm_id"],
            ip=row["ip"],
            scaling_group_name=row["scaling_group_name"],
            virtual_network_id=row["virtual_network_id"],
            subnet_id=row["subnet_id"],
            vote_end_time=row["vote_end_time"],
            vote_state=PrimaryRecordVoteState(row["vote_state"]),
        )

    def _get_primary_sync(self) -> PrimaryRecord | None:
        row = self.fetch_one("SELECT * FROM primary_election LIMIT 1", ())
        if row is None:
            return None
        return self._row_to_primary(row)

    async def get_primary_record(self) -> PrimaryRecord | None:
        return await asyncio.to_thread(self._get_primary_sync)

    def _create_primary_sync(self, record: PrimaryRecord, old_record: PrimaryRecord | None) -> None:
        params = (
            record.scaling_group_name,
            record.id,
            record.vm_id,
            record.ip,
            record.virtual_network_id,
            record.subnet_id,
            record.vote_end_time,
            record.vote_state.value,
        )
        with self._lock:
            try:
                if old_record is None:
                    cursor = self._conn.execute(
                        """
                        INSERT INTO primary_election (
                            scaling_group_name, id, vm_id, ip, virtual_network_id,
                            subnet_id, vote_end_time, vote_state
                        )
                        SELECT ?, ?, ?, ?, ?, ?, ?, ?
                        WHERE NOT EXISTS (SELECT 1 FROM primary_election)
                        """,
                        params,
                    )
                else:
                    cursor = self._conn.execute(
                        """
                        UPDATE primary_election
                        SET scaling_group_name = ?, id = ?, vm_id = ?, ip = ?,
                            virtual_network_id = ?, subnet_id = ?, vote_end_time = ?,
                            vote_state = ?
                        WHERE id = ?
                        """,
                        (*params, old_record.id),
                    )
                self._conn.commit()
            except sqlite3.Error as exc:
                raise PersistenceError(str(exc)) from exc
            if cursor.rowcount != 1:
                raise RecordConflictError(
                    f"Primary record (id: {record.id}) lost the conditional create"
                )

    async def create_primary_record(
        self, record: PrimaryRecord, old_record: PrimaryRecord | None
    ) -> None:
        await asyncio.to_thread(self._create_primary_sync, record, old_record)

    def _update_primary_sync(self, record: PrimaryRecord, now: int) -> None:
        rowcount = self.execute(
            """
            UPDATE primary_election
            SET vm_id = ?, ip = ?, virtual_network_id = ?, subnet_id = ?,
                vote_end_time = ?, vote_state = ?
            WHERE id = ? AND vote_state = ? AND vote_end_time > ?
            """,
            (
                record.vm_id,
                record.ip,
                record.virtual_network_id,
                record.subnet_id,
                record.vote_end_time,
                record.vote_state.value,
                record.id,
                PrimaryRecordVoteState.PENDING.value,
                now,
            ),
        )
        if rowcount != 1:
            raise RecordConflictError(
                f"Primary record (id: {record.id}) is no longer a pending election"
            )

    async def update_primary_record(self, record: PrimaryRecord, now: int) -> None:
        await asyncio.to_thread(self._update_primary_sync, record, now)

    # settings

    def _get_settings_sync(self) -> dict[str, SettingItem]:
        rows = self.fetch_all("SELECT * FROM settings", ())
        return {
            row["setting_key"]: SettingItem(
                key=row["setting_key"],
                value=row["setting_value"],
                description=row["description"] or "",
                json_encoded=bool(row["json_encoded"]),
                editable=bool(row["editable"]),
            )
            for row in rows
        }

    async def get_settings(self) -> dict[str, SettingItem]:
        return await asyncio.to_thread(self._get_settings_sync)

    def _save_setting_sync(self, item: SettingItem) -> None:
        self.execute(
            """
            INSERT OR REPLACE INTO settings (
                setting_key, setting_value, description, json_encoded, editable
            ) VALUES (?, ?, ?, ?, ?)
            """,
            (item.key, item.value, item.description, int(item.json_encoded), int(item.editable)),
        )

    async def save_setting_item(self, item: SettingItem) -> None:
        await asyncio.to_thread(self._save_setting_sync, item)
