"""Loader for the fleet settings seed file."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from fw_autoscale.domain.models import SettingItem
from fw_autoscale.domain.settings import SETTING_ITEM_DICTIONARY
from fw_autoscale.store.base import RecordStore


def _to_setting_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ",".join(str(item) for item in value)
    return str(value)


def load_setting_items(path: str) -> list[SettingItem]:
    """Read ``settings:`` from a YAML file as setting items.

    Each entry maps a setting key either to a plain value or to a mapping with
    ``value`` and optional ``description``/``editable``/``json_encoded``.
    Unknown keys are rejected.
    """
    seed_path = Path(path)
    if not seed_path.exists():
        raise FileNotFoundError(f"Fleet settings file not found: {seed_path}")
    with seed_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    raw = data.get("settings", {}) if isinstance(data, dict) else {}
    if not isinstance(raw, dict):
        raise ValueError("Fleet settings file must contain a 'settings' mapping")

    items: list[SettingItem] = []
    for key, entry in raw.items():
        definition = SETTING_ITEM_DICTIONARY.get(str(key))
        if definition is None:
            raise ValueError(f"Unsupported fleet setting: {key}")
        if isinstance(entry, dict):
            value = entry.get("value")
            description = entry.get("description", definition.description)
            editable = bool(entry.get("editable", definition.editable))
            json_encoded = bool(entry.get("json_encoded", definition.json_encoded))
        else:
            value = entry
            description = definition.description
            editable = definition.editable
            json_encoded = definition.json_encoded
        items.append(
            SettingItem(
                key=definition.key_name,
                value=None if value is None else _to_setting_value(value),
                description=description,
                json_encoded=json_encoded,
                editable=editable,
            )
        )
    return items


async def seed_settings(store: RecordStore, path: str) -> int:
    items = load_setting_items(path)
    for item in items:
        await store.save_setting_item(item)
    return len(items)
