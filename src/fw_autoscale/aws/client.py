"""AWS client factory."""

from __future__ import annotations

import asyncio
import threading
import time
from collections import OrderedDict
from collections.abc import Callable

import boto3
from botocore.config import Config

from fw_autoscale.config import Settings, load_settings

ClientCacheKey = tuple[str, ...]

_CLIENT_CACHE: OrderedDict[ClientCacheKey, tuple[object, float]] = OrderedDict()
_CLIENT_CACHE_LOCK = threading.Lock()
_CLIENT_TTL_SECONDS = 3600  # 1 hour
_CLIENT_CACHE_MAX_SIZE = 32


def _get_cached_client(
    key: ClientCacheKey,
    build_client: Callable[[], object],
) -> object:
    now = time.monotonic()
    with _CLIENT_CACHE_LOCK:
        cached = _CLIENT_CACHE.get(key)
        if cached is not None:
            client, created_at = cached
            if now - created_at < _CLIENT_TTL_SECONDS:
                _CLIENT_CACHE.move_to_end(key)
                return client
            del _CLIENT_CACHE[key]
        client = build_client()
        _CLIENT_CACHE[key] = (client, now)
        while len(_CLIENT_CACHE) > _CLIENT_CACHE_MAX_SIZE:
            _CLIENT_CACHE.popitem(last=False)
        return client


def clear_client_cache() -> None:
    with _CLIENT_CACHE_LOCK:
        _CLIENT_CACHE.clear()


def get_client(
    service: str,
    region: str | None = None,
    profile: str | None = None,
    settings: Settings | None = None,
):
    settings = settings or load_settings()
    key = (
        service,
        region or settings.aws.default_region or "",
        profile or settings.aws.default_profile or "",
    )
    return _get_cached_client(
        key,
        lambda: _create_client(service, region, profile, settings),
    )


def _create_client(
    service: str,
    region: str | None,
    profile: str | None,
    settings: Settings,
):
    session = boto3.Session(
        profile_name=profile or settings.aws.default_profile,
        region_name=region or settings.aws.default_region,
    )
    return session.client(service, config=_get_service_config(settings))


def _get_service_config(settings: Settings) -> Config:
    return Config(
        read_timeout=settings.aws.sdk_timeout_seconds,
        connect_timeout=settings.aws.sdk_timeout_seconds,
        retries={"max_attempts": settings.aws.max_retries + 1, "mode": "standard"},
    )


def _call_method(client, method_name: str, kwargs: dict[str, object]) -> dict[str, object]:
    method = getattr(client, method_name)
    response = method(**kwargs)
    if isinstance(response, dict):
        return response
    return {"result": response}


async def call_aws_api_async(client, method_name: str, **kwargs) -> dict[str, object]:
    """Run one boto3 client method in a worker thread."""
    return await asyncio.to_thread(_call_method, client, method_name, kwargs)
