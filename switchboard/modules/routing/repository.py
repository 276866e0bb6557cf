from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from uuid import uuid4

import anyio.to_thread
from pydantic import ValidationError

from switchboard.core.utils.files import JsonFileStore
from switchboard.core.utils.time import utcnow_iso
from switchboard.modules.routing.schemas import ROUTING_CONFIG_VERSION, RoutingConfig

logger = logging.getLogger(__name__)


class RoutingConfigRepository:
    """Routing config document with an in-memory copy; writes are serialized and atomic."""

    def __init__(self, path: str | Path) -> None:
        self._file = JsonFileStore(path)
        self._lock = asyncio.Lock()
        self._cached: RoutingConfig | None = None

    @property
    def path(self) -> Path:
        return self._file.path

    def load(self) -> RoutingConfig:
        if self._cached is None:
            self._cached = self._read()
        return self._cached

    async def save(self, config: RoutingConfig) -> RoutingConfig:
        async with self._lock:
            config.version = ROUTING_CONFIG_VERSION
            config.updated_at = utcnow_iso()
            payload = config.model_dump(mode="json", by_alias=True)
            await anyio.to_thread.run_sync(self._file.write, payload)
            self._cached = config
            return config

    def _read(self) -> RoutingConfig:
        raw = self._file.load(default=None)
        if not isinstance(raw, dict):
            return RoutingConfig()
        migrated = _migrate(raw)
        try:
            return RoutingConfig.model_validate(migrated)
        except ValidationError:
            logger.warning("routing_config_invalid path=%s action=defaults", self._file.path, exc_info=True)
            return RoutingConfig()


def _migrate(raw: dict) -> dict:
    version = raw.get("version")
    if isinstance(version, int) and version >= ROUTING_CONFIG_VERSION:
        return raw
    # Version 1 documents held one unnamed chain under "entries".
    migrated = dict(raw)
    entries = migrated.pop("entries", None)
    flows = migrated.get("flows")
    if not isinstance(flows, list):
        flows = []
    if isinstance(entries, list) and entries and not flows:
        legacy = [{**entry, "id": entry.get("id") or str(uuid4())} for entry in entries if isinstance(entry, dict)]
        flows = [{"id": str(uuid4()), "name": "default", "entries": legacy}]
    migrated["flows"] = flows
    migrated["version"] = ROUTING_CONFIG_VERSION
    logger.info("routing_config_migrated from_version=%s flows=%s", version, len(flows))
    return migrated
