"""Application settings document, read through an injected TTL cache."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from payrecon.core.cache import TTLCache
from payrecon.core.errors import ValidationError
from payrecon.core.logging import get_logger
from payrecon.core.store import KeyedStore
from payrecon.schemas.app_settings import AppSettings

logger = get_logger(__name__)

SETTINGS_PATH = "settings"
_CACHE_KEY = "app_settings"


class SettingsService:
    """Reads and writes the single ``settings`` document.

    The first read of an empty store writes the defaults.  Every write
    refreshes the cache; ``invalidate()`` forces the next read to hit the
    store.
    """

    def __init__(self, store: KeyedStore, cache: TTLCache) -> None:
        self.store = store
        self.cache = cache

    def get_settings(self) -> AppSettings:
        return self.cache.get_or_load(_CACHE_KEY, self._load)

    def update_settings(self, changes: dict[str, Any]) -> AppSettings:
        current = self._load()
        merged = {**current.model_dump(exclude={"id"}), **AppSettings.by_field_name(changes)}
        merged["updated_at"] = datetime.now(timezone.utc)
        try:
            updated = AppSettings.model_validate(merged)
        except PydanticValidationError as exc:
            raise ValidationError(
                "Invalid settings",
                {"errors": [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]},
            ) from exc
        self.store.set(SETTINGS_PATH, updated.to_document())
        self.cache.set(_CACHE_KEY, updated)
        logger.info("Settings updated: fields=%s", sorted(changes))
        return updated

    def reset_to_default(self) -> AppSettings:
        defaults = AppSettings(updated_at=datetime.now(timezone.utc))
        self.store.set(SETTINGS_PATH, defaults.to_document())
        self.cache.set(_CACHE_KEY, defaults)
        logger.info("Settings reset to defaults")
        return defaults

    def invalidate(self) -> None:
        self.cache.invalidate(_CACHE_KEY)

    def _load(self) -> AppSettings:
        doc = self.store.get(SETTINGS_PATH)
        if not doc:
            defaults = AppSettings()
            self.store.set(SETTINGS_PATH, defaults.to_document())
            logger.info("Settings document missing, defaults written")
            return defaults
        return AppSettings.from_document(SETTINGS_PATH, doc)
