import logging

from pydantic import ValidationError
from pymongo.errors import PyMongoError

from models.settings import AppSettings

logger = logging.getLogger(__name__)


def _drop_unset(doc: dict) -> dict:
    cleaned = {}
    for key, value in doc.items():
        if value is None:
            continue
        if isinstance(value, dict):
            value = _drop_unset(value)
        cleaned[key] = value
    return cleaned


class SettingsProvider:
    """
    Read-only view of the system-wide commission settings.

    Missing documents, missing fields and unreadable values all resolve to
    the hard-coded defaults on AppSettings; reading settings never fails a
    caller.
    """

    def __init__(self, db=None, settings: AppSettings | None = None):
        self._db = db
        self._settings = settings

    @classmethod
    def static(cls, **values) -> "SettingsProvider":
        return cls(settings=AppSettings(**values))

    async def get(self) -> AppSettings:
        if self._settings is not None:
            return self._settings

        if self._db is None:
            return AppSettings()

        try:
            doc = await self._db.app_settings.find_one({})
        except PyMongoError:
            logger.exception("SETTINGS_READ_ERROR")
            return AppSettings()

        if not doc:
            return AppSettings()

        doc.pop("_id", None)
        try:
            return AppSettings.model_validate(_drop_unset(doc))
        except ValidationError:
            logger.exception("SETTINGS_INVALID")
            return AppSettings()

    async def global_commission_rate(self) -> float:
        settings = await self.get()
        return settings.global_commission_rate

    async def default_delivery_commission_rate(self) -> float:
        settings = await self.get()
        return settings.default_delivery_commission_rate

    async def distance_km_rate(self) -> float | None:
        """Per-km delivery rate when distance mode is on, else None."""
        settings = await self.get()
        config = settings.delivery_config
        if config.is_distance_based and config.delivery_agent_km_rate:
            return config.delivery_agent_km_rate
        return None
