import json
import logging
import os

from dotenv import load_dotenv
from sqlalchemy.exc import SQLAlchemyError

from charts_etl.models.database import Setting

load_dotenv()

logger = logging.getLogger(__name__)

SPOTIFY_CHARTS_BASE_URL = os.environ.get(
    "SPOTIFY_CHARTS_BASE_URL", "https://charts-spotify-com-service.spotify.com/v1/charts")
SPOTIFY_CHARTS_JSON_API = os.environ.get(
    "SPOTIFY_CHARTS_JSON_API", "https://charts-spotify-com-service.spotify.com/public/v0/charts")

BACKFILL_DELAY_SECONDS = float(os.environ.get("BACKFILL_DELAY_SECONDS", 1))
CRON_DELAY_SECONDS = float(os.environ.get("CRON_DELAY_SECONDS", 2))
MAX_DURATION_SECONDS = float(os.environ.get("MAX_DURATION_SECONDS", 300))

LEAD_SCORE_CATEGORY = "lead_score"
DEDUP_SETTING_KEY = "defaultDeduplicationAction"


def decode_value(raw: str):
    """Settings are stored JSON encoded; fall back to the raw string"""
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return raw


class SettingsStore:
    """Reads and writes runtime settings kept in the `setting` table

    Listeners registered with `on_change` are called with the category of
    every write, which is how the lead score multiplier cache gets dropped.
    """

    def __init__(self, session):
        self.session = session
        self._listeners = []

    def on_change(self, listener):
        self._listeners.append(listener)

    def get(self, category: str, key: str, default=None):
        try:
            setting = self.session.get(Setting, (category, key))
        except SQLAlchemyError as e:
            logger.warning(f"Could not read setting {category}.{key}, using default: {e}")
            self.session.rollback()
            return default
        if setting is None:
            return default
        return decode_value(setting.value)

    def get_category(self, category: str) -> dict:
        settings = self.session.query(Setting).filter(Setting.category == category).all()
        return {setting.key: decode_value(setting.value) for setting in settings}

    def set(self, category: str, key: str, value):
        encoded = json.dumps(value)
        try:
            setting = self.session.get(Setting, (category, key))
            if setting is None:
                self.session.add(Setting(category=category, key=key, value=encoded))
            else:
                setting.value = encoded
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise

        for listener in self._listeners:
            listener(category)

    def is_enabled(self, category: str) -> bool:
        return bool(self.get(category, "enabled", False))
