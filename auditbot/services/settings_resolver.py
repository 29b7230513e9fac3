"""Bot settings: in-process cache, then the settings table, then environment.

Operators edit the settings table from the admin dashboard; ``reload()`` makes
the next lookup go back to the table without restarting the process.
"""

import os
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from sqlalchemy.orm import Session

from auditbot.logging_config import get_logger
from auditbot.models import Setting

logger = get_logger("settings_resolver")

_MISSING = object()

TRUTHY = {"1", "true", "yes", "on"}
FALSY = {"0", "false", "no", "off", ""}

ENV_ALIASES = {
    "gemini_api_key": ("GEMINI_API_KEY", "NEXT_PUBLIC_GEMINI_API_KEY"),
}

DEFAULT_BOT_USERNAME = "CFGNINJA_Bot"


def env_names(key: str) -> tuple[str, ...]:
    """Environment variable names consulted for a settings key."""
    return ENV_ALIASES.get(key, (key.upper(),))


def parse_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    normalized = str(value).strip().lower()
    if normalized in TRUTHY:
        return True
    if normalized in FALSY:
        return False
    return default


@dataclass(frozen=True)
class BotConfig:
    bot_token: Optional[str]
    bot_username: str
    admin_chat_id: Optional[str]
    webhook_url: Optional[str]
    allow_ai_replies: bool
    allow_bot_create_group: bool
    admin_token: Optional[str]
    webhook_secret: Optional[str] = None
    require_webhook_secret: bool = True

    @property
    def has_bot_token(self) -> bool:
        return bool(self.bot_token)


class SettingsResolver:
    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self._session_factory = session_factory
        self._environ = environ if environ is not None else os.environ
        self._cache: dict[str, Any] = {}

    def get(self, key: str, default: Any = None) -> Any:
        """Resolve a setting. Never raises; store outages fall through to env."""
        if key in self._cache:
            value = self._cache[key]
            return default if value is None else value

        store_ok, value = self._from_store(key)
        if value is _MISSING or value is None or value == "":
            value = self.get_env(key)

        # Degraded lookups are not cached so a recovered store is used next time.
        if store_ok:
            self._cache[key] = value
        return default if value is None else value

    def get_bool(self, key: str, default: bool = False) -> bool:
        return parse_bool(self.get(key), default)

    def get_env(self, key: str) -> Optional[str]:
        for name in env_names(key):
            value = self._environ.get(name)
            if value:
                return value
        return None

    def get_preferring_env(self, key: str, default: Any = None) -> Any:
        """Environment first, skipping the store round-trip when already set."""
        value = self.get_env(key)
        if value:
            return value
        return self.get(key, default)

    def reload(self) -> None:
        self._cache.clear()
        logger.info("Settings cache cleared")

    def snapshot(self) -> BotConfig:
        admin_chat_id = self.get("telegram_admin_user_id")
        return BotConfig(
            bot_token=self.get("telegram_bot_token"),
            bot_username=self.get("telegram_bot_username", DEFAULT_BOT_USERNAME),
            admin_chat_id=str(admin_chat_id) if admin_chat_id is not None else None,
            webhook_url=self.get("telegram_webhook_url"),
            allow_ai_replies=self.get_bool("allow_ai_replies", False),
            allow_bot_create_group=self.get_bool("allow_bot_create_group", False),
            admin_token=self.get_preferring_env("admin_token"),
            webhook_secret=self.get_preferring_env("telegram_webhook_secret"),
            require_webhook_secret=self.get_bool("enable_secure_webhook_token", True),
        )

    def _from_store(self, key: str) -> tuple[bool, Any]:
        if self._session_factory is None:
            return True, _MISSING

        db = None
        try:
            db = self._session_factory()
            return True, Setting.get(db, key, _MISSING)
        except Exception as e:
            logger.warning(
                "Settings store unavailable, using environment",
                extra={"context": {"key": key, "error": str(e)}},
            )
            return False, _MISSING
        finally:
            if db is not None:
                try:
                    db.close()
                except Exception as e:
                    logger.debug(f"Settings session close failed: {e}")
