#!/usr/bin/env python3
"""
Seed bot settings into the settings table.
Usage: python scripts/init_settings.py [key=value ...]

Existing keys are left untouched unless passed explicitly on the command line.
"""

import sys

from auditbot.database import SessionLocal, init_db
from auditbot.models import Setting

DEFAULTS = {
    "telegram_bot_username": ("CFGNINJA_Bot", "Telegram bot username (without @) for deep links"),
    "telegram_admin_user_id": ("", "Telegram user ID that receives audit request notifications"),
    "telegram_webhook_url": ("", "Webhook URL for Telegram bot updates"),
    "allow_ai_replies": (False, "Enable AI-powered non-command replies from the Telegram bot"),
    "allow_bot_create_group": (False, "Let the bot try to create a discussion group per request"),
}


def parse_overrides(args: list[str]) -> dict:
    overrides = {}
    for arg in args:
        key, sep, value = arg.partition("=")
        if not sep:
            print(f"Ignoring malformed argument: {arg}", file=sys.stderr)
            continue
        if value.lower() in ("true", "false"):
            overrides[key] = value.lower() == "true"
        else:
            overrides[key] = value
    return overrides


def main():
    overrides = parse_overrides(sys.argv[1:])
    init_db()
    db = SessionLocal()
    try:
        for key, (value, description) in DEFAULTS.items():
            if key in overrides:
                Setting.set(db, key, overrides.pop(key), description)
                print(f"Set: {key}")
            elif Setting.get(db, key) is None:
                Setting.set(db, key, value, description)
                print(f"Created default: {key} = {value!r}")
            else:
                print(f"Exists: {key} (skipping)")

        for key, value in overrides.items():
            Setting.set(db, key, value, "")
            print(f"Set: {key}")

        db.commit()
    finally:
        db.close()


if __name__ == "__main__":
    main()
