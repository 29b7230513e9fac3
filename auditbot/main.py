import asyncio
import os
from typing import Optional

from fastapi import FastAPI

from auditbot.config import settings
from auditbot.database import SessionLocal, init_db
from auditbot.dependencies import BotRuntime
from auditbot.logging_config import get_logger, setup_logging
from auditbot.routers import admin, audit_request, telegram_webhook
from auditbot.services.settings_resolver import SettingsResolver

setup_logging(settings.log_level)

sweeper_logger = get_logger("expiry_sweeper")


def _is_env_enabled(value: Optional[str], default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _is_sweeper_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get("EXPIRY_SWEEPER_ENABLED"), default=True)


def build_default_runtime() -> BotRuntime:
    return BotRuntime.build(settings, SettingsResolver(SessionLocal))


async def _expiry_sweeper_loop(app: FastAPI) -> None:
    interval_seconds = max(settings.expiry_sweep_interval_seconds, 1.0)
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            results = await app.state.runtime.purge_expired()
            if any(results.values()):
                sweeper_logger.info("Expired records purged", extra={"context": results})
        except asyncio.CancelledError:
            break
        except Exception as exc:
            sweeper_logger.error(
                "Expiry sweeper loop failed",
                extra={"context": {"error": str(exc)}},
            )


def create_app(runtime: Optional[BotRuntime] = None) -> FastAPI:
    app = FastAPI(
        title="CFG Ninja Audit Bot",
        description="Telegram intake and approval flow for smart contract audit requests",
        version="0.1.0",
    )
    app.state.runtime = runtime
    app.state.sweeper_task = None

    app.include_router(telegram_webhook.router)
    app.include_router(admin.router)
    app.include_router(audit_request.router)

    @app.on_event("startup")
    async def start_runtime() -> None:
        if app.state.runtime is None:
            init_db()
            app.state.runtime = build_default_runtime()
        if _is_sweeper_enabled() and app.state.sweeper_task is None:
            app.state.sweeper_task = asyncio.create_task(_expiry_sweeper_loop(app))
            sweeper_logger.info("Expiry sweeper started")

    @app.on_event("shutdown")
    async def stop_sweeper() -> None:
        task = app.state.sweeper_task
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        app.state.sweeper_task = None

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
