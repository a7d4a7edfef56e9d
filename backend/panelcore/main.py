"""
Panel Settings Core - FastAPI Main Application
"""
from fastapi import FastAPI, HTTPException
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
import asyncio
import logging
from typing import Optional

from .config import settings, Settings
from .database import init_db
from .models.setting import ENABLE, SettingKey
from .services.binding import parse_port
from .services.errors import PartialApplyError, ReapplyFailed, SettingsError, ValidationError
from .services.listener import Binding, PanelListener
from .services.settings_service import SettingsService, build_settings_service
from .services.settings_store import SettingsStore, init_default_settings
from .utils.security import get_password_hash

logger = logging.getLogger(__name__)

# HTTP status per error kind
ERROR_STATUS = {
    "validation": 400,
    "not_found": 404,
    "conflict": 409,
    "partial_apply": 500,
    "apply_failed": 500,
    "store": 500,
    "internal": 500,
}


def setup_logging(cfg: Settings = settings) -> None:
    handlers = [logging.StreamHandler()]
    if cfg.LOG_FILE:
        handlers.append(logging.FileHandler(cfg.LOG_FILE))
    logging.basicConfig(
        level=getattr(logging, cfg.LOG_LEVEL.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )


def create_app(service: SettingsService, cfg: Settings = settings) -> FastAPI:
    """Build the API around an already wired SettingsService."""
    app = FastAPI(
        title=cfg.APP_NAME,
        version=cfg.APP_VERSION,
        description="Panel system settings: listener, TLS, password policy, MFA and proxy",
        docs_url="/docs" if cfg.DEBUG else None,
        redoc_url=None,
    )
    app.state.settings_service = service
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "app": cfg.APP_NAME,
            "version": cfg.APP_VERSION
        }

    @app.exception_handler(SettingsError)
    async def settings_exception_handler(request, exc: SettingsError):
        """Keep the error kind so clients can tell bad input from apply failures"""
        body = {"error": exc.message, "kind": exc.kind}
        if isinstance(exc, PartialApplyError):
            body.update({
                "committed": exc.committed,
                "total": exc.total,
                "committedKeys": exc.committed_keys,
                "failedKey": exc.failed_key,
            })
        return JSONResponse(status_code=ERROR_STATUS.get(exc.kind, 500), content=body)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request, exc):
        """Handle HTTP exceptions"""
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.detail,
                "status_code": exc.status_code
            }
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request, exc):
        """Handle general exceptions"""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "detail": str(exc) if cfg.DEBUG else "An error occurred"
            }
        )

    from .api import settings as api_settings
    app.include_router(api_settings.router, prefix=cfg.API_PREFIX, tags=["Settings"])
    return app


def stored_binding(store: SettingsStore, cfg: Settings = settings) -> Binding:
    """Listener binding from the stored settings, with config defaults for bad values."""
    values = store.get_many([SettingKey.SERVER_PORT, SettingKey.BIND_ADDRESS, SettingKey.IPV6])
    raw_port = values.get(SettingKey.SERVER_PORT.value)
    try:
        port = parse_port(raw_port)
    except ValidationError:
        logger.error(f"❌ Stored ServerPort {raw_port!r} is invalid, using {cfg.DEFAULT_SERVER_PORT}")
        port = cfg.DEFAULT_SERVER_PORT
    return Binding(
        values.get(SettingKey.BIND_ADDRESS.value) or cfg.DEFAULT_BIND_ADDRESS,
        port,
        values.get(SettingKey.IPV6.value) == ENABLE,
    )


def open_listener(service: SettingsService, cfg: Settings = settings) -> None:
    """Open the listener on its stored binding, or on the default address if that fails.

    The binding actually in use is always written back so the stored settings
    describe the live listener.
    """
    listener = service.binding.listener
    try:
        listener.open()
    except OSError as e:
        fallback = Binding(cfg.DEFAULT_BIND_ADDRESS, listener.binding.port, False)
        logger.error(f"❌ Cannot listen on {listener.binding} ({e}), falling back to {fallback}")
        listener.binding = fallback
        listener.open()
    service.binding.persist(listener.binding)


def bootstrap(cfg: Settings = settings):
    """Open the database, seed defaults and open the listener from stored settings.

    Returns (store, listener, service).
    """
    init_db()
    store = SettingsStore()

    password_hash: Optional[str] = None
    if not store.get_or_default(SettingKey.PASSWORD):
        password_hash = get_password_hash(cfg.INITIAL_ADMIN_PASSWORD)
    init_default_settings(store, cfg, password_hash=password_hash)

    listener = PanelListener(stored_binding(store, cfg))
    service = build_settings_service(store, listener, cfg)

    if store.get_or_default(SettingKey.SSL) == ENABLE:
        certificates = service.certificates
        if certificates.ensure_certificate():
            logger.info("✅ Self-signed certificate generated")
        else:
            try:
                listener.reload_tls(certificates.cert_path, certificates.key_path)
            except ReapplyFailed:
                logger.error("❌ Installed certificate is unusable, falling back to a self-signed one")
                certificates.generate()

    open_listener(service, cfg)
    return store, listener, service


async def _serve(app: FastAPI, listener: PanelListener, log_level: str) -> None:
    from .server import UvicornRunner

    runner = UvicornRunner(app, asyncio.get_running_loop(), log_level)
    listener.attach(runner)
    runner.start(listener.sock, listener.ssl_context)
    await runner.wait()


def run() -> None:
    setup_logging()
    logger.info(f"Starting {settings.APP_NAME} {settings.APP_VERSION}...")
    _, listener, service = bootstrap()
    app = create_app(service)
    try:
        asyncio.run(_serve(app, listener, settings.LOG_LEVEL.lower()))
    finally:
        listener.close()
        logger.info("✅ Shutdown complete")


if __name__ == "__main__":
    run()
