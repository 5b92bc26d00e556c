# app/main.py
from fastapi import FastAPI

from app.api.routes import health, internal, logs, meetings
from app.core.config import get_settings
from app.core.logging_setup import configure_logging
from app.db.session import init_db_for_startup


def create_app() -> FastAPI:
    """
    Application factory for the Attention Monitor service.
    """
    settings = get_settings()
    configure_logging(level=settings.LOG_LEVEL, log_dir=settings.LOG_DIR)

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Backend service that ingests per-participant attention signals during\n"
            "live sessions, keeps bounded per-meeting aggregates, and reconciles\n"
            "meeting-wide attention statistics on demand."
        ),
        version="0.1.0",
    )

    # Routers
    app.include_router(health.router)
    app.include_router(meetings.router)
    app.include_router(logs.router)
    app.include_router(internal.router)

    @app.on_event("startup")
    async def on_startup() -> None:  # pragma: no cover
        await init_db_for_startup()

    return app


app = create_app()
