import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from core.config import Settings, settings as default_settings
from core.errors import StoreUnavailableError
from core.scheduler import start_scheduler
from core.services import Services, build_services
from routes import calendar, cron

logger = logging.getLogger(__name__)

def create_app(services: Optional[Services] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Builds the API. Tests pass a ready Services bundle; otherwise one is built
    from settings (MongoDB store, Web Push sender, Google OAuth) at startup.
    """
    settings = settings or (services.settings if services else default_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        app.state.services = services or build_services(settings)
        try:
            await app.state.services.store.ensure_indexes()
        except StoreUnavailableError as e:
            # Jobs report the outage per invocation; indexes are retried on next start
            logger.error(f"Could not create indexes at startup: {e}")
        scheduler = None
        if settings.ENABLE_SCHEDULER:
            scheduler = start_scheduler(app.state.services)
        else:
            logger.info("APScheduler disabled via settings (ENABLE_SCHEDULER=False)")
        yield
        if scheduler is not None:
            scheduler.shutdown(wait=False)
        if owned:
            app.state.services.close()

    app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)

    # Routers
    app.include_router(cron.router)
    app.include_router(calendar.router)

    @app.get("/")
    def read_root():
        return {"message": f"Welcome to {settings.APP_NAME}"}

    return app

logging.basicConfig(
    level=default_settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
