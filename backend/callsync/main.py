from fastapi import FastAPI

from callsync.api import health, sync_logs
from callsync.core.config import settings
from callsync.core.logs import configure_logging

configure_logging()

app = FastAPI(title=settings.app_name)
app.include_router(health.router)
app.include_router(sync_logs.router)
