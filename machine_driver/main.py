import logging

from fastapi import FastAPI

from machine_driver.api import router
from machine_driver.config import get_settings
from machine_driver.db import configure_sqlite_runtime, init_db
from machine_driver.logging_config import configure_logging


logger = logging.getLogger(__name__)


app = FastAPI(title="Proxmox VE Machine Driver")
app.include_router(router)


@app.on_event("startup")
def startup() -> None:
    settings = get_settings()
    configure_logging(settings)
    if not settings.host:
        raise RuntimeError("PROXMOXVE_HOST is required")

    configure_sqlite_runtime()
    init_db()
    logger.info(
        "machine-driver startup complete host=%s node=%s storage=%s",
        settings.host,
        settings.node,
        settings.storage,
    )
