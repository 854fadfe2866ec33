import logging

from machine_driver.config import DriverSettings, get_settings


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(settings: DriverSettings | None = None) -> None:
    """Install the root handler and apply the debug toggles.

    ``driver_debug`` turns on DEBUG for the driver's own loggers,
    ``http_debug`` does the same for httpx/httpcore request tracing.
    """
    if settings is None:
        settings = get_settings()

    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    logging.getLogger("machine_driver").setLevel(
        logging.DEBUG if settings.driver_debug else logging.INFO
    )

    http_level = logging.DEBUG if settings.http_debug else logging.WARNING
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(http_level)
    logging.getLogger("asyncssh").setLevel(
        logging.INFO if settings.driver_debug else logging.WARNING
    )
