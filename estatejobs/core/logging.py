from __future__ import annotations

import logging

from estatejobs.core.config import get_settings


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Configure the root logger once per process; worker and API share the format.
    resolved = (level or get_settings().log_level or "INFO").upper()
    numeric = getattr(logging, resolved, logging.INFO)
    if not isinstance(numeric, int):
        numeric = logging.INFO
    logging.basicConfig(level=numeric, format=LOG_FORMAT)
    logging.getLogger().setLevel(numeric)
    # arq logs every job at INFO; our instrumentation already does.
    logging.getLogger("arq").setLevel(max(numeric, logging.WARNING))
