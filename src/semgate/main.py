from __future__ import annotations

import sys

import uvicorn
from pydantic import ValidationError

from .config import SemgateConfig
from .constants import VERSION
from .errors import ConfigError
from .logging import ScanLogger
from .server import create_app


def main() -> int:
    """Main entry point: serve the webhook receiver."""
    logger = ScanLogger("startup")
    try:
        config = SemgateConfig()
        app = create_app(config, logger=logger.child("server"))
    except (ValidationError, ConfigError) as exc:
        logger.error("Configuration error", error=str(exc))
        return 2

    logger.info(
        "Semgate starting",
        version=VERSION,
        host=config.host,
        port=config.port,
        events=[kind.value for kind in config.events],
        scanner_config=config.scanner_config,
        scan_timeout=config.scan_timeout,
    )
    uvicorn.run(app, host=config.host, port=int(config.port))
    return 0


if __name__ == "__main__":
    sys.exit(main())
