from __future__ import annotations

import logging
import os

import uvicorn

from icsmirror.config_manager import ConfigManager

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def main() -> None:
    config_path = os.getenv("ICSMIRROR_CONFIG_PATH", "config.yaml")
    configure_logging(ConfigManager(config_path).load().logging.level)
    host = os.getenv("ICSMIRROR_HOST", "0.0.0.0")
    port = int(os.getenv("ICSMIRROR_PORT", "8080"))
    uvicorn.run("icsmirror.web_admin:create_app", factory=True, host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
