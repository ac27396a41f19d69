"""Application bootstrap helpers."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Optional

import requests

from .config import AppConfig, load_config
from .logging_setup import configure_logging
from .measurements.controller import AdaptiveTestController
from .web.app import create_web_app


class ApplicationContext:
    """Holds the configured server app and the HTTP session shared by client controllers."""

    def __init__(self, config: AppConfig, log_to_file: Optional[bool] = None):
        self.config = config
        configure_logging(config, to_file=log_to_file)
        self.web_app = create_web_app(config)
        self.http = requests.Session()

    def create_controller(
        self, base_url: Optional[str] = None, session: Optional[requests.Session] = None
    ) -> AdaptiveTestController:
        client_config = self.config.client
        if base_url:
            client_config = replace(client_config, base_url=base_url)
        return AdaptiveTestController.from_config(client_config, session=session or self.http)

    def close(self) -> None:
        self.http.close()

    def __enter__(self) -> "ApplicationContext":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def bootstrap(config_path: Optional[str] = None, log_to_file: Optional[bool] = None) -> ApplicationContext:
    """Load configuration and wire dependencies.

    ``log_to_file`` overrides ``logging.to_file``; the headless client turns
    the rotating file off unless asked for it.
    """
    config = load_config(str(Path(config_path).resolve())) if config_path else load_config()
    return ApplicationContext(config, log_to_file=log_to_file)
