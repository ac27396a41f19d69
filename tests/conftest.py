from __future__ import annotations

import io
from typing import Iterable, List
from urllib.parse import urlsplit

import pytest
import requests
import yaml
from requests.adapters import BaseAdapter
from requests.structures import CaseInsensitiveDict

from speedprobe.config import load_config
from speedprobe.web.app import create_web_app

BASE_URL = "http://speedprobe.test"


class FlaskAdapter(BaseAdapter):
    """Routes requests made through a requests.Session into a Flask test client."""

    def __init__(self, app):
        super().__init__()
        self.client = app.test_client()

    def send(self, request, stream=False, timeout=None, verify=True, cert=None, proxies=None):
        parts = urlsplit(request.url)
        body = request.body
        if hasattr(body, "read"):
            body = body.read()
        headers = {
            key: value
            for key, value in request.headers.items()
            if key.lower() not in ("content-length", "transfer-encoding")
        }
        flask_response = self.client.open(
            parts.path,
            method=request.method,
            query_string=parts.query,
            data=body or b"",
            headers=headers,
        )

        response = requests.Response()
        response.status_code = flask_response.status_code
        response.reason = flask_response.status.split(" ", 1)[-1]
        response.headers = CaseInsensitiveDict(flask_response.headers)
        response.raw = io.BytesIO(flask_response.get_data())
        response.url = request.url
        response.request = request
        response.connection = self
        return response

    def close(self):
        pass


class ScriptedClock:
    """Returns the given instants in order."""

    def __init__(self, instants: Iterable[float]):
        self._instants = list(instants)
        self.calls = 0

    def __call__(self) -> float:
        value = self._instants[self.calls]
        self.calls += 1
        return value


class StepClock:
    """Advances by ``step`` seconds on every read."""

    def __init__(self, step: float):
        self.step = step
        self.now = 0.0

    def __call__(self) -> float:
        self.now += self.step
        return self.now


class RecordingSleep:
    def __init__(self):
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def config_data():
    return {
        "paths": {"logs_dir": "logs"},
        "server": {
            "default_download_size": "64KB",
            "min_download_size": "1KB",
            "max_download_size": "16MB",
            "chunk_size": "16KB",
        },
        "client": {
            "base_url": BASE_URL,
            "ping_iterations": 3,
            "ping_inter_delay_ms": 0,
            "initial_download_size": "1MB",
            "upload_size": "512KB",
            "chunk_size": "16KB",
            "stage_pause_ms": 0,
            "escalation_thresholds": [
                {"name": "large", "rate_mbps": 100, "size_bytes": "2MB"},
                {"name": "medium", "rate_mbps": 25, "size_bytes": "1536KB"},
            ],
        },
    }


@pytest.fixture
def config(tmp_path, config_data):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(config_data), encoding="utf-8")
    return load_config(str(path))


@pytest.fixture
def app(config):
    flask_app = create_web_app(config)
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def http(app):
    session = requests.Session()
    session.mount(BASE_URL, FlaskAdapter(app))
    return session
