import logging
from logging.handlers import RotatingFileHandler

import pytest
import yaml

from speedprobe import ApplicationContext
from speedprobe.logging_setup import configure_logging
from speedprobe.config import KIB, MIB, load_config, parse_size
from speedprobe.measurements.errors import ValidationError


def _write(tmp_path, data):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return str(path)


@pytest.mark.parametrize(
    "raw,expected",
    [(4096, 4096), ("4096", 4096), ("64k", 64 * KIB), ("64 KiB", 64 * KIB), ("10MB", 10 * MIB), ("abc", None), (None, None), ("1.5MB", None)],
)
def test_parse_size(raw, expected):
    assert parse_size(raw) == expected


def test_defaults_when_sections_missing(tmp_path):
    config = load_config(_write(tmp_path, {}))

    assert config.server.default_download_size == 10 * MIB
    assert config.server.min_download_size == 1 * KIB
    assert config.server.max_download_size == 500 * MIB
    assert config.client.ping_iterations == 5
    assert config.client.ping_inter_delay_ms == 300
    assert config.client.upload_size == 5 * MIB
    assert [tier.name for tier in config.client.escalation_thresholds] == ["large", "medium"]
    assert config.paths.logs_dir.is_dir()


def test_loads_sizes_and_tiers(config):
    assert config.server.default_download_size == 64 * KIB
    assert config.server.chunk_size == 16 * KIB
    assert config.client.initial_download_size == 1 * MIB
    tiers = config.client.escalation_thresholds
    assert [(t.name, t.rate_mbps, t.size_bytes) for t in tiers] == [
        ("large", 100.0, 2 * MIB),
        ("medium", 25.0, 1536 * KIB),
    ]


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "absent.yaml"))


@pytest.mark.parametrize(
    "data",
    [
        {"server": {"chunk_size": "lots"}},
        {"server": {"min_download_size": "10MB", "max_download_size": "1MB"}},
        {"server": {"default_download_size": "1GB"}},
        {"client": {"ping_iterations": 0}},
        {"client": {"escalation_thresholds": [{"name": "x", "size_bytes": "1MB"}]}},
        {"client": {"escalation_thresholds": [{"name": "x", "rate_mbps": 5, "size_bytes": 0}]}},
        {"logging": {"level": "CHATTY"}},
        {"logging": {"backup_count": -1}},
        {"logging": {"max_bytes": "huge"}},
    ],
)
def test_invalid_values_raise(tmp_path, data):
    with pytest.raises(ValidationError):
        load_config(_write(tmp_path, data))


@pytest.fixture
def restore_root_handlers():
    root = logging.getLogger()
    previous = list(root.handlers)
    level = root.level
    yield root
    for handler in list(root.handlers):
        root.removeHandler(handler)
        if isinstance(handler, RotatingFileHandler):
            handler.close()
    for handler in previous:
        root.addHandler(handler)
    root.setLevel(level)


def test_logging_settings_are_loaded(tmp_path):
    config = load_config(
        _write(tmp_path, {"logging": {"level": "debug", "file_name": "probe.log", "max_bytes": "1MB", "backup_count": 2}})
    )

    assert config.logging.level == "debug"
    assert config.logging.file_name == "probe.log"
    assert config.logging.max_bytes == 1 * MIB
    assert config.logging.backup_count == 2
    assert config.logging.to_file is True


def test_configure_logging_uses_rotation_settings(tmp_path, restore_root_handlers):
    config = load_config(
        _write(tmp_path, {"logging": {"level": "DEBUG", "file_name": "probe.log", "max_bytes": "1MB", "backup_count": 2}})
    )

    handlers = configure_logging(config)

    file_handlers = [h for h in handlers if isinstance(h, RotatingFileHandler)]
    assert len(file_handlers) == 1
    assert file_handlers[0].maxBytes == 1 * MIB
    assert file_handlers[0].backupCount == 2
    assert (config.paths.logs_dir / "probe.log").exists()
    assert restore_root_handlers.level == logging.DEBUG
    assert restore_root_handlers.handlers == handlers


def test_console_only_logging_creates_no_file(tmp_path, restore_root_handlers):
    config = load_config(_write(tmp_path, {"logging": {"to_file": False}}))

    handlers = configure_logging(config)

    assert not any(isinstance(h, RotatingFileHandler) for h in handlers)
    assert not (config.paths.logs_dir / "speedprobe.log").exists()


def test_file_logging_can_be_forced_off(config, restore_root_handlers):
    handlers = configure_logging(config, to_file=False)

    assert [type(h) for h in handlers] == [logging.StreamHandler]


def test_application_context(config, restore_root_handlers):
    with ApplicationContext(config) as context:
        assert context.web_app.test_client().get("/ping").status_code == 200
        controller = context.create_controller(base_url="http://other.example:9000")
        assert controller.latency_probe.url == "http://other.example:9000/ping"
        assert controller.measurer.base_url == "http://other.example:9000"
        assert (config.paths.logs_dir / "speedprobe.log").exists()


def test_application_context_shares_and_closes_its_session(config, restore_root_handlers, monkeypatch):
    context = ApplicationContext(config, log_to_file=False)
    closed = []
    monkeypatch.setattr(context.http, "close", lambda: closed.append(True))

    first = context.create_controller()
    second = context.create_controller(base_url="http://other.example:9000")

    assert first.measurer.session is context.http
    assert second.latency_probe.session is context.http
    assert context.http.headers["Cache-Control"] == "no-cache"

    context.close()
    assert closed == [True]
