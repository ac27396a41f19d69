"""Configuration loading helpers for the speed test server and client."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .measurements.errors import ValidationError

KIB = 1024
MIB = 1024 * 1024

_SIZE_PATTERN = re.compile(r"^\s*(\d+)\s*(b|k|kb|kib|m|mb|mib)?\s*$", re.IGNORECASE)
_SIZE_UNITS = {
    None: 1,
    "b": 1,
    "k": KIB,
    "kb": KIB,
    "kib": KIB,
    "m": MIB,
    "mb": MIB,
    "mib": MIB,
}


def parse_size(raw: Union[str, int, None]) -> Optional[int]:
    """Parse ``"1048576"``, ``"64k"`` or ``"10MB"`` into a byte count.

    Returns None when the value cannot be read as a size.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    match = _SIZE_PATTERN.match(str(raw))
    if not match:
        return None
    number, unit = match.groups()
    return int(number) * _SIZE_UNITS[unit.lower() if unit else None]


@dataclass
class PathsConfig:
    logs_dir: Path


@dataclass
class ServerConfig:
    default_download_size: int = 10 * MIB
    min_download_size: int = 1 * KIB
    max_download_size: int = 500 * MIB
    chunk_size: int = 64 * KIB


@dataclass
class EscalationTier:
    name: str
    rate_mbps: float
    size_bytes: int


def _default_tiers() -> List[EscalationTier]:
    return [
        EscalationTier(name="large", rate_mbps=100.0, size_bytes=250 * MIB),
        EscalationTier(name="medium", rate_mbps=25.0, size_bytes=50 * MIB),
    ]


@dataclass
class ClientConfig:
    base_url: str = "http://127.0.0.1:8000"
    ping_iterations: int = 5
    ping_inter_delay_ms: int = 300
    initial_download_size: int = 10 * MIB
    upload_size: int = 5 * MIB
    chunk_size: int = 64 * KIB
    request_timeout: float = 60.0
    stage_pause_ms: int = 300
    skip_on_ping_failure: bool = False
    escalation_thresholds: List[EscalationTier] = field(default_factory=_default_tiers)


@dataclass
class WebConfig:
    host: str = "0.0.0.0"
    port: int = 8000
    reverse_proxy_headers: bool = False
    cors_origins: Union[str, List[str]] = "*"


@dataclass
class LoggingConfig:
    level: str = "INFO"
    to_file: bool = True
    file_name: str = "speedprobe.log"
    max_bytes: int = 5 * MIB
    backup_count: int = 5


@dataclass
class AppConfig:
    root_dir: Path
    paths: PathsConfig
    server: ServerConfig
    client: ClientConfig
    web: WebConfig
    logging: LoggingConfig


def _as_path(base: Path, maybe_path: Optional[str]) -> Path:
    if not maybe_path:
        raise ValueError("Path configuration entries cannot be empty")
    path = (base / maybe_path).resolve()
    path.mkdir(parents=True, exist_ok=True)
    return path


def _size_field(section: str, data: Dict[str, Any], key: str) -> None:
    if key not in data:
        return
    size = parse_size(data[key])
    if size is None or size <= 0:
        raise ValidationError(f"{section}.{key} must be a positive size, got {data[key]!r}")
    data[key] = size


def _build_server(data: Dict[str, Any]) -> ServerConfig:
    data = dict(data)
    for key in ("default_download_size", "min_download_size", "max_download_size", "chunk_size"):
        _size_field("server", data, key)
    server = ServerConfig(**data)
    if server.min_download_size > server.max_download_size:
        raise ValidationError("server.min_download_size is larger than server.max_download_size")
    if not server.min_download_size <= server.default_download_size <= server.max_download_size:
        raise ValidationError("server.default_download_size must lie inside the min/max range")
    return server


def _build_tier(raw: Dict[str, Any], index: int) -> EscalationTier:
    size = parse_size(raw.get("size_bytes"))
    if size is None or size <= 0:
        raise ValidationError(f"client.escalation_thresholds[{index}].size_bytes must be a positive size")
    try:
        rate = float(raw["rate_mbps"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationError(f"client.escalation_thresholds[{index}].rate_mbps is required") from exc
    return EscalationTier(name=str(raw.get("name", f"tier{index}")), rate_mbps=rate, size_bytes=size)


def _build_client(data: Dict[str, Any]) -> ClientConfig:
    data = dict(data)
    for key in ("initial_download_size", "upload_size", "chunk_size"):
        _size_field("client", data, key)
    if "escalation_thresholds" in data:
        data["escalation_thresholds"] = [
            _build_tier(raw, index) for index, raw in enumerate(data["escalation_thresholds"] or [])
        ]
    client = ClientConfig(**data)
    if client.ping_iterations < 1:
        raise ValidationError("client.ping_iterations must be at least 1")
    if client.ping_inter_delay_ms < 0 or client.stage_pause_ms < 0:
        raise ValidationError("client delays cannot be negative")
    return client


def _build_logging(data: Dict[str, Any]) -> LoggingConfig:
    data = dict(data)
    _size_field("logging", data, "max_bytes")
    settings = LoggingConfig(**data)
    if not isinstance(logging.getLevelName(str(settings.level).upper()), int):
        raise ValidationError(f"logging.level {settings.level!r} is not a known level")
    if settings.backup_count < 0:
        raise ValidationError("logging.backup_count cannot be negative")
    if not settings.file_name:
        raise ValidationError("logging.file_name cannot be empty")
    return settings


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load application configuration from YAML file."""

    root_dir = Path(path).resolve().parent if path else Path.cwd()
    source_path = Path(path) if path else root_dir / "config.yaml"
    if not source_path.exists():
        raise FileNotFoundError(f"Missing configuration file at {source_path}")

    with source_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}

    paths_data = data.get("paths", {})
    paths = PathsConfig(
        logs_dir=_as_path(root_dir, paths_data.get("logs_dir", "logs")),
    )

    config = AppConfig(
        root_dir=root_dir,
        paths=paths,
        server=_build_server(data.get("server", {})),
        client=_build_client(data.get("client", {})),
        web=WebConfig(**data.get("web", {})),
        logging=_build_logging(data.get("logging", {})),
    )

    return config
