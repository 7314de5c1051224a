"""
Settings and YAML job definitions.
"""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from elastic_cron.errors import ConfigError, ScheduleSyntaxError
from elastic_cron.schedule import parse, parse_duration

DEFAULT_CONFIG = "config.yaml"
DEFAULT_INDEX = "elastic_cron-%{+YYYY.MM.dd}"
DEFAULT_PING_TIMEOUT = "1s"
VALID_OVERLAPS = {"parallel", "skip", "queue"}
DEFAULT_OVERLAP = "parallel"

TOP_LEVEL_KEYS = {"elasticsearch", "jobs"}
ELASTICSEARCH_KEYS = {"auth", "index", "servers"}
JOB_KEYS = {"name", "schedule", "cmd", "args", "ping_success", "ping_failure", "overlap"}


@dataclass(frozen=True)
class Job:
    name: str
    schedule: str
    command: str
    args: Tuple[str, ...] = ()
    ping_success: Optional[str] = None
    ping_failure: Optional[str] = None
    overlap: str = DEFAULT_OVERLAP


@dataclass(frozen=True)
class ElasticsearchSettings:
    servers: Tuple[str, ...] = ()
    auth: Optional[Tuple[str, str]] = None
    index: str = DEFAULT_INDEX

    @property
    def enabled(self) -> bool:
        return bool(self.servers)


@dataclass(frozen=True)
class CronConfig:
    jobs: List[Job]
    elasticsearch: ElasticsearchSettings = field(default_factory=ElasticsearchSettings)


@dataclass(frozen=True)
class Settings:
    """Process-wide settings, built once at startup and passed around."""

    config_file: Path
    hostname: str
    ping_timeout: float
    timezone: tzinfo
    timezone_name: str

    @staticmethod
    def build(
        config_file: str = DEFAULT_CONFIG,
        hostname: Optional[str] = None,
        ping_timeout: str = DEFAULT_PING_TIMEOUT,
        timezone_name: Optional[str] = None,
    ) -> "Settings":
        try:
            timeout = parse_duration(ping_timeout).total_seconds()
        except ValueError as exc:
            raise ConfigError(f"Error: --ping-timeout: {exc}.") from exc
        if timeout <= 0:
            raise ConfigError("Error: --ping-timeout must be > 0.")
        if timezone_name:
            tz, tz_name = parse_timezone(timezone_name, "--timezone"), timezone_name
        else:
            tz, tz_name = system_timezone()
        return Settings(
            config_file=Path(config_file).resolve(),
            hostname=hostname or socket.gethostname(),
            ping_timeout=timeout,
            timezone=tz,
            timezone_name=tz_name,
        )


def system_timezone() -> Tuple[tzinfo, str]:
    local_tz = datetime.now().astimezone().tzinfo
    if isinstance(local_tz, ZoneInfo):
        return local_tz, local_tz.key
    tz_name = os.environ.get("TZ")
    if tz_name:
        try:
            return ZoneInfo(tz_name), tz_name
        except (ZoneInfoNotFoundError, ValueError):
            pass
    return ZoneInfo("UTC"), "UTC"


def parse_timezone(name: str, field_path: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f'Error: Invalid timezone "{name}" at {field_path}.') from exc


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def optional_str(value: Any, field_path: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"Error: {field_path} must be a string.")
    return value.strip() or None


def ensure_str_list(value: Any, field_path: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ConfigError(f"Error: {field_path} must be a list of strings.")
    out: List[str] = []
    for idx, item in enumerate(value):
        # YAML turns bare numbers and booleans into non-strings; argv wants text.
        if isinstance(item, (dict, list)) or item is None:
            raise ConfigError(f"Error: {field_path}[{idx}] must be a string.")
        out.append(str(item))
    return tuple(out)


def parse_overlap(value: Any, field_path: str) -> str:
    if value is None:
        return DEFAULT_OVERLAP
    overlap = ensure_str(value, field_path).lower()
    if overlap not in VALID_OVERLAPS:
        raise ConfigError(
            f'Error: {field_path} must be one of {sorted(VALID_OVERLAPS)}, got "{overlap}".'
        )
    return overlap


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")

    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError(f"Error: Top-level YAML in {config_path} must be a mapping.")
    return payload


def parse_elasticsearch(raw: Any, field_path: str) -> ElasticsearchSettings:
    if raw is None:
        return ElasticsearchSettings()
    if not isinstance(raw, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    unknown = set(raw.keys()) - ELASTICSEARCH_KEYS
    if unknown:
        raise ConfigError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")

    servers = ensure_str_list(raw.get("servers"), f"{field_path}.servers")
    for idx, server in enumerate(servers):
        if not server.startswith(("http://", "https://")):
            raise ConfigError(f"Error: {field_path}.servers[{idx}] must be an HTTP URL.")

    auth: Optional[Tuple[str, str]] = None
    auth_raw = ensure_str_list(raw.get("auth"), f"{field_path}.auth")
    if auth_raw:
        if len(auth_raw) != 2:
            raise ConfigError(f"Error: {field_path}.auth must be [username, password].")
        if auth_raw[0]:
            auth = (auth_raw[0], auth_raw[1])

    index = raw.get("index", DEFAULT_INDEX)
    index = ensure_str(index, f"{field_path}.index")
    return ElasticsearchSettings(servers=servers, auth=auth, index=index)


def parse_job(raw: Any, field_path: str) -> Job:
    if not isinstance(raw, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    unknown = set(raw.keys()) - JOB_KEYS
    if unknown:
        raise ConfigError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")

    name = ensure_str(raw.get("name"), f"{field_path}.name")
    schedule = ensure_str(raw.get("schedule"), f"{field_path}.schedule")
    try:
        parse(schedule)
    except ScheduleSyntaxError as exc:
        raise ScheduleSyntaxError(schedule, f"{exc.reason} (at {field_path}.schedule)") from exc

    return Job(
        name=name,
        schedule=schedule,
        command=ensure_str(raw.get("cmd"), f"{field_path}.cmd"),
        args=ensure_str_list(raw.get("args"), f"{field_path}.args"),
        ping_success=optional_str(raw.get("ping_success"), f"{field_path}.ping_success"),
        ping_failure=optional_str(raw.get("ping_failure"), f"{field_path}.ping_failure"),
        overlap=parse_overlap(raw.get("overlap"), f"{field_path}.overlap"),
    )


def parse_config(config_path: Path) -> CronConfig:
    payload = _load_config_payload(config_path)

    unknown_top = set(payload.keys()) - TOP_LEVEL_KEYS
    if unknown_top:
        raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown_top)}.")

    jobs_raw = payload.get("jobs")
    if not isinstance(jobs_raw, list) or not jobs_raw:
        raise ConfigError("Error: jobs must be a non-empty list.")

    jobs = [parse_job(job_raw, f"jobs[{idx}]") for idx, job_raw in enumerate(jobs_raw)]
    return CronConfig(
        jobs=jobs,
        elasticsearch=parse_elasticsearch(payload.get("elasticsearch"), "elasticsearch"),
    )
