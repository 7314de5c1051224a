"""Exception types for elastic-cron."""

from __future__ import annotations


class ElasticCronError(Exception):
    """Base error for elastic-cron."""


class ConfigError(ElasticCronError):
    """Config validation error."""


class ScheduleSyntaxError(ConfigError):
    """Malformed schedule expression."""

    def __init__(self, expr: str, reason: str):
        super().__init__(f'Error: Invalid schedule "{expr}": {reason}.')
        self.expr = expr
        self.reason = reason


class NetworkError(ElasticCronError):
    """Ping to a notification URL failed."""
