"""
Logging for elastic-cron.

Job records carry ``job`` and ``stream`` attributes so they can be rendered
on stdout and shipped to Elasticsearch as structured documents.
"""

from __future__ import annotations

import base64
import json
import logging
import re
import sys
import threading
from datetime import datetime, timezone
from queue import Empty, Full, Queue
from typing import Any, Dict, List, Optional
from urllib import error as urllib_error
from urllib import request as urllib_request

from elastic_cron.config import ElasticsearchSettings
from elastic_cron.errors import ElasticCronError

LOGGER_NAME = "elastic_cron"
SHIPPING_LOGGER_NAME = "elastic_cron.shipping"
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
SYS = "[SYS]"
DEFAULT_BUFFER_MAX_EVENTS = 5000
DEFAULT_FLUSH_INTERVAL = 1.0
DEFAULT_SHIPPING_TIMEOUT = 5.0

UTC = timezone.utc
INDEX_DATE_RE = re.compile(r"%\{\+([^}]+)\}")
JODA_TOKENS = {
    "YYYY": "%Y",
    "yyyy": "%Y",
    "YY": "%y",
    "yy": "%y",
    "MM": "%m",
    "dd": "%d",
    "HH": "%H",
    "mm": "%M",
    "ss": "%S",
}
JODA_RE = re.compile("|".join(sorted(JODA_TOKENS, key=len, reverse=True)))

shipping_logger = logging.getLogger(SHIPPING_LOGGER_NAME)


class JobFormatter(logging.Formatter):
    """Prefix records that belong to a job with ``[job=<name>]``."""

    def formatMessage(self, record: logging.LogRecord) -> str:
        job = getattr(record, "job", None)
        if not job:
            return super().formatMessage(record)
        message = record.message
        record.message = f"[job={job}] {message}"
        try:
            return super().formatMessage(record)
        finally:
            record.message = message


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    if logger.handlers:
        return logger
    logger.setLevel(level)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(JobFormatter(LOG_FORMAT))
    logger.addHandler(stream_handler)
    return logger


def job_logger(job_name: str, stream: Optional[str] = None) -> logging.LoggerAdapter:
    return logging.LoggerAdapter(
        logging.getLogger(f"{LOGGER_NAME}.jobs"),
        {"job": job_name, "stream": stream},
    )


def expand_index_name(pattern: str, moment: datetime) -> str:
    """Expand ``%{+YYYY.MM.dd}`` style date placeholders in an index name."""
    if "%{+" not in pattern:
        return pattern

    def repl(match: re.Match[str]) -> str:
        return JODA_RE.sub(lambda token: moment.strftime(JODA_TOKENS[token.group(0)]), match.group(1))

    return INDEX_DATE_RE.sub(repl, pattern)


def _auth_header(settings: ElasticsearchSettings) -> Dict[str, str]:
    if not settings.auth:
        return {}
    token = base64.b64encode(f"{settings.auth[0]}:{settings.auth[1]}".encode("utf-8")).decode("ascii")
    return {"Authorization": f"Basic {token}"}


def probe_elasticsearch(settings: ElasticsearchSettings, timeout: float = DEFAULT_SHIPPING_TIMEOUT) -> str:
    """Return the first server that answers, or raise ElasticCronError."""
    failures: List[str] = []
    for server in settings.servers:
        try:
            req = urllib_request.Request(url=server, method="GET", headers=_auth_header(settings))
            with urllib_request.urlopen(req, timeout=timeout) as response:
                if 200 <= response.status < 300:
                    return server
                failures.append(f"{server}: HTTP{response.status}")
        except (urllib_error.URLError, OSError, ValueError) as exc:
            failures.append(f"{server}: {exc}")
    raise ElasticCronError(f"Unable to reach elasticsearch ({'; '.join(failures) or 'no servers'})")


class ElasticsearchHandler(logging.Handler):
    """Best-effort, non-blocking log shipping to the Elasticsearch bulk API."""

    def __init__(
        self,
        settings: ElasticsearchSettings,
        hostname: str,
        level: int = logging.INFO,
        max_events: int = DEFAULT_BUFFER_MAX_EVENTS,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        timeout: float = DEFAULT_SHIPPING_TIMEOUT,
    ):
        super().__init__(level)
        self.settings = settings
        self.hostname = hostname
        self.flush_interval = flush_interval
        self.timeout = timeout
        self._queue: "Queue[Dict[str, Any]]" = Queue(maxsize=max_events)
        self._stop_event = threading.Event()
        self._dropped_events = 0
        # Shipping diagnostics must not feed back into the queue.
        self.addFilter(lambda record: not record.name.startswith(SHIPPING_LOGGER_NAME))
        self._thread = threading.Thread(target=self._run, daemon=True, name="elastic-cron-shipper")
        self._thread.start()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            document = self.to_document(record)
        except Exception:  # pragma: no cover - logging contract
            self.handleError(record)
            return
        try:
            self._queue.put_nowait(document)
        except Full:
            self._dropped_events += 1
            shipping_logger.warning(
                "Log shipping queue is full; dropping record (dropped=%s).",
                self._dropped_events,
            )

    def to_document(self, record: logging.LogRecord) -> Dict[str, Any]:
        document: Dict[str, Any] = {
            "@timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname.lower(),
            "message": record.getMessage(),
            "logger": record.name,
            "host": self.hostname,
        }
        for key in ("job", "stream"):
            value = getattr(record, key, None)
            if value:
                document[key] = value
        if record.exc_info:
            document["error"] = logging.Formatter().formatException(record.exc_info)
        return document

    def close(self) -> None:
        self._stop_event.set()
        self._thread.join(timeout=self.timeout + self.flush_interval)
        batch = self._collect_batch(limit=10000)
        if batch:
            self._send_batch(batch)
        super().close()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            batch = self._collect_batch(limit=500)
            if batch:
                self._send_batch(batch)
            self._stop_event.wait(self.flush_interval)

    def _collect_batch(self, limit: int) -> List[Dict[str, Any]]:
        documents: List[Dict[str, Any]] = []
        for _ in range(limit):
            try:
                documents.append(self._queue.get_nowait())
            except Empty:
                break
        return documents

    def _bulk_body(self, documents: List[Dict[str, Any]]) -> bytes:
        index = expand_index_name(self.settings.index, datetime.now(tz=UTC))
        action = json.dumps({"index": {"_index": index}})
        lines: List[str] = []
        for document in documents:
            lines.append(action)
            lines.append(json.dumps(document, separators=(",", ":")))
        return ("\n".join(lines) + "\n").encode("utf-8")

    def _send_batch(self, documents: List[Dict[str, Any]]) -> bool:
        body = self._bulk_body(documents)
        headers = {"Content-Type": "application/x-ndjson", **_auth_header(self.settings)}
        for server in self.settings.servers:
            url = server.rstrip("/") + "/_bulk"
            req = urllib_request.Request(url=url, data=body, method="POST", headers=headers)
            try:
                with urllib_request.urlopen(req, timeout=self.timeout) as response:
                    if 200 <= response.status < 300:
                        self._report_rejected(response.read(), len(documents))
                        return True
            except (urllib_error.URLError, OSError, ValueError) as exc:
                shipping_logger.warning("Log shipping to %s failed: %s", server, exc)
        shipping_logger.warning("Dropping %s log record(s); no elasticsearch server accepted them.", len(documents))
        return False

    @staticmethod
    def _report_rejected(raw: bytes, total: int) -> None:
        """Warn about documents the bulk API refused inside a 2xx answer."""
        try:
            result = json.loads(raw.decode("utf-8") or "{}")
        except (UnicodeDecodeError, json.JSONDecodeError):
            shipping_logger.warning("Unreadable response from the bulk API; %s log record(s) may be lost.", total)
            return
        if not isinstance(result, dict) or not result.get("errors"):
            return
        errors = [
            outcome["error"]
            for item in result.get("items") or []
            if isinstance(item, dict)
            for outcome in item.values()
            if isinstance(outcome, dict) and outcome.get("error")
        ]
        reason: Any = errors[0] if errors else "no reason given"
        if isinstance(reason, dict):
            reason = reason.get("reason", reason)
        shipping_logger.warning(
            "Elasticsearch rejected %s of %s log record(s): %s", len(errors) or "some", total, reason
        )
