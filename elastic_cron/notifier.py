"""
Success / failure pings for dead-man's-switch style watchdogs.
"""

from __future__ import annotations

import contextlib
import http.client
import logging
import socket
import threading
from typing import Callable, List, Optional
from urllib import error as urllib_error
from urllib import request as urllib_request

from elastic_cron import __version__
from elastic_cron.config import Job
from elastic_cron.errors import NetworkError
from elastic_cron.executor import ExecutionOutcome, LaunchError, NonZeroExit, Success
from elastic_cron.logs import SYS

DEFAULT_TIMEOUT_SECONDS = 1.0
USER_AGENT = f"elastic-cron/{__version__}"


class _TrackedHTTPHandler(urllib_request.HTTPHandler):
    def __init__(self, track: Callable[[type], Callable[..., http.client.HTTPConnection]]):
        super().__init__()
        self._track = track

    def http_open(self, req: urllib_request.Request) -> http.client.HTTPResponse:
        return self.do_open(self._track(http.client.HTTPConnection), req)


class _TrackedHTTPSHandler(urllib_request.HTTPSHandler):
    def __init__(self, track: Callable[[type], Callable[..., http.client.HTTPConnection]]):
        super().__init__()
        self._track = track

    def https_open(self, req: urllib_request.Request) -> http.client.HTTPResponse:
        return self.do_open(self._track(http.client.HTTPSConnection), req, context=self._context)


class PingAttempt:
    """A single GET whose connections can be torn down from another thread."""

    def __init__(self, url: str, timeout: float):
        self.url = url
        self.timeout = timeout
        self.status: Optional[int] = None
        self.error: Optional[NetworkError] = None
        self._connections: List[http.client.HTTPConnection] = []
        self._lock = threading.Lock()

    def run(self) -> None:
        opener = urllib_request.build_opener(
            _TrackedHTTPHandler(self._track), _TrackedHTTPSHandler(self._track)
        )
        try:
            req = urllib_request.Request(url=self.url, method="GET", headers={"User-Agent": USER_AGENT})
            with opener.open(req, timeout=self.timeout) as response:
                self.status = response.status
        except urllib_error.HTTPError as exc:
            self.error = NetworkError(f"Expected HTTP2xx status, got HTTP{exc.code}")
        except (urllib_error.URLError, http.client.HTTPException, OSError, ValueError) as exc:
            self.error = NetworkError(str(exc) or type(exc).__name__)

    def cancel(self) -> None:
        with self._lock:
            connections = list(self._connections)
        for conn in connections:
            sock = conn.sock
            if sock is None:
                continue
            # Shutting down wakes the reader blocked in recv; close() alone does not.
            with contextlib.suppress(OSError):
                sock.shutdown(socket.SHUT_RDWR)

    def _track(self, connection_class: type) -> Callable[..., http.client.HTTPConnection]:
        def connect(host: str, **kwargs: object) -> http.client.HTTPConnection:
            conn = connection_class(host, **kwargs)
            with self._lock:
                self._connections.append(conn)
            return conn

        return connect


class Notifier:
    """Issues bounded GET requests; failures are logged, never retried."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self.timeout = timeout

    def ping(self, url: Optional[str]) -> None:
        """GET ``url`` and require a 2xx answer within ``timeout`` seconds overall.

        The socket timeout only bounds each read, so the request runs on a
        helper thread and is cut off once the deadline passes. That also
        covers slow name resolution.
        """
        if not url:
            return
        attempt = PingAttempt(url, self.timeout)
        worker = threading.Thread(target=attempt.run, daemon=True, name="elastic-cron-ping-request")
        worker.start()
        worker.join(self.timeout)
        if worker.is_alive():
            attempt.cancel()
            raise NetworkError(f"Ping timed out after {self.timeout:g}s")
        if attempt.error is not None:
            raise attempt.error
        if attempt.status is None or not 200 <= attempt.status <= 299:
            raise NetworkError(f"Expected HTTP2xx status, got HTTP{attempt.status}")

    def ping_async(self, url: Optional[str], log: logging.LoggerAdapter) -> Optional[threading.Thread]:
        """Ping on a detached thread. The thread is returned but nothing needs to join it."""
        if not url:
            return None
        thread = threading.Thread(
            target=self._ping_and_log,
            args=(url, log),
            daemon=True,
            name="elastic-cron-ping",
        )
        thread.start()
        return thread

    def notify(
        self, job: Job, outcome: ExecutionOutcome, log: logging.LoggerAdapter
    ) -> Optional[threading.Thread]:
        if isinstance(outcome, Success):
            url = job.ping_success
        elif isinstance(outcome, (NonZeroExit, LaunchError)):
            url = job.ping_failure
        else:
            raise TypeError(f"Unknown execution outcome: {outcome!r}")
        return self.ping_async(url, log)

    def _ping_and_log(self, url: str, log: logging.LoggerAdapter) -> None:
        try:
            self.ping(url)
        except NetworkError as exc:
            log.error("%s Ping to URL %r caused an error: %s", SYS, url, exc)
