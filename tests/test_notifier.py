from __future__ import annotations

import logging
import time

import pytest

from elastic_cron import notifier as notifier_module
from elastic_cron.config import Job
from elastic_cron.errors import NetworkError
from elastic_cron.executor import LaunchError, NonZeroExit, Success
from elastic_cron.logs import job_logger
from elastic_cron.notifier import Notifier

from conftest import FakeServer


def _job(server: FakeServer) -> Job:
    return Job(
        name="backup",
        schedule="*/5 * * * *",
        command="/bin/false",
        ping_success=f"{server.url}/ok",
        ping_failure=f"{server.url}/fail",
    )


@pytest.mark.parametrize("url", ["", None])
def test_empty_url_is_noop(url: object, monkeypatch: pytest.MonkeyPatch) -> None:
    def no_network(*args: object, **kwargs: object) -> None:
        raise AssertionError("network call made")

    monkeypatch.setattr(notifier_module.urllib_request, "build_opener", no_network)
    Notifier().ping(url)  # type: ignore[arg-type]
    assert Notifier().ping_async(url, job_logger("x")) is None  # type: ignore[arg-type]


def test_ping_success(http_server: FakeServer) -> None:
    Notifier().ping(f"{http_server.url}/ok")
    assert http_server.requests[0].method == "GET"
    assert http_server.requests[0].path == "/ok"
    assert http_server.requests[0].headers["user-agent"].startswith("elastic-cron/")


def test_ping_server_error(http_server: FakeServer) -> None:
    with pytest.raises(NetworkError, match="HTTP500"):
        Notifier().ping(f"{http_server.url}/error")


def test_ping_timeout_is_bounded(http_server: FakeServer) -> None:
    started = time.monotonic()
    with pytest.raises(NetworkError):
        Notifier(timeout=0.5).ping(f"{http_server.url}/slow")
    assert time.monotonic() - started < 0.5 + 1.0


def test_ping_deadline_covers_trickling_response(trickle_server: str) -> None:
    started = time.monotonic()
    with pytest.raises(NetworkError, match="timed out"):
        Notifier(timeout=0.6).ping(f"{trickle_server}/ok")
    assert time.monotonic() - started < 0.6 + 0.5


def test_trickling_ping_is_logged_as_failure(trickle_server: str, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    thread = Notifier(timeout=0.4).ping_async(f"{trickle_server}/ok", job_logger("backup"))
    assert thread is not None
    thread.join(timeout=2)
    assert not thread.is_alive()
    assert any(r.levelno == logging.ERROR and "timed out" in r.getMessage() for r in caplog.records)


def test_ping_connection_refused(closed_port_url: str) -> None:
    with pytest.raises(NetworkError):
        Notifier().ping(f"{closed_port_url}/ok")


def test_invalid_url_is_network_error() -> None:
    with pytest.raises(NetworkError):
        Notifier().ping("not a url")


def test_success_pings_success_url_only(http_server: FakeServer) -> None:
    job = _job(http_server)
    thread = Notifier().notify(job, Success(), job_logger(job.name))
    assert thread is not None
    thread.join(timeout=5)
    assert http_server.paths() == ["/ok"]


@pytest.mark.parametrize("outcome", [NonZeroExit(1), LaunchError(FileNotFoundError("nope"))])
def test_failures_ping_failure_url_only(http_server: FakeServer, outcome: object) -> None:
    job = _job(http_server)
    thread = Notifier().notify(job, outcome, job_logger(job.name))  # type: ignore[arg-type]
    assert thread is not None
    thread.join(timeout=5)
    assert http_server.paths() == ["/fail"]


def test_missing_url_for_outcome_is_skipped(http_server: FakeServer) -> None:
    job = Job(name="quiet", schedule="* * * * *", command="true", ping_failure=f"{http_server.url}/fail")
    assert Notifier().notify(job, Success(), job_logger(job.name)) is None
    assert http_server.requests == []


def test_unknown_outcome_rejected(http_server: FakeServer) -> None:
    with pytest.raises(TypeError):
        Notifier().notify(_job(http_server), "done", job_logger("backup"))  # type: ignore[arg-type]


def test_async_ping_failure_is_logged(http_server: FakeServer, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    url = f"{http_server.url}/error"
    thread = Notifier().ping_async(url, job_logger("backup"))
    assert thread is not None
    assert thread.daemon is True
    thread.join(timeout=5)
    errors = [r for r in caplog.records if r.levelno == logging.ERROR and getattr(r, "job", None) == "backup"]
    assert len(errors) == 1
    assert "[SYS] Ping to URL" in errors[0].getMessage()
    assert url in errors[0].getMessage()


def test_async_ping_does_not_block_caller(http_server: FakeServer) -> None:
    started = time.monotonic()
    thread = Notifier(timeout=2.0).ping_async(f"{http_server.url}/slow", job_logger("slow"))
    assert time.monotonic() - started < 0.5
    assert thread is not None
    thread.join(timeout=5)
