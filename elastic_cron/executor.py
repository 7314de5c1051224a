"""
Runs a job's command and classifies how it ended.
"""

from __future__ import annotations

import logging
import subprocess
import threading
from dataclasses import dataclass
from typing import IO, List, Union

from elastic_cron.config import Job
from elastic_cron.logs import SYS, job_logger


@dataclass(frozen=True)
class Success:
    @property
    def failed(self) -> bool:
        return False


@dataclass(frozen=True)
class NonZeroExit:
    code: int

    @property
    def failed(self) -> bool:
        return True


@dataclass(frozen=True)
class LaunchError:
    cause: OSError

    @property
    def failed(self) -> bool:
        return True


ExecutionOutcome = Union[Success, NonZeroExit, LaunchError]


def _forward_lines(stream: IO[str], log: logging.LoggerAdapter, level: int) -> None:
    with stream:
        for line in stream:
            log.log(level, line.rstrip("\r\n"))


def execute(job: Job) -> ExecutionOutcome:
    """Run ``job`` to completion, forwarding its output line by line."""
    log = job_logger(job.name)
    log.info("%s Starting job", SYS)

    try:
        proc = subprocess.Popen(
            [job.command, *job.args],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
    except OSError as exc:
        log.error("%s Execution caused error: %s", SYS, exc)
        return LaunchError(exc)

    readers: List[threading.Thread] = [
        threading.Thread(
            target=_forward_lines,
            args=(proc.stdout, job_logger(job.name, "stdout"), logging.INFO),
            daemon=True,
        ),
        threading.Thread(
            target=_forward_lines,
            args=(proc.stderr, job_logger(job.name, "stderr"), logging.ERROR),
            daemon=True,
        ),
    ]
    for reader in readers:
        reader.start()
    return_code = proc.wait()
    for reader in readers:
        reader.join()

    if return_code == 0:
        log.info("%s Command execution successful", SYS)
        return Success()
    log.info("%s Command exited with unexpected exit code != 0 (exit_code=%s)", SYS, return_code)
    return NonZeroExit(return_code)
