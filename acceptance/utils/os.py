# Copyright (c) 2024, Crash Override, Inc.
#
# This file is part of the lifecycle acceptance harness
import datetime
import json
import os
import re
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from subprocess import PIPE, CalledProcessError, Popen, TimeoutExpired
from typing import Any, Literal, Optional

from .log import get_logger


logger = get_logger()

ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")

TIMEOUT_EXIT_CODE = 124
NOT_FOUND_EXIT_CODE = 127


@dataclass
class Program:
    """
    Finished subprocess with its captured output
    """

    cmd: list[str] | tuple[str, ...]
    cwd: str
    exit_code: int
    expected_exit_code: int
    stdout: bytes
    stderr: bytes
    duration: datetime.timedelta
    log_level: Literal["info", "debug"] = "info"

    def __post_init__(self):
        if self:
            getattr(self.logger, self.log_level)("finished running")
        elif self.expected_exit_code:
            self.logger.error(f"{self.cmd[0]} succeeded but was expected to fail")
        else:
            self.logger.error(f"{self.cmd[0]} failed")

    def __bool__(self) -> bool:
        return self.exit_code == self.expected_exit_code

    @property
    def logger(self):
        return logger.bind(
            cmd=self.cmd,
            cwd=self.cwd,
            exit_code=self.exit_code,
            expected_exit_code=self.expected_exit_code,
            duration=self.duration,
            stdout=self.text,
            stderr=self.logs,
        )

    @property
    def text(self) -> str:
        # docker cli colors build progress when attached to a terminal
        return ANSI_ESCAPE.sub("", self.stdout.decode(errors="replace").strip())

    @property
    def logs(self) -> str:
        return ANSI_ESCAPE.sub("", self.stderr.decode(errors="replace").strip())

    @property
    def error(self) -> CalledProcessError:
        return CalledProcessError(
            self.exit_code, self.cmd, output=self.stdout, stderr=self.stderr
        )

    def check(self):
        if not self:
            raise self.error

    def json(self) -> Any:
        try:
            return json.loads(self.text)
        except json.JSONDecodeError as e:
            self.logger.error("output is invalid json", error=e)
            raise


def run(
    cmd: list[str] | tuple[str, ...],
    *,
    cwd: Optional[str | Path] = None,
    env: Optional[dict[str, str]] = None,
    check: bool = True,
    expected_exit_code: int = 0,
    timeout: Optional[int | float] = None,
    log_level: Literal["info", "debug"] = "info",
) -> Program:
    """
    Run cmd to completion and capture its output

    ``env`` is layered on top of the current process environment.
    A command which times out is killed and reported with exit code 124,
    a missing executable with exit code 127.

    Raises ``subprocess.CalledProcessError`` when ``check`` is set and
    the command did not exit with ``expected_exit_code``.

    >>> run(['echo', '-n', 'hello']).text
    'hello'
    >>> run(['sleep', '5'], timeout=0.01, check=False).exit_code
    124
    >>> run(['false'], expected_exit_code=1).exit_code
    1
    """
    assert not isinstance(cmd, str), "cmd should be provided as iterable of strings"
    logger.debug("starting to run", cmd=cmd)

    cwd = str(cwd or os.getcwd())
    started = datetime.datetime.now()
    try:
        process = Popen(
            cmd, stdout=PIPE, stderr=PIPE, cwd=cwd, env={**os.environ, **(env or {})}
        )
        try:
            out, err = process.communicate(timeout=timeout)
            exit_code = process.returncode
        except TimeoutExpired:
            with suppress(ProcessLookupError):
                process.kill()
            process.wait()
            exit_code = TIMEOUT_EXIT_CODE
            out, err = b"", f"<timeout after {timeout} seconds>".encode()
    except FileNotFoundError as e:
        exit_code = NOT_FOUND_EXIT_CODE
        out, err = b"", str(e).encode()

    result = Program(
        cmd=cmd,
        cwd=cwd,
        exit_code=exit_code,
        expected_exit_code=expected_exit_code,
        stdout=out,
        stderr=err,
        duration=datetime.datetime.now() - started,
        log_level=log_level,
    )
    if check:
        result.check()
    return result
