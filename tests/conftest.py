# Copyright (c) 2024, Crash Override, Inc.
#
# This file is part of the lifecycle acceptance harness
import shutil
import subprocess
from contextlib import ExitStack, chdir
from dataclasses import dataclass, field
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Any, Optional
from unittest import mock

import pytest
from filelock import FileLock

from acceptance import conf, phase
from acceptance.utils.docker import Docker
from acceptance.utils.log import get_logger


logger = get_logger()


def pytest_addoption(parser):
    # https://docs.pytest.org/en/7.4.x/how-to/logging.html#live-logs
    # log_cli is only an ini option so we add argument for it
    parser.addoption(
        "--logs", action="store_true", default=False, help="show live logs"
    )


@pytest.hookimpl
def pytest_configure(config):
    config.inicfg["log_cli"] = config.getoption("--logs")


def lock(name: str):
    return FileLock(Path(__file__).with_name(name).resolve())


@pytest.fixture(autouse=True)
def be_exclusive(request, worker_id):
    # docker daemon and DOCKER_CONFIG are shared by all tests
    try:
        workercount = request.config.workerinput["workercount"]
    except AttributeError:
        yield
    else:
        if request.node.get_closest_marker("exclusive"):
            with ExitStack() as stack:
                # as test case is exclusive, lock all worker locks
                for i in range(workercount):
                    stack.enter_context(lock(f"worker-gw{i}.lck"))
                yield
        else:
            with lock(f"worker-{worker_id}.lck"):
                yield


@pytest.fixture(autouse=True)
def requires_docker(request):
    if request.node.get_closest_marker("integration") and not shutil.which("docker"):
        pytest.skip("docker is not installed. skipping test")


@pytest.fixture(autouse=True)
def requires_lifecycle(request):
    if (
        request.node.get_closest_marker("requires_lifecycle")
        and not (conf.LIFECYCLE_REPO / "Makefile").is_file()
    ):
        pytest.skip(f"{conf.LIFECYCLE_REPO} is not a lifecycle checkout. skipping test")


@pytest.fixture(autouse=True)
def registry_host(request, monkeypatch):
    # without a real daemon the registry is only ever reached from this host
    if not request.node.get_closest_marker("integration"):
        monkeypatch.setattr(conf, "REGISTRY_HOST", "localhost")


@pytest.fixture(scope="function")
def tmp_data_dir():
    with TemporaryDirectory() as tmp_dir:
        with chdir(tmp_dir):
            yield Path(tmp_dir)


@pytest.fixture(scope="function")
def test_context(tmp_data_dir: Path):
    context = tmp_data_dir / "phase"
    context.mkdir()
    (context / conf.DOCKERFILE_NAME).write_text(
        "FROM busybox\nCOPY container /\n"
    )
    return context


@dataclass
class FakeDocker:
    """
    Records docker cli invocations instead of running them
    """

    info: dict[str, Any] = field(
        default_factory=lambda: {"OSType": "linux", "Architecture": "x86_64"}
    )
    builds: list[dict[str, Any]] = field(default_factory=list)
    pushes: list[tuple[str, Optional[str]]] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    runs: list[dict[str, Any]] = field(default_factory=list)
    fail_build: set[str] = field(default_factory=set)
    fail_remove: set[str] = field(default_factory=set)

    @property
    def built(self) -> list[str]:
        return [i["tag"] for i in self.builds]

    def build(self, *, tag, context, dockerfile=None, args=None, **kwargs):
        if tag in self.fail_build:
            raise subprocess.CalledProcessError(1, ["docker", "build", "-t", tag])
        self.builds.append(
            {"tag": tag, "context": context, "dockerfile": dockerfile, "args": args or {}}
        )
        return mock.Mock(exit_code=0)

    def push(self, tag, docker_config=None, expected_success=True):
        self.pushes.append((tag, str(docker_config) if docker_config else None))
        return mock.Mock(exit_code=0)

    def remove_image(self, image):
        self.removed.append(image)
        # Program is truthy when it exited as expected
        return image not in self.fail_remove

    def run(self, image, params=None, **kwargs):
        self.runs.append({"image": image, "params": params, **kwargs})
        return mock.Mock(exit_code=0)


@pytest.fixture()
def fake_docker():
    docker = FakeDocker()
    with ExitStack() as stack:
        stack.enter_context(
            mock.patch.object(Docker, "info", lambda: docker.info)
        )
        for name in ("build", "push", "remove_image", "run"):
            stack.enter_context(mock.patch.object(Docker, name, getattr(docker, name)))
        yield docker


@pytest.fixture()
def fake_lifecycle():
    compiled: list[tuple[str, str, Path]] = []

    def make_and_copy_lifecycle(goos: str, goarch: str, dest: Path, **kwargs):
        compiled.append((goos, goarch, dest))
        dest.mkdir(parents=True, exist_ok=True)
        return dest

    with mock.patch.object(phase, "make_and_copy_lifecycle", make_and_copy_lifecycle):
        yield compiled
