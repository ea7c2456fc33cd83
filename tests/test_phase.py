# Copyright (c) 2024, Crash Override, Inc.
#
# This file is part of the lifecycle acceptance harness
import json
import os
import subprocess
from pathlib import Path
from unittest import mock

import pytest

from acceptance import conf
from acceptance.errors import (
    FixtureCleanupError,
    PhaseTestStateError,
    RegistryNotEnabledError,
    RegistryStateError,
)
from acceptance.fixtures import FixtureState
from acceptance.phase import (
    WITHOUT_DAEMON_FIXTURES,
    WITHOUT_REGISTRY,
    PhaseTest,
    PhaseTestConfig,
    ScopedEnvVar,
    TargetDaemon,
    TargetRegistry,
    network_mode,
    normalize_arch,
)
from acceptance.utils.docker import Docker


@pytest.mark.parametrize(
    "arch, expected",
    [
        ("x86_64", "amd64"),
        ("aarch64", "arm64"),
        ("amd64", "amd64"),
        ("arm64", "arm64"),
        ("ppc64le", "ppc64le"),
    ],
)
def test_normalize_arch(arch: str, expected: str):
    assert normalize_arch(arch) == expected


@pytest.mark.parametrize(
    "host, mode",
    [
        ("localhost", "host"),
        ("127.0.0.1", "host"),
        ("10.0.0.5", "default"),
        ("docker", "default"),
    ],
)
def test_network_mode(host: str, mode: str):
    assert network_mode(host) == mode


def test_scoped_env_var(monkeypatch):
    monkeypatch.setenv("SOME_VAR", "before")
    var = ScopedEnvVar("SOME_VAR")
    var.set("first")
    var.set("second")
    assert os.environ["SOME_VAR"] == "second"
    var.restore()
    assert os.environ["SOME_VAR"] == "before"

    monkeypatch.delenv("SOME_VAR")
    var.set("value")
    var.restore()
    assert "SOME_VAR" not in os.environ
    # nothing to restore
    var.restore()
    assert "SOME_VAR" not in os.environ


@pytest.mark.parametrize("phase_name", ["detector", "analyzer", "restorer", "exporter"])
def test_conventions(fake_docker, test_context: Path, phase_name: str):
    phase = PhaseTest(phase_name, test_context)
    assert phase.container_binary_path == f"/cnb/lifecycle/{phase_name}"
    assert phase.test_image_ref == f"lifecycle/acceptance/{phase_name}"
    assert phase.container_binary_dir == test_context / "container" / "cnb" / "lifecycle"
    assert phase.container_docker_config_dir == test_context / "container" / "docker-config"
    assert phase.target_daemon.os == "linux"
    assert phase.target_daemon.arch == "amd64"
    assert phase.target_registry is not None
    assert not phase.target_registry.running


def test_config(fake_docker, test_context: Path):
    phase = PhaseTest("detector", test_context, WITHOUT_REGISTRY)
    assert phase.target_registry is None
    assert phase.target_daemon.state is FixtureState.UNINITIALIZED

    phase = PhaseTest("detector", test_context, WITHOUT_DAEMON_FIXTURES)
    assert phase.target_registry is not None
    assert phase.target_daemon.state is FixtureState.SUPPRESSED

    phase = PhaseTest(
        "detector",
        test_context,
        PhaseTestConfig(suppress_daemon_fixtures=True, suppress_registry=True),
    )
    assert phase.target_registry is None
    assert phase.target_daemon.state is FixtureState.SUPPRESSED


def test_daemon_detect(fake_docker):
    fake_docker.info = {"OSType": "linux", "Architecture": "aarch64"}
    daemon = TargetDaemon.detect()
    assert (daemon.os, daemon.arch) == ("linux", "arm64")


def test_daemon_fixtures_created_once(fake_docker):
    daemon = TargetDaemon(os="linux", arch="amd64")
    fixtures = daemon.create_fixtures()
    daemon.create_fixtures()

    assert daemon.state is FixtureState.READY
    assert len(fake_docker.builds) == 3
    assert fixtures.app_image.startswith("some-app-image-")
    assert fixtures.cache_image.startswith("some-cache-image-")
    assert fixtures.run_image.startswith("some-run-image-")

    app, cache, run = fake_docker.builds
    assert app["context"] == conf.APP_IMAGE_CONTEXT
    assert json.loads(app["args"]["metadata"])["runImage"]["topLayer"] == "some-top-layer"
    assert cache["context"] == conf.CACHE_IMAGE_CONTEXT
    assert "buildpacks" in json.loads(cache["args"]["metadata"])
    assert run["context"] == conf.CACHE_IMAGE_CONTEXT
    assert "metadata" not in run["args"]
    assert {i["args"]["fromImage"] for i in fake_docker.builds} == {
        conf.CONTAINER_BASE_IMAGE
    }


def test_daemon_fixtures_unique(fake_docker):
    first = TargetDaemon(os="linux", arch="amd64").create_fixtures()
    second = TargetDaemon(os="linux", arch="amd64").create_fixtures()
    assert first.app_image != second.app_image


def test_daemon_fixtures_removed(fake_docker):
    daemon = TargetDaemon(os="linux", arch="amd64")
    fixtures = daemon.create_fixtures()
    daemon.remove_fixtures()
    assert fake_docker.removed == [
        fixtures.app_image,
        fixtures.cache_image,
        fixtures.run_image,
    ]


def test_daemon_fixtures_suppressed(fake_docker):
    daemon = TargetDaemon(os="linux", arch="amd64")
    daemon.suppress_fixtures()
    daemon.create_fixtures()
    daemon.remove_fixtures()
    assert fake_docker.builds == []
    assert fake_docker.removed == []


def test_daemon_fixtures_partial(fake_docker):
    daemon = TargetDaemon(os="linux", arch="amd64")
    record = fake_docker.build

    def build(*, tag, **kwargs):
        if tag.startswith("some-run-image-"):
            raise subprocess.CalledProcessError(1, ["docker", "build", "-t", tag])
        return record(tag=tag, **kwargs)

    with mock.patch.object(Docker, "build", build):
        with pytest.raises(subprocess.CalledProcessError):
            daemon.create_fixtures()

    assert daemon.state is FixtureState.UNINITIALIZED
    daemon.remove_fixtures()
    assert fake_docker.removed == [
        daemon.fixtures.app_image,
        daemon.fixtures.cache_image,
    ]


def test_start_stop_without_registry(fake_docker, fake_lifecycle, test_context: Path):
    phase = PhaseTest("detector", test_context, WITHOUT_REGISTRY)
    phase.start()

    fixtures = phase.daemon_fixtures
    assert fake_docker.built == [
        fixtures.app_image,
        fixtures.cache_image,
        fixtures.run_image,
        "lifecycle/acceptance/detector",
    ]
    test_image = fake_docker.builds[-1]
    assert test_image["context"] == test_context
    assert test_image["dockerfile"] == test_context / "Dockerfile"
    assert fake_lifecycle == [("linux", "amd64", phase.container_binary_dir)]
    assert not phase.container_docker_config_dir.exists()

    with pytest.raises(RegistryNotEnabledError):
        phase.reg_repo_name("some-repo")

    phase.stop()
    assert fake_docker.removed == [
        fixtures.app_image,
        fixtures.cache_image,
        fixtures.run_image,
        "lifecycle/acceptance/detector",
    ]


def test_start_stop_with_registry(
    fake_docker, fake_lifecycle, test_context: Path, monkeypatch
):
    monkeypatch.setenv("DOCKER_CONFIG", "/some/previous/config")
    stale = test_context / "container" / "docker-config" / "stale.json"
    stale.parent.mkdir(parents=True)
    stale.write_text("{}")

    phase = PhaseTest("analyzer", test_context, WITHOUT_DAEMON_FIXTURES)
    try:
        phase.start()

        registry = phase.registry
        assert registry.registry is not None
        address = registry.registry.address
        assert registry.network == "host"
        assert os.environ["DOCKER_CONFIG"] == str(registry.docker_config_dir)
        assert json.loads(registry.auth_config) == {
            address: registry.registry.credentials.header
        }
        assert phase.reg_repo_name("some-repo") == f"{address}/some-repo"

        # credentials mirrored into the test image context
        assert not stale.exists()
        mirrored = json.loads((phase.container_docker_config_dir / "config.json").read_text())
        assert address in mirrored["auths"]

        fixtures = phase.registry_fixtures
        images = dict(fixtures.images())
        assert images["inaccessible_image"] == f"{address}/inaccessible-image"
        assert all(i.startswith(f"{address}/") for i in images.values())
        assert fixtures.read_write_other_app_image.startswith(
            f"{address}/some-other-read-write-app-image-"
        )

        # every registry fixture but the inaccessible one is built and pushed
        pushed = [tag for tag, _ in fake_docker.pushes]
        assert set(pushed) == set(images.values()) - {fixtures.inaccessible_image}
        assert {config for _, config in fake_docker.pushes} == {
            str(registry.docker_config_dir)
        }
        assert fake_docker.built == pushed + ["lifecycle/acceptance/analyzer"]

        run_image = next(i for i in fake_docker.builds if i["tag"] == fixtures.read_only_run_image)
        assert run_image["args"] == {"fromImage": conf.CONTAINER_BASE_IMAGE_FULL}

        privileges = registry.registry.privileges
        assert privileges is not None
        name = fixtures.read_only_app_image.split("/", 1)[1]
        assert not privileges[name].writable
        assert not privileges["inaccessible-image"].readable
        docker_config_dir = registry.docker_config_dir
    finally:
        phase.stop()

    assert not phase.target_registry.running
    assert os.environ["DOCKER_CONFIG"] == "/some/previous/config"
    assert not docker_config_dir.exists()
    assert fake_docker.removed == pushed + ["lifecycle/acceptance/analyzer"]
    assert fixtures.inaccessible_image not in fake_docker.removed


def test_hooks_run_with_registry(fake_docker, fake_lifecycle, test_context: Path):
    seen = []

    def hook(phase: PhaseTest):
        seen.append(phase.reg_repo_name("some-repo"))
        # hooks run before the phase binary is compiled
        assert fake_lifecycle == []

    phase = PhaseTest("restorer", test_context, WITHOUT_DAEMON_FIXTURES)
    try:
        phase.start(hook)
        assert seen == [phase.reg_repo_name("some-repo")]
    finally:
        phase.stop()


def test_single_use(fake_docker, fake_lifecycle, test_context: Path):
    phase = PhaseTest("detector", test_context, WITHOUT_REGISTRY)
    phase.start()
    with pytest.raises(PhaseTestStateError):
        phase.start()
    phase.stop()


def test_one_registry_per_process(fake_docker, monkeypatch):
    monkeypatch.delenv("DOCKER_CONFIG", raising=False)
    first = TargetRegistry()
    second = TargetRegistry()
    first.start()
    assert first.docker_config_dir is not None
    assert os.environ["DOCKER_CONFIG"] == str(first.docker_config_dir)
    try:
        with pytest.raises(RegistryStateError):
            second.start()
    finally:
        second.stop()
        first.stop()
        first.remove_fixtures()
    assert "DOCKER_CONFIG" not in os.environ

    # slot is released once stopped
    second.start()
    second.stop()
    second.remove_fixtures()


def test_stop_continues_after_failure(fake_docker, fake_lifecycle, test_context: Path):
    phase = PhaseTest("detector", test_context, WITHOUT_REGISTRY)
    phase.start()
    fake_docker.fail_remove = {phase.daemon_fixtures.cache_image}

    with pytest.raises(FixtureCleanupError) as e:
        phase.stop()
    assert e.value.images == [phase.daemon_fixtures.cache_image]
    # test image is still removed
    assert fake_docker.removed[-1] == "lifecycle/acceptance/detector"


def test_stop_twice(fake_docker, fake_lifecycle, test_context: Path):
    with PhaseTest("analyzer", test_context) as phase:
        pass
    removed = list(fake_docker.removed)
    assert len(removed) == 3 + 8 + 1

    # images are gone, removing any of them again would fail
    fake_docker.fail_remove = set(removed)
    phase.stop()
    assert fake_docker.removed == removed


def test_stop_retries_failed_removals(fake_docker, fake_lifecycle, test_context: Path):
    phase = PhaseTest("detector", test_context, WITHOUT_REGISTRY)
    phase.start()
    fixtures = phase.daemon_fixtures
    fake_docker.fail_remove = {fixtures.cache_image}
    with pytest.raises(FixtureCleanupError):
        phase.stop()

    fake_docker.fail_remove = set()
    phase.stop()
    assert fake_docker.removed == [
        fixtures.app_image,
        fixtures.cache_image,
        fixtures.run_image,
        "lifecycle/acceptance/detector",
        fixtures.cache_image,
    ]


def test_failed_start_is_cleaned_up(fake_docker, fake_lifecycle, test_context: Path):
    fake_docker.fail_build = {"lifecycle/acceptance/detector"}
    phase = PhaseTest("detector", test_context)

    with pytest.raises(subprocess.CalledProcessError):
        with phase:
            pytest.fail("body must not run when start fails")

    assert phase.target_registry is not None
    assert not phase.target_registry.running
    expected = [
        image
        for fixtures in (phase.daemon_fixtures, phase.target_registry.fixtures)
        for _, image in fixtures.images()
        if "inaccessible" not in image
    ]
    # test image was never built so it is not removed
    assert fake_docker.removed == expected


def test_run(fake_docker, fake_lifecycle, test_context: Path):
    with PhaseTest("detector", test_context, WITHOUT_REGISTRY) as phase:
        phase.run("-app", "/workspace", env={"CNB_PLATFORM_API": "0.12"})
    assert fake_docker.runs == [
        {
            "image": "lifecycle/acceptance/detector",
            "params": ["/cnb/lifecycle/detector", "-app", "/workspace"],
            "network": None,
            "env": {"CNB_PLATFORM_API": "0.12"},
        }
    ]


def test_run_with_registry(fake_docker, fake_lifecycle, test_context: Path):
    with PhaseTest("analyzer", test_context, WITHOUT_DAEMON_FIXTURES) as phase:
        phase.run("-daemon")
        auth_config = phase.registry.auth_config
    run = fake_docker.runs[0]
    assert run["network"] == "host"
    assert run["env"] == {"CNB_REGISTRY_AUTH": auth_config}
