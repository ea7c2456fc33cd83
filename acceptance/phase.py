# Copyright (c) 2024, Crash Override, Inc.
#
# This file is part of the lifecycle acceptance harness
"""
Phase acceptance test orchestration.

A ``PhaseTest`` provisions everything a single lifecycle phase needs to run
in a container: fixture images in the local daemon, optionally an ephemeral
registry with fixture images in various permission states, and a test image
with freshly compiled lifecycle binaries. ``stop()`` releases all of it.

Typical usage::

    with PhaseTest("detector", DETECT_CONTEXT, WITHOUT_REGISTRY) as phase:
        phase.run("-app", "/workspace")

The registry target exports ``DOCKER_CONFIG`` process-wide while it is
running, hence only one registry target can be active per process.
"""
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from tempfile import mkdtemp
from typing import Callable, Optional

from . import conf
from .auth import build_env_var
from .errors import (
    FixtureCleanupError,
    PhaseTestStateError,
    RegistryNotEnabledError,
    RegistryStateError,
)
from .fixtures import (
    DaemonImageFixtures,
    FixtureState,
    RegistryImageFixtures,
    build_fixture_image,
    build_registry_image,
    rand_suffix,
    remove_fixtures,
)
from .metadata import CacheMetadata, LayersMetadata, minify_metadata
from .registry import DockerRegistry, RegistryStore, is_loopback
from .utils.docker import Docker
from .utils.files import recursive_copy, reset_dir
from .utils.lifecycle import make_and_copy_lifecycle
from .utils.log import get_logger
from .utils.os import Program


logger = get_logger()

ARCH_ALIASES = {
    "x86_64": "amd64",
    "aarch64": "arm64",
}


def normalize_arch(arch: str) -> str:
    """
    Architecture as go build tooling names it

    >>> normalize_arch("x86_64")
    'amd64'
    >>> normalize_arch("aarch64")
    'arm64'
    >>> normalize_arch("s390x")
    's390x'
    """
    return ARCH_ALIASES.get(arch, arch)


def network_mode(host: str) -> str:
    """
    Docker network containers need to reach a registry on given host

    Containers on the default bridge cannot reach a registry which only
    listens on the host loopback.

    >>> network_mode("localhost")
    'host'
    >>> network_mode("192.168.1.10")
    'default'
    """
    return "host" if is_loopback(host) else "default"


def fixture_metadata() -> tuple[str, str]:
    return (
        minify_metadata(conf.APP_IMAGE_METADATA, LayersMetadata),
        minify_metadata(conf.CACHE_IMAGE_METADATA, CacheMetadata),
    )


class ScopedEnvVar:
    """
    Process env var which can be restored to the value it had before set()
    """

    _unset = object()

    def __init__(self, name: str):
        self.name = name
        self._previous: object | str | None = self._unset

    def set(self, value: str):
        if self._previous is self._unset:
            self._previous = os.environ.get(self.name)
        os.environ[self.name] = value

    def restore(self):
        if self._previous is self._unset:
            return
        if self._previous is None:
            os.environ.pop(self.name, None)
        else:
            os.environ[self.name] = str(self._previous)
        self._previous = self._unset


@dataclass
class TargetDaemon:
    os: str
    arch: str
    state: FixtureState = FixtureState.UNINITIALIZED
    fixtures: DaemonImageFixtures = field(default_factory=DaemonImageFixtures)
    # refs swept so far, a repeated sweep skips them
    removed: list[str] = field(default_factory=list, init=False, repr=False)

    @classmethod
    def detect(cls) -> "TargetDaemon":
        info = Docker.info()
        daemon = cls(os=info["OSType"], arch=normalize_arch(info["Architecture"]))
        logger.info("detected docker daemon", os=daemon.os, arch=daemon.arch)
        return daemon

    def suppress_fixtures(self):
        self.state = FixtureState.SUPPRESSED
        self.fixtures = DaemonImageFixtures()

    def create_fixtures(self) -> DaemonImageFixtures:
        if self.state is not FixtureState.UNINITIALIZED:
            return self.fixtures

        app_meta, cache_meta = fixture_metadata()

        self.fixtures.app_image = build_fixture_image(
            f"some-app-image-{rand_suffix()}",
            conf.APP_IMAGE_CONTEXT,
            {"metadata": app_meta},
        )
        self.fixtures.cache_image = build_fixture_image(
            f"some-cache-image-{rand_suffix()}",
            conf.CACHE_IMAGE_CONTEXT,
            {"metadata": cache_meta},
        )
        self.fixtures.run_image = build_fixture_image(
            f"some-run-image-{rand_suffix()}",
            conf.CACHE_IMAGE_CONTEXT,
        )

        self.state = FixtureState.READY
        return self.fixtures

    def remove_fixtures(self):
        if self.state is FixtureState.SUPPRESSED:
            return
        # partially created fixtures are swept as well
        remove_fixtures(self.fixtures, self.removed)


_active_registry: Optional["TargetRegistry"] = None


class TargetRegistry:
    def __init__(self, store: Optional[RegistryStore] = None):
        self.store = store
        self.registry: Optional[DockerRegistry] = None
        self.docker_config_dir: Optional[Path] = None
        self.network = "default"
        self.auth_config = ""
        self.fixtures = RegistryImageFixtures()
        self.removed: list[str] = []
        self._docker_config = ScopedEnvVar(conf.DOCKER_CONFIG)

    @property
    def running(self) -> bool:
        return self.registry is not None and self.registry.running

    def start(self):
        global _active_registry
        if _active_registry is not None:
            raise RegistryStateError(
                f"{conf.DOCKER_CONFIG} is process-wide, "
                "only one registry target can be active at a time"
            )
        _active_registry = self

        self.docker_config_dir = Path(mkdtemp(prefix="test.docker.config.dir"))
        self.registry = DockerRegistry(
            auth_dir=self.docker_config_dir,
            store=self.store,
            image_privileges=True,
        )
        self.registry.start()

        self.network = network_mode(self.registry.host)

        self._docker_config.set(str(self.docker_config_dir))
        # repo name does not matter, only its registry does
        self.auth_config = build_env_var(
            self.docker_config_dir, self.registry.repo_name("some-repo")
        )
        logger.info(
            "registry target started",
            registry=self.registry.address,
            network=self.network,
            docker_config=self.docker_config_dir,
        )

        self.create_fixtures()

    def create_fixtures(self) -> RegistryImageFixtures:
        assert self.registry is not None
        app_meta, cache_meta = fixture_metadata()
        fixtures = self.fixtures
        registry = self.registry

        def build(name: str, context: Path, args: dict[str, str]) -> str:
            return build_registry_image(
                registry, name, context, args, self.docker_config_dir
            )

        # with permissions
        fixtures.inaccessible_image = registry.set_inaccessible("inaccessible-image")

        name = f"some-read-only-app-image-{rand_suffix()}"
        fixtures.read_only_app_image = build(
            name, conf.APP_IMAGE_CONTEXT, {"metadata": app_meta}
        )
        registry.set_read_only(name)

        name = f"some-read-only-cache-image-{rand_suffix()}"
        fixtures.read_only_cache_image = build(
            name, conf.CACHE_IMAGE_CONTEXT, {"metadata": cache_meta}
        )
        registry.set_read_only(name)

        name = f"some-read-only-run-image-{rand_suffix()}"
        fixtures.read_only_run_image = build(
            name,
            conf.CACHE_IMAGE_CONTEXT,
            {"fromImage": conf.CONTAINER_BASE_IMAGE_FULL},
        )
        registry.set_read_only(name)

        name = f"some-read-write-app-image-{rand_suffix()}"
        fixtures.read_write_app_image = build(
            name, conf.APP_IMAGE_CONTEXT, {"metadata": app_meta}
        )
        registry.set_read_write(name)

        name = f"some-read-write-cache-image-{rand_suffix()}"
        fixtures.read_write_cache_image = build(
            name, conf.CACHE_IMAGE_CONTEXT, {"metadata": cache_meta}
        )
        registry.set_read_write(name)

        name = f"some-other-read-write-app-image-{rand_suffix()}"
        fixtures.read_write_other_app_image = build(
            name, conf.APP_IMAGE_CONTEXT, {"metadata": app_meta}
        )
        registry.set_read_write(name)

        # without permissions
        fixtures.some_app_image = build(
            f"some-app-image-{rand_suffix()}",
            conf.APP_IMAGE_CONTEXT,
            {"metadata": app_meta},
        )
        fixtures.some_cache_image = build(
            f"some-cache-image-{rand_suffix()}",
            conf.CACHE_IMAGE_CONTEXT,
            {"metadata": cache_meta},
        )

        return fixtures

    def stop(self):
        global _active_registry
        if self.registry is not None:
            self.registry.stop()
        self._docker_config.restore()
        if self.docker_config_dir is not None:
            shutil.rmtree(self.docker_config_dir, ignore_errors=True)
            self.docker_config_dir = None
        if _active_registry is self:
            _active_registry = None

    def remove_fixtures(self):
        # images built locally before being pushed to the registry
        remove_fixtures(self.fixtures, self.removed)


@dataclass(frozen=True)
class PhaseTestConfig:
    suppress_daemon_fixtures: bool = False
    suppress_registry: bool = False


WITHOUT_DAEMON_FIXTURES = PhaseTestConfig(suppress_daemon_fixtures=True)
WITHOUT_REGISTRY = PhaseTestConfig(suppress_registry=True)

Hook = Callable[["PhaseTest"], None]


class PhaseTest:
    def __init__(
        self,
        phase_name: str,
        test_image_docker_context: Path,
        config: Optional[PhaseTestConfig] = None,
        *,
        store: Optional[RegistryStore] = None,
    ):
        config = config or PhaseTestConfig()
        context = Path(test_image_docker_context)

        self.phase_name = phase_name
        self.test_image_docker_context = context
        self.container_binary_dir = context.joinpath(*conf.CONTAINER_BINARY_SUBPATH)
        self.container_binary_path = f"{conf.CONTAINER_BINARY_ROOT}/{phase_name}"
        self.container_docker_config_dir = context.joinpath(
            *conf.CONTAINER_DOCKER_CONFIG_SUBPATH
        )
        self.test_image_ref = f"{conf.TEST_IMAGE_PREFIX}/{phase_name}"

        self.target_daemon = TargetDaemon.detect()
        if config.suppress_daemon_fixtures:
            self.target_daemon.suppress_fixtures()

        # registry is left out for phases which never touch one
        self.target_registry: Optional[TargetRegistry] = (
            None if config.suppress_registry else TargetRegistry(store=store)
        )

        self._started = False
        self._test_image_built = False

    def __repr__(self):
        return f"{self.__class__.__name__}({self.phase_name!r})"

    def __enter__(self) -> "PhaseTest":
        try:
            self.start()
        except Exception:
            try:
                self.stop()
            except Exception:
                logger.exception("teardown after failed start failed", phase=self.phase_name)
            raise
        return self

    def __exit__(self, *args):
        self.stop()

    @property
    def daemon_fixtures(self) -> DaemonImageFixtures:
        return self.target_daemon.fixtures

    @property
    def registry(self) -> TargetRegistry:
        if self.target_registry is None or not self.target_registry.running:
            raise RegistryNotEnabledError(f"{self!r} has no running registry")
        return self.target_registry

    @property
    def registry_fixtures(self) -> RegistryImageFixtures:
        return self.registry.fixtures

    def reg_repo_name(self, repo_name: str) -> str:
        registry = self.registry.registry
        assert registry is not None
        return registry.repo_name(repo_name)

    def start(self, *hooks: Hook):
        if self._started:
            raise PhaseTestStateError(f"{self!r} was already started")
        self._started = True
        log = logger.bind(phase=self.phase_name)

        self.target_daemon.create_fixtures()

        if self.target_registry is not None:
            self.target_registry.start()
            assert self.target_registry.docker_config_dir is not None
            reset_dir(self.container_docker_config_dir)
            recursive_copy(
                self.target_registry.docker_config_dir,
                self.container_docker_config_dir,
            )

        for hook in hooks:
            hook(self)

        make_and_copy_lifecycle(
            self.target_daemon.os,
            self.target_daemon.arch,
            self.container_binary_dir,
        )
        Docker.build(
            tag=self.test_image_ref,
            context=self.test_image_docker_context,
            dockerfile=self.test_image_docker_context / conf.DOCKERFILE_NAME,
        )
        self._test_image_built = True
        log.info("phase test started", image=self.test_image_ref)

    def stop(self):
        """
        Release everything start() created

        Every teardown step runs even if previous ones fail and the
        first failure is raised at the end.
        """
        steps = [self.target_daemon.remove_fixtures]
        if self.target_registry is not None:
            steps += [self.target_registry.stop, self.target_registry.remove_fixtures]
        # nothing depends on the test image so it goes last
        steps.append(self._remove_test_image)

        errors = []
        for step in steps:
            try:
                step()
            except Exception as e:
                logger.error("teardown step failed", phase=self.phase_name, error=e)
                errors.append(e)
        if errors:
            raise errors[0]
        logger.info("phase test stopped", phase=self.phase_name)

    def _remove_test_image(self):
        if not self._test_image_built:
            return
        if not Docker.remove_image(self.test_image_ref):
            raise FixtureCleanupError([self.test_image_ref])
        self._test_image_built = False

    def run(
        self,
        *args: str,
        env: Optional[dict[str, str]] = None,
        network: Optional[str] = None,
        **kwargs,
    ) -> Program:
        """
        Run phase binary in the test image

        With a running registry the container gets registry credentials
        and a network from which the registry is reachable.
        """
        env = dict(env or {})
        if self.target_registry is not None and self.target_registry.running:
            env.setdefault(conf.CNB_REGISTRY_AUTH, self.target_registry.auth_config)
            network = network or self.target_registry.network
        return Docker.run(
            self.test_image_ref,
            [self.container_binary_path, *args],
            network=network,
            env=env,
            **kwargs,
        )
