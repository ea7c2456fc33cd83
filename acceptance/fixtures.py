# Copyright (c) 2024, Crash Override, Inc.
#
# This file is part of the lifecycle acceptance harness
"""
Fixture images phases consume as fixed input.

Fixture sets enumerate their images explicitly so that a single sweep can
remove any of them. Images deliberately made unreachable carry
``inaccessible`` in their name and the sweep leaves them alone since
removing them would fail. This is a naming convention of the fixtures
below, not something inferred about arbitrary images.
"""
import enum
from dataclasses import dataclass
from pathlib import Path
from secrets import token_bytes
from typing import Optional, Protocol

from more_itertools import unique_everseen

from . import conf
from .errors import FixtureCleanupError
from .registry import DockerRegistry
from .utils.docker import Docker
from .utils.log import get_logger


logger = get_logger()

INACCESSIBLE_MARKER = "inaccessible"


class FixtureState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    SUPPRESSED = "suppressed"
    READY = "ready"


class ImageFixtures(Protocol):
    def images(self) -> list[tuple[str, str]]: ...


@dataclass
class DaemonImageFixtures:
    app_image: str = ""
    cache_image: str = ""
    run_image: str = ""

    def images(self) -> list[tuple[str, str]]:
        return [
            ("app_image", self.app_image),
            ("cache_image", self.cache_image),
            ("run_image", self.run_image),
        ]


@dataclass
class RegistryImageFixtures:
    # with permissions
    inaccessible_image: str = ""
    read_only_app_image: str = ""
    read_only_cache_image: str = ""
    read_only_run_image: str = ""
    read_write_app_image: str = ""
    read_write_cache_image: str = ""
    read_write_other_app_image: str = ""
    # without permissions
    some_app_image: str = ""
    some_cache_image: str = ""

    def images(self) -> list[tuple[str, str]]:
        return [
            ("inaccessible_image", self.inaccessible_image),
            ("read_only_app_image", self.read_only_app_image),
            ("read_only_cache_image", self.read_only_cache_image),
            ("read_only_run_image", self.read_only_run_image),
            ("read_write_app_image", self.read_write_app_image),
            ("read_write_cache_image", self.read_write_cache_image),
            ("read_write_other_app_image", self.read_write_other_app_image),
            ("some_app_image", self.some_app_image),
            ("some_cache_image", self.some_cache_image),
        ]


def rand_suffix() -> str:
    return token_bytes(5).hex()


def is_removable(image: str) -> bool:
    """
    >>> is_removable("some-app-image-abc")
    True
    >>> is_removable("")
    False
    >>> is_removable("localhost:5000/inaccessible-image")
    False
    """
    return bool(image) and INACCESSIBLE_MARKER not in image


def remove_fixtures(
    fixtures: ImageFixtures, removed: Optional[list[str]] = None
) -> list[str]:
    """
    Remove all fixture images from the daemon

    Every removable image is attempted even if some removals fail.
    Failures are raised together once the sweep is done.

    Refs already in ``removed`` are skipped and newly removed refs are
    appended to it, so repeating a sweep only retries what failed.
    """
    removed = [] if removed is None else removed
    done = set(removed)
    swept = []
    failed = []
    for image in unique_everseen(
        image
        for _, image in fixtures.images()
        if is_removable(image) and image not in done
    ):
        if Docker.remove_image(image):
            removed.append(image)
            swept.append(image)
        else:
            failed.append(image)
    if failed:
        logger.error("could not remove fixtures", failed=failed, removed=swept)
        raise FixtureCleanupError(failed)
    logger.info("removed fixtures", removed=swept)
    return swept


def build_fixture_image(
    tag: str,
    context: Path,
    args: Optional[dict[str, str]] = None,
) -> str:
    """
    Build fixture image from a template context on top of the base image
    """
    Docker.build(
        tag=tag,
        context=context,
        args={"fromImage": conf.CONTAINER_BASE_IMAGE, **(args or {})},
    )
    logger.info("built fixture image", image=tag, context=context)
    return tag


def build_registry_image(
    registry: DockerRegistry,
    name: str,
    context: Path,
    args: Optional[dict[str, str]] = None,
    docker_config: Optional[Path] = None,
) -> str:
    """
    Build fixture image locally under its registry name and push it

    The local copy stays in the daemon and has to be swept after the
    registry is done.
    """
    image = build_fixture_image(registry.repo_name(name), context, args)
    Docker.push(image, docker_config=docker_config or registry.auth_dir)
    logger.info("pushed fixture image", image=image)
    return image
