# Copyright (c) 2024, Crash Override, Inc.
#
# This file is part of the lifecycle acceptance harness
import os
from pathlib import Path
from urllib.parse import urlparse


ACCEPTANCE = Path(__file__).parent
TESTDATA = ACCEPTANCE / "testdata"

APP_IMAGE_CONTEXT = TESTDATA / "app-image"
CACHE_IMAGE_CONTEXT = TESTDATA / "cache-image"
APP_IMAGE_METADATA = TESTDATA / "app_image_metadata.json"
CACHE_IMAGE_METADATA = TESTDATA / "cache_image_metadata.json"

# base images the fixture images are built from
CONTAINER_BASE_IMAGE = os.environ.get("CONTAINER_BASE_IMAGE") or "busybox"
CONTAINER_BASE_IMAGE_FULL = (
    os.environ.get("CONTAINER_BASE_IMAGE_FULL") or "ubuntu:jammy"
)
DOCKERFILE_NAME = "Dockerfile"

# subpaths of the test image context which the test Dockerfile COPYs from
CONTAINER_DIR = "container"
CONTAINER_BINARY_SUBPATH = (CONTAINER_DIR, "cnb", "lifecycle")
CONTAINER_DOCKER_CONFIG_SUBPATH = (CONTAINER_DIR, "docker-config")
CONTAINER_BINARY_ROOT = "/cnb/lifecycle"
TEST_IMAGE_PREFIX = "lifecycle/acceptance"

# lifecycle checkout whose Makefile builds the phase binaries
LIFECYCLE_REPO = Path(
    os.environ.get("LIFECYCLE_REPO") or ACCEPTANCE.parent.parent
).resolve()
LIFECYCLE_VERSION = os.environ.get("LIFECYCLE_VERSION") or "some-version"
SCM_COMMIT = os.environ.get("SCM_COMMIT") or "asdf123"

CNB_REGISTRY_AUTH = "CNB_REGISTRY_AUTH"
DOCKER_CONFIG = "DOCKER_CONFIG"


def docker_hostname() -> str:
    """
    Hostname under which the docker daemon can reach services on this machine.

    pushing to a registry is orchestrated over the docker socket
    which means the push comes from the daemon host
    """
    docker_host = os.environ.get("DOCKER_HOST") or ""
    if docker_host.startswith("tcp://"):
        return urlparse(docker_host).hostname or "localhost"
    return "localhost"


REGISTRY_HOST = os.environ.get("REGISTRY_HOST") or docker_hostname()
