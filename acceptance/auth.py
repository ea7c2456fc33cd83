# Copyright (c) 2024, Crash Override, Inc.
#
# This file is part of the lifecycle acceptance harness
"""
Registry credentials in the two shapes the harness needs them

* docker cli ``config.json`` so that ``docker push`` authenticates
* ``CNB_REGISTRY_AUTH`` env var value which lifecycle phases read
"""
import base64
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .utils.log import get_logger


logger = get_logger()

DEFAULT_REGISTRY = "index.docker.io"
CONFIG_FILE = "config.json"


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str

    @property
    def token(self) -> str:
        return base64.b64encode(f"{self.username}:{self.password}".encode()).decode()

    @property
    def header(self) -> str:
        return f"Basic {self.token}"

    def encoded(self) -> str:
        """
        Credentials in the X-Registry-Auth form docker engine API expects
        """
        data = json.dumps({"username": self.username, "password": self.password})
        return base64.urlsafe_b64encode(data.encode()).decode()

    @classmethod
    def from_header(cls, header: str) -> "Credentials":
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "basic" or not token:
            raise ValueError("not a basic auth header")
        username, sep, password = base64.b64decode(token).decode().partition(":")
        if not sep:
            raise ValueError("malformed basic auth token")
        return cls(username=username, password=password)


def registry_of(image: str) -> str:
    """
    >>> registry_of("localhost:5000/foo/bar:latest")
    'localhost:5000'
    >>> registry_of("[::1]:5000/foo")
    '[::1]:5000'
    >>> registry_of("busybox")
    'index.docker.io'
    """
    first, sep, _ = image.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        return first
    return DEFAULT_REGISTRY


def write_docker_config(
    config_dir: Path, registry: str, credentials: Credentials
) -> Path:
    path = config_dir / CONFIG_FILE
    config = load_docker_config(config_dir)
    config.setdefault("auths", {})[registry] = {"auth": credentials.token}
    path.write_text(json.dumps(config, indent=2))
    logger.debug("wrote docker config", path=path, registry=registry)
    return path


def load_docker_config(config_dir: Path) -> dict[str, Any]:
    path = config_dir / CONFIG_FILE
    if not path.is_file():
        return {}
    return json.loads(path.read_text())


def resolve(config_dir: Path, image: str) -> Credentials | None:
    auth = (
        load_docker_config(config_dir)
        .get("auths", {})
        .get(registry_of(image), {})
        .get("auth")
    )
    if not auth:
        return None
    return Credentials.from_header(f"Basic {auth}")


def build_env_var(config_dir: Path, *images: str) -> str:
    """
    Value for CNB_REGISTRY_AUTH granting access to registries of given images

    Images whose registry has no credentials in the docker config
    are left out, lifecycle then accesses them anonymously.
    """
    auths = {}
    for image in images:
        credentials = resolve(config_dir, image)
        if credentials is not None:
            auths[registry_of(image)] = credentials.header
    return json.dumps(auths)
