# Copyright (c) 2024, Crash Override, Inc.
#
# This file is part of the lifecycle acceptance harness
import ipaddress
import socket
import threading
import time
from pathlib import Path
from secrets import token_hex
from typing import Optional

import uvicorn

from .. import conf
from ..auth import Credentials, write_docker_config
from ..errors import RegistryStateError
from ..utils.log import get_logger
from .app import (
    INACCESSIBLE,
    READ_ONLY,
    READ_WRITE,
    ImagePrivileges,
    RegistryStore,
    create_app,
)


logger = get_logger()


def is_loopback(host: str) -> bool:
    """
    >>> is_loopback("localhost")
    True
    >>> is_loopback("127.0.0.1")
    True
    >>> is_loopback("10.0.0.5")
    False
    >>> is_loopback("docker")
    False
    """
    if host == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def is_ipv6(host: str) -> bool:
    """
    >>> is_ipv6("::1")
    True
    >>> is_ipv6("127.0.0.1")
    False
    >>> is_ipv6("localhost")
    False
    """
    try:
        return ipaddress.ip_address(host).version == 6
    except ValueError:
        return False


class DockerRegistry:
    """
    Ephemeral registry served from a background thread of this process

    Parameters
    ----------
    host : str, optional
        Hostname under which the docker daemon reaches the registry.
        Registry only listens on loopback when the host is loopback.
    auth_dir : Path, optional
        Directory where docker ``config.json`` with registry credentials
        is written once the registry listens. Without it no auth is enforced.
    store : RegistryStore, optional
        Storage to share with other registries
    image_privileges : bool
        Whether per-image privileges are enforced
    """

    def __init__(
        self,
        *,
        host: Optional[str] = None,
        auth_dir: Optional[Path] = None,
        store: Optional[RegistryStore] = None,
        image_privileges: bool = False,
    ):
        self.host = host or conf.REGISTRY_HOST
        self.port = ""
        self.auth_dir = auth_dir
        self.store = store or RegistryStore()
        self.credentials = (
            Credentials(username=token_hex(8), password=token_hex(16))
            if auth_dir
            else None
        )
        self.privileges: Optional[dict[str, ImagePrivileges]] = (
            {} if image_privileges else None
        )
        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None
        self._socket: Optional[socket.socket] = None

    @property
    def bind_host(self) -> str:
        if is_ipv6(self.host):
            return "::1" if is_loopback(self.host) else "::"
        return "127.0.0.1" if is_loopback(self.host) else "0.0.0.0"

    @property
    def address(self) -> str:
        if not self.port:
            raise RegistryStateError("registry is not started")
        # ipv6 literals are bracketed in image refs
        host = f"[{self.host}]" if is_ipv6(self.host) else self.host
        return f"{host}:{self.port}"

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "DockerRegistry":
        if self._server is not None:
            raise RegistryStateError("registry is already started")

        sock = socket.socket(
            socket.AF_INET6 if is_ipv6(self.bind_host) else socket.AF_INET,
            socket.SOCK_STREAM,
        )
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((self.bind_host, 0))
        self._socket = sock
        self.port = str(sock.getsockname()[1])

        config = uvicorn.Config(
            create_app(self.store, self.credentials, self.privileges),
            lifespan="off",
            log_config=None,
            access_log=False,
        )
        self._server = uvicorn.Server(config)
        self._thread = threading.Thread(
            target=self._server.run,
            kwargs={"sockets": [sock]},
            name=f"registry-{self.port}",
            daemon=True,
        )
        self._thread.start()
        while not self._server.started:
            if not self._thread.is_alive():
                raise RegistryStateError(f"registry on {self.address} failed to start")
            time.sleep(0.01)

        if self.auth_dir and self.credentials:
            write_docker_config(self.auth_dir, self.address, self.credentials)
        logger.info("registry started", registry=self.address, bind=self.bind_host)
        return self

    def stop(self):
        if self._server is None:
            return
        self._server.should_exit = True
        if self._thread is not None:
            self._thread.join()
        if self._socket is not None:
            self._socket.close()
        logger.info("registry stopped", registry=self.address)
        self._server = self._thread = self._socket = None

    def repo_name(self, name: str) -> str:
        return f"{self.address}/{name}"

    def _set_privileges(self, name: str, privileges: ImagePrivileges) -> str:
        if self.privileges is None:
            raise RegistryStateError("registry does not enforce image privileges")
        self.privileges[name] = privileges
        logger.debug("image privileges", image=name, privileges=privileges)
        return self.repo_name(name)

    def set_read_only(self, name: str) -> str:
        return self._set_privileges(name, READ_ONLY)

    def set_read_write(self, name: str) -> str:
        return self._set_privileges(name, READ_WRITE)

    def set_inaccessible(self, name: str) -> str:
        return self._set_privileges(name, INACCESSIBLE)

    def encoded_auth(self) -> str:
        if self.credentials is None:
            return ""
        return self.credentials.encoded()
