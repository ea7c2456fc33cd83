# Copyright (c) 2024, Crash Override, Inc.
#
# This file is part of the lifecycle acceptance harness
from .app import (
    INACCESSIBLE,
    READ_ONLY,
    READ_WRITE,
    ImagePrivileges,
    RegistryStore,
    create_app,
)
from .server import DockerRegistry, is_ipv6, is_loopback


__all__ = (
    "INACCESSIBLE",
    "READ_ONLY",
    "READ_WRITE",
    "DockerRegistry",
    "ImagePrivileges",
    "RegistryStore",
    "create_app",
    "is_ipv6",
    "is_loopback",
)
