# Copyright (c) 2024, Crash Override, Inc.
#
# This file is part of the lifecycle acceptance harness
from .errors import (
    AcceptanceError,
    FixtureCleanupError,
    PhaseTestStateError,
    RegistryNotEnabledError,
    RegistryStateError,
)
from .fixtures import DaemonImageFixtures, FixtureState, RegistryImageFixtures
from .metadata import CacheMetadata, LayersMetadata, minify_metadata
from .phase import (
    WITHOUT_DAEMON_FIXTURES,
    WITHOUT_REGISTRY,
    PhaseTest,
    PhaseTestConfig,
    TargetDaemon,
    TargetRegistry,
)


__all__ = (
    "WITHOUT_DAEMON_FIXTURES",
    "WITHOUT_REGISTRY",
    "AcceptanceError",
    "CacheMetadata",
    "DaemonImageFixtures",
    "FixtureCleanupError",
    "FixtureState",
    "LayersMetadata",
    "PhaseTest",
    "PhaseTestConfig",
    "PhaseTestStateError",
    "RegistryImageFixtures",
    "RegistryNotEnabledError",
    "RegistryStateError",
    "TargetDaemon",
    "TargetRegistry",
    "minify_metadata",
)
