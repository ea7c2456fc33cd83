# Copyright (c) 2024, Crash Override, Inc.
#
# This file is part of the lifecycle acceptance harness
from typing import Iterable


class AcceptanceError(Exception):
    pass


class FixtureCleanupError(AcceptanceError):
    """
    One or more fixture images could not be removed.

    Raised only after every removal in a sweep was attempted.
    """

    def __init__(self, images: Iterable[str]):
        self.images = list(images)
        super().__init__(f"failed to remove images: {', '.join(self.images)}")


class RegistryNotEnabledError(AcceptanceError):
    pass


class RegistryStateError(AcceptanceError):
    pass


class PhaseTestStateError(AcceptanceError):
    pass
