# Copyright (c) 2024, Crash Override, Inc.
#
# This file is part of the lifecycle acceptance harness
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Optional

from .. import conf
from .files import recursive_copy
from .log import get_logger
from .os import run


logger = get_logger()


def make_and_copy_lifecycle(
    goos: str,
    goarch: str,
    dest: Path,
    *,
    repo: Optional[Path] = None,
    env: Optional[dict[str, str]] = None,
) -> Path:
    """
    Cross-compile lifecycle binaries for os/arch and copy them into dest

    Builds are done in a throw-away build dir so that concurrent
    platform builds do not overwrite each other
    """
    repo = repo or conf.LIFECYCLE_REPO
    with TemporaryDirectory(prefix="lifecycle") as out:
        run(
            ["make", f"build-{goos}-{goarch}"],
            cwd=repo,
            env={
                "PWD": str(repo),
                "BUILD_DIR": out,
                "LIFECYCLE_VERSION": conf.LIFECYCLE_VERSION,
                "SCM_COMMIT": conf.SCM_COMMIT,
                **(env or {}),
            },
        )
        built = Path(out) / f"{goos}-{goarch}" / "lifecycle"
        logger.info("copying lifecycle", os=goos, arch=goarch, dest=dest)
        dest.mkdir(parents=True, exist_ok=True)
        recursive_copy(built, dest)
    return dest
