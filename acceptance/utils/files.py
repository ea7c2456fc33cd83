# Copyright (c) 2024, Crash Override, Inc.
#
# This file is part of the lifecycle acceptance harness
import shutil
from pathlib import Path

from .log import get_logger


logger = get_logger()


def recursive_copy(src: Path, dst: Path) -> Path:
    """
    Copy contents of src directory into dst, keeping file modes
    """
    logger.debug("copying directory", src=src, dst=dst)
    shutil.copytree(src, dst, dirs_exist_ok=True)
    return dst


def reset_dir(path: Path) -> Path:
    """
    Remove any stale copy of the directory and create it empty
    """
    shutil.rmtree(path, ignore_errors=True)
    path.mkdir(parents=True, mode=0o755)
    return path
