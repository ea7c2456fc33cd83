# Copyright (c) 2024, Crash Override, Inc.
#
# This file is part of the lifecycle acceptance harness
"""
Image metadata schemas as the lifecycle phases read them from image labels.

Fixture metadata lives on disk as pretty-printed JSON. Before it can be
passed as a single ``--build-arg`` it is validated against the schema the
phase expects and re-serialized without whitespace.
"""
import json
from pathlib import Path
from typing import Any, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from .utils.log import get_logger


logger = get_logger()

Schema = TypeVar("Schema", bound=BaseModel)


class Metadata(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class LayerMetadata(Metadata):
    sha: str = ""


class BuildpackLayerMetadata(LayerMetadata):
    data: Any = None
    build: bool = False
    launch: bool = False
    cache: bool = False


class BuildpackStore(Metadata):
    metadata: dict[str, Any] = Field(default_factory=dict)


class BuildpackLayersMetadata(Metadata):
    key: str = ""
    version: str = ""
    layers: dict[str, BuildpackLayerMetadata] = Field(default_factory=dict)
    store: Optional[BuildpackStore] = None


class RunImageForRebase(Metadata):
    top_layer: str = Field("", alias="topLayer")
    reference: str = ""


class RunImageForExport(Metadata):
    image: str = ""
    mirrors: Optional[list[str]] = None


class Stack(Metadata):
    run_image: RunImageForExport = Field(
        default_factory=RunImageForExport, alias="runImage"
    )


class LayersMetadata(Metadata):
    """
    Metadata label of an app image, ``io.buildpacks.lifecycle.metadata``
    """

    app: list[LayerMetadata] = Field(default_factory=list)
    sbom: Optional[LayerMetadata] = None
    buildpacks: list[BuildpackLayersMetadata] = Field(default_factory=list)
    config: LayerMetadata = Field(default_factory=LayerMetadata)
    launcher: LayerMetadata = Field(default_factory=LayerMetadata)
    process_types: LayerMetadata = Field(
        default_factory=LayerMetadata, alias="process-types"
    )
    run_image: RunImageForRebase = Field(
        default_factory=RunImageForRebase, alias="runImage"
    )
    stack: Optional[Stack] = None


class CacheMetadata(Metadata):
    """
    Metadata label of a cache image, ``io.buildpacks.lifecycle.cache.metadata``
    """

    buildpacks: list[BuildpackLayersMetadata] = Field(default_factory=list)


def minify_metadata(path: Path, schema: Type[Schema]) -> str:
    """
    Load metadata JSON fixture and return its canonical compact form

    Fields unknown to the schema are dropped and keys are sorted so that
    two fixtures describing the same metadata produce identical strings.
    """
    data = path.read_text()
    metadata = schema.model_validate_json(data)
    minified = json.dumps(
        metadata.model_dump(mode="json", by_alias=True, exclude_none=True),
        sort_keys=True,
        separators=(",", ":"),
    )
    logger.debug("minified metadata", path=path, schema=schema.__name__)
    return minified
