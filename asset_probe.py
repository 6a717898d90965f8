#!/usr/bin/env python3
#
# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Read dimensions, color tags and Apple gain metadata with exiftool, and copy
metadata from a source asset onto its converted output.

All reads use exiftool's JSON mode through pyexiftool, never scraped text.
"""

from __future__ import annotations

import logging
import math
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, Self

from exiftool.exceptions import (
    ExifToolException,
    ExifToolExecuteError,
    ExifToolJSONInvalidError,
    ExifToolOutputEmptyError,
)

from hdr_errors import (
    DimensionsUnavailable,
    MetadataCopyFailed,
    ToolExecutionFailed,
    UnexpectedOutputShape,
)
from tool_gateway import Tool, ToolGateway

__all__: Final[list[str]] = [
    "AssetDescriptor",
    "COLOR_TAGS",
    "DEFAULT_EXCLUDED_TAGS",
    "probe",
    "read_gain_values",
    "copy_metadata",
    "sync_timestamp",
]

log = logging.getLogger(__name__)

DIMENSION_TAGS: Final[tuple[str, str]] = ("ImageWidth", "ImageHeight")
TRANSFER_TAG: Final[str] = "TransferCharacteristics"

# Order matters: color_inference joins them in this sequence
COLOR_TAGS: Final[tuple[str, ...]] = (
    "ColorSpace",
    "ColorPrimaries",
    "PrimaryChromaticities",
    "ProfileDescription",
    "ICCProfileName",
)

# Apple maker-note tags carried by iPhone HDR captures
GAIN_TAGS: Final[tuple[str, str]] = ("HDRHeadroom", "HDRGain")

PLACEHOLDER_VALUES: Final[frozenset[str]] = frozenset(
    {"", "unknown", "n/a", "uncalibrated", "none", "undefined"}
)

# Not propagated to outputs:
# - ICC profile: the encoders already tagged the new pixels
# - Orientation: decoders bake rotation into the pixels
# - hdrgm XMP: owned by the UltraHDR encoder
DEFAULT_EXCLUDED_TAGS: Final[tuple[str, ...]] = (
    "ICC_Profile:all",
    "Orientation",
    "XMP-hdrgm:all",
)


@dataclass(frozen=True, slots=True, kw_only=True)
class AssetDescriptor:
    """Pixel dimensions and whatever color/transfer tags the asset carries."""

    path: Path
    width: int
    height: int
    transfer_tag: str | None = None
    color_tags: tuple[str | None, ...] = (None,) * len(COLOR_TAGS)

    @property
    def present_color_tags(self) -> tuple[str, ...]:
        return tuple(tag for tag in self.color_tags if tag is not None)

    @classmethod
    def from_exiftool(cls, path: Path, data: Mapping[str, Any]) -> Self:
        """Factory method to parse one exiftool JSON record."""
        width = _as_dimension(data.get(DIMENSION_TAGS[0]))
        height = _as_dimension(data.get(DIMENSION_TAGS[1]))
        if width is None or height is None:
            raise DimensionsUnavailable(
                path,
                f"ImageWidth={data.get('ImageWidth')!r}, "
                f"ImageHeight={data.get('ImageHeight')!r}",
            )

        return cls(
            path=path,
            width=width,
            height=height,
            transfer_tag=_normalize_tag(data.get(TRANSFER_TAG)),
            color_tags=tuple(_normalize_tag(data.get(tag)) for tag in COLOR_TAGS),
        )


def _normalize_tag(value: Any) -> str | None:
    """Collapse exiftool placeholder values to None."""
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        value = " ".join(str(v) for v in value)
    text = str(value).strip()
    if text.lower() in PLACEHOLDER_VALUES:
        return None
    return text


def _as_dimension(value: Any) -> int | None:
    """Positive integer pixel count, or None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        number = value
    elif isinstance(value, float) and value.is_integer():
        number = int(value)
    elif isinstance(value, str) and value.strip().isdigit():
        number = int(value.strip())
    else:
        return None
    return number if number > 0 else None


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _read_single_record(
    gateway: ToolGateway,
    path: Path,
    tags: Sequence[str],
    *,
    numeric: bool = False,
) -> dict[str, Any]:
    """Run one exiftool JSON query and return its only record."""
    try:
        with gateway.exiftool(numeric=numeric) as et:
            records = et.get_tags([str(path)], list(tags))
    except ExifToolExecuteError as e:
        raise ToolExecutionFailed(
            Tool.EXIFTOOL.value,
            e.returncode,
            stdout=e.stdout or "",
            stderr=e.stderr or "",
            argv=e.cmd or (),
        ) from e
    except (ExifToolOutputEmptyError, ExifToolJSONInvalidError) as e:
        raise UnexpectedOutputShape(
            f"exiftool returned unparseable output for {path.name}: {e}"
        ) from e
    except (ExifToolException, RuntimeError) as e:
        # Start-up failures: version too old, process died, not running
        raise ToolExecutionFailed(Tool.EXIFTOOL.value, None, stderr=str(e)) from e

    if not isinstance(records, list) or len(records) != 1:
        count = len(records) if isinstance(records, list) else type(records).__name__
        raise UnexpectedOutputShape(
            f"Expected one exiftool record for {path.name}, got {count}"
        )
    record = records[0]
    if not isinstance(record, dict):
        raise UnexpectedOutputShape(
            f"exiftool record for {path.name} is {type(record).__name__}, not an object"
        )
    return record


def probe(gateway: ToolGateway, path: Path) -> AssetDescriptor:
    """Query dimensions and color/transfer tags of *path*."""
    record = _read_single_record(
        gateway,
        path,
        [*DIMENSION_TAGS, TRANSFER_TAG, *COLOR_TAGS],
    )
    descriptor = AssetDescriptor.from_exiftool(path, record)
    log.debug(
        "Probed %s: %dx%d transfer=%s color=%s",
        path.name,
        descriptor.width,
        descriptor.height,
        descriptor.transfer_tag,
        descriptor.present_color_tags,
    )
    return descriptor


def read_gain_values(
    gateway: ToolGateway, path: Path
) -> tuple[float | None, float | None]:
    """Return Apple's (HDRHeadroom, HDRGain) pair; either may be None."""
    record = _read_single_record(gateway, path, GAIN_TAGS, numeric=True)
    headroom = _as_float(record.get(GAIN_TAGS[0]))
    gain = _as_float(record.get(GAIN_TAGS[1]))
    log.debug("%s: HDRHeadroom=%s HDRGain=%s", path.name, headroom, gain)
    return headroom, gain


def copy_metadata(
    gateway: ToolGateway,
    source: Path,
    target: Path,
    *,
    exclude: Sequence[str] = DEFAULT_EXCLUDED_TAGS,
) -> None:
    """Copy all metadata from *source* onto *target* in place."""
    params = [
        "-tagsFromFile",
        str(source),
        "-all:all",
        *(f"--{tag}" for tag in exclude),
        "-overwrite_original",
        str(target),
    ]
    try:
        with gateway.exiftool() as et:
            et.execute(*params)
    except ExifToolExecuteError as e:
        detail = (e.stderr or e.stdout or "").strip()
        raise MetadataCopyFailed(source, target, detail) from e
    except Exception as e:
        raise MetadataCopyFailed(source, target, str(e)) from e


def sync_timestamp(source: Path, target: Path) -> bool:
    """
    Copy file modification timestamp from source to target.

    Uses os.utime() to set atime/mtime matching the source file.
    """
    try:
        source_stat = source.stat()
        os.utime(target, (source_stat.st_atime, source_stat.st_mtime))
        return True
    except OSError as e:
        # Non-fatal, just log and continue
        log.warning("Could not sync timestamp onto %s: %s", target.name, e)
        return False
