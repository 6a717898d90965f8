#!/usr/bin/env python3
#
# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Exception hierarchy shared by the HDR conversion modules.

Every failure a conversion can hit derives from HdrConvertError. The
orchestrator wraps whatever a stage raised in StageFailed so callers always
learn which stage failed and why.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from hdr_pipeline import Stage

__all__: Final[list[str]] = [
    "HdrConvertError",
    "ToolNotFound",
    "ToolExecutionFailed",
    "ToolTimedOut",
    "DimensionsUnavailable",
    "GainMetadataMissing",
    "UnexpectedOutputShape",
    "StageOutputMissing",
    "MetadataCopyFailed",
    "StageFailed",
]


class HdrConvertError(Exception):
    """Base exception for HDR conversion errors."""


class ToolNotFound(HdrConvertError):
    """An external program could not be located before invocation."""

    __slots__ = ("tool", "location")

    def __init__(self, tool: str, *, location: str | None = None) -> None:
        where = f" (looked for {location})" if location and location != tool else ""
        super().__init__(f"{tool} not found{where}")
        self.tool = tool
        self.location = location


class ToolExecutionFailed(HdrConvertError):
    """An external program exited with a non-zero status."""

    __slots__ = ("program", "exit_code", "stdout", "stderr", "argv")

    def __init__(
        self,
        program: str,
        exit_code: int | None,
        *,
        stdout: str = "",
        stderr: str = "",
        argv: Sequence[str] = (),
    ) -> None:
        detail = (stderr or stdout or "").strip()
        message = f"{program} failed with exit code {exit_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.program = program
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.argv = tuple(argv)


class ToolTimedOut(ToolExecutionFailed):
    """An external program exceeded the per-stage deadline and was killed."""

    __slots__ = ("timeout",)

    def __init__(
        self,
        program: str,
        timeout: float,
        *,
        stdout: str = "",
        stderr: str = "",
        argv: Sequence[str] = (),
    ) -> None:
        super().__init__(program, None, stdout=stdout, stderr=stderr, argv=argv)
        self.args = (f"{program} timed out after {timeout:g}s",)
        self.timeout = timeout


class DimensionsUnavailable(HdrConvertError):
    """Width or height is missing or not a positive integer."""

    __slots__ = ("path",)

    def __init__(self, path: Path, detail: str = "") -> None:
        message = f"Pixel dimensions unavailable for {path.name}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.path = path


class GainMetadataMissing(HdrConvertError):
    """HDRHeadroom/HDRGain are absent, so the source is not an Apple HDR asset."""

    __slots__ = ("path", "missing")

    def __init__(
        self,
        missing: Sequence[str],
        *,
        path: Path | None = None,
    ) -> None:
        name = path.name if path is not None else "source"
        super().__init__(
            f"{name} has no Apple HDR gain metadata (missing {', '.join(missing)})"
        )
        self.path = path
        self.missing = tuple(missing)


class UnexpectedOutputShape(HdrConvertError):
    """Collaborator output did not match the expected shape.

    Raised for malformed structured metadata. For raw pixel files whose size
    disagrees with the declared geometry it is only recorded as a warning on
    the run, since downstream tools may still produce a usable image.
    """

    __slots__ = ("detail",)

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class StageOutputMissing(HdrConvertError):
    """A stage exited successfully but the file it should produce is absent."""

    __slots__ = ("path",)

    def __init__(self, path: Path, producer: str) -> None:
        super().__init__(f"{producer} produced no output at {path.name}")
        self.path = path


class MetadataCopyFailed(HdrConvertError):
    """Tag propagation from the source asset to the converted output failed."""

    __slots__ = ("source", "target")

    def __init__(self, source: Path, target: Path, detail: str = "") -> None:
        message = f"Failed to copy metadata from {source.name} to {target.name}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.source = source
        self.target = target


class StageFailed(HdrConvertError):
    """A pipeline stage failed; remaining stages were not run."""

    __slots__ = ("stage", "cause")

    def __init__(self, stage: Stage, cause: BaseException) -> None:
        super().__init__(f"[{stage}] {cause}")
        self.stage = stage
        self.cause = cause

    @property
    def output_written(self) -> bool:
        """True when conversion finished and only the metadata copy failed."""
        return isinstance(self.cause, MetadataCopyFailed)
