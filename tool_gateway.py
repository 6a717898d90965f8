#!/usr/bin/env python3
#
# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Uniform invocation of the external programs the converter chains together.

Every program is resolved before it runs; a missing binary is reported as
ToolNotFound rather than surfacing as a half-finished conversion. A non-zero
exit becomes ToolExecutionFailed with the captured output attached. Nothing
is retried.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Final, Self

import exiftool

from hdr_errors import ToolExecutionFailed, ToolNotFound, ToolTimedOut

__all__: Final[list[str]] = [
    "Tool",
    "ToolPaths",
    "ToolResult",
    "ToolGateway",
]

log = logging.getLogger(__name__)

# Locally built binaries live next to the scripts
SCRIPT_DIR: Final[Path] = Path(__file__).resolve().parent
LOCAL_BIN_DIR: Final[Path] = SCRIPT_DIR / "uhdr_build" / "bin"
LOCAL_LIB_DIRS: Final[tuple[Path, ...]] = (
    SCRIPT_DIR / "uhdr_build" / "lib",
    SCRIPT_DIR / "uhdr_build" / "lib64",
)


class Tool(StrEnum):
    """External collaborators, valued by their default executable name."""

    FFMPEG = "ffmpeg"
    ULTRAHDR_APP = "ultrahdr_app"
    HEIF_DEC = "heif-dec"
    EXIFTOOL = "exiftool"

    @property
    def env_var(self) -> str:
        """Environment variable that overrides this tool's location."""
        return self.name


def _get_env_path(var_name: str, /) -> Path | None:
    """Get a Path from environment variable, or None if not set/empty."""
    value = os.environ.get(var_name, "").strip()
    return Path(value) if value else None


def _default_location(tool: Tool) -> str:
    """Env override, then a local build, then a bare name for PATH lookup."""
    env_path = _get_env_path(tool.env_var)
    if env_path is not None:
        return str(env_path)
    local = LOCAL_BIN_DIR / tool.value
    if local.exists():
        return str(local)
    return tool.value


@dataclass(frozen=True, slots=True, kw_only=True)
class ToolPaths:
    """Where each collaborator lives."""

    ffmpeg: str = Tool.FFMPEG.value
    ultrahdr_app: str = Tool.ULTRAHDR_APP.value
    heif_dec: str = Tool.HEIF_DEC.value
    exiftool: str = Tool.EXIFTOOL.value
    library_dirs: tuple[Path, ...] = ()

    def location(self, tool: Tool) -> str:
        match tool:
            case Tool.FFMPEG:
                return self.ffmpeg
            case Tool.ULTRAHDR_APP:
                return self.ultrahdr_app
            case Tool.HEIF_DEC:
                return self.heif_dec
            case Tool.EXIFTOOL:
                return self.exiftool

    @classmethod
    def create(cls) -> Self:
        """Create paths from environment variables and local builds."""
        return cls(
            ffmpeg=_default_location(Tool.FFMPEG),
            ultrahdr_app=_default_location(Tool.ULTRAHDR_APP),
            heif_dec=_default_location(Tool.HEIF_DEC),
            exiftool=_default_location(Tool.EXIFTOOL),
            library_dirs=tuple(p for p in LOCAL_LIB_DIRS if p.exists()),
        )


@dataclass(frozen=True, slots=True, kw_only=True)
class ToolResult:
    """Captured result of one successful invocation."""

    program: str
    argv: tuple[str, ...]
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def output_lines(self) -> list[str]:
        return [*self.stdout.splitlines(), *self.stderr.splitlines()]


@dataclass(slots=True)
class ToolGateway:
    """Resolves and runs collaborators for one pipeline run."""

    tools: ToolPaths = field(default_factory=ToolPaths.create)
    timeout: float | None = None
    _exiftool_checked: bool = field(default=False, init=False, repr=False)

    def resolve(self, tool: Tool) -> str:
        """Return the executable path for *tool* or raise ToolNotFound."""
        location = self.tools.location(tool)
        if os.sep in location or (os.altsep and os.altsep in location):
            path = Path(location)
            if path.is_file() and os.access(path, os.X_OK):
                return str(path)
            raise ToolNotFound(tool.value, location=location)
        found = shutil.which(location)
        if found is None:
            raise ToolNotFound(tool.value, location=location)
        return found

    def require(self, tools: Iterable[Tool]) -> dict[Tool, str]:
        """Pre-flight check: resolve every tool, failing on the first missing."""
        resolved = {tool: self.resolve(tool) for tool in tools}
        for tool, path in resolved.items():
            log.debug("Found %s at %s", tool, path)
        return resolved

    def _child_env(self) -> dict[str, str] | None:
        if not self.tools.library_dirs:
            return None
        env = os.environ.copy()
        paths = [str(p) for p in self.tools.library_dirs]
        existing = env.get("LD_LIBRARY_PATH", "")
        if existing:
            paths.append(existing)
        env["LD_LIBRARY_PATH"] = ":".join(paths)
        return env

    def invoke(self, tool: Tool, args: Sequence[str]) -> ToolResult:
        """Run *tool* with *args* and wait for it to exit."""
        program = self.resolve(tool)
        argv = (program, *(str(a) for a in args))
        log.debug("Running: %s", " ".join(argv))

        try:
            result = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                env=self._child_env(),
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as e:
            raise ToolNotFound(tool.value, location=program) from e
        except subprocess.TimeoutExpired as e:
            raise ToolTimedOut(
                tool.value,
                e.timeout,
                stdout=_as_text(e.stdout),
                stderr=_as_text(e.stderr),
                argv=argv,
            ) from e

        if result.returncode != 0:
            raise ToolExecutionFailed(
                tool.value,
                result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
                argv=argv,
            )

        return ToolResult(
            program=tool.value,
            argv=argv,
            exit_code=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )

    def exiftool(self, *, numeric: bool = False) -> exiftool.ExifToolHelper:
        """ExifToolHelper bound to the resolved exiftool binary.

        Tags come back without group prefixes; *numeric* disables print
        conversion (exiftool -n).

        With a timeout set, the first call runs `exiftool -ver` under that
        deadline; pyexiftool itself never times out a read.
        """
        executable = self.resolve(Tool.EXIFTOOL)
        if self.timeout is not None and not self._exiftool_checked:
            self.invoke(Tool.EXIFTOOL, ["-ver"])
            self._exiftool_checked = True
        return exiftool.ExifToolHelper(
            executable=executable,
            common_args=["-n"] if numeric else [],
        )


def _as_text(data: str | bytes | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode(errors="replace")
    return data
