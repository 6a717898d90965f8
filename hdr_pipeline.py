#!/usr/bin/env python3
#
# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
HDR conversion pipelines.

Each conversion is a fixed, linear chain of stages:

    HEIC -> UltraHDR:   tool-check, probe, gainmap-derivation, heic-decode,
                        uhdr-encode, publish, metadata-copy
    UltraHDR -> TIFF:   tool-check, probe, uhdr-decode, container-wrap,
                        publish, metadata-copy
    HEIC -> TIFF:       HEIC -> UltraHDR in the working directory, then the
                        UltraHDR -> TIFF chain
    HDR -> UltraHDR:    tool-check, probe, scale-decision, raw-conversion,
                        uhdr-encode, publish, metadata-copy

Intermediates live in a temporary directory owned by one PipelineRun and
removed on every exit path. Outputs are assembled there and only moved into
place by the publish stage, so a failed conversion never leaves a partial
file behind. The first failing stage aborts the run with StageFailed.

Raw pixels travel as packed 10-bit RGBA (ultrahdr_app format 5), which is
ffmpeg's x2bgr10le: R in the low bits, 4 bytes per pixel.
"""

from __future__ import annotations

import contextlib
import logging
import os
import shutil
import tempfile
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from types import TracebackType
from typing import Final, Self

from asset_probe import (
    AssetDescriptor,
    copy_metadata,
    probe,
    read_gain_values,
    sync_timestamp,
)
from color_inference import ColorDecision, Gamut, TransferFunction, infer
from gainmap_metadata import GainMapConfig, compute, write_config
from hdr_errors import (
    HdrConvertError,
    StageFailed,
    StageOutputMissing,
    ToolExecutionFailed,
    UnexpectedOutputShape,
)
from scaling_policy import ScalePlan, plan
from tool_gateway import Tool, ToolGateway, ToolPaths, ToolResult, _get_env_path

__all__: Final[list[str]] = [
    "Stage",
    "PipelineConfig",
    "PipelineRun",
    "StageRecord",
    "Succeeded",
    "Failed",
    "heic_to_ultrahdr",
    "ultrahdr_to_tiff",
    "heic_to_tiff",
    "hdr_to_ultrahdr",
]

log = logging.getLogger(__name__)

DEFAULT_MAX_DIMENSION: Final[int] = 8192
DEFAULT_JPEG_QUALITY: Final[int] = 95

RAW_PIX_FMT: Final[str] = "x2bgr10le"
RAW_UHDR_FORMAT: Final[int] = 5  # rgba1010102
RAW_BYTES_PER_PIXEL: Final[int] = 4
TIFF_PIX_FMT: Final[str] = "rgb48le"

# Apple's auxiliary image URN is urn:com:apple:photo:2020:aux:hdrgainmap
GAINMAP_AUX_MARKER: Final[str] = "hdrgainmap"

HEIC_TO_ULTRAHDR_TOOLS: Final[tuple[Tool, ...]] = (
    Tool.HEIF_DEC,
    Tool.ULTRAHDR_APP,
    Tool.EXIFTOOL,
)
ULTRAHDR_TO_TIFF_TOOLS: Final[tuple[Tool, ...]] = (
    Tool.ULTRAHDR_APP,
    Tool.FFMPEG,
    Tool.EXIFTOOL,
)
HEIC_TO_TIFF_TOOLS: Final[tuple[Tool, ...]] = (
    Tool.HEIF_DEC,
    Tool.ULTRAHDR_APP,
    Tool.FFMPEG,
    Tool.EXIFTOOL,
)
HDR_TO_ULTRAHDR_TOOLS: Final[tuple[Tool, ...]] = (
    Tool.FFMPEG,
    Tool.ULTRAHDR_APP,
    Tool.EXIFTOOL,
)

_FFMPEG_QUIET: Final[tuple[str, ...]] = ("-hide_banner", "-loglevel", "error", "-nostdin", "-y")


class Stage(StrEnum):
    """Pipeline stages, in the order they can occur."""

    TOOL_CHECK = "tool-check"
    PROBE = "probe"
    SCALE_DECISION = "scale-decision"
    GAINMAP_DERIVATION = "gainmap-derivation"
    HEIC_DECODE = "heic-decode"
    RAW_CONVERSION = "raw-conversion"
    UHDR_ENCODE = "uhdr-encode"
    UHDR_DECODE = "uhdr-decode"
    CONTAINER_WRAP = "container-wrap"
    PUBLISH = "publish"
    METADATA_COPY = "metadata-copy"


# =============================================================================
# Configuration
# =============================================================================


def _get_env_int(var_name: str, /) -> int | None:
    """Get a positive int from environment variable, or None if invalid."""
    value = os.environ.get(var_name, "").strip()
    if not value:
        return None
    try:
        result = int(value)
        return result if result > 0 else None
    except ValueError:
        return None


def _get_env_float(var_name: str, /) -> float | None:
    """Get a positive float from environment variable, or None if invalid."""
    value = os.environ.get(var_name, "").strip()
    if not value:
        return None
    try:
        result = float(value)
        return result if result > 0 else None
    except ValueError:
        return None


@dataclass(frozen=True, slots=True, kw_only=True)
class PipelineConfig:
    """Settings shared by every stage of one run."""

    tools: ToolPaths = field(default_factory=ToolPaths)
    work_root: Path | None = None
    max_dimension: int = DEFAULT_MAX_DIMENSION
    jpeg_quality: int = DEFAULT_JPEG_QUALITY
    target_transfer: TransferFunction | None = None
    stage_timeout: float | None = None

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.max_dimension <= 0 or self.max_dimension % 2:
            msg = f"max_dimension must be a positive even integer, got {self.max_dimension}"
            raise ValueError(msg)
        if not 0 <= self.jpeg_quality <= 100:
            msg = f"jpeg_quality must be within 0-100, got {self.jpeg_quality}"
            raise ValueError(msg)
        if self.stage_timeout is not None and self.stage_timeout <= 0:
            msg = f"stage_timeout must be positive, got {self.stage_timeout}"
            raise ValueError(msg)

    @classmethod
    def create(
        cls,
        *,
        tools: ToolPaths | None = None,
        work_root: Path | None = None,
        max_dimension: int | None = None,
        jpeg_quality: int | None = None,
        target_transfer: TransferFunction | None = None,
        stage_timeout: float | None = None,
    ) -> Self:
        """Create config from arguments with environment variable fallbacks."""
        return cls(
            tools=tools or ToolPaths.create(),
            work_root=work_root or _get_env_path("HDRCONV_WORK_DIR"),
            max_dimension=(
                max_dimension
                or _get_env_int("HDRCONV_MAX_DIMENSION")
                or DEFAULT_MAX_DIMENSION
            ),
            jpeg_quality=(
                jpeg_quality
                if jpeg_quality is not None
                else _get_env_int("HDRCONV_QUALITY") or DEFAULT_JPEG_QUALITY
            ),
            target_transfer=target_transfer,
            stage_timeout=stage_timeout or _get_env_float("HDRCONV_STAGE_TIMEOUT"),
        )


# =============================================================================
# Run state
# =============================================================================


@dataclass(frozen=True, slots=True)
class Succeeded:
    output: Path


@dataclass(frozen=True, slots=True)
class Failed:
    stage: Stage | None
    cause: BaseException


Outcome = Succeeded | Failed


@dataclass(slots=True)
class StageRecord:
    """One executed stage and the commands it ran."""

    stage: Stage
    commands: list[tuple[str, ...]] = field(default_factory=list)


class PipelineRun:
    """One conversion: an exclusively owned working directory plus its history.

    Use as a context manager. The working directory exists only between
    __enter__ and __exit__ and is removed however the run ends; removal
    errors are ignored so they never replace the run's own outcome.
    """

    def __init__(
        self,
        config: PipelineConfig,
        source: Path,
        output: Path,
        *,
        gateway: ToolGateway | None = None,
    ) -> None:
        self.config = config
        self.source = source
        self.output = output
        self.gateway = gateway or ToolGateway(config.tools, timeout=config.stage_timeout)
        self.stages: list[StageRecord] = []
        self.warnings: list[UnexpectedOutputShape] = []
        self.outcome: Outcome | None = None
        self.color: ColorDecision | None = None
        self.scale: ScalePlan | None = None
        self.gainmap: GainMapConfig | None = None
        self._scope: tempfile.TemporaryDirectory[str] | None = None
        self._work_dir: Path | None = None

    @property
    def work_dir(self) -> Path:
        if self._work_dir is None:
            raise RuntimeError("PipelineRun has no working directory outside its context")
        return self._work_dir

    def path(self, name: str) -> Path:
        """Path for an intermediate file inside the working directory."""
        return self.work_dir / name

    def __enter__(self) -> Self:
        if self.config.work_root is not None:
            self.config.work_root.mkdir(parents=True, exist_ok=True)
        self._scope = tempfile.TemporaryDirectory(
            prefix=f"hdrconv-{self.source.stem}-",
            dir=self.config.work_root,
            ignore_cleanup_errors=True,
        )
        self._work_dir = Path(self._scope.name)
        log.debug("Working directory for %s: %s", self.source.name, self._work_dir)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc is None:
            self.outcome = Succeeded(self.output)
        elif isinstance(exc, StageFailed):
            self.outcome = Failed(exc.stage, exc.cause)
        else:
            current = self.stages[-1].stage if self.stages else None
            self.outcome = Failed(current, exc)

        if self._scope is not None:
            self._scope.cleanup()
            log.debug("Removed working directory %s", self._work_dir)
        self._scope = None
        self._work_dir = None

    @contextlib.contextmanager
    def stage(self, stage: Stage) -> Iterator[StageRecord]:
        """Run a block as *stage*; any conversion error becomes StageFailed."""
        record = StageRecord(stage)
        self.stages.append(record)
        log.debug("%s: %s", self.source.name, stage)
        try:
            yield record
        except StageFailed:
            raise
        except (HdrConvertError, OSError, ValueError) as e:
            raise StageFailed(stage, e) from e

    def invoke(self, tool: Tool, args: Sequence[str]) -> ToolResult:
        """Invoke *tool* through the gateway, recording the command line."""
        try:
            result = self.gateway.invoke(tool, args)
        except ToolExecutionFailed as e:
            self._record(e.argv)
            raise
        self._record(result.argv)
        return result

    def warn(self, warning: UnexpectedOutputShape) -> None:
        """Record a non-fatal oddity without stopping the run."""
        self.warnings.append(warning)
        log.warning("%s: %s", self.source.name, warning)

    def _record(self, argv: tuple[str, ...]) -> None:
        if self.stages and argv:
            self.stages[-1].commands.append(argv)


# =============================================================================
# Stage primitives
# =============================================================================


def _expect_output(path: Path, producer: Tool) -> Path:
    if not path.is_file():
        raise StageOutputMissing(path, producer.value)
    return path


def _check_raw_size(run: PipelineRun, raw: Path, width: int, height: int) -> None:
    """Warn, without failing, when a raw file disagrees with its geometry."""
    expected = width * height * RAW_BYTES_PER_PIXEL
    actual = raw.stat().st_size
    if actual != expected:
        run.warn(
            UnexpectedOutputShape(
                f"{raw.name} is {actual} bytes, expected {expected} "
                f"for {width}x{height} at {RAW_BYTES_PER_PIXEL} bytes/pixel"
            )
        )


def _check_tools(run: PipelineRun, tools: Sequence[Tool]) -> None:
    with run.stage(Stage.TOOL_CHECK):
        run.gateway.require(tools)


def _probe(run: PipelineRun, path: Path) -> tuple[AssetDescriptor, ColorDecision]:
    with run.stage(Stage.PROBE):
        if not path.is_file():
            raise FileNotFoundError(f"No such file: {path}")
        descriptor = probe(run.gateway, path)
        return descriptor, infer(descriptor)


def _derive_gainmap(run: PipelineRun, source: Path) -> Path:
    """Translate Apple's headroom/gain pair into an encoder config file."""
    with run.stage(Stage.GAINMAP_DERIVATION):
        headroom, gain = read_gain_values(run.gateway, source)
        run.gainmap = compute(headroom, gain, source=source)
        log.info(
            "%s: HDR headroom %.3fx", source.name, run.gainmap.hdr_capacity_max
        )
        return write_config(run.gainmap, run.path("gainmap.cfg"))


def _find_gainmap_aux(base: Path) -> Path:
    candidates = sorted(
        p
        for p in base.parent.glob(f"{base.stem}-*{base.suffix}")
        if GAINMAP_AUX_MARKER in p.name
    )
    if not candidates:
        missing = base.with_name(f"{base.stem}-{GAINMAP_AUX_MARKER}{base.suffix}")
        raise StageOutputMissing(missing, Tool.HEIF_DEC.value)
    return candidates[0]


def _decode_heic(run: PipelineRun, source: Path) -> tuple[Path, Path]:
    """Extract the SDR base image and Apple gain map as JPEGs."""
    with run.stage(Stage.HEIC_DECODE):
        base = run.path("base.jpg")
        run.invoke(
            Tool.HEIF_DEC,
            [
                "-q", str(run.config.jpeg_quality),
                "--with-aux",
                "--no-colons",
                str(source),
                str(base),
            ],
        )
        _expect_output(base, Tool.HEIF_DEC)
        return base, _find_gainmap_aux(base)


def _encode_from_gainmap(
    run: PipelineRun, base: Path, gainmap: Path, config_file: Path
) -> Path:
    """Combine a compressed base and gain map into UltraHDR."""
    with run.stage(Stage.UHDR_ENCODE):
        encoded = run.path("ultrahdr.jpg")
        run.invoke(
            Tool.ULTRAHDR_APP,
            [
                "-m", "0",
                "-i", str(base),
                "-g", str(gainmap),
                "-f", str(config_file),
                "-z", str(encoded),
            ],
        )
        return _expect_output(encoded, Tool.ULTRAHDR_APP)


def _scale_decision(run: PipelineRun, descriptor: AssetDescriptor) -> ScalePlan:
    with run.stage(Stage.SCALE_DECISION):
        run.scale = plan(descriptor.width, descriptor.height, run.config.max_dimension)
        if run.scale.scaled:
            log.info(
                "%s: scaling %dx%d to %dx%d",
                descriptor.path.name,
                descriptor.width,
                descriptor.height,
                run.scale.target_width,
                run.scale.target_height,
            )
        return run.scale


def _convert_to_raw(run: PipelineRun, source: Path, scale: ScalePlan) -> Path:
    """Decode *source* to packed 10-bit RGBA at the planned geometry."""
    with run.stage(Stage.RAW_CONVERSION):
        width, height = scale.raw_dimensions
        raw = run.path("hdr.raw")
        args = [*_FFMPEG_QUIET, "-i", str(source)]
        if (width, height) != (scale.source_width, scale.source_height):
            args += ["-vf", f"scale={width}:{height}:flags=lanczos"]
        args += ["-frames:v", "1", "-pix_fmt", RAW_PIX_FMT, "-f", "rawvideo", str(raw)]
        run.invoke(Tool.FFMPEG, args)
        _expect_output(raw, Tool.FFMPEG)
        _check_raw_size(run, raw, width, height)
        return raw


def _encode_from_raw(
    run: PipelineRun, raw: Path, scale: ScalePlan, color: ColorDecision
) -> Path:
    """Encode packed HDR pixels into UltraHDR with the inferred color."""
    with run.stage(Stage.UHDR_ENCODE):
        width, height = scale.raw_dimensions
        encoded = run.path("ultrahdr.jpg")
        run.invoke(
            Tool.ULTRAHDR_APP,
            [
                "-m", "0",
                "-p", str(raw),
                "-a", str(RAW_UHDR_FORMAT),
                "-w", str(width),
                "-h", str(height),
                "-t", str(color.transfer_function.ultrahdr_code),
                "-C", str(color.gamut_code),
                "-R", "1",  # full range
                "-q", str(run.config.jpeg_quality),
                "-z", str(encoded),
            ],
        )
        return _expect_output(encoded, Tool.ULTRAHDR_APP)


def _decode_ultrahdr(
    run: PipelineRun,
    source: Path,
    descriptor: AssetDescriptor,
    transfer: TransferFunction,
) -> Path:
    """Reconstruct HDR pixels from an UltraHDR JPEG as packed 10-bit RGBA."""
    with run.stage(Stage.UHDR_DECODE):
        raw = run.path("decoded.raw")
        run.invoke(
            Tool.ULTRAHDR_APP,
            [
                "-m", "1",
                "-j", str(source),
                "-o", str(transfer.ultrahdr_code),
                "-O", str(RAW_UHDR_FORMAT),
                "-z", str(raw),
            ],
        )
        _expect_output(raw, Tool.ULTRAHDR_APP)
        _check_raw_size(run, raw, descriptor.width, descriptor.height)
        return raw


def _wrap_tiff(
    run: PipelineRun,
    raw: Path,
    descriptor: AssetDescriptor,
    transfer: TransferFunction,
    gamut: Gamut,
) -> Path:
    """Wrap decoded raw pixels into a 16-bit TIFF tagged with its transfer."""
    with run.stage(Stage.CONTAINER_WRAP):
        tiff = run.path("output.tiff")
        color_args = [
            "-color_trc", transfer.ffmpeg_color_trc,
            "-color_primaries", gamut.ffmpeg_color_primaries,
        ]
        run.invoke(
            Tool.FFMPEG,
            [
                *_FFMPEG_QUIET,
                "-f", "rawvideo",
                "-pix_fmt", RAW_PIX_FMT,
                "-s", f"{descriptor.width}x{descriptor.height}",
                *color_args,
                "-i", str(raw),
                "-frames:v", "1",
                "-pix_fmt", TIFF_PIX_FMT,
                *color_args,
                str(tiff),
            ],
        )
        return _expect_output(tiff, Tool.FFMPEG)


def _publish(run: PipelineRun, produced: Path) -> Path:
    """Move the finished file from the working directory to its destination."""
    with run.stage(Stage.PUBLISH):
        run.output.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(produced, run.output)
        log.debug("Published %s", run.output)
        return run.output


def _copy_metadata(run: PipelineRun, source: Path) -> None:
    with run.stage(Stage.METADATA_COPY):
        copy_metadata(run.gateway, source, run.output)
    sync_timestamp(source, run.output)


# =============================================================================
# Shared chains
# =============================================================================


def _heic_to_ultrahdr_chain(run: PipelineRun, source: Path) -> Path:
    # Gain metadata is read before any decode
    config_file = _derive_gainmap(run, source)
    base, gainmap = _decode_heic(run, source)
    return _encode_from_gainmap(run, base, gainmap, config_file)


def _ultrahdr_to_tiff_chain(
    run: PipelineRun,
    ultrahdr: Path,
    descriptor: AssetDescriptor,
    color: ColorDecision,
) -> Path:
    transfer = run.config.target_transfer or color.transfer_function
    raw = _decode_ultrahdr(run, ultrahdr, descriptor, transfer)
    return _wrap_tiff(run, raw, descriptor, transfer, color.gamut)


# =============================================================================
# Conversions
# =============================================================================


def heic_to_ultrahdr(
    source: Path,
    output: Path,
    config: PipelineConfig,
    *,
    gateway: ToolGateway | None = None,
) -> PipelineRun:
    """Convert an Apple HDR HEIC into an UltraHDR JPEG."""
    with PipelineRun(config, source, output, gateway=gateway) as run:
        _check_tools(run, HEIC_TO_ULTRAHDR_TOOLS)
        _, run.color = _probe(run, source)
        _publish(run, _heic_to_ultrahdr_chain(run, source))
        _copy_metadata(run, source)
    return run


def ultrahdr_to_tiff(
    source: Path,
    output: Path,
    config: PipelineConfig,
    *,
    gateway: ToolGateway | None = None,
) -> PipelineRun:
    """Convert an UltraHDR JPEG into a 16-bit HDR TIFF."""
    with PipelineRun(config, source, output, gateway=gateway) as run:
        _check_tools(run, ULTRAHDR_TO_TIFF_TOOLS)
        descriptor, run.color = _probe(run, source)
        _publish(run, _ultrahdr_to_tiff_chain(run, source, descriptor, run.color))
        _copy_metadata(run, source)
    return run


def heic_to_tiff(
    source: Path,
    output: Path,
    config: PipelineConfig,
    *,
    gateway: ToolGateway | None = None,
) -> PipelineRun:
    """Convert an Apple HDR HEIC into an HDR TIFF via an UltraHDR intermediate."""
    with PipelineRun(config, source, output, gateway=gateway) as run:
        _check_tools(run, HEIC_TO_TIFF_TOOLS)
        _, run.color = _probe(run, source)
        intermediate = _heic_to_ultrahdr_chain(run, source)
        # heif-dec applies HEIC rotation; geometry comes from the intermediate
        descriptor, _ = _probe(run, intermediate)
        _publish(run, _ultrahdr_to_tiff_chain(run, intermediate, descriptor, run.color))
        _copy_metadata(run, source)
    return run


def hdr_to_ultrahdr(
    source: Path,
    output: Path,
    config: PipelineConfig,
    *,
    gateway: ToolGateway | None = None,
) -> PipelineRun:
    """Convert a PQ/HLG HDR image (TIFF, PNG, AVIF, ...) into UltraHDR."""
    with PipelineRun(config, source, output, gateway=gateway) as run:
        _check_tools(run, HDR_TO_ULTRAHDR_TOOLS)
        descriptor, run.color = _probe(run, source)
        scale = _scale_decision(run, descriptor)
        raw = _convert_to_raw(run, source, scale)
        _publish(run, _encode_from_raw(run, raw, scale, run.color))
        _copy_metadata(run, source)
    return run
