#!/usr/bin/env -S uv run --quiet --script
# /// script
# requires-python = ">=3.13"
# dependencies = [
#     "pyexiftool>=0.5.6",
#     "rich>=14.0.0",
# ]
# ///
#
# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Convert HDR photos between Apple HDR HEIC, UltraHDR JPEG and HDR TIFF.

Each input file is converted by its own pipeline run; runs are independent
and may execute in parallel.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import StrEnum, auto
from pathlib import Path
from typing import Final

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from asset_probe import probe, read_gain_values
from color_inference import TransferFunction, infer
from gainmap_metadata import compute
from hdr_errors import HdrConvertError, StageFailed
from hdr_pipeline import (
    PipelineConfig,
    PipelineRun,
    hdr_to_ultrahdr,
    heic_to_tiff,
    heic_to_ultrahdr,
    ultrahdr_to_tiff,
)
from tool_gateway import Tool, ToolGateway

__all__: Final[list[str]] = [
    "Conversion",
    "CONVERSIONS",
    "JobStatus",
    "JobResult",
    "collect_inputs",
    "output_path_for",
    "plan_outputs",
    "convert_one",
    "process_all",
    "inspect_files",
    "main",
]

__version__: Final[str] = "1.0.0"

log = logging.getLogger(__name__)

# Console for rich output
console = Console()

HEIC_SUFFIXES: Final[frozenset[str]] = frozenset({".heic", ".heif"})
ULTRAHDR_SUFFIXES: Final[frozenset[str]] = frozenset({".jpg", ".jpeg"})
HDR_SUFFIXES: Final[frozenset[str]] = frozenset({".tif", ".tiff", ".png", ".avif"})

OUTPUT_COLLISION_SUFFIX: Final[str] = "_hdr"

EXIT_OK: Final[int] = 0
EXIT_FAILURE: Final[int] = 1
EXIT_INTERRUPTED: Final[int] = 130


@dataclass(frozen=True, slots=True)
class Conversion:
    """One CLI subcommand bound to its pipeline."""

    name: str
    run: Callable[..., PipelineRun]
    input_suffixes: frozenset[str]
    output_suffix: str
    help: str


CONVERSIONS: Final[dict[str, Conversion]] = {
    c.name: c
    for c in (
        Conversion(
            "heic-to-uhdr",
            heic_to_ultrahdr,
            HEIC_SUFFIXES,
            ".jpg",
            "Apple HDR HEIC to UltraHDR JPEG",
        ),
        Conversion(
            "uhdr-to-tiff",
            ultrahdr_to_tiff,
            ULTRAHDR_SUFFIXES,
            ".tiff",
            "UltraHDR JPEG to 16-bit HDR TIFF",
        ),
        Conversion(
            "heic-to-tiff",
            heic_to_tiff,
            HEIC_SUFFIXES,
            ".tiff",
            "Apple HDR HEIC to 16-bit HDR TIFF",
        ),
        Conversion(
            "hdr-to-uhdr",
            hdr_to_ultrahdr,
            HDR_SUFFIXES,
            ".jpg",
            "PQ/HLG HDR image (TIFF, PNG, AVIF) to UltraHDR JPEG",
        ),
    )
}


class JobStatus(StrEnum):
    CONVERTED = auto()
    SKIPPED = auto()
    # Output published, but tags could not be copied onto it
    METADATA_FAILED = auto()
    FAILED = auto()

    @property
    def is_failure(self) -> bool:
        return self in (JobStatus.METADATA_FAILED, JobStatus.FAILED)


@dataclass(frozen=True, slots=True, kw_only=True)
class JobResult:
    source: Path
    output: Path
    status: JobStatus
    stage: str | None = None
    message: str = ""
    warnings: tuple[str, ...] = ()


# =============================================================================
# Input discovery
# =============================================================================


def collect_inputs(paths: Sequence[Path], suffixes: frozenset[str]) -> list[Path]:
    """
    Expand files and directories into a de-duplicated list of input files.

    Directories are scanned (non-recursively) for *suffixes*; files named
    explicitly are taken as-is whatever their extension.
    """
    found: list[Path] = []
    for path in paths:
        if path.is_dir():
            found.extend(
                sorted(
                    p
                    for p in path.iterdir()
                    if p.is_file() and p.suffix.lower() in suffixes
                )
            )
        elif path.is_file():
            found.append(path)
        else:
            log.warning("Skipping %s: not a file or directory", path)
    return list(dict.fromkeys(p.resolve() for p in found))


def output_path_for(source: Path, output_suffix: str, output_dir: Path | None) -> Path:
    """Destination for *source*; never the source file itself."""
    directory = output_dir or source.parent
    output = directory / f"{source.stem}{output_suffix}"
    if output.parent.resolve() == source.parent.resolve() and (
        output.name.lower() == source.name.lower()
    ):
        output = directory / f"{source.stem}{OUTPUT_COLLISION_SUFFIX}{output_suffix}"
    return output


def plan_outputs(
    sources: Sequence[Path], output_suffix: str, output_dir: Path | None
) -> tuple[list[tuple[Path, Path]], list[JobResult]]:
    """
    Pair each source with its output path.

    Sources that would write the same output as an earlier source (IMG.heic
    and IMG.HEIF, say) are not converted; they come back as FAILED results.
    Names are compared case-insensitively.
    """
    jobs_list: list[tuple[Path, Path]] = []
    conflicts: list[JobResult] = []
    claimed: dict[str, Path] = {}
    for source in sources:
        output = output_path_for(source, output_suffix, output_dir)
        key = str(output.resolve()).lower()
        if key in claimed:
            conflicts.append(
                JobResult(
                    source=source,
                    output=output,
                    status=JobStatus.FAILED,
                    message=f"{output.name} is also the output of {claimed[key].name}",
                )
            )
            continue
        claimed[key] = source
        jobs_list.append((source, output))
    return jobs_list, conflicts


# =============================================================================
# Processing
# =============================================================================


def convert_one(
    conversion: Conversion,
    source: Path,
    output: Path,
    config: PipelineConfig,
    *,
    force: bool = False,
) -> JobResult:
    """Run one conversion, turning its outcome into a JobResult."""
    if output.exists() and not force:
        return JobResult(
            source=source,
            output=output,
            status=JobStatus.SKIPPED,
            message="output exists (use --force to overwrite)",
        )

    try:
        run = conversion.run(source, output, config)
    except StageFailed as e:
        return JobResult(
            source=source,
            output=output,
            status=JobStatus.METADATA_FAILED if e.output_written else JobStatus.FAILED,
            stage=str(e.stage),
            message=str(e.cause),
        )
    except Exception as e:
        log.debug("Unexpected error converting %s", source, exc_info=True)
        return JobResult(
            source=source,
            output=output,
            status=JobStatus.FAILED,
            message=f"Unexpected error: {e}",
        )

    return JobResult(
        source=source,
        output=output,
        status=JobStatus.CONVERTED,
        warnings=tuple(str(w) for w in run.warnings),
    )


def process_all(
    conversion: Conversion,
    jobs_list: Sequence[tuple[Path, Path]],
    config: PipelineConfig,
    *,
    jobs: int,
    force: bool = False,
    verbose: bool = False,
) -> list[JobResult]:
    """
    Convert every (source, output) pair with parallel execution and progress
    display.

    Each worker owns a separate PipelineRun, so no state is shared between
    threads.
    """
    results: list[JobResult] = []

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        task = progress.add_task(
            f"[cyan]{conversion.help}...",
            total=len(jobs_list),
        )

        with ThreadPoolExecutor(max_workers=jobs) as executor:
            futures = [
                executor.submit(convert_one, conversion, src, dst, config, force=force)
                for src, dst in jobs_list
            ]

            try:
                for future in as_completed(futures):
                    result = future.result()
                    results.append(result)
                    _report(result, verbose)
                    progress.advance(task)
            except KeyboardInterrupt:
                for future in futures:
                    future.cancel()
                raise

    return results


def _report(result: JobResult, verbose: bool) -> None:
    name = result.source.name
    match result.status:
        case JobStatus.CONVERTED:
            if verbose:
                console.print(f"  [green]✓[/green] {escape(name)} -> {escape(result.output.name)}")
            for warning in result.warnings:
                console.print(f"  [yellow]![/yellow] {escape(name)}: {escape(warning)}")
        case JobStatus.SKIPPED:
            if verbose:
                console.print(f"  [dim]- {escape(name)}: {result.message}[/dim]")
        case JobStatus.METADATA_FAILED:
            console.print(
                f"  [yellow]✗[/yellow] {escape(name)}: converted, but "
                f"{escape(f'[{result.stage}] {result.message}')}"
            )
        case JobStatus.FAILED:
            stage = f"[{result.stage}] " if result.stage else ""
            console.print(f"  [red]✗[/red] {escape(name)}: {escape(stage + result.message)}")


def _summary_table(results: Sequence[JobResult]) -> Table:
    table = Table(title="Failures", title_justify="left")
    table.add_column("File")
    table.add_column("Stage")
    table.add_column("Error", overflow="fold")
    for result in results:
        if result.status.is_failure:
            table.add_row(result.source.name, result.stage or "-", result.message)
    return table


# =============================================================================
# Inspect
# =============================================================================


def inspect_files(paths: Sequence[Path], gateway: ToolGateway) -> int:
    """Print probe, color decision and gain map config for each file."""
    failures = 0
    for path in paths:
        try:
            descriptor = probe(gateway, path)
            headroom, gain = read_gain_values(gateway, path)
        except HdrConvertError as e:
            console.print(f"[red]✗[/red] {path.name}: {e}")
            failures += 1
            continue

        decision = infer(descriptor)

        table = Table(title=str(path), title_justify="left", show_header=False)
        table.add_column("Field", style="bold")
        table.add_column("Value")
        table.add_row("Dimensions", f"{descriptor.width} x {descriptor.height}")
        table.add_row("Transfer tag", descriptor.transfer_tag or "-")
        table.add_row("Color tags", ", ".join(descriptor.present_color_tags) or "-")
        table.add_row(
            "Transfer",
            f"{decision.transfer_function.name}"
            + (" (assumed)" if decision.transfer_inferred else ""),
        )
        table.add_row(
            "Gamut",
            f"{decision.gamut.name} (code {decision.gamut_code}, "
            f"from {decision.gamut_source})",
        )
        if headroom is not None and gain is not None:
            config = compute(headroom, gain, source=path)
            table.add_row("HDRHeadroom / HDRGain", f"{headroom:g} / {gain:g}")
            table.add_row("Max content boost", f"{config.hdr_capacity_max:.4f}")
        for warning in decision.warnings:
            table.add_row("[yellow]Warning[/yellow]", warning)
        console.print(table)

    return EXIT_OK if failures == 0 else EXIT_FAILURE


# =============================================================================
# CLI
# =============================================================================


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer: {value!r}") from None
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be positive: {value}")
    return number


def _add_conversion_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "inputs",
        nargs="+",
        type=Path,
        metavar="PATH",
        help="Input files or directories",
    )
    parser.add_argument(
        "-o",
        "--output-dir",
        type=Path,
        default=None,
        metavar="DIR",
        help="Output directory (default: next to each input)",
    )
    parser.add_argument(
        "-f",
        "--force",
        action="store_true",
        help="Overwrite existing outputs instead of skipping them",
    )
    parser.add_argument(
        "-j",
        "--jobs",
        type=_positive_int,
        default=None,
        metavar="N",
        help="Parallel conversions (default: CPU count)",
    )
    parser.add_argument(
        "-q",
        "--quality",
        type=int,
        default=None,
        metavar="Q",
        help="JPEG quality for encoded images (0-100, default: 95)",
    )
    parser.add_argument(
        "--max-dimension",
        type=_positive_int,
        default=None,
        metavar="PX",
        help="Longest side cap for hdr-to-uhdr, even (default: 8192)",
    )
    parser.add_argument(
        "--transfer",
        choices=[t.value for t in TransferFunction],
        default=None,
        help="Transfer function for TIFF output (default: inferred from source)",
    )
    parser.add_argument(
        "--work-dir",
        type=Path,
        default=None,
        metavar="DIR",
        help="Parent directory for temporary files (default: system temp)",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with one subcommand per conversion."""
    parser = argparse.ArgumentParser(
        prog="hdr-convert",
        description="Convert HDR photos between Apple HDR HEIC, UltraHDR JPEG and HDR TIFF.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
External tools (override with FFMPEG, ULTRAHDR_APP, HEIF_DEC, EXIFTOOL):
  heif-dec       libheif, for HEIC inputs
  ultrahdr_app   libultrahdr sample app
  ffmpeg         raw pixel packing and TIFF output
  exiftool       metadata

Examples:
  %(prog)s heic-to-uhdr ~/Pictures/iphone        Convert every HEIC in a directory
  %(prog)s uhdr-to-tiff IMG_0001.jpg --transfer pq
  %(prog)s hdr-to-uhdr -j 2 --max-dimension 4096 scan.tif
  %(prog)s inspect IMG_0001.HEIC
        """,
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show detailed output",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")
    for conversion in CONVERSIONS.values():
        sub = subparsers.add_parser(conversion.name, help=conversion.help)
        _add_conversion_options(sub)

    inspect = subparsers.add_parser(
        "inspect", help="Show dimensions, inferred color and gain map metadata"
    )
    inspect.add_argument("inputs", nargs="+", type=Path, metavar="FILE")

    return parser


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=verbose, markup=False)],
        force=True,
    )


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    if args.command == "inspect":
        gateway = ToolGateway()
        try:
            gateway.require([Tool.EXIFTOOL])
        except HdrConvertError as e:
            console.print(f"[red]Error:[/red] {e}")
            return EXIT_FAILURE
        return inspect_files(args.inputs, gateway)

    conversion = CONVERSIONS[args.command]
    try:
        config = PipelineConfig.create(
            work_root=args.work_dir,
            max_dimension=args.max_dimension,
            jpeg_quality=args.quality,
            target_transfer=TransferFunction(args.transfer) if args.transfer else None,
        )
    except ValueError as e:
        parser.error(str(e))

    output_dir = args.output_dir.resolve() if args.output_dir else None
    sources = collect_inputs(args.inputs, conversion.input_suffixes)
    if not sources:
        console.print(
            f"[yellow]No inputs found[/yellow] (looking for "
            f"{', '.join(sorted(conversion.input_suffixes))})"
        )
        return EXIT_OK

    jobs_list, conflicts = plan_outputs(sources, conversion.output_suffix, output_dir)
    jobs = min(args.jobs or os.cpu_count() or 1, len(jobs_list))

    # Print header
    console.print()
    console.print(f"[bold]HDR Convert v{__version__}[/bold]: {conversion.help}")
    console.print(f"Found: {len(sources)} file(s)")
    console.print(f"Quality: {config.jpeg_quality}, Jobs: {jobs}")
    console.print()
    for conflict in conflicts:
        _report(conflict, args.verbose)

    try:
        results = process_all(
            conversion,
            jobs_list,
            config,
            jobs=jobs,
            force=args.force,
            verbose=args.verbose,
        )
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        return EXIT_INTERRUPTED
    results = [*conflicts, *results]

    converted = sum(r.status is JobStatus.CONVERTED for r in results)
    skipped = sum(r.status is JobStatus.SKIPPED for r in results)
    failed = sum(r.status.is_failure for r in results)

    # Print summary
    console.print()
    if failed == 0:
        console.print(
            f"[green]Complete:[/green] {converted} converted, {skipped} skipped"
        )
        return EXIT_OK

    console.print(_summary_table(results))
    console.print(
        f"[yellow]Complete:[/yellow] {converted} converted, {skipped} skipped, "
        f"[red]{failed} failed[/red]"
    )
    return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
