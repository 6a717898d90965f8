#!/usr/bin/env python3
#
# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Resolve transfer function and color gamut from incomplete tag data.

Both decisions are ordered (predicate, result) rule lists that end in a
catch-all, so infer() always yields a concrete transfer function and gamut
code. Guesses are not errors: they are recorded on the decision as warnings
for the caller to report.

Gamut codes follow ultrahdr_app's -C/-c selectors:
    0 = BT.709, 1 = Display P3, 2 = BT.2100 (BT.2020 primaries)
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum, auto
from typing import Final

from asset_probe import AssetDescriptor

__all__: Final[list[str]] = [
    "TransferFunction",
    "Gamut",
    "GamutSource",
    "ColorDecision",
    "GamutRule",
    "TRANSFER_RULES",
    "GAMUT_RULES",
    "infer",
]

log = logging.getLogger(__name__)


class TransferFunction(StrEnum):
    """HDR transfer functions understood by the encoder."""

    PQ = auto()
    HLG = auto()

    @property
    def ultrahdr_code(self) -> int:
        """ultrahdr_app -t / -o selector."""
        return 2 if self is TransferFunction.PQ else 1

    @property
    def ffmpeg_color_trc(self) -> str:
        return "smpte2084" if self is TransferFunction.PQ else "arib-std-b67"


class Gamut(StrEnum):
    """Color gamuts; UNKNOWN exists only as a pre-inference state."""

    BT709 = auto()
    P3 = auto()
    BT2020 = auto()
    UNKNOWN = auto()

    @property
    def code(self) -> int:
        try:
            return _GAMUT_CODES[self]
        except KeyError:
            raise ValueError(f"{self} has no encoder gamut code") from None

    @property
    def ffmpeg_color_primaries(self) -> str:
        return _FFMPEG_PRIMARIES[self]


_GAMUT_CODES: Final[dict[Gamut, int]] = {
    Gamut.BT709: 0,
    Gamut.P3: 1,
    Gamut.BT2020: 2,
}

_FFMPEG_PRIMARIES: Final[dict[Gamut, str]] = {
    Gamut.BT709: "bt709",
    Gamut.P3: "smpte432",
    Gamut.BT2020: "bt2020",
}


class GamutSource(StrEnum):
    """Which tier of the fallback chain settled the gamut."""

    COLOR_TAGS = auto()
    TRANSFER_TAG_TEXT = auto()
    TRANSFER_DEFAULT = auto()
    UNRECOGNIZED_TAGS = auto()


@dataclass(frozen=True, slots=True, kw_only=True)
class ColorDecision:
    """Concrete transfer/gamut pair handed to the encoder."""

    transfer_function: TransferFunction
    gamut: Gamut
    had_explicit_color_info: bool
    transfer_inferred: bool = False
    gamut_source: GamutSource = GamutSource.COLOR_TAGS
    warnings: tuple[str, ...] = ()

    @property
    def gamut_code(self) -> int:
        return self.gamut.code


# =============================================================================
# Transfer function
# =============================================================================

# Case-insensitive substrings; HLG is checked first
TRANSFER_RULES: Final[tuple[tuple[tuple[str, ...], TransferFunction], ...]] = (
    (("hlg", "arib", "b67"), TransferFunction.HLG),
    (("pq", "smpte", "2084"), TransferFunction.PQ),
)

DEFAULT_TRANSFER: Final[TransferFunction] = TransferFunction.HLG


def _resolve_transfer(tag: str | None) -> TransferFunction | None:
    if not tag:
        return None
    text = tag.lower()
    for needles, transfer in TRANSFER_RULES:
        if any(needle in text for needle in needles):
            return transfer
    return None


# =============================================================================
# Gamut
# =============================================================================


@dataclass(frozen=True, slots=True)
class _GamutContext:
    text: str
    has_color_tags: bool
    transfer: TransferFunction | None


@dataclass(frozen=True, slots=True)
class GamutRule:
    """One tier of the gamut fallback chain."""

    name: str
    matches: Callable[[_GamutContext], bool]
    resolve: Callable[[_GamutContext], tuple[Gamut, GamutSource]]


def _tagged(ctx: _GamutContext) -> GamutSource:
    return GamutSource.COLOR_TAGS if ctx.has_color_tags else GamutSource.TRANSFER_TAG_TEXT


def _contains(*needles: str) -> Callable[[_GamutContext], bool]:
    return lambda ctx: any(needle in ctx.text for needle in needles)


def _by_transfer(ctx: _GamutContext) -> tuple[Gamut, GamutSource]:
    gamut = Gamut.P3 if ctx.transfer is TransferFunction.PQ else Gamut.BT2020
    return gamut, GamutSource.TRANSFER_DEFAULT


GAMUT_RULES: Final[tuple[GamutRule, ...]] = (
    GamutRule(
        "bt2020",
        _contains("2020", "bt.2020", "rec.2020"),
        lambda ctx: (Gamut.BT2020, _tagged(ctx)),
    ),
    GamutRule(
        "p3",
        _contains("p3", "display p3", "dci-p3"),
        lambda ctx: (Gamut.P3, _tagged(ctx)),
    ),
    GamutRule(
        "bt709",
        _contains("709", "bt.709", "rec.709", "srgb"),
        lambda ctx: (Gamut.BT709, _tagged(ctx)),
    ),
    GamutRule(
        "untagged",
        lambda ctx: not ctx.has_color_tags,
        _by_transfer,
    ),
    # Catch-all: must stay last
    GamutRule(
        "unrecognized",
        lambda ctx: True,
        lambda ctx: (Gamut.BT2020, GamutSource.UNRECOGNIZED_TAGS),
    ),
)


def infer(descriptor: AssetDescriptor) -> ColorDecision:
    """Resolve a concrete (transfer function, gamut) pair for *descriptor*."""
    warnings: list[str] = []

    resolved_transfer = _resolve_transfer(descriptor.transfer_tag)
    transfer = resolved_transfer or DEFAULT_TRANSFER
    if resolved_transfer is None:
        warnings.append(
            f"transfer function not recognized ({descriptor.transfer_tag or 'untagged'}),"
            f" assuming {transfer.name}"
        )

    color_tags = descriptor.present_color_tags
    text = " ".join(color_tags) if color_tags else (descriptor.transfer_tag or "")
    ctx = _GamutContext(
        text=text.lower(),
        has_color_tags=bool(color_tags),
        transfer=resolved_transfer,
    )

    rule = next(rule for rule in GAMUT_RULES if rule.matches(ctx))
    gamut, source = rule.resolve(ctx)
    if source is GamutSource.UNRECOGNIZED_TAGS:
        warnings.append(
            f"color tags not recognized ({', '.join(color_tags)}), assuming {gamut.name}"
        )
    elif source is GamutSource.TRANSFER_DEFAULT:
        warnings.append(f"no color tags, assuming {gamut.name} for {transfer.name}")

    for warning in warnings:
        log.warning("%s: %s", descriptor.path.name, warning)

    return ColorDecision(
        transfer_function=transfer,
        gamut=gamut,
        had_explicit_color_info=bool(color_tags),
        transfer_inferred=resolved_transfer is None,
        gamut_source=source,
        warnings=tuple(warnings),
    )
