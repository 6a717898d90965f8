#!/usr/bin/env python3
#
# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""Output geometry under a maximum-dimension cap."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Final

__all__: Final[list[str]] = [
    "ScalePlan",
    "plan",
]


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _even_up(value: int) -> int:
    """Bump odd values to the next even integer; never rounds down."""
    return value + 1 if value % 2 else value


@dataclass(frozen=True, slots=True, kw_only=True)
class ScalePlan:
    """Target geometry for the raw pixel stage."""

    source_width: int
    source_height: int
    target_width: int
    target_height: int
    scaled: bool

    @property
    def raw_dimensions(self) -> tuple[int, int]:
        """Even geometry for packed 10-bit raw output.

        Scaled plans are already even. Identity plans keep the source size,
        so odd sides are bumped by one pixel here.
        """
        return _even_up(self.target_width), _even_up(self.target_height)


def plan(width: int, height: int, max_dimension: int) -> ScalePlan:
    """Fit *width* x *height* within *max_dimension*, preserving aspect ratio."""
    if width <= 0 or height <= 0:
        raise ValueError(f"dimensions must be positive, got {width}x{height}")
    if max_dimension <= 0 or max_dimension % 2:
        raise ValueError(
            f"max_dimension must be a positive even integer, got {max_dimension}"
        )

    if width <= max_dimension and height <= max_dimension:
        return ScalePlan(
            source_width=width,
            source_height=height,
            target_width=width,
            target_height=height,
            scaled=False,
        )

    # Ties scale as if width were the longer side
    if width >= height:
        target_width = max_dimension
        target_height = _even_up(max(1, _round_half_up(height * max_dimension / width)))
    else:
        target_height = max_dimension
        target_width = _even_up(max(1, _round_half_up(width * max_dimension / height)))

    return ScalePlan(
        source_width=width,
        source_height=height,
        target_width=target_width,
        target_height=target_height,
        scaled=True,
    )
