#!/usr/bin/env python3
#
# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""
Gain map configuration from Apple HDRHeadroom/HDRGain maker notes.

iPhone HDR captures store their gain map as an auxiliary image plus two
maker-note floats. Apple's reference decoder maps that pair onto a headroom
in photographic stops with a piecewise-linear fit:

    headroom <  1.0:  stops = -20.0  * gain + 1.8    (gain <= 0.01)
                      stops = -0.101 * gain + 1.601  (gain >  0.01)
    headroom >= 1.0:  stops = -70.0  * gain + 3.0    (gain <= 0.01)
                      stops = -0.303 * gain + 2.303  (gain >  0.01)

    max content boost = 2 ** max(stops, 0)

The coefficients are calibration constants, not tunables.

The result is written as an ultrahdr_app gain map config file (-f), one
directive per line with per-channel values separated by spaces.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from hdr_errors import GainMetadataMissing

__all__: Final[list[str]] = [
    "GainMapConfig",
    "headroom_stops",
    "compute",
    "write_config",
]

log = logging.getLogger(__name__)

GAIN_KNEE: Final[float] = 0.01
HEADROOM_KNEE: Final[float] = 1.0

Channels = tuple[float, float, float]


def _replicate(value: float) -> Channels:
    return (value, value, value)


@dataclass(frozen=True, slots=True, kw_only=True)
class GainMapConfig:
    """Gain map metadata in the shape the UltraHDR encoder expects."""

    max_content_boost: Channels
    min_content_boost: Channels = (1.0, 1.0, 1.0)
    gamma: Channels = (1.0, 1.0, 1.0)
    offset_sdr: Channels = (0.0, 0.0, 0.0)
    offset_hdr: Channels = (0.0, 0.0, 0.0)
    hdr_capacity_min: float = 1.0
    hdr_capacity_max: float
    use_base_color_space: bool = True

    def to_config_text(self) -> str:
        """Serialize as ultrahdr_app config directives."""
        lines = [
            f"--maxContentBoost {_channels(self.max_content_boost)}",
            f"--minContentBoost {_channels(self.min_content_boost)}",
            f"--gamma {_channels(self.gamma)}",
            f"--offsetSdr {_channels(self.offset_sdr)}",
            f"--offsetHdr {_channels(self.offset_hdr)}",
            f"--hdrCapacityMin {self.hdr_capacity_min!r}",
            f"--hdrCapacityMax {self.hdr_capacity_max!r}",
            f"--useBaseColorSpace {int(self.use_base_color_space)}",
        ]
        return "\n".join(lines) + "\n"


def _channels(values: Channels) -> str:
    return " ".join(repr(float(v)) for v in values)


def headroom_stops(headroom: float, gain: float) -> float:
    """Apple's empirical headroom curve, in stops (may be negative)."""
    if headroom < HEADROOM_KNEE:
        if gain <= GAIN_KNEE:
            return -20.0 * gain + 1.8
        return -0.101 * gain + 1.601
    if gain <= GAIN_KNEE:
        return -70.0 * gain + 3.0
    return -0.303 * gain + 2.303


def compute(
    headroom: float | None,
    gain: float | None,
    *,
    source: Path | None = None,
) -> GainMapConfig:
    """Build a GainMapConfig from an Apple (HDRHeadroom, HDRGain) pair."""
    missing = [
        name
        for name, value in (("HDRHeadroom", headroom), ("HDRGain", gain))
        if value is None or not math.isfinite(value)
    ]
    if missing:
        raise GainMetadataMissing(missing, path=source)
    assert headroom is not None and gain is not None

    stops = headroom_stops(headroom, gain)
    boost = 2.0 ** max(stops, 0.0)
    log.debug(
        "HDRHeadroom=%.4f HDRGain=%.4f -> %.3f stops, boost %.4f",
        headroom,
        gain,
        stops,
        boost,
    )

    return GainMapConfig(
        max_content_boost=_replicate(boost),
        hdr_capacity_max=boost,
    )


def write_config(config: GainMapConfig, path: Path) -> Path:
    """Write *config* to *path* for ultrahdr_app -f."""
    path.write_text(config.to_config_text(), encoding="ascii")
    return path
