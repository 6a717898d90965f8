from __future__ import annotations

import math
from pathlib import Path

import pytest

from gainmap_metadata import GainMapConfig, compute, headroom_stops, write_config
from hdr_errors import GainMetadataMissing


@pytest.mark.parametrize(
    "headroom, gain, expected_stops",
    [
        (0.5, 0.005, 1.7),
        # gain == 0.01 stays on the steep segment
        (0.5, 0.01, 1.6),
        (0.5, 0.5, -0.101 * 0.5 + 1.601),
        # headroom == 1.0 switches to the high-headroom curve
        (1.0, 0.005, 2.65),
        (1.0, 0.01, 2.3),
        (2.0, 0.5, -0.303 * 0.5 + 2.303),
    ],
)
def test_headroom_stops_piecewise(headroom: float, gain: float, expected_stops: float):
    assert headroom_stops(headroom, gain) == pytest.approx(expected_stops)


def test_compute_apple_example():
    config = compute(0.5, 0.005)
    assert config.hdr_capacity_max == pytest.approx(2**1.7)
    assert config.hdr_capacity_max == pytest.approx(3.2490, abs=1e-4)
    assert config.max_content_boost == (config.hdr_capacity_max,) * 3


def test_compute_clamps_negative_stops_to_unity_boost():
    # -0.101 * 20 + 1.601 < 0
    config = compute(0.5, 20.0)
    assert config.hdr_capacity_max == 1.0
    assert config.max_content_boost == (1.0, 1.0, 1.0)


def test_compute_fixed_fields():
    config = compute(1.3, 0.002)
    assert config.min_content_boost == (1.0, 1.0, 1.0)
    assert config.gamma == (1.0, 1.0, 1.0)
    assert config.offset_sdr == (0.0, 0.0, 0.0)
    assert config.offset_hdr == (0.0, 0.0, 0.0)
    assert config.hdr_capacity_min == 1.0
    assert config.use_base_color_space is True
    assert config.hdr_capacity_max == config.max_content_boost[0] >= 1.0


@pytest.mark.parametrize(
    "headroom, gain, missing",
    [
        (None, 0.1, ("HDRHeadroom",)),
        (0.5, None, ("HDRGain",)),
        (None, None, ("HDRHeadroom", "HDRGain")),
        (math.nan, 0.1, ("HDRHeadroom",)),
        (0.5, math.inf, ("HDRGain",)),
    ],
)
def test_compute_requires_both_values(headroom, gain, missing):
    with pytest.raises(GainMetadataMissing) as excinfo:
        compute(headroom, gain, source=Path("IMG_0001.HEIC"))
    assert excinfo.value.missing == missing
    assert "IMG_0001.HEIC" in str(excinfo.value)


def test_config_text_lines():
    config = GainMapConfig(max_content_boost=(2.5, 2.5, 2.5), hdr_capacity_max=2.5)
    assert config.to_config_text().splitlines() == [
        "--maxContentBoost 2.5 2.5 2.5",
        "--minContentBoost 1.0 1.0 1.0",
        "--gamma 1.0 1.0 1.0",
        "--offsetSdr 0.0 0.0 0.0",
        "--offsetHdr 0.0 0.0 0.0",
        "--hdrCapacityMin 1.0",
        "--hdrCapacityMax 2.5",
        "--useBaseColorSpace 1",
    ]


def test_config_text_keeps_full_precision():
    config = compute(0.5, 0.005)
    first = config.to_config_text().splitlines()[0]
    values = [float(v) for v in first.split()[1:]]
    assert values == [config.hdr_capacity_max] * 3


def test_write_config(tmp_path: Path):
    config = compute(0.5, 0.005)
    path = write_config(config, tmp_path / "gainmap.cfg")
    assert path == tmp_path / "gainmap.cfg"
    assert path.read_text(encoding="ascii") == config.to_config_text()
