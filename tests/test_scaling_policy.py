from __future__ import annotations

import pytest

from scaling_policy import plan


def test_identity_when_within_cap():
    result = plan(4032, 3024, 8192)
    assert not result.scaled
    assert (result.target_width, result.target_height) == (4032, 3024)
    assert result.raw_dimensions == (4032, 3024)


def test_exactly_at_cap_is_identity():
    result = plan(8192, 8192, 8192)
    assert not result.scaled
    assert (result.target_width, result.target_height) == (8192, 8192)


@pytest.mark.parametrize(
    "width, height, expected",
    [
        (10000, 5000, (8192, 4096)),
        (5000, 10000, (4096, 8192)),
        (9000, 9000, (8192, 8192)),
        # 4501 * 8192 / 9000 = 4096.9 -> 4097 -> bumped to 4098
        (9000, 4501, (8192, 4098)),
        # 3333 * 8192 / 10001 = 2730.1 -> 2730
        (10001, 3333, (8192, 2730)),
        (20000, 3, (8192, 2)),
    ],
)
def test_scaled_plans(width: int, height: int, expected: tuple[int, int]):
    result = plan(width, height, 8192)
    assert result.scaled
    assert (result.target_width, result.target_height) == expected
    assert (result.source_width, result.source_height) == (width, height)


def test_tiny_short_side_never_collapses():
    result = plan(100000, 1, 4096)
    assert result.target_width == 4096
    assert result.target_height == 2


@pytest.mark.parametrize(
    "width, height, cap",
    [
        (12345, 6789, 8192),
        (6789, 12345, 8192),
        (9001, 9001, 4096),
        (16385, 9217, 2048),
        (4001, 3001, 4000),
    ],
)
def test_scaled_plan_invariants(width: int, height: int, cap: int):
    result = plan(width, height, cap)
    long_side = max(result.target_width, result.target_height)
    assert long_side == cap
    assert result.target_width % 2 == 0
    assert result.target_height % 2 == 0
    if width >= height:
        assert abs(result.target_height - height * cap / width) <= 1.5
    else:
        assert abs(result.target_width - width * cap / height) <= 1.5


def test_raw_dimensions_bump_odd_identity_sides():
    result = plan(4033, 3025, 8192)
    assert not result.scaled
    assert (result.target_width, result.target_height) == (4033, 3025)
    assert result.raw_dimensions == (4034, 3026)


@pytest.mark.parametrize(
    "width, height, cap",
    [
        (0, 100, 8192),
        (100, -1, 8192),
        (100, 100, 0),
        (100, 100, 8191),
        (100, 100, -2),
    ],
)
def test_invalid_arguments(width: int, height: int, cap: int):
    with pytest.raises(ValueError):
        plan(width, height, cap)
