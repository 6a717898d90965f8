from __future__ import annotations

import os
import sys
from pathlib import Path

import exiftool
import pytest
from exiftool.exceptions import ExifToolNotRunning, ExifToolVersionError

from asset_probe import (
    COLOR_TAGS,
    AssetDescriptor,
    copy_metadata,
    probe,
    read_gain_values,
    sync_timestamp,
)
from hdr_errors import (
    DimensionsUnavailable,
    MetadataCopyFailed,
    ToolExecutionFailed,
    ToolNotFound,
    UnexpectedOutputShape,
)
from tool_gateway import Tool, ToolGateway, ToolPaths


def test_probe_reads_dimensions_and_tags(fake_gateway):
    gateway = fake_gateway(
        tags={
            "scan.tif": {
                "ImageWidth": 6000,
                "ImageHeight": 4000,
                "TransferCharacteristics": "SMPTE ST 2084",
                "ColorPrimaries": "BT.2020",
                "ProfileDescription": "Rec. ITU-R BT.2100 PQ",
            }
        }
    )
    descriptor = probe(gateway, Path("scan.tif"))
    assert (descriptor.width, descriptor.height) == (6000, 4000)
    assert descriptor.transfer_tag == "SMPTE ST 2084"
    assert descriptor.present_color_tags == ("BT.2020", "Rec. ITU-R BT.2100 PQ")
    assert len(descriptor.color_tags) == len(COLOR_TAGS)

    # One structured query, print conversion on
    assert len(gateway.tag_queries) == 1
    name, tags, numeric = gateway.tag_queries[0]
    assert name == "scan.tif"
    assert "ImageWidth" in tags and "ICCProfileName" in tags
    assert numeric is False


@pytest.mark.parametrize("placeholder", ["Unknown", "n/a", "UNCALIBRATED", "none", "undefined", "", "  "])
def test_probe_normalizes_placeholders(fake_gateway, placeholder: str):
    gateway = fake_gateway(
        tags={
            "a.png": {
                "ImageWidth": 10,
                "ImageHeight": 10,
                "TransferCharacteristics": placeholder,
                "ColorSpace": placeholder,
            }
        }
    )
    descriptor = probe(gateway, Path("a.png"))
    assert descriptor.transfer_tag is None
    assert descriptor.present_color_tags == ()


def test_probe_missing_color_tags_is_not_an_error(fake_gateway):
    gateway = fake_gateway(tags={"a.png": {"ImageWidth": "640", "ImageHeight": 480}})
    descriptor = probe(gateway, Path("a.png"))
    assert (descriptor.width, descriptor.height) == (640, 480)
    assert descriptor.transfer_tag is None
    assert descriptor.present_color_tags == ()


@pytest.mark.parametrize(
    "record",
    [
        {"ImageHeight": 100},
        {"ImageWidth": 100},
        {"ImageWidth": 0, "ImageHeight": 100},
        {"ImageWidth": -5, "ImageHeight": 100},
        {"ImageWidth": "wide", "ImageHeight": 100},
        {"ImageWidth": 100.5, "ImageHeight": 100},
    ],
)
def test_probe_rejects_bad_dimensions(fake_gateway, record):
    gateway = fake_gateway(tags={"a.jpg": record})
    with pytest.raises(DimensionsUnavailable) as excinfo:
        probe(gateway, Path("a.jpg"))
    assert excinfo.value.path == Path("a.jpg")


@pytest.mark.parametrize(
    "records",
    [
        [],
        [{"ImageWidth": 1, "ImageHeight": 1}, {"ImageWidth": 1, "ImageHeight": 1}],
        ["ImageWidth: 1"],
        {"ImageWidth": 1, "ImageHeight": 1},
    ],
)
def test_probe_rejects_unexpected_record_shapes(fake_gateway, records):
    gateway = fake_gateway()
    gateway.raw_records["a.jpg"] = records
    with pytest.raises(UnexpectedOutputShape):
        probe(gateway, Path("a.jpg"))


def test_probe_requires_exiftool(fake_gateway):
    gateway = fake_gateway(missing=[Tool.EXIFTOOL])
    with pytest.raises(ToolNotFound):
        probe(gateway, Path("a.jpg"))


def test_descriptor_list_values_are_joined():
    descriptor = AssetDescriptor.from_exiftool(
        Path("x.avif"),
        {"ImageWidth": 2, "ImageHeight": 2, "ColorPrimaries": ["BT.2020", "BT.2100"]},
    )
    assert descriptor.present_color_tags == ("BT.2020 BT.2100",)


def test_read_gain_values_numeric(fake_gateway):
    gateway = fake_gateway(tags={"IMG_0001.HEIC": {"HDRHeadroom": 1.2, "HDRGain": "0.004"}})
    headroom, gain = read_gain_values(gateway, Path("IMG_0001.HEIC"))
    assert headroom == pytest.approx(1.2)
    assert gain == pytest.approx(0.004)
    assert gateway.tag_queries[0][2] is True


def test_read_gain_values_absent(fake_gateway):
    gateway = fake_gateway(tags={"other.heic": {"HDRHeadroom": "n/a"}})
    assert read_gain_values(gateway, Path("other.heic")) == (None, None)


def test_copy_metadata_arguments(fake_gateway):
    gateway = fake_gateway()
    copy_metadata(gateway, Path("src.heic"), Path("out.jpg"))
    assert gateway.metadata_copies == [
        (
            "-tagsFromFile",
            "src.heic",
            "-all:all",
            "--ICC_Profile:all",
            "--Orientation",
            "--XMP-hdrgm:all",
            "-overwrite_original",
            "out.jpg",
        )
    ]


def test_copy_metadata_custom_exclusions(fake_gateway):
    gateway = fake_gateway()
    copy_metadata(gateway, Path("a.tif"), Path("b.jpg"), exclude=())
    assert gateway.metadata_copies[0] == (
        "-tagsFromFile",
        "a.tif",
        "-all:all",
        "-overwrite_original",
        "b.jpg",
    )


def test_copy_metadata_failure(fake_gateway):
    gateway = fake_gateway()
    gateway.metadata_copy_error = True
    with pytest.raises(MetadataCopyFailed) as excinfo:
        copy_metadata(gateway, Path("src.heic"), Path("out.jpg"))
    assert excinfo.value.source == Path("src.heic")
    assert excinfo.value.target == Path("out.jpg")
    assert "cannot write" in str(excinfo.value)


def test_sync_timestamp(tmp_path: Path):
    source = tmp_path / "src.heic"
    target = tmp_path / "out.jpg"
    source.write_bytes(b"a")
    target.write_bytes(b"b")
    os.utime(source, (1_600_000_000, 1_600_000_000))

    assert sync_timestamp(source, target) is True
    assert target.stat().st_mtime == 1_600_000_000


def test_sync_timestamp_is_non_fatal(tmp_path: Path):
    target = tmp_path / "out.jpg"
    target.write_bytes(b"b")
    assert sync_timestamp(tmp_path / "missing.heic", target) is False


# =============================================================================
# exiftool start-up failures
# =============================================================================


def _raise(error: Exception):
    def run(self) -> None:
        raise error

    return run


STARTUP_FAILURES = [
    pytest.param(ExifToolVersionError("exiftool version '12.00' < required"), id="version"),
    pytest.param(RuntimeError("exiftool did not execute successfully"), id="died"),
]


@pytest.fixture
def real_gateway() -> ToolGateway:
    # Resolves to an existing executable; the session itself is patched
    return ToolGateway(ToolPaths(exiftool=sys.executable))


@pytest.mark.parametrize("error", STARTUP_FAILURES)
def test_probe_startup_failure_is_tool_failure(real_gateway, monkeypatch, error):
    monkeypatch.setattr(exiftool.ExifToolHelper, "run", _raise(error))
    with pytest.raises(ToolExecutionFailed) as excinfo:
        probe(real_gateway, Path("IMG_0001.HEIC"))
    assert excinfo.value.program == "exiftool"
    assert excinfo.value.exit_code is None
    assert excinfo.value.__cause__ is error


@pytest.mark.parametrize("error", STARTUP_FAILURES)
def test_gain_read_startup_failure_is_tool_failure(real_gateway, monkeypatch, error):
    monkeypatch.setattr(exiftool.ExifToolHelper, "run", _raise(error))
    with pytest.raises(ToolExecutionFailed):
        read_gain_values(real_gateway, Path("IMG_0001.HEIC"))


def test_probe_session_not_running(real_gateway, monkeypatch):
    monkeypatch.setattr(exiftool.ExifToolHelper, "run", lambda self: None)
    with pytest.raises(ToolExecutionFailed) as excinfo:
        probe(real_gateway, Path("IMG_0001.HEIC"))
    assert isinstance(excinfo.value.__cause__, ExifToolNotRunning)


@pytest.mark.parametrize("error", STARTUP_FAILURES)
def test_copy_metadata_startup_failure(real_gateway, monkeypatch, error):
    monkeypatch.setattr(exiftool.ExifToolHelper, "run", _raise(error))
    with pytest.raises(MetadataCopyFailed) as excinfo:
        copy_metadata(real_gateway, Path("src.heic"), Path("out.jpg"))
    assert excinfo.value.__cause__ is error
    assert excinfo.value.target == Path("out.jpg")


def test_copy_metadata_session_not_running(real_gateway, monkeypatch):
    monkeypatch.setattr(exiftool.ExifToolHelper, "run", lambda self: None)
    with pytest.raises(MetadataCopyFailed) as excinfo:
        copy_metadata(real_gateway, Path("src.heic"), Path("out.jpg"))
    assert isinstance(excinfo.value.__cause__, ExifToolNotRunning)
