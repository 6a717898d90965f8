"""
conftest.py - Shared fakes for the external collaborators.

FakeGateway stands in for ToolGateway: it "resolves" every tool to a fake
path, records each invocation and writes the files a real collaborator would
have produced. FakeExifTool serves canned exiftool JSON records per file name.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any

import pytest
from exiftool.exceptions import ExifToolExecuteError

from hdr_errors import ToolExecutionFailed, ToolNotFound
from tool_gateway import Tool, ToolGateway, ToolPaths, ToolResult


class FakeExifTool:
    """Context-managed stand-in for exiftool.ExifToolHelper."""

    def __init__(self, gateway: FakeGateway, numeric: bool) -> None:
        self.gateway = gateway
        self.numeric = numeric

    def __enter__(self) -> FakeExifTool:
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None

    def get_tags(self, files: Sequence[str], tags: Sequence[str]) -> Any:
        path = Path(files[0])
        self.gateway.tag_queries.append((path.name, tuple(tags), self.numeric))
        if path.name in self.gateway.raw_records:
            return self.gateway.raw_records[path.name]
        record = self.gateway.tags.get(path.name, {})
        return [
            {"SourceFile": str(path), **{k: v for k, v in record.items() if k in tags}}
        ]

    def execute(self, *params: str) -> str:
        self.gateway.metadata_copies.append(tuple(params))
        if self.gateway.metadata_copy_error:
            raise ExifToolExecuteError(1, "", "Error: cannot write", list(params))
        return "    1 image files updated\n"


def _flag_value(args: Sequence[str], flag: str) -> str:
    return args[list(args).index(flag) + 1]


class FakeGateway(ToolGateway):
    """ToolGateway that never spawns a process."""

    def __init__(
        self,
        *,
        tags: Mapping[str, Mapping[str, Any]] | None = None,
        missing: Sequence[Tool] = (),
        failing: Mapping[Tool, int] | None = None,
        raw_size: int = 0,
        skip_outputs: Sequence[Tool] = (),
    ) -> None:
        super().__init__(ToolPaths())
        self.tags: dict[str, Mapping[str, Any]] = dict(tags or {})
        self.raw_records: dict[str, Any] = {}
        self.missing = set(missing)
        self.failing = dict(failing or {})
        self.raw_size = raw_size
        self.skip_outputs = set(skip_outputs)
        self.metadata_copy_error = False
        self.invocations: list[tuple[Tool, tuple[str, ...]]] = []
        self.tag_queries: list[tuple[str, tuple[str, ...], bool]] = []
        self.metadata_copies: list[tuple[str, ...]] = []

    def resolve(self, tool: Tool) -> str:
        if tool in self.missing:
            raise ToolNotFound(tool.value, location=tool.value)
        return f"/fake/bin/{tool.value}"

    def invoke(self, tool: Tool, args: Sequence[str]) -> ToolResult:
        argv = (self.resolve(tool), *args)
        self.invocations.append((tool, tuple(args)))
        if tool in self.failing:
            raise ToolExecutionFailed(
                tool.value,
                self.failing[tool],
                stdout="",
                stderr=f"{tool.value}: simulated failure",
                argv=argv,
            )
        if tool not in self.skip_outputs:
            self._produce(tool, args)
        return ToolResult(program=tool.value, argv=argv, exit_code=0)

    def exiftool(self, *, numeric: bool = False) -> FakeExifTool:  # type: ignore[override]
        self.resolve(Tool.EXIFTOOL)
        return FakeExifTool(self, numeric)

    def tools_invoked(self) -> list[Tool]:
        return [tool for tool, _ in self.invocations]

    def _produce(self, tool: Tool, args: Sequence[str]) -> None:
        match tool:
            case Tool.HEIF_DEC:
                base = Path(args[-1])
                base.write_bytes(b"\xff\xd8base")
                aux = base.with_name(
                    f"{base.stem}-urn-com-apple-photo-2020-aux-hdrgainmap{base.suffix}"
                )
                aux.write_bytes(b"\xff\xd8gainmap")
            case Tool.ULTRAHDR_APP:
                out = Path(_flag_value(args, "-z"))
                if _flag_value(args, "-m") == "1":
                    out.write_bytes(b"\0" * self.raw_size)
                else:
                    out.write_bytes(b"\xff\xd8ultrahdr")
            case Tool.FFMPEG:
                out = Path(args[-1])
                if out.suffix == ".raw":
                    out.write_bytes(b"\0" * self.raw_size)
                else:
                    out.write_bytes(b"II*\0tiff")
            case Tool.EXIFTOOL:
                pass


@pytest.fixture
def fake_gateway() -> Callable[..., FakeGateway]:
    """Factory for FakeGateway instances."""
    return FakeGateway
