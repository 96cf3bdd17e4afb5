"""
Test fixtures for generate-bindings.

Builds a throwaway SDK tree laid out like a firmware build:

    <tmp>/firmware/toolchain/<host>/arm-none-eabi/include/
    <tmp>/firmware/build/f7-firmware-D/sdk_headers/{sdk.opts,api_symbols.csv}
"""
from __future__ import annotations

import json
import os
import textwrap
from pathlib import Path
from typing import List

import pytest

from rust_bindings import Backend, BindingsRequest
from sdk_api import BackendGenerationError, toolchain_subpath


SDK_REL = Path("firmware") / "build" / "f7-firmware-D" / "sdk_headers"

API_SYMBOLS_CSV = textwrap.dedent("""\
    entry,status,name,type,params
    Version,+,11.2,,
    Header,+,f7_sdk/furi.h,,
    Header,-,f7_sdk/internal.h,,
    Header,+,f7_sdk/gui.h,,
    Function,+,furi_delay_ms,void,uint32_t
    Function,-,furi_hidden,void,
    Function,+,gui_add_view,void,
    Variable,+,furi_hal_version,const char*,
    Variable,-,secret_table,int,
    Struct,+,ViewPort,,
""")

SDK_OPTS = {
    "sdk_symbols": "SDK_ROOT_DIR/api_symbols.csv",
    "cc_args": '-DNDEBUG -DFURI_VERSION="1 2" -ISDK_ROOT_DIR/f7_sdk -mcpu=cortex-m4',
    "cpp_args": "-fno-rtti",
    "linker_args": "-Wl,--gc-sections",
    "linker_script": "SDK_ROOT_DIR/linker.ld",
}


class FakeBackend(Backend):
    """Records requests and returns canned text instead of invoking libclang."""

    def __init__(self, text: str = "// bindings\n") -> None:
        self.text = text
        self.requests: List[BindingsRequest] = []

    def generate(self, request: BindingsRequest) -> str:
        self.requests.append(request)
        funcs = ", ".join(request.allowlist.functions)
        return f"{self.text}// {request.header_contents.splitlines()[0]}\n// {funcs}\n"


class FailingBackend(Backend):
    def __init__(self) -> None:
        self.calls = 0

    def generate(self, request: BindingsRequest) -> str:
        self.calls += 1
        raise BackendGenerationError("header.h:1:10: fatal error: 'furi.h' file not found")


def write_sdk(root: Path, csv_text: str = API_SYMBOLS_CSV, opts: dict = None, toolchain: bool = True) -> Path:
    sdk = root / SDK_REL
    sdk.mkdir(parents=True, exist_ok=True)
    (sdk / "sdk.opts").write_text(json.dumps(SDK_OPTS if opts is None else opts), encoding="utf-8")
    (sdk / "api_symbols.csv").write_text(csv_text, encoding="utf-8")
    if toolchain:
        (sdk / toolchain_subpath()).resolve().mkdir(parents=True, exist_ok=True)
    return sdk


@pytest.fixture
def sdk_dir(tmp_path: Path) -> Path:
    return write_sdk(tmp_path)


@pytest.fixture
def sdk_without_toolchain(tmp_path: Path) -> Path:
    return write_sdk(tmp_path, toolchain=False)


@pytest.fixture
def work_dir(tmp_path: Path, monkeypatch) -> Path:
    """Separate current directory for the generated bindings.rs."""
    out = tmp_path / "out"
    out.mkdir()
    monkeypatch.chdir(out)
    return out


@pytest.fixture
def write_file(tmp_path: Path):
    def _write(name: str, text: str) -> Path:
        p = tmp_path / name
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(textwrap.dedent(text), encoding="utf-8")
        return p
    return _write


def posix(p) -> str:
    return os.fspath(p).replace("\\", "/")
