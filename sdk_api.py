# -*- coding: utf-8 -*-

from __future__ import annotations

import csv
import dataclasses
import json
import os
import re
import shlex
import sys
from dataclasses import dataclass, field
from typing import List, NamedTuple, Optional


SDK_OPTS = "sdk.opts"
VISIBILITY_PUBLIC = "+"
SDK_ROOT_PLACEHOLDER = "SDK_ROOT_DIR"

TOOLCHAIN_WINDOWS = "../../../toolchain/i686-windows/arm-none-eabi/include"
TOOLCHAIN_LINUX = "../../../toolchain/x86_64-linux/arm-none-eabi/include"

RE_VERSION = re.compile(r"([0-9]+)\.([0-9]+)")
U16_MAX = 0xFFFF


class GenerateBindingsError(Exception):
    pass


class SdkNotFound(GenerateBindingsError):
    pass


class ConfigError(GenerateBindingsError):
    pass


class ConfigNotFound(ConfigError):
    pass


class ConfigParseError(ConfigError):
    pass


class SymbolParseError(ConfigError):
    pass


class ToolchainMissing(GenerateBindingsError):
    pass


class BackendGenerationError(GenerateBindingsError):
    pass


class OutputWriteError(GenerateBindingsError):
    pass


class SymbolRecord(NamedTuple):
    name: str
    visibility: str
    value: str


@dataclass
class ApiSymbols:
    api_version: int = 0
    headers: List[str] = field(default_factory=list)
    functions: List[str] = field(default_factory=list)
    variables: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SdkOpts:
    sdk_symbols: str
    cc_args: str
    cpp_args: str
    linker_args: str
    linker_script: str

    def with_sdk_root(self, sdk_root: str) -> SdkOpts:
        return dataclasses.replace(
            self,
            **{f.name: replace_sdk_root_dir(getattr(self, f.name), sdk_root) for f in dataclasses.fields(self)},
        )


def to_posix(path: str) -> str:
    # include paths with backslashes break once the flags go through shlex
    return path.replace("\\", "/")


def replace_sdk_root_dir(value: str, sdk_root: str) -> str:
    return to_posix(value.replace(SDK_ROOT_PLACEHOLDER, sdk_root))


def split_args(value: str, field_name: str = "cc_args") -> List[str]:
    try:
        return shlex.split(value)
    except ValueError as e:
        raise ConfigParseError(f"failed to split {SDK_OPTS} {field_name}: {e}") from e


def toolchain_subpath(platform: Optional[str] = None) -> str:
    platform = platform or sys.platform
    if platform.startswith("win"):
        return TOOLCHAIN_WINDOWS
    return TOOLCHAIN_LINUX


@dataclass(frozen=True)
class SdkPaths:
    root: str
    toolchain: str

    @classmethod
    def resolve(cls, sdk: str, cwd: Optional[str] = None, platform: Optional[str] = None) -> SdkPaths:
        """Make the SDK root and its toolchain include dir absolute.

        The root is joined onto ``cwd`` rather than canonicalized: realpath on
        Windows yields ``\\\\?\\C:\\...`` style paths that clang rejects.
        """
        cwd = cwd or os.getcwd()
        root = os.path.normpath(os.path.join(cwd, sdk))
        if not os.path.isdir(root):
            raise SdkNotFound(f"No such directory: {sdk}")

        subpath = toolchain_subpath(platform)
        toolchain = os.path.normpath(os.path.join(root, subpath))
        if not os.path.isdir(toolchain):
            raise ToolchainMissing(
                f"Failed to find toolchain at {subpath!r}.\n"
                "You may need to download it first."
            )

        return cls(root=to_posix(root), toolchain=to_posix(toolchain))

    def join(self, path: str) -> str:
        return to_posix(os.path.join(self.root, path))


def load_sdk_opts(path: str) -> SdkOpts:
    """Load the ``sdk.opts`` JSON file of compiler and linker flags."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise ConfigNotFound(f"failed to open {SDK_OPTS}: {path}") from e
    except OSError as e:
        raise ConfigParseError(f"failed to read {SDK_OPTS}: {e}") from e
    except ValueError as e:
        raise ConfigParseError(f"failed to parse {SDK_OPTS} JSON: {e}") from e

    if not isinstance(data, dict):
        raise ConfigParseError(f"failed to parse {SDK_OPTS} JSON: expected an object")

    values = {}
    for f in dataclasses.fields(SdkOpts):
        if f.name not in data:
            raise ConfigParseError(f"failed to parse {SDK_OPTS} JSON: missing field `{f.name}`")
        v = data[f.name]
        if not isinstance(v, str):
            raise ConfigParseError(f"failed to parse {SDK_OPTS} JSON: `{f.name}` must be a string")
        values[f.name] = v

    return SdkOpts(**values)


def load_symbol_manifest(path: str) -> List[SymbolRecord]:
    try:
        f = open(path, "r", encoding="utf-8", newline="")
    except FileNotFoundError as e:
        raise ConfigNotFound(f"failed to load symbol file: {path}") from e
    except OSError as e:
        raise SymbolParseError(f"failed to load symbol file: {e}") from e

    records: List[SymbolRecord] = []
    width = 0
    with f:
        reader = csv.reader(f, strict=True)
        try:
            for row in reader:
                if not row:
                    continue
                if not width:
                    width = len(row)
                if len(row) < 3 or len(row) != width:
                    raise SymbolParseError(
                        f"failed to parse symbol record on line {reader.line_num}: "
                        f"expected {max(width, 3)} fields, found {len(row)}"
                    )
                records.append(SymbolRecord(row[0], row[1], row[2]))
        except (csv.Error, UnicodeDecodeError) as e:
            raise SymbolParseError(f"failed to parse symbol record: {e}") from e

    return records


def parse_version(value: str) -> int:
    m = RE_VERSION.fullmatch(value)
    if not m:
        raise SymbolParseError(f"failed to parse symbol version: {value!r}")

    major, minor = int(m.group(1)), int(m.group(2))
    if major > U16_MAX or minor > U16_MAX:
        raise SymbolParseError(f"symbol version out of range: {value!r}")

    return (major << 16) | minor


def filter_symbols(records: List[SymbolRecord]) -> ApiSymbols:
    symbols = ApiSymbols()
    version: Optional[int] = None

    for rec in records:
        if rec.visibility != VISIBILITY_PUBLIC:
            continue

        if rec.name == "Version":
            v = parse_version(rec.value)
            if version is not None and v != version:
                raise SymbolParseError(
                    f"conflicting symbol versions: {version:08X} and {v:08X}"
                )
            version = v
        elif rec.name == "Header":
            symbols.headers.append(rec.value)
        elif rec.name == "Function":
            symbols.functions.append(rec.value)
        elif rec.name == "Variable":
            symbols.variables.append(rec.value)

    if version is not None:
        symbols.api_version = version
    return symbols


def load_symbols(path: str) -> ApiSymbols:
    """Load the public symbols from ``api_symbols.csv``."""
    return filter_symbols(load_symbol_manifest(path))


def generate_bindings_header(api_symbols: ApiSymbols) -> str:
    lines: List[str] = [f"#define API_VERSION 0x{api_symbols.api_version:08X}"]
    for header in api_symbols.headers:
        lines.append(f'#include "{header}"')
    return "\n".join(lines)
