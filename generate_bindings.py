#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Generate ``bindings.rs`` for the Flipper Zero SDK.

Usage: ``generate-bindings flipperzero-firmware/build/f7-firmware-D/sdk_headers``
"""

from __future__ import annotations

import argparse
import os
import sys
from typing import List, Optional

from rust_bindings import (
    HEADER_NAME,
    Allowlist,
    Backend,
    BindingsRequest,
    ClangBackend,
    try_set_libclang,
)
from sdk_api import (
    SDK_OPTS,
    ApiSymbols,
    GenerateBindingsError,
    OutputWriteError,
    SdkOpts,
    SdkPaths,
    generate_bindings_header,
    load_sdk_opts,
    load_symbols,
    split_args,
)

__version__ = "0.1.0"

OUTFILE = "bindings.rs"
SYSTEM_HEADER_PREFIX = "f7_sdk/"


def build_request(paths: SdkPaths, opts: SdkOpts, symbols: ApiSymbols) -> BindingsRequest:
    # opts must already have SDK_ROOT_DIR substituted
    cc_flags = split_args(opts.cc_args, "cc_args")

    clang_args: List[str] = [
        "-working-directory",
        paths.root,
        f"--system-header-prefix={SYSTEM_HEADER_PREFIX}",
        "-isystem",
        paths.toolchain,
    ]
    clang_args += cc_flags
    clang_args += ["-Wno-error", "-fshort-enums"]

    return BindingsRequest(
        header_path=paths.join(HEADER_NAME),
        header_contents=generate_bindings_header(symbols),
        clang_args=clang_args,
        allowlist=Allowlist(
            functions=tuple(symbols.functions),
            variables=("API_VERSION",) + tuple(symbols.variables),
        ),
    )


def write_output(path: str, text: str) -> None:
    try:
        with open(path, "w", encoding="utf-8", newline="\n") as f:
            f.write(text)
    except OSError as e:
        raise OutputWriteError(f"failed to write bindings to {path}: {e}") from e


def generate(
    sdk: str,
    backend: Optional[Backend] = None,
    cwd: Optional[str] = None,
    platform: Optional[str] = None,
) -> str:
    """Run the whole pipeline for one SDK and return the output path."""
    cwd = cwd or os.getcwd()
    paths = SdkPaths.resolve(sdk, cwd=cwd, platform=platform)

    opts = load_sdk_opts(paths.join(SDK_OPTS)).with_sdk_root(paths.root)
    symbols = load_symbols(paths.join(opts.sdk_symbols))
    request = build_request(paths, opts, symbols)

    print(f"Generating bindings for SDK {symbols.api_version:08X}")
    text = (backend or ClangBackend()).generate(request)

    outfile = os.path.join(cwd, OUTFILE)
    write_output(outfile, text)
    return outfile


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(
        prog="generate-bindings",
        description="Generate Rust bindings for the public API of a Flipper Zero SDK.",
    )
    ap.add_argument("sdk", help="path to the SDK root (directory containing sdk.opts)")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return ap.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    try:
        try_set_libclang()
        outfile = generate(args.sdk)
    except GenerateBindingsError as e:
        print(f"[error] {e}", file=sys.stderr)
        return 1

    print(f"[ok] wrote {outfile}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
