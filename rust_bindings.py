import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple, Union

from clang import cindex
from clang.cindex import Cursor, CursorKind, TypeKind

from sdk_api import BackendGenerationError


HEADER_NAME = "header.h"
GENERATED_BANNER = "/* automatically generated by generate-bindings */"
CTYPES_PREFIX = "core::ffi"


def try_set_libclang() -> None:
    if cindex.Config.loaded:
        return

    lib_file = os.environ.get("LIBCLANG_FILE")
    lib_path = os.environ.get("LIBCLANG_PATH")
    if lib_file and os.path.exists(lib_file):
        cindex.Config.set_library_file(lib_file)
        return
    if lib_path and os.path.isdir(lib_path):
        cindex.Config.set_library_path(lib_path)
        return

    candidates = [
        r"C:\Program Files\LLVM\bin\libclang.dll",
        r"C:\Program Files (x86)\LLVM\bin\libclang.dll",
    ]
    for p in candidates:
        if os.path.exists(p):
            cindex.Config.set_library_file(p)
            return


@dataclass(frozen=True)
class Allowlist:
    functions: Tuple[str, ...] = ()
    variables: Tuple[str, ...] = ()


@dataclass
class BindingsRequest:
    header_path: str
    header_contents: str
    clang_args: List[str] = field(default_factory=list)
    allowlist: Allowlist = field(default_factory=Allowlist)


class Backend:
    """Turns a synthetic header into binding source text.

    Implementations must only emit the allow-listed functions and variables
    (plus the types they depend on) and raise ``BackendGenerationError`` when
    the header cannot be parsed.
    """

    def generate(self, request: BindingsRequest) -> str:
        raise NotImplementedError


class Out:
    def __init__(self) -> None:
        self.lines: List[str] = []
        self.ind: int = 0

    def w(self, s: str = "") -> None:
        self.lines.append(("    " * self.ind) + s)


def cur_tokens(cur: Cursor) -> List[cindex.Token]:
    try:
        return list(cur.get_tokens())
    except Exception:
        return []


def end_off(cur: Cursor) -> int:
    try:
        return cur.extent.end.offset
    except Exception:
        return -1


def tok_end(t: cindex.Token) -> int:
    try:
        return t.extent.end.offset
    except Exception:
        return -1


def loc_str(cur: Cursor) -> str:
    try:
        loc = cur.location
        f = str(loc.file) if loc.file else "<unknown>"
        return f"{f}:{loc.line}:{loc.column}"
    except Exception:
        return "<unknown>:0:0"


def diag_str(d: cindex.Diagnostic) -> str:
    loc = d.location
    f = str(loc.file) if loc.file else "<unknown>"
    return f"{f}:{loc.line}:{loc.column}: {d.spelling}"


def decl_key(cur: Cursor) -> str:
    c = cur.canonical
    loc = c.location
    f = loc.file.name if loc.file else ""
    return f"{c.kind}:{f}:{loc.offset}:{c.spelling}"


K_ELABORATED = getattr(TypeKind, "ELABORATED", None)


def desugar(t: cindex.Type) -> cindex.Type:
    while K_ELABORATED is not None and t.kind == K_ELABORATED:
        t = t.get_named_type()
    return t


def canonical_kind(t: cindex.Type) -> TypeKind:
    try:
        return t.get_canonical().kind
    except Exception:
        return t.kind


def is_function_type(t: cindex.Type) -> bool:
    return canonical_kind(t) in (TypeKind.FUNCTIONPROTO, TypeKind.FUNCTIONNOPROTO)


def is_const_qualified(t: cindex.Type) -> bool:
    try:
        return t.is_const_qualified()
    except Exception:
        return False


def is_variadic(t: cindex.Type) -> bool:
    t = t.get_canonical()
    return t.kind == TypeKind.FUNCTIONPROTO and t.is_function_variadic()


def is_anonymous(cur: Cursor) -> bool:
    s = cur.spelling or ""
    return (not s) or ("unnamed" in s) or ("anonymous" in s)


_TAG_PREFIX = ("struct ", "enum ", "union ")


def strip_type_name(spelling: str) -> str:
    s = (spelling or "").strip()
    if "unnamed" in s or "anonymous" in s:
        return ""
    for p in _TAG_PREFIX:
        if s.startswith(p):
            s = s[len(p) :].strip()
    return s


_INT_SUFFIX_CHARS = set("uUlLzZ")


def normalize_int_literal(s: str) -> str:
    i = len(s)
    while i > 0 and s[i - 1] in _INT_SUFFIX_CHARS:
        i -= 1
    return s[:i]


def normalize_float_literal(s: str) -> str:
    if s and s[-1] in ("f", "F", "l", "L"):
        core = s[:-1]
        if any(ch in core for ch in (".", "e", "E", "p", "P")):
            return core
    return s


def parse_c_number(tok: str) -> Optional[Union[int, float]]:
    if not tok or not (tok[0].isdigit() or tok[0] == "."):
        return None
    s = normalize_int_literal(tok)
    try:
        if len(s) > 1 and s[0] == "0" and s[1].isdigit():
            return int(s, 8)
        return int(s, 0)
    except ValueError:
        pass
    s = normalize_float_literal(tok)
    try:
        return float(s)
    except ValueError:
        return None


def int_const_type(v: int) -> str:
    if 0 <= v <= 0xFFFFFFFF:
        return "u32"
    if -(1 << 31) <= v < 0:
        return "i32"
    if v > 0:
        return "u64"
    return "i64"


RUST_KEYWORDS = {
    "as", "async", "await", "box", "break", "const", "continue", "crate", "dyn",
    "else", "enum", "extern", "false", "fn", "for", "if", "impl", "in", "let",
    "loop", "match", "mod", "move", "mut", "pub", "ref", "return", "self",
    "Self", "static", "struct", "super", "trait", "true", "type", "unsafe",
    "use", "where", "while", "abstract", "become", "do", "final", "macro",
    "override", "priv", "try", "typeof", "unsized", "virtual", "yield",
}


def rust_ident(name: str) -> str:
    if name in RUST_KEYWORDS:
        return name + "_"
    return name


def _ffi(name: str) -> str:
    return f"{CTYPES_PREFIX}::{name}"


_PRIMITIVES: Dict[TypeKind, str] = {
    TypeKind.VOID: _ffi("c_void"),
    TypeKind.BOOL: "bool",
    TypeKind.CHAR_S: _ffi("c_char"),
    TypeKind.CHAR_U: _ffi("c_char"),
    TypeKind.SCHAR: _ffi("c_schar"),
    TypeKind.UCHAR: _ffi("c_uchar"),
    TypeKind.SHORT: _ffi("c_short"),
    TypeKind.USHORT: _ffi("c_ushort"),
    TypeKind.INT: _ffi("c_int"),
    TypeKind.UINT: _ffi("c_uint"),
    TypeKind.LONG: _ffi("c_long"),
    TypeKind.ULONG: _ffi("c_ulong"),
    TypeKind.LONGLONG: _ffi("c_longlong"),
    TypeKind.ULONGLONG: _ffi("c_ulonglong"),
    TypeKind.INT128: "i128",
    TypeKind.UINT128: "u128",
    TypeKind.FLOAT: "f32",
    TypeKind.DOUBLE: "f64",
}

_ARRAY_KINDS = (TypeKind.CONSTANTARRAY, TypeKind.INCOMPLETEARRAY)
_RECORD_DECLS = (CursorKind.STRUCT_DECL, CursorKind.UNION_DECL)
_BLOB_UNITS = {1: "u8", 2: "u16", 4: "u32", 8: "u64"}


def contains_union(t: cindex.Type, depth: int = 0) -> bool:
    t = t.get_canonical()
    while t.kind in _ARRAY_KINDS:
        t = t.element_type.get_canonical()
    if t.kind != TypeKind.RECORD:
        return False
    d = t.get_declaration()
    if d.kind == CursorKind.UNION_DECL:
        return True
    if depth > 8:
        return False
    return any(contains_union(ch.type, depth + 1) for ch in d.get_children() if ch.kind == CursorKind.FIELD_DECL)


def is_const_object(t: cindex.Type) -> bool:
    # an array is const when its elements are
    if is_const_qualified(t):
        return True
    t = t.get_canonical()
    while t.kind in _ARRAY_KINDS:
        t = t.element_type
    return is_const_qualified(t)


class RustRenderer:
    """Renders allow-listed declarations of a translation unit as Rust FFI.

    Types are pulled in on demand: every struct, union, enum and typedef an
    allow-listed item mentions is rendered once, in the order it is first
    reached.
    """

    def __init__(self) -> None:
        self.names: Dict[str, str] = {}
        self.items: Dict[str, List[str]] = {}
        self.pending: List[Tuple[str, Cursor]] = []
        self.anon_count = 0

    def require(self, decl: Cursor, name: str) -> str:
        key = decl_key(decl)
        if key in self.names:
            return self.names[key]
        self.names[key] = name
        self.items[key] = []
        self.pending.append((key, decl))
        return name

    def tag_name(self, decl: Cursor) -> str:
        key = decl_key(decl)
        if key in self.names:
            return self.names[key]
        name = strip_type_name(decl.spelling)
        if not name or is_anonymous(decl):
            self.anon_count += 1
            name = f"__bindgen_ty_{self.anon_count}"
        return name

    def map_type(self, t: cindex.Type, param: bool = False) -> str:
        t = desugar(t)
        k = t.kind

        if k == TypeKind.TYPEDEF:
            decl = t.get_declaration()
            return self.require(decl, decl.spelling or strip_type_name(t.spelling))

        if k in (TypeKind.RECORD, TypeKind.ENUM):
            decl = t.get_declaration()
            if k == TypeKind.ENUM and is_anonymous(decl) and decl_key(decl) not in self.names:
                return self.map_type(decl.enum_type)
            return self.require(decl, self.tag_name(decl))

        if k == TypeKind.POINTER:
            pointee = t.get_pointee()
            if is_function_type(pointee):
                return f"::core::option::Option<{self.map_type(pointee)}>"
            qual = "*const" if is_const_qualified(pointee) else "*mut"
            return f"{qual} {self.map_type(pointee)}"

        if k in _ARRAY_KINDS:
            elem = t.element_type
            if param:
                qual = "*const" if is_const_qualified(elem) else "*mut"
                return f"{qual} {self.map_type(elem)}"
            n = t.element_count if k == TypeKind.CONSTANTARRAY else 0
            return f"[{self.map_type(elem)}; {n}]"

        if k in (TypeKind.FUNCTIONPROTO, TypeKind.FUNCTIONNOPROTO):
            return self.fn_type(t)

        if k in _PRIMITIVES:
            return _PRIMITIVES[k]

        canon = t.get_canonical()
        if canon.kind != k:
            return self.map_type(canon, param)

        raise BackendGenerationError(f"unsupported C type {t.spelling!r} ({k})")

    def ret_suffix(self, t: cindex.Type) -> str:
        if canonical_kind(t) == TypeKind.VOID:
            return ""
        return f" -> {self.map_type(t)}"

    def fn_type(self, ft: cindex.Type) -> str:
        params: List[str] = []
        if ft.kind == TypeKind.FUNCTIONPROTO:
            for i, a in enumerate(ft.argument_types(), 1):
                params.append(f"arg{i}: {self.map_type(a, param=True)}")
            if ft.is_function_variadic():
                params.append("...")
        return f'unsafe extern "C" fn({", ".join(params)}){self.ret_suffix(ft.get_result())}'

    def render_typedef(self, cur: Cursor, name: str) -> List[str]:
        underlying = cur.underlying_typedef_type
        u = desugar(underlying)
        if u.kind in (TypeKind.RECORD, TypeKind.ENUM):
            d = u.get_declaration()
            key = decl_key(d)
            if key not in self.names and (is_anonymous(d) or strip_type_name(d.spelling) == name):
                self.require(d, name)
                return []
            if self.names.get(key) == name:
                return []

        target = self.map_type(underlying)
        if target == name:
            return []
        return [f"pub type {name} = {target};"]

    def render_opaque(self, defn: Cursor, name: str) -> List[str]:
        size = max(defn.type.get_size(), 0)
        align = defn.type.get_align()
        unit = _BLOB_UNITS.get(align, "u8")
        count = size // align if unit != "u8" else size

        o = Out()
        o.w("#[repr(C)]")
        o.w("#[derive(Debug, Copy, Clone)]")
        o.w(f"pub struct {name} {{")
        o.ind += 1
        o.w(f"pub _bindgen_opaque_blob: [{unit}; {count}],")
        o.ind -= 1
        o.w("}")
        return o.lines

    def render_record(self, decl: Cursor, name: str) -> List[str]:
        defn = decl.get_definition()
        o = Out()

        if defn is None:
            o.w("#[repr(C)]")
            o.w("#[derive(Debug, Copy, Clone)]")
            o.w(f"pub struct {name} {{")
            o.ind += 1
            o.w("_unused: [u8; 0],")
            o.ind -= 1
            o.w("}")
            return o.lines

        children = list(defn.get_children())
        fields = [ch for ch in children if ch.kind == CursorKind.FIELD_DECL]
        if any(f.is_bitfield() for f in fields):
            return self.render_opaque(defn, name)

        nested = 0
        for ch in children:
            if ch.kind in _RECORD_DECLS + (CursorKind.ENUM_DECL,) and is_anonymous(ch):
                nested += 1
                self.require(ch, f"{name}__bindgen_ty_{nested}")

        field_decls: Set[str] = set()
        for f in fields:
            ft = desugar(f.type)
            while ft.kind in _ARRAY_KINDS:
                ft = desugar(ft.element_type)
            if ft.kind in (TypeKind.RECORD, TypeKind.ENUM):
                field_decls.add(decl_key(ft.get_declaration()))

        is_union = defn.kind == CursorKind.UNION_DECL
        debug = not is_union
        members: List[str] = []
        anon = 0
        for ch in children:
            if ch.kind == CursorKind.FIELD_DECL:
                members.append(f"pub {rust_ident(ch.spelling)}: {self.map_type(ch.type)},")
                debug = debug and not contains_union(ch.type)
            elif ch.kind in _RECORD_DECLS and is_anonymous(ch) and decl_key(ch) not in field_decls:
                # C11 anonymous struct/union member
                anon += 1
                members.append(f"pub __bindgen_anon_{anon}: {self.names[decl_key(ch)]},")
                debug = debug and ch.kind != CursorKind.UNION_DECL

        o.w("#[repr(C)]")
        o.w("#[derive(Debug, Copy, Clone)]" if debug else "#[derive(Copy, Clone)]")
        o.w(f"pub {'union' if is_union else 'struct'} {name} {{")
        o.ind += 1
        for m in members:
            o.w(m)
        o.ind -= 1
        o.w("}")
        return o.lines

    def render_enum(self, decl: Cursor, name: str) -> List[str]:
        defn = decl.get_definition() or decl
        int_t = self.map_type(defn.enum_type)

        o = Out()
        for ch in defn.get_children():
            if ch.kind == CursorKind.ENUM_CONSTANT_DECL:
                o.w(f"pub const {name}_{ch.spelling}: {name} = {ch.enum_value};")
        o.w(f"pub type {name} = {int_t};")
        return o.lines

    def render_decl(self, decl: Cursor, name: str) -> List[str]:
        k = decl.kind
        if k == CursorKind.TYPEDEF_DECL:
            return self.render_typedef(decl, name)
        if k in _RECORD_DECLS:
            return self.render_record(decl, name)
        return self.render_enum(decl, name)

    def located(self, cur: Cursor, name: str, render, *args) -> List[str]:
        try:
            return render(*args)
        except BackendGenerationError as e:
            raise BackendGenerationError(f"{loc_str(cur)}: {name}: {e}") from e

    def render_macro(self, cur: Cursor) -> Optional[str]:
        # function-like macros never reduce to a single literal token below
        end = end_off(cur)
        toks = [t.spelling for t in cur_tokens(cur) if end < 0 or tok_end(t) <= end][1:]
        while len(toks) >= 2 and toks[0] == "(" and toks[-1] == ")":
            toks = toks[1:-1]
        neg = bool(toks) and toks[0] == "-"
        if neg:
            toks = toks[1:]
        if len(toks) != 1:
            return None

        v = parse_c_number(toks[0])
        if v is None:
            return None
        if neg:
            v = -v

        name = cur.spelling
        if isinstance(v, float):
            return f"pub const {name}: f64 = {v!r};"
        return f"pub const {name}: {int_const_type(v)} = {v};"

    def _extern_block(self, cur: Cursor, decl: str) -> List[str]:
        o = Out()
        o.w('extern "C" {')
        o.ind += 1
        if rust_ident(cur.spelling) != cur.spelling:
            o.w(f'#[link_name = "{cur.spelling}"]')
        o.w(decl)
        o.ind -= 1
        o.w("}")
        return o.lines

    def render_var(self, cur: Cursor) -> List[str]:
        t = cur.type
        static = "pub static" if is_const_object(t) else "pub static mut"
        return self._extern_block(cur, f"{static} {rust_ident(cur.spelling)}: {self.map_type(t)};")

    def render_function(self, cur: Cursor) -> List[str]:
        params: List[str] = []
        for i, a in enumerate(cur.get_arguments(), 1):
            pname = rust_ident(a.spelling) if a.spelling else f"arg{i}"
            params.append(f"{pname}: {self.map_type(a.type, param=True)}")
        if is_variadic(cur.type):
            params.append("...")

        ret = self.ret_suffix(cur.result_type)
        return self._extern_block(cur, f"pub fn {rust_ident(cur.spelling)}({', '.join(params)}){ret};")

    def render(self, tu: cindex.TranslationUnit, allowlist: Allowlist) -> str:
        fn_names = set(allowlist.functions)
        var_names = set(allowlist.variables)
        seen_fns: Set[str] = set()
        seen_vars: Set[str] = set()

        consts: List[str] = []
        globals_: List[List[str]] = []
        funcs: List[List[str]] = []

        for c in tu.cursor.get_children():
            name = c.spelling
            if c.kind == CursorKind.MACRO_DEFINITION:
                if name in var_names and name not in seen_vars:
                    line = self.render_macro(c)
                    if line:
                        seen_vars.add(name)
                        consts.append(line)
            elif c.kind == CursorKind.VAR_DECL:
                if name in var_names and name not in seen_vars:
                    seen_vars.add(name)
                    globals_.append(self.located(c, name, self.render_var, c))
            elif c.kind == CursorKind.FUNCTION_DECL:
                if name in fn_names and name not in seen_fns:
                    seen_fns.add(name)
                    funcs.append(self.located(c, name, self.render_function, c))

        while self.pending:
            key, decl = self.pending.pop(0)
            self.items[key] = self.located(decl, self.names[key], self.render_decl, decl, self.names[key])

        blocks: List[List[str]] = [[GENERATED_BANNER]]
        if consts:
            blocks.append(consts)
        blocks.extend(lines for lines in self.items.values() if lines)
        blocks.extend(globals_)
        blocks.extend(funcs)
        return "\n\n".join("\n".join(b) for b in blocks) + "\n"


class ClangBackend(Backend):
    """Parses the synthetic header with libclang and renders Rust bindings."""

    def generate(self, request: BindingsRequest) -> str:
        try:
            idx = cindex.Index.create()
        except cindex.LibclangError as e:
            raise BackendGenerationError(f"failed to load libclang: {e}") from e

        try:
            tu = idx.parse(
                request.header_path,
                args=list(request.clang_args),
                unsaved_files=[(request.header_path, request.header_contents)],
                options=cindex.TranslationUnit.PARSE_DETAILED_PROCESSING_RECORD,
            )
        except cindex.TranslationUnitLoadError as e:
            raise BackendGenerationError(f"failed to parse {request.header_path}: {e}") from e

        errors = [d for d in tu.diagnostics if d.severity >= cindex.Diagnostic.Error]
        if errors:
            raise BackendGenerationError(
                "failed to generate bindings:\n" + "\n".join(diag_str(d) for d in errors)
            )

        return RustRenderer().render(tu, request.allowlist)
