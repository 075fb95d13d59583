"""FFI bindings generator driven by DWARF debug information.

Reads the debug information embedded in a compiled shared library, keeps the
functions the library actually exports, rebuilds the C type graph they use and
renders bindings for a foreign-call runtime (koffi for JavaScript, ctypes for
Python), plain C declarations or a JSON dump of the intermediate model.

Usage:
    python dwarfbind.py libfoo.so --target js > foo.js
    python dwarfbind.py libfoo.so --target ctypes --mode functions > foo.py
    python dwarfbind.py libfoo.so --list-exports

With `--mode functions` the C target prints a prototype listing only; the
other targets still describe every type the functions reach.
"""

import argparse
import io
import json
import keyword
import sys
from abc import ABC, abstractmethod
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, NamedTuple

from elftools.common.exceptions import DWARFError, ELFError
from elftools.dwarf.dwarf_expr import DWARFExprParser
from elftools.elf.elffile import ELFFile
from elftools.elf.sections import SymbolTableSection

VERSION = "0.3.0"
TARGETS = ("c", "js", "ctypes", "json")
MODES = ("full", "functions", "types")
DEFAULT_TARGET = "c"
DEFAULT_MODE = "full"


# ===--- Errors ---=== #


class BindgenError(Exception):
    code = "BINDGEN_ERROR"

    def __init__(self, message: str, suggestion: str | None = None):
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion


class LibraryIOError(BindgenError):
    code = "IO_ERROR"


class UnsupportedFormat(BindgenError):
    code = "UNSUPPORTED_FORMAT"


class MissingDebugInfo(BindgenError):
    code = "MISSING_DEBUG_INFO"


class UnresolvedSymbol(BindgenError):
    code = "UNRESOLVED_SYMBOL"


class RecursiveLayout(BindgenError):
    code = "RECURSIVE_LAYOUT"


class DanglingTypeReference(BindgenError):
    code = "DANGLING_TYPE_REFERENCE"


class CodegenError(BindgenError):
    code = "CODEGEN_ERROR"


VALID_ERROR_CODES = {
    cls.code
    for cls in (
        LibraryIOError,
        UnsupportedFormat,
        MissingDebugInfo,
        UnresolvedSymbol,
        RecursiveLayout,
        DanglingTypeReference,
        CodegenError,
    )
}


# ===--- CLI config contracts ---=== #


@dataclass(frozen=True)
class GenerateConfig:
    library: Path
    target: str
    mode: str
    strict: bool
    include_internal: bool
    library_path: str
    jobs: int
    quiet: bool
    verbose: bool


@dataclass(frozen=True)
class DiscoveryConfig:
    command: str
    library: Path


VALID_CONFIG_CODES = {
    "PATH_NOT_FOUND",
    "CONFLICT_TARGET_FLAGS",
    "CONFLICT_GENERATE_DISCOVERY",
    "INVALID_JOBS",
}


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_CONFIG_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


def validate_path_exists(path: Path | None, flag: str) -> Path:
    if path is None:
        raise ConfigError(
            "PATH_NOT_FOUND",
            f"{flag} is required: no path provided.",
            "Pass the path to a shared library built with -g.",
        )
    if path.exists():
        return path
    raise ConfigError(
        "PATH_NOT_FOUND",
        f"Path for {flag} does not exist: {path}",
        "Provide an existing library path.",
    )


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dwarfbind",
        description="Generate FFI bindings from the DWARF debug info of a shared library",
    )
    parser.add_argument("library", type=Path, nargs="?", default=None)
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")

    parser.add_argument("--target", choices=TARGETS, default=None)
    shortcut_group = parser.add_mutually_exclusive_group()
    shortcut_group.add_argument("--js", action="store_true", default=False)
    shortcut_group.add_argument("--json", action="store_true", default=False)

    parser.add_argument("--mode", choices=MODES, default=DEFAULT_MODE)
    parser.add_argument("--strict", action="store_true", default=False)
    parser.add_argument("--all", action="store_true", default=False)
    parser.add_argument("--lib-path", type=str, default=None)
    parser.add_argument("--jobs", type=int, default=1)

    verbosity_group = parser.add_mutually_exclusive_group()
    verbosity_group.add_argument("-q", "--quiet", action="store_true", default=False)
    verbosity_group.add_argument(
        "-v", "--verbose", action="store_true", default=False
    )

    parser.add_argument("--list-exports", action="store_true", default=False)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def resolve_target(args: argparse.Namespace) -> str:
    shortcut = "js" if args.js else "json" if args.json else None
    if shortcut and args.target and args.target != shortcut:
        raise ConfigError(
            "CONFLICT_TARGET_FLAGS",
            f"--{shortcut} conflicts with --target {args.target}.",
            f"Use either --{shortcut} or --target, not both.",
        )
    return shortcut or args.target or DEFAULT_TARGET


def validate_config(args: argparse.Namespace) -> GenerateConfig | DiscoveryConfig:
    library = validate_path_exists(args.library, "library")

    if args.list_exports:
        has_generate_input = bool(
            args.target or args.js or args.json or args.all or args.lib_path
        )
        if has_generate_input:
            raise ConfigError(
                "CONFLICT_GENERATE_DISCOVERY",
                "Generate flags cannot be combined with --list-exports.",
                "Choose either generation or --list-exports.",
            )
        return DiscoveryConfig(command="list-exports", library=library)

    target = resolve_target(args)

    if args.jobs < 1:
        raise ConfigError(
            "INVALID_JOBS",
            f"--jobs must be at least 1, got {args.jobs}.",
            "Pass --jobs 1 for a serial extraction.",
        )

    return GenerateConfig(
        library=library,
        target=target,
        mode=args.mode,
        strict=bool(args.strict),
        include_internal=bool(args.all),
        library_path=args.lib_path or str(library),
        jobs=args.jobs,
        quiet=bool(args.quiet),
        verbose=bool(args.verbose),
    )


def build_config(argv: list[str] | None = None) -> GenerateConfig | DiscoveryConfig:
    return validate_config(parse_args(argv))


# ===--- Intermediate model ---=== #


class TypeKey(NamedTuple):
    """Reference to a type node: the debug offset of the entry that defines it.

    Variant 0 is the entry itself. Positive variants are nodes derived from the
    same entry: inner dimensions of a multi-dimensional array, the decayed
    pointer of an array parameter, the implicit underlying type of an enum.
    """

    offset: int
    variant: int = 0

    def __str__(self) -> str:
        if self.variant:
            return f"{self.offset:#x}.{self.variant}"
        return f"{self.offset:#x}"


VOID_KEY = TypeKey(0)
DECAY_VARIANT = 0x7F
ENUM_BASE_VARIANT = 0x7E

PRIMITIVE_KINDS = {
    "void",
    "bool",
    "char",
    "i8",
    "i16",
    "i32",
    "i64",
    "i128",
    "u8",
    "u16",
    "u32",
    "u64",
    "u128",
    "isize",
    "usize",
    "f32",
    "f64",
    "longdouble",
    "complex",
    "unknown",
}


@dataclass(frozen=True)
class Primitive:
    key: TypeKey
    name: str
    kind: str
    size: int
    signed: bool = False


@dataclass(frozen=True)
class Pointer:
    key: TypeKey
    target: TypeKey
    size: int


@dataclass(frozen=True)
class Array:
    key: TypeKey
    element: TypeKey
    count: int | None


@dataclass(frozen=True)
class Field:
    name: str | None
    type: TypeKey
    offset: int
    bit_size: int | None = None
    bit_offset: int | None = None


@dataclass(frozen=True)
class Struct:
    key: TypeKey
    name: str | None
    size: int
    fields: tuple[Field, ...]


@dataclass(frozen=True)
class Variant:
    name: str | None
    type: TypeKey


@dataclass(frozen=True)
class Union:
    key: TypeKey
    name: str | None
    size: int
    variants: tuple[Variant, ...]


@dataclass(frozen=True)
class Enum:
    key: TypeKey
    name: str | None
    underlying: TypeKey
    size: int
    members: tuple[tuple[str, int], ...]


@dataclass(frozen=True)
class FunctionPointer:
    """The subroutine type a function pointer points at."""

    key: TypeKey
    return_type: TypeKey
    params: tuple[TypeKey, ...]
    variadic: bool


@dataclass(frozen=True)
class Opaque:
    key: TypeKey
    name: str | None
    kind: str


@dataclass(frozen=True)
class Typedef:
    key: TypeKey
    name: str
    aliased: TypeKey


@dataclass(frozen=True)
class Qualified:
    key: TypeKey
    qualifier: str
    target: TypeKey


TypeNode = (
    Primitive
    | Pointer
    | Array
    | Struct
    | Union
    | Enum
    | FunctionPointer
    | Opaque
    | Typedef
    | Qualified
)

VOID = Primitive(key=VOID_KEY, name="void", kind="void", size=0)


@dataclass(frozen=True)
class Parameter:
    name: str | None
    type: TypeKey
    declared_type: TypeKey | None = None


@dataclass(frozen=True)
class FunctionSignature:
    name: str
    return_type: TypeKey
    params: tuple[Parameter, ...]
    variadic: bool
    address: int | None = None


def node_references(node: TypeNode) -> tuple[TypeKey, ...]:
    if isinstance(node, (Pointer, Qualified)):
        return (node.target,)
    if isinstance(node, Typedef):
        return (node.aliased,)
    if isinstance(node, Array):
        return (node.element,)
    if isinstance(node, Struct):
        return tuple(f.type for f in node.fields)
    if isinstance(node, Union):
        return tuple(v.type for v in node.variants)
    if isinstance(node, Enum):
        return (node.underlying,)
    if isinstance(node, FunctionPointer):
        return (node.return_type, *node.params)
    return ()


def signature_references(sig: FunctionSignature) -> tuple[TypeKey, ...]:
    refs = [sig.return_type]
    for param in sig.params:
        refs.append(param.type)
        if param.declared_type is not None:
            refs.append(param.declared_type)
    return tuple(refs)


def remap_node(node: TypeNode, remap: Mapping[TypeKey, TypeKey]) -> TypeNode:
    def r(key: TypeKey) -> TypeKey:
        return remap.get(key, key)

    if isinstance(node, (Pointer, Qualified)):
        return replace(node, target=r(node.target))
    if isinstance(node, Typedef):
        return replace(node, aliased=r(node.aliased))
    if isinstance(node, Array):
        return replace(node, element=r(node.element))
    if isinstance(node, Struct):
        return replace(
            node, fields=tuple(replace(f, type=r(f.type)) for f in node.fields)
        )
    if isinstance(node, Union):
        return replace(
            node, variants=tuple(replace(v, type=r(v.type)) for v in node.variants)
        )
    if isinstance(node, Enum):
        return replace(node, underlying=r(node.underlying))
    if isinstance(node, FunctionPointer):
        return replace(
            node,
            return_type=r(node.return_type),
            params=tuple(r(p) for p in node.params),
        )
    return node


def remap_signature(
    sig: FunctionSignature, remap: Mapping[TypeKey, TypeKey]
) -> FunctionSignature:
    params = tuple(
        replace(
            p,
            type=remap.get(p.type, p.type),
            declared_type=(
                remap.get(p.declared_type, p.declared_type)
                if p.declared_type is not None
                else None
            ),
        )
        for p in sig.params
    )
    return replace(
        sig, return_type=remap.get(sig.return_type, sig.return_type), params=params
    )


class IntermediateModel:
    """Immutable snapshot of one extraction pass.

    `types` is keyed by TypeKey and iterates in key order; `functions` is
    sorted by name. Both orders are stable for a given binary, which is what
    makes generated output reproducible byte-for-byte.
    """

    def __init__(
        self,
        library: str,
        types: Mapping[TypeKey, TypeNode],
        functions: tuple[FunctionSignature, ...] | list[FunctionSignature],
        pointer_size: int = 8,
    ):
        ordered = {key: types[key] for key in sorted(types)}
        self._types = MappingProxyType(ordered)
        self._functions = tuple(sorted(functions, key=lambda f: f.name))
        self._library = library
        self._pointer_size = pointer_size

    @property
    def library(self) -> str:
        return self._library

    @property
    def types(self) -> Mapping[TypeKey, TypeNode]:
        return self._types

    @property
    def functions(self) -> tuple[FunctionSignature, ...]:
        return self._functions

    @property
    def pointer_size(self) -> int:
        return self._pointer_size

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, IntermediateModel):
            return NotImplemented
        return (
            self._library == other._library
            and dict(self._types) == dict(other._types)
            and self._functions == other._functions
            and self._pointer_size == other._pointer_size
        )

    def __hash__(self):
        return hash((self._library, self._functions))

    def node(self, key: TypeKey) -> TypeNode:
        try:
            return self._types[key]
        except KeyError:
            raise DanglingTypeReference(
                f"Type reference {key} does not resolve to a node"
            ) from None

    def function(self, name: str) -> FunctionSignature | None:
        for sig in self._functions:
            if sig.name == name:
                return sig
        return None

    def resolve(self, key: TypeKey) -> TypeNode:
        """Follow typedefs and qualifiers down to the node that has a layout."""
        seen = set()
        node = self.node(key)
        while isinstance(node, (Typedef, Qualified)):
            if node.key in seen:
                raise DanglingTypeReference(f"Typedef cycle through {node.key}")
            seen.add(node.key)
            node = self.node(node.aliased if isinstance(node, Typedef) else node.target)
        return node

    def is_const(self, key: TypeKey) -> bool:
        node = self.node(key)
        while isinstance(node, (Typedef, Qualified)):
            if isinstance(node, Qualified):
                if node.qualifier == "const":
                    return True
                node = self.node(node.target)
            else:
                node = self.node(node.aliased)
        return False

    def references(self) -> set[TypeKey]:
        refs: set[TypeKey] = set()
        for node in self._types.values():
            refs.update(node_references(node))
        for sig in self._functions:
            refs.update(signature_references(sig))
        return refs

    def reachable_from(self, roots) -> set[TypeKey]:
        seen: set[TypeKey] = set()
        stack = list(roots)
        while stack:
            key = stack.pop()
            if key in seen:
                continue
            seen.add(key)
            stack.extend(node_references(self.node(key)))
        return seen

    def functions_only(self) -> "IntermediateModel":
        roots = [key for sig in self._functions for key in signature_references(sig)]
        keep = self.reachable_from(roots)
        return IntermediateModel(
            self._library,
            {key: node for key, node in self._types.items() if key in keep},
            self._functions,
            self._pointer_size,
        )

    def c_type_name(self, key: TypeKey) -> str:
        return c_declarator(self, key, "")

    def to_dict(self) -> dict:
        return {
            "library": self._library,
            "pointer_size": self._pointer_size,
            "types": {
                str(key): node_to_dict(node) for key, node in self._types.items()
            },
            "functions": [signature_to_dict(sig) for sig in self._functions],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2) + "\n"


def node_to_dict(node: TypeNode) -> dict:
    if isinstance(node, Primitive):
        return {
            "kind": "primitive",
            "name": node.name,
            "primitive": node.kind,
            "size": node.size,
            "signed": node.signed,
        }
    if isinstance(node, Pointer):
        return {"kind": "pointer", "target": str(node.target), "size": node.size}
    if isinstance(node, Array):
        return {"kind": "array", "element": str(node.element), "count": node.count}
    if isinstance(node, Struct):
        return {
            "kind": "struct",
            "name": node.name,
            "size": node.size,
            "fields": [
                {
                    "name": f.name,
                    "type": str(f.type),
                    "offset": f.offset,
                    "bit_size": f.bit_size,
                    "bit_offset": f.bit_offset,
                }
                for f in node.fields
            ],
        }
    if isinstance(node, Union):
        return {
            "kind": "union",
            "name": node.name,
            "size": node.size,
            "variants": [{"name": v.name, "type": str(v.type)} for v in node.variants],
        }
    if isinstance(node, Enum):
        return {
            "kind": "enum",
            "name": node.name,
            "underlying": str(node.underlying),
            "size": node.size,
            "members": [{"name": n, "value": v} for n, v in node.members],
        }
    if isinstance(node, FunctionPointer):
        return {
            "kind": "function_pointer",
            "return_type": str(node.return_type),
            "params": [str(p) for p in node.params],
            "variadic": node.variadic,
        }
    if isinstance(node, Opaque):
        return {"kind": "opaque", "name": node.name, "tag": node.kind}
    if isinstance(node, Typedef):
        return {"kind": "typedef", "name": node.name, "aliased": str(node.aliased)}
    if isinstance(node, Qualified):
        return {
            "kind": "qualified",
            "qualifier": node.qualifier,
            "target": str(node.target),
        }
    raise TypeError(f"Not a type node: {node!r}")


def signature_to_dict(sig: FunctionSignature) -> dict:
    return {
        "name": sig.name,
        "return_type": str(sig.return_type),
        "params": [
            {
                "name": p.name,
                "type": str(p.type),
                "declared_type": (
                    str(p.declared_type) if p.declared_type is not None else None
                ),
            }
            for p in sig.params
        ],
        "variadic": sig.variadic,
        "address": sig.address,
    }


# ===--- C declarator rendering ---=== #


def c_declarator(
    model: IntermediateModel,
    key: TypeKey,
    inner: str,
    names: Mapping[TypeKey, str] | None = None,
) -> str:
    """Render `key` as a C declaration of `inner` (an identifier or empty).

    `names` overrides the tag name of records, enums and opaque types; the C
    generator passes its name table so anonymous aggregates get stable names.
    """
    node = model.node(key)

    def with_inner(base: str) -> str:
        return f"{base} {inner}" if inner else base

    def tag_name(default: str | None) -> str:
        if names is not None and key in names:
            return names[key]
        return default or "<anonymous>"

    if isinstance(node, (Primitive, Typedef)):
        return with_inner(node.name)
    if isinstance(node, Struct):
        return with_inner(f"struct {tag_name(node.name)}")
    if isinstance(node, Union):
        return with_inner(f"union {tag_name(node.name)}")
    if isinstance(node, Enum):
        return with_inner(f"enum {tag_name(node.name)}")
    if isinstance(node, Opaque):
        if node.kind == "unspecified":
            return with_inner(node.name or "void")
        return with_inner(f"{node.kind} {tag_name(node.name)}")
    if isinstance(node, Qualified):
        if isinstance(model.node(node.target), Pointer):
            return c_declarator(
                model, node.target, f"{node.qualifier} {inner}".strip(), names
            )
        return f"{node.qualifier} {c_declarator(model, node.target, inner, names)}"
    if isinstance(node, Pointer):
        if isinstance(model.node(node.target), (Array, FunctionPointer)):
            return c_declarator(model, node.target, f"(*{inner})", names)
        return c_declarator(model, node.target, f"*{inner}", names)
    if isinstance(node, Array):
        count = "" if node.count is None else str(node.count)
        return c_declarator(model, node.element, f"{inner}[{count}]", names)
    if isinstance(node, FunctionPointer):
        params = [c_declarator(model, p, "", names) for p in node.params]
        if node.variadic:
            params.append("...")
        return c_declarator(
            model, node.return_type, f"{inner}({', '.join(params) or 'void'})", names
        )
    raise TypeError(f"Not a type node: {node!r}")


def format_signature(
    model: IntermediateModel,
    sig: FunctionSignature,
    names: Mapping[TypeKey, str] | None = None,
) -> str:
    """Render a signature as a C declaration, e.g. `int add(int a, int b)`."""
    params = [c_declarator(model, p.type, p.name or "", names) for p in sig.params]
    if sig.variadic:
        params.append("...")
    declarator = f"{sig.name}({', '.join(params) or 'void'})"
    return c_declarator(model, sig.return_type, declarator, names)


# ===--- Binary loader ---=== #

SUPPORTED_ELF_TYPES = ("ET_DYN", "ET_REL")
SUPPORTED_DWARF_VERSIONS = range(2, 6)
DEBUG_INFO_SECTIONS = (".debug_info", ".zdebug_info")

UNIT_REF_FORMS = {
    "DW_FORM_ref1",
    "DW_FORM_ref2",
    "DW_FORM_ref4",
    "DW_FORM_ref8",
    "DW_FORM_ref_udata",
}
ADDR_REF_FORMS = {"DW_FORM_ref_addr"}
DATA_FORM_WIDTHS = {
    "DW_FORM_data1": 1,
    "DW_FORM_data2": 2,
    "DW_FORM_data4": 4,
    "DW_FORM_data8": 8,
}

EXPORTED_BINDINGS = ("STB_GLOBAL", "STB_WEAK", "STB_GNU_UNIQUE")
EXPORTED_VISIBILITIES = ("STV_DEFAULT", "STV_PROTECTED")
FUNCTION_SYMBOL_TYPES = ("STT_FUNC", "STT_GNU_IFUNC")


@dataclass(frozen=True)
class DebugEntry:
    """One debug information entry, detached from the parser.

    `attributes` holds decoded values (strings as `str`, location expressions
    of member offsets evaluated to ints). Reference attributes are not in
    `attributes` but in `refs`, as absolute offsets into the debug section.
    `forms` keeps the encoding form of every attribute.
    """

    offset: int
    tag: str
    attributes: Mapping[str, object] = field(default_factory=dict)
    refs: Mapping[str, int] = field(default_factory=dict)
    forms: Mapping[str, str] = field(default_factory=dict)
    children: tuple["DebugEntry", ...] = ()

    @property
    def name(self) -> str | None:
        return self.attributes.get("DW_AT_name")

    def get(self, attribute: str, default=None):
        return self.attributes.get(attribute, default)

    def flag(self, attribute: str) -> bool:
        return bool(self.attributes.get(attribute, False))

    @property
    def is_declaration(self) -> bool:
        return self.flag("DW_AT_declaration")


@dataclass(frozen=True)
class CompilationUnit:
    offset: int
    version: int
    address_size: int
    root: DebugEntry

    @property
    def name(self) -> str | None:
        return self.root.name


@dataclass(frozen=True)
class Symbol:
    name: str
    address: int
    kind: str
    binding: str
    visibility: str
    defined: bool

    @property
    def exported(self) -> bool:
        return (
            self.defined
            and self.binding in EXPORTED_BINDINGS
            and self.visibility in EXPORTED_VISIBILITIES
        )

    @property
    def is_function(self) -> bool:
        return self.kind in FUNCTION_SYMBOL_TYPES


@dataclass(frozen=True)
class LoadedBinary:
    path: Path
    elf_type: str
    pointer_size: int
    little_endian: bool
    units: tuple[CompilationUnit, ...]
    symbols: tuple[Symbol, ...]
    dynamic: bool

    def exported_functions(self) -> dict[str, Symbol]:
        exported = {}
        for sym in self.symbols:
            if sym.name and sym.exported and sym.is_function:
                exported.setdefault(sym.name, sym)
        return exported


def load_binary(path: Path | str) -> LoadedBinary:
    """Read a shared library (or relocatable object) and its debug entries.

    The file is read once; every compilation unit is converted into a
    detached `DebugEntry` tree so later passes never touch the parser.

    Raises:
        LibraryIOError: The file cannot be read.
        UnsupportedFormat: Not an ELF shared library or object, or a unit
            uses an unsupported DWARF version.
        MissingDebugInfo: No debug information section is present.
    """
    path = Path(path)
    try:
        data = path.read_bytes()
    except OSError as err:
        raise LibraryIOError(
            f"Cannot read {path}: {err.strerror or err}",
            "Check that the file exists and is readable.",
        ) from err

    try:
        elf = ELFFile(io.BytesIO(data))
        elf_type = elf.header["e_type"]
        if elf_type not in SUPPORTED_ELF_TYPES:
            raise UnsupportedFormat(
                f"{path} is {elf_type}, not a shared library or object file",
                "Pass a library built with -shared, or an object built with -c.",
            )
        if not any(elf.get_section_by_name(name) for name in DEBUG_INFO_SECTIONS):
            raise MissingDebugInfo(
                f"{path} has no debug information",
                "Rebuild the library with -g and without stripping it.",
            )
        units = tuple(_read_units(elf))
        symbols, dynamic = _read_symbols(elf)
        pointer_size = elf.elfclass // 8
        little_endian = elf.little_endian
    except (ELFError, DWARFError) as err:
        raise UnsupportedFormat(f"Cannot parse {path}: {err}") from err

    return LoadedBinary(
        path=path,
        elf_type=elf_type,
        pointer_size=pointer_size,
        little_endian=little_endian,
        units=units,
        symbols=symbols,
        dynamic=dynamic,
    )


def _read_units(elf: ELFFile):
    dwarf = elf.get_dwarf_info()
    for cu in dwarf.iter_CUs():
        version = cu["version"]
        if version not in SUPPORTED_DWARF_VERSIONS:
            raise UnsupportedFormat(
                f"Unit at {cu.cu_offset:#x} uses DWARF version {version}",
                "Rebuild with -gdwarf-4 or -gdwarf-5.",
            )
        expr_parser = DWARFExprParser(cu.structs)
        root = _convert_entry(cu.get_top_DIE(), cu.cu_offset, expr_parser)
        yield CompilationUnit(
            offset=cu.cu_offset,
            version=version,
            address_size=cu["address_size"],
            root=root,
        )


def _convert_entry(die, cu_offset: int, expr_parser: DWARFExprParser) -> DebugEntry:
    attributes = {}
    refs = {}
    forms = {}
    for name, attr in die.attributes.items():
        forms[name] = attr.form
        if attr.form in UNIT_REF_FORMS:
            refs[name] = attr.value + cu_offset
        elif attr.form in ADDR_REF_FORMS:
            refs[name] = attr.value
        elif name == "DW_AT_data_member_location" and isinstance(attr.value, list):
            attributes[name] = _evaluate_member_location(
                attr.value, expr_parser, die.offset
            )
        elif isinstance(attr.value, bytes):
            attributes[name] = attr.value.decode("utf-8", errors="replace")
        else:
            attributes[name] = attr.value

    children = tuple(
        _convert_entry(child, cu_offset, expr_parser)
        for child in die.iter_children()
        if not child.is_null()
    )
    return DebugEntry(
        offset=die.offset,
        tag=die.tag,
        attributes=attributes,
        refs=refs,
        forms=forms,
        children=children,
    )


def _evaluate_member_location(
    block: list[int], expr_parser: DWARFExprParser, offset: int
) -> int:
    ops = expr_parser.parse_expr(block)
    if len(ops) == 1 and ops[0].op_name in ("DW_OP_plus_uconst", "DW_OP_constu"):
        return ops[0].args[0]
    raise UnsupportedFormat(
        f"Member at {offset:#x} has a computed location: "
        + " ".join(op.op_name for op in ops)
    )


def _read_symbols(elf: ELFFile) -> tuple[tuple[Symbol, ...], bool]:
    """Symbols of `.dynsym`, or the global ones of `.symtab` when the
    dynamic table is missing or holds no defined function."""
    dynsym = elf.get_section_by_name(".dynsym")
    if isinstance(dynsym, SymbolTableSection):
        symbols = _table_symbols(dynsym, dynamic=True)
        if any(s.defined and s.is_function for s in symbols):
            return symbols, True
    symtab = elf.get_section_by_name(".symtab")
    if isinstance(symtab, SymbolTableSection):
        return _table_symbols(symtab, dynamic=False), False
    if isinstance(dynsym, SymbolTableSection):
        return symbols, True
    return (), False


def _table_symbols(section: SymbolTableSection, dynamic: bool) -> tuple[Symbol, ...]:
    symbols = []
    for sym in section.iter_symbols():
        if not sym.name:
            continue
        binding = sym["st_info"]["bind"]
        if not dynamic and binding == "STB_LOCAL":
            continue
        symbols.append(
            Symbol(
                name=sym.name,
                address=sym["st_value"],
                kind=sym["st_info"]["type"],
                binding=binding,
                visibility=sym["st_other"]["visibility"],
                defined=sym["st_shndx"] != "SHN_UNDEF",
            )
        )
    return tuple(symbols)


# ===--- Debug index ---=== #

RECORD_TAGS = {
    "DW_TAG_structure_type": "struct",
    "DW_TAG_class_type": "struct",
    "DW_TAG_union_type": "union",
    "DW_TAG_enumeration_type": "enum",
}
SCOPE_TAGS = {"DW_TAG_namespace", "DW_TAG_module"}


class DebugIndex:
    """Offset lookup over every entry of every unit, plus definition lookup
    for forward declarations."""

    def __init__(
        self,
        units: tuple[CompilationUnit, ...] | list[CompilationUnit],
        pointer_size: int = 8,
        little_endian: bool = True,
    ):
        self.units = tuple(units)
        self.pointer_size = pointer_size
        self.little_endian = little_endian
        self._entries: dict[int, DebugEntry] = {}
        self._unit_of: dict[int, int] = {}
        self._definitions: dict[tuple[str, str], int] = {}
        for unit in self.units:
            self._index(unit.root, unit.offset)

    @classmethod
    def from_binary(cls, binary: LoadedBinary) -> "DebugIndex":
        return cls(binary.units, binary.pointer_size, binary.little_endian)

    def _index(self, entry: DebugEntry, unit_offset: int) -> None:
        stack = [entry]
        while stack:
            current = stack.pop()
            self._entries[current.offset] = current
            self._unit_of[current.offset] = unit_offset
            kind = RECORD_TAGS.get(current.tag)
            if kind and current.name and not current.is_declaration:
                key = (kind, current.name)
                previous = self._definitions.get(key)
                if previous is None or current.offset < previous:
                    self._definitions[key] = current.offset
            stack.extend(current.children)

    def __contains__(self, offset: int) -> bool:
        return offset in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def entry(self, offset: int) -> DebugEntry:
        try:
            return self._entries[offset]
        except KeyError:
            raise DanglingTypeReference(
                f"Reference to {offset:#x} does not point at a debug entry"
            ) from None

    def unit_of(self, offset: int) -> int:
        return self._unit_of[offset]

    def definition(self, tag: str, name: str) -> DebugEntry | None:
        kind = RECORD_TAGS.get(tag)
        if kind is None:
            return None
        offset = self._definitions.get((kind, name))
        return self._entries[offset] if offset is not None else None

    def origin(self, entry: DebugEntry) -> DebugEntry | None:
        for attribute in ("DW_AT_abstract_origin", "DW_AT_specification"):
            offset = entry.refs.get(attribute)
            if offset is not None:
                return self.entry(offset)
        return None

    def lookup(self, entry: DebugEntry, attribute: str, default=None):
        """Attribute value of `entry`, or of the entry it is an instance of."""
        seen = set()
        current = entry
        while current is not None and current.offset not in seen:
            if attribute in current.attributes:
                return current.attributes[attribute]
            seen.add(current.offset)
            current = self.origin(current)
        return default

    def lookup_ref(self, entry: DebugEntry, attribute: str) -> int | None:
        seen = set()
        current = entry
        while current is not None and current.offset not in seen:
            if attribute in current.refs:
                return current.refs[attribute]
            if attribute in current.forms:
                raise UnsupportedFormat(
                    f"Entry at {current.offset:#x} uses {current.forms[attribute]} "
                    f"for {attribute}",
                    "Rebuild without -fdebug-types-section.",
                )
            seen.add(current.offset)
            current = self.origin(current)
        return None

    def top_level_types(self, unit: CompilationUnit) -> list[DebugEntry]:
        """Named type definitions declared at unit (or namespace) scope."""
        found = []
        stack = list(reversed(unit.root.children))
        while stack:
            entry = stack.pop()
            if entry.tag in SCOPE_TAGS:
                stack.extend(reversed(entry.children))
                continue
            if entry.tag not in RECORD_TAGS and entry.tag != "DW_TAG_typedef":
                continue
            if entry.is_declaration or not entry.name:
                continue
            if entry.name.startswith("__"):
                continue
            found.append(entry)
        return found


# ===--- Visibility filter ---=== #

TOOLCHAIN_SYMBOLS = frozenset({"_init", "_fini"})


@dataclass(frozen=True)
class Diagnostic:
    code: str
    subject: str
    message: str

    def __str__(self) -> str:
        return f"Warning [{self.code}]: {self.message}"


@dataclass(frozen=True)
class FunctionCandidate:
    name: str
    entry: DebugEntry
    unit_offset: int
    address: int | None


def function_name(index: DebugIndex, entry: DebugEntry) -> str | None:
    for attribute in ("DW_AT_linkage_name", "DW_AT_MIPS_linkage_name", "DW_AT_name"):
        value = index.lookup(entry, attribute)
        if value:
            return value
    return None


def collect_function_candidates(index: DebugIndex) -> dict[str, FunctionCandidate]:
    """Every defined function with debug info, keyed by symbol name.

    When a name has several entries (an abstract instance and its concrete
    out-of-line copy) the one with a code address wins, else the first seen.
    """
    candidates: dict[str, FunctionCandidate] = {}
    for unit in index.units:
        stack = list(reversed(unit.root.children))
        while stack:
            entry = stack.pop()
            if entry.tag in SCOPE_TAGS or entry.tag in RECORD_TAGS:
                stack.extend(reversed(entry.children))
                continue
            if entry.tag != "DW_TAG_subprogram":
                continue
            if entry.is_declaration or entry.flag("DW_AT_artificial"):
                continue
            name = function_name(index, entry)
            if not name:
                continue
            address = entry.get("DW_AT_low_pc")
            previous = candidates.get(name)
            if previous is not None and (previous.address is not None or address is None):
                continue
            candidates[name] = FunctionCandidate(
                name=name, entry=entry, unit_offset=unit.offset, address=address
            )
    return candidates


def filter_visible(
    binary: LoadedBinary,
    index: DebugIndex,
    strict: bool = False,
    include_internal: bool = False,
) -> tuple[list[FunctionCandidate], list[Diagnostic]]:
    """Keep the candidates whose name is an exported function symbol.

    A function with debug info but no exported symbol is internal and is
    dropped without a diagnostic. An exported function symbol with no debug
    entry raises `UnresolvedSymbol` in strict mode and is reported as a
    diagnostic otherwise.

    Returns:
        The kept candidates sorted by name, and the diagnostics.
    """
    candidates = collect_function_candidates(index)
    exported = binary.exported_functions()

    if include_internal:
        kept = dict(candidates)
    else:
        kept = {}
        for name, candidate in candidates.items():
            symbol = exported.get(name)
            if symbol is None:
                continue
            if candidate.address is None:
                candidate = replace(candidate, address=symbol.address)
            kept[name] = candidate

    diagnostics = []
    for name in sorted(exported):
        if name in TOOLCHAIN_SYMBOLS or name in candidates:
            continue
        message = f"Exported symbol '{name}' has no debug information"
        if strict:
            raise UnresolvedSymbol(
                message,
                "Build every object of the library with -g, or drop --strict.",
            )
        diagnostics.append(Diagnostic("UNRESOLVED_SYMBOL", name, message))

    return [kept[name] for name in sorted(kept)], diagnostics


# ===--- Type graph builder ---=== #

DW_ATE_BOOLEAN = 0x02
DW_ATE_COMPLEX_FLOAT = 0x03
DW_ATE_FLOAT = 0x04
DW_ATE_SIGNED = 0x05
DW_ATE_SIGNED_CHAR = 0x06
DW_ATE_UNSIGNED = 0x07
DW_ATE_UNSIGNED_CHAR = 0x08
DW_ATE_UTF = 0x10

SIZE_WIDTH_NAMES = {
    "size_t": False,
    "ssize_t": True,
    "ptrdiff_t": True,
    "intptr_t": True,
    "uintptr_t": False,
    "sizetype": False,
    "__ARRAY_SIZE_TYPE__": False,
}

QUALIFIER_TAGS = {
    "DW_TAG_const_type": "const",
    "DW_TAG_volatile_type": "volatile",
    "DW_TAG_restrict_type": "restrict",
    "DW_TAG_atomic_type": "_Atomic",
}
POINTER_TAGS = {
    "DW_TAG_pointer_type",
    "DW_TAG_reference_type",
    "DW_TAG_rvalue_reference_type",
}
ENUM_BASE_NAMES = {"i8": "signed char", "i16": "short", "i32": "int", "i64": "long long"}


def primitive_kind(name: str | None, encoding: int | None, size: int) -> tuple[str, bool]:
    """Map a base type to (kind, signed)."""
    if name in SIZE_WIDTH_NAMES:
        signed = SIZE_WIDTH_NAMES[name]
        return ("isize" if signed else "usize"), signed
    if encoding == DW_ATE_BOOLEAN:
        return "bool", False
    if encoding == DW_ATE_FLOAT:
        kind = {4: "f32", 8: "f64"}.get(size)
        if kind:
            return kind, True
        return ("longdouble", True) if size > 8 else ("unknown", True)
    if encoding == DW_ATE_COMPLEX_FLOAT:
        return "complex", True
    if encoding in (DW_ATE_SIGNED_CHAR, DW_ATE_UNSIGNED_CHAR) and name == "char":
        return "char", encoding == DW_ATE_SIGNED_CHAR
    if encoding in (DW_ATE_SIGNED, DW_ATE_SIGNED_CHAR):
        kind = {1: "i8", 2: "i16", 4: "i32", 8: "i64", 16: "i128"}.get(size, "unknown")
        return kind, True
    if encoding in (DW_ATE_UNSIGNED, DW_ATE_UNSIGNED_CHAR, DW_ATE_UTF):
        kind = {1: "u8", 2: "u16", 4: "u32", 8: "u64", 16: "u128"}.get(size, "unknown")
        return kind, False
    return "unknown", False


def sign_extend(value: int, form: str | None) -> int:
    width = DATA_FORM_WIDTHS.get(form)
    if width is None or value < 0:
        return value
    bits = width * 8
    if value & (1 << (bits - 1)):
        return value - (1 << bits)
    return value


class TypeGraphBuilder:
    """Builds the offset-keyed type graph for one extraction pass.

    Every node is stored under the `TypeKey` of the entry that defines it.
    While an entry is being built its offset is open; a reference back to an
    open offset from behind a pointer (or a function type) returns the key
    of the node under construction, which becomes valid once the outer build
    finishes. A reference back at the same indirection depth means the type
    contains itself by value.
    """

    def __init__(self, index: DebugIndex):
        self._index = index
        self._pointer_size = index.pointer_size
        self._nodes: dict[TypeKey, TypeNode] = {VOID_KEY: VOID}
        self._keys: dict[int, TypeKey] = {}
        self._open: dict[int, int] = {}
        self._depth = 0

    @property
    def nodes(self) -> Mapping[TypeKey, TypeNode]:
        return MappingProxyType(self._nodes)

    @property
    def pointer_size(self) -> int:
        return self._pointer_size

    def node(self, key: TypeKey) -> TypeNode:
        return self._nodes[key]

    def add_node(self, node: TypeNode) -> TypeKey:
        self._nodes[node.key] = node
        return node.key

    def type_of(self, entry: DebugEntry) -> TypeKey:
        """Key of the type named by the DW_AT_type of `entry` (or its origin)."""
        offset = self._index.lookup_ref(entry, "DW_AT_type")
        if offset is None:
            return VOID_KEY
        return self.build(offset)

    def build(self, offset: int) -> TypeKey:
        known = self._keys.get(offset)
        if known is not None:
            return known
        if offset in self._open:
            if self._open[offset] == self._depth:
                entry = self._index.entry(offset)
                raise RecursiveLayout(
                    f"{entry.name or 'Anonymous type'} at {offset:#x} contains "
                    "itself without a pointer"
                )
            return TypeKey(offset)

        entry = self._index.entry(offset)
        if entry.is_declaration and entry.tag in RECORD_TAGS and entry.name:
            definition = self._index.definition(entry.tag, entry.name)
            if definition is not None:
                key = self.build(definition.offset)
                self._keys[offset] = key
                return key

        self._open[offset] = self._depth
        try:
            node = self._build_node(entry)
        finally:
            del self._open[offset]
        self._nodes[node.key] = node
        self._keys[offset] = node.key
        return node.key

    def _indirect(self, build, *args):
        self._depth += 1
        try:
            return build(*args)
        finally:
            self._depth -= 1

    def _build_node(self, entry: DebugEntry) -> TypeNode:
        key = TypeKey(entry.offset)
        tag = entry.tag

        if tag == "DW_TAG_base_type":
            size = entry.get("DW_AT_byte_size", 0)
            kind, signed = primitive_kind(entry.name, entry.get("DW_AT_encoding"), size)
            return Primitive(key, entry.name or kind, kind, size, signed)

        if tag in POINTER_TAGS or tag == "DW_TAG_ptr_to_member_type":
            target = self._indirect(self.type_of, entry)
            size = entry.get("DW_AT_byte_size", self._pointer_size)
            return Pointer(key, target, size)

        if tag in QUALIFIER_TAGS:
            return Qualified(key, QUALIFIER_TAGS[tag], self.type_of(entry))

        if tag == "DW_TAG_typedef":
            return self._build_typedef(entry)

        if tag in RECORD_TAGS:
            if entry.is_declaration:
                return Opaque(key, entry.name, RECORD_TAGS[tag])
            if tag == "DW_TAG_union_type":
                return self._build_union(entry)
            if tag == "DW_TAG_enumeration_type":
                return self._build_enum(entry)
            return self._build_struct(entry)

        if tag == "DW_TAG_array_type":
            return self._build_array(entry)

        if tag == "DW_TAG_subroutine_type":
            return self._indirect(self._build_function_type, entry)

        if tag == "DW_TAG_unspecified_type":
            return Opaque(key, entry.name, "unspecified")

        raise UnsupportedFormat(
            f"Entry at {entry.offset:#x} has unsupported type tag {tag}"
        )

    def _build_typedef(self, entry: DebugEntry) -> TypeNode:
        key = TypeKey(entry.offset)
        aliased = self.type_of(entry)
        target = self._nodes.get(aliased)
        if (
            entry.name in SIZE_WIDTH_NAMES
            and isinstance(target, Primitive)
            and target.kind[0] in "iu"
            and target.size == self._pointer_size
        ):
            signed = SIZE_WIDTH_NAMES[entry.name]
            return Primitive(
                key, entry.name, "isize" if signed else "usize", target.size, signed
            )
        return Typedef(key, entry.name or f"typedef_{entry.offset:x}", aliased)

    def _build_struct(self, entry: DebugEntry) -> Struct:
        fields = []
        for child in entry.children:
            if child.tag == "DW_TAG_inheritance":
                fields.append(
                    Field(
                        name=None,
                        type=self.type_of(child),
                        offset=child.get("DW_AT_data_member_location", 0),
                    )
                )
                continue
            if child.tag != "DW_TAG_member" or child.is_declaration:
                continue
            if child.flag("DW_AT_external"):
                continue
            fields.append(self._build_field(child))
        return Struct(
            key=TypeKey(entry.offset),
            name=entry.name,
            size=entry.get("DW_AT_byte_size", 0),
            fields=tuple(fields),
        )

    def _build_field(self, member: DebugEntry) -> Field:
        type_key = self.type_of(member)
        bit_size = member.get("DW_AT_bit_size")
        if bit_size is None:
            return Field(
                name=member.name,
                type=type_key,
                offset=member.get("DW_AT_data_member_location", 0),
            )

        data_bit_offset = member.get("DW_AT_data_bit_offset")
        if data_bit_offset is None:
            byte_offset = member.get("DW_AT_data_member_location", 0)
            legacy = member.get("DW_AT_bit_offset", 0)
            storage = member.get("DW_AT_byte_size")
            if storage is None:
                storage = self._storage_size(type_key)
            if self._index.little_endian:
                data_bit_offset = byte_offset * 8 + storage * 8 - legacy - bit_size
            else:
                data_bit_offset = byte_offset * 8 + legacy
        return Field(
            name=member.name,
            type=type_key,
            offset=data_bit_offset // 8,
            bit_size=bit_size,
            bit_offset=data_bit_offset,
        )

    def _storage_size(self, key: TypeKey) -> int:
        node = self._nodes.get(key)
        while isinstance(node, (Typedef, Qualified)):
            node = self._nodes.get(node.aliased if isinstance(node, Typedef) else node.target)
        if isinstance(node, (Primitive, Enum)):
            return node.size
        return 4

    def _build_union(self, entry: DebugEntry) -> Union:
        variants = tuple(
            Variant(name=child.name, type=self.type_of(child))
            for child in entry.children
            if child.tag == "DW_TAG_member" and not child.flag("DW_AT_external")
        )
        return Union(
            key=TypeKey(entry.offset),
            name=entry.name,
            size=entry.get("DW_AT_byte_size", 0),
            variants=variants,
        )

    def _build_enum(self, entry: DebugEntry) -> Enum:
        key = TypeKey(entry.offset)
        size = entry.get("DW_AT_byte_size", 4)
        underlying = self.type_of(entry)
        if underlying == VOID_KEY:
            kind = {1: "i8", 2: "i16", 4: "i32", 8: "i64"}.get(size, "unknown")
            underlying = TypeKey(entry.offset, ENUM_BASE_VARIANT)
            base_name = ENUM_BASE_NAMES.get(kind, "int")
            self._nodes[underlying] = Primitive(underlying, base_name, kind, size, True)
            signed = True
        else:
            base = self._nodes[underlying]
            while isinstance(base, (Typedef, Qualified)):
                base = self._nodes[
                    base.aliased if isinstance(base, Typedef) else base.target
                ]
            signed = isinstance(base, Primitive) and base.signed

        members = []
        for child in entry.children:
            if child.tag != "DW_TAG_enumerator":
                continue
            value = child.get("DW_AT_const_value", 0)
            if not isinstance(value, int):
                raise UnsupportedFormat(
                    f"Enumerator at {child.offset:#x} has a non-integer value"
                )
            if signed:
                value = sign_extend(value, child.forms.get("DW_AT_const_value"))
            members.append((child.name, value))
        return Enum(
            key=key,
            name=entry.name,
            underlying=underlying,
            size=size,
            members=tuple(members),
        )

    def _build_array(self, entry: DebugEntry) -> Array:
        element = self.type_of(entry)
        dims = [
            self._dimension(child)
            for child in entry.children
            if child.tag in ("DW_TAG_subrange_type", "DW_TAG_enumeration_type")
        ]
        if not dims:
            dims = [None]
        for variant in range(len(dims) - 1, 0, -1):
            inner = TypeKey(entry.offset, variant)
            self._nodes[inner] = Array(inner, element, dims[variant])
            element = inner
        return Array(TypeKey(entry.offset), element, dims[0])

    def _dimension(self, subrange: DebugEntry) -> int | None:
        if subrange.tag == "DW_TAG_enumeration_type":
            return len([c for c in subrange.children if c.tag == "DW_TAG_enumerator"])
        count = subrange.get("DW_AT_count")
        if isinstance(count, int) and "DW_AT_count" not in subrange.refs:
            return max(sign_extend(count, subrange.forms.get("DW_AT_count")), 0)
        upper = subrange.get("DW_AT_upper_bound")
        if not isinstance(upper, int) or "DW_AT_upper_bound" in subrange.refs:
            return None
        lower = subrange.get("DW_AT_lower_bound", 0)
        upper = sign_extend(upper, subrange.forms.get("DW_AT_upper_bound"))
        return max(upper - lower + 1, 0)

    def _build_function_type(self, entry: DebugEntry) -> FunctionPointer:
        return_type = self.type_of(entry)
        params = []
        variadic = False
        for child in entry.children:
            if child.tag == "DW_TAG_formal_parameter":
                params.append(self.type_of(child))
            elif child.tag == "DW_TAG_unspecified_parameters":
                variadic = True
        return FunctionPointer(
            key=TypeKey(entry.offset),
            return_type=return_type,
            params=tuple(params),
            variadic=variadic,
        )


# ===--- Signature extractor ---=== #


def _parameter_entries(index: DebugIndex, entry: DebugEntry) -> tuple[DebugEntry, ...]:
    current = entry
    seen = set()
    while current is not None and current.offset not in seen:
        params = tuple(
            child
            for child in current.children
            if child.tag in ("DW_TAG_formal_parameter", "DW_TAG_unspecified_parameters")
        )
        if params:
            return params
        seen.add(current.offset)
        current = index.origin(current)
    return ()


def decay_array(builder: TypeGraphBuilder, key: TypeKey) -> TypeKey:
    """Return the pointer an array-typed parameter decays to, else `key`."""
    node = builder.node(key)
    while isinstance(node, (Typedef, Qualified)):
        node = builder.node(node.aliased if isinstance(node, Typedef) else node.target)
    if not isinstance(node, Array):
        return key
    decayed = TypeKey(node.key.offset, DECAY_VARIANT)
    builder.add_node(Pointer(decayed, node.element, builder.pointer_size))
    return decayed


def extract_signature(
    index: DebugIndex, builder: TypeGraphBuilder, candidate: FunctionCandidate
) -> FunctionSignature:
    entry = candidate.entry
    return_type = builder.type_of(entry)
    params = []
    variadic = False
    for child in _parameter_entries(index, entry):
        if child.tag == "DW_TAG_unspecified_parameters":
            variadic = True
            continue
        declared = builder.type_of(child)
        passed = decay_array(builder, declared)
        params.append(
            Parameter(
                name=index.lookup(child, "DW_AT_name"),
                type=passed,
                declared_type=declared if passed != declared else None,
            )
        )
    return FunctionSignature(
        name=candidate.name,
        return_type=return_type,
        params=tuple(params),
        variadic=variadic,
        address=candidate.address,
    )


# ===--- Graph validation and canonicalization ---=== #


def validate_graph(
    nodes: Mapping[TypeKey, TypeNode], functions: list[FunctionSignature]
) -> None:
    for node in nodes.values():
        for ref in node_references(node):
            if ref not in nodes:
                raise DanglingTypeReference(
                    f"Type {node.key} refers to {ref}, which was never built"
                )
    for sig in functions:
        for ref in signature_references(sig):
            if ref not in nodes:
                raise DanglingTypeReference(
                    f"Function '{sig.name}' refers to {ref}, which was never built"
                )


def _shallow_label(node: TypeNode):
    blanked = remap_node(node, {ref: VOID_KEY for ref in node_references(node)})
    return replace(blanked, key=VOID_KEY)


def _number_classes(keys: list[TypeKey], labels: dict) -> dict[TypeKey, int]:
    ids: dict = {}
    return {key: ids.setdefault(labels[key], len(ids)) for key in keys}


def canonical_keys(nodes: Mapping[TypeKey, TypeNode]) -> dict[TypeKey, TypeKey]:
    """Map every key to the lowest key of a structurally identical node.

    Units that include the same header each describe the same types. Nodes
    are partitioned by their own content and refined by the partition of the
    nodes they reference until stable, which also equates identical cycles.
    """
    keys = sorted(nodes)
    classes = _number_classes(keys, {key: _shallow_label(nodes[key]) for key in keys})
    while True:
        labels = {
            key: (classes[key], tuple(classes[ref] for ref in node_references(nodes[key])))
            for key in keys
        }
        refined = _number_classes(keys, labels)
        if len(set(refined.values())) == len(set(classes.values())):
            break
        classes = refined

    representative: dict[int, TypeKey] = {}
    for key in keys:
        representative.setdefault(classes[key], key)
    return {key: representative[classes[key]] for key in keys}


def canonicalize(
    nodes: Mapping[TypeKey, TypeNode],
    functions: list[FunctionSignature],
    roots: list[TypeKey],
) -> tuple[dict[TypeKey, TypeNode], list[FunctionSignature]]:
    """Merge duplicates and drop nodes no function or root reaches."""
    canonical = canonical_keys(nodes)
    remap = {key: rep for key, rep in canonical.items() if key != rep}
    merged = {
        key: remap_node(node, remap)
        for key, node in nodes.items()
        if key not in remap
    }
    functions = [remap_signature(sig, remap) for sig in functions]

    reachable: set[TypeKey] = set()
    stack = [remap.get(key, key) for key in roots]
    for sig in functions:
        stack.extend(signature_references(sig))
    while stack:
        key = stack.pop()
        if key in reachable:
            continue
        reachable.add(key)
        stack.extend(node_references(merged[key]))
    return {key: node for key, node in merged.items() if key in reachable}, functions


# ===--- Extraction ---=== #


@dataclass(frozen=True)
class ExtractionResult:
    model: IntermediateModel
    diagnostics: tuple[Diagnostic, ...]
    units: int
    exported_symbols: int
    candidates: int


@dataclass(frozen=True)
class _WorkItem:
    unit_offset: int
    candidates: tuple[FunctionCandidate, ...]
    type_roots: tuple[int, ...]


def _type_root_offsets(
    index: DebugIndex, mode: str, candidates: list[FunctionCandidate]
) -> dict[int, list[int]]:
    if mode == "functions":
        return {}
    if mode == "types":
        units = index.units
    else:
        defining = {c.unit_offset for c in candidates}
        units = tuple(u for u in index.units if u.offset in defining)
    return {
        unit.offset: [entry.offset for entry in index.top_level_types(unit)]
        for unit in units
    }


def _run_work_item(index: DebugIndex, item: _WorkItem):
    builder = TypeGraphBuilder(index)
    sigs = [extract_signature(index, builder, c) for c in item.candidates]
    roots = [builder.build(offset) for offset in item.type_roots]
    return dict(builder.nodes), sigs, roots


def _merge_nodes(partials: list[dict[TypeKey, TypeNode]]) -> dict[TypeKey, TypeNode]:
    merged: dict[TypeKey, TypeNode] = {}
    for nodes in partials:
        for key, node in nodes.items():
            existing = merged.get(key)
            if existing is None:
                merged[key] = node
            elif existing != node:
                raise DanglingTypeReference(
                    f"Units disagree on the type at {key}: {existing!r} vs {node!r}"
                )
    return merged


def extract(
    binary: LoadedBinary | Path | str,
    mode: str = DEFAULT_MODE,
    strict: bool = False,
    include_internal: bool = False,
    jobs: int = 1,
) -> ExtractionResult:
    """Run one extraction pass and return the immutable model.

    Args:
        binary: A loaded binary, or a path to load.
        mode: "full" (functions plus the named types of their units),
            "functions" (functions and the types they reach) or "types"
            (every named type, no functions).
        strict: Raise `UnresolvedSymbol` instead of recording a diagnostic.
        include_internal: Keep functions that are not exported.
        jobs: Worker threads; units are built independently and merged.

    Returns:
        ExtractionResult with the model and lenient-mode diagnostics.
    """
    if mode not in MODES:
        raise ValueError(f"Unknown extraction mode: {mode}")
    if not isinstance(binary, LoadedBinary):
        binary = load_binary(binary)

    index = DebugIndex.from_binary(binary)
    candidates, diagnostics = filter_visible(binary, index, strict, include_internal)
    type_roots = _type_root_offsets(index, mode, candidates)
    if mode == "types":
        candidates_for_build = []
    else:
        candidates_for_build = candidates

    grouped: dict[int, list[FunctionCandidate]] = defaultdict(list)
    for candidate in candidates_for_build:
        grouped[candidate.unit_offset].append(candidate)
    items = [
        _WorkItem(
            unit_offset=unit.offset,
            candidates=tuple(grouped.get(unit.offset, ())),
            type_roots=tuple(type_roots.get(unit.offset, ())),
        )
        for unit in index.units
        if grouped.get(unit.offset) or type_roots.get(unit.offset)
    ]

    if jobs > 1 and len(items) > 1:
        with ThreadPoolExecutor(max_workers=jobs) as pool:
            results = list(pool.map(lambda item: _run_work_item(index, item), items))
    else:
        combined = _WorkItem(
            unit_offset=0,
            candidates=tuple(c for item in items for c in item.candidates),
            type_roots=tuple(o for item in items for o in item.type_roots),
        )
        results = [_run_work_item(index, combined)]

    nodes = _merge_nodes([r[0] for r in results])
    functions = [sig for r in results for sig in r[1]]
    roots = [key for r in results for key in r[2]]

    validate_graph(nodes, functions)
    nodes, functions = canonicalize(nodes, functions, roots)
    model = IntermediateModel(
        library=str(binary.path),
        types=nodes,
        functions=functions,
        pointer_size=binary.pointer_size,
    )
    return ExtractionResult(
        model=model,
        diagnostics=tuple(diagnostics),
        units=len(binary.units),
        exported_symbols=len(binary.exported_functions()),
        candidates=len(candidates),
    )


# ===--- Generator machinery ---=== #

_HEADER_BORDER = "x-------------------------------------------x"


@dataclass(frozen=True)
class GenerateOptions:
    mode: str = DEFAULT_MODE
    library_path: str | None = None


def format_file_header(model: IntermediateModel, target: str, comment: str) -> list[str]:
    """Boxed comment opening every generated file.

    Output format (with comment="//"):
        // x-------------------------------------------x //
        // | js bindings for libtestlib.so
        // | Generated by dwarfbind 0.3.0
        // | Functions: 40, types: 31
        // x-------------------------------------------x //
    """
    closing = f" {comment}" if comment != "#" else ""
    return [
        f"{comment} {_HEADER_BORDER}{closing}",
        f"{comment} | {target} bindings for {Path(model.library).name}",
        f"{comment} | Generated by dwarfbind {VERSION}",
        f"{comment} | Functions: {len(model.functions)}, types: {len(model.types)}",
        f"{comment} {_HEADER_BORDER}{closing}",
    ]


def escape_identifier(name: str, reserved) -> str:
    if name in reserved:
        return name + "_"
    return name


def unqualified(model: IntermediateModel, key: TypeKey) -> TypeNode:
    """Peel qualifiers only, keeping typedefs."""
    node = model.node(key)
    while isinstance(node, Qualified):
        node = model.node(node.target)
    return node


def align_up(value: int, alignment: int) -> int:
    return (value + alignment - 1) // alignment * alignment


def layout_of(model: IntermediateModel, key: TypeKey) -> tuple[int, int]:
    """Natural (size, alignment) of a type used by value."""
    node = model.resolve(key)
    if isinstance(node, Primitive):
        if node.kind == "void":
            raise CodegenError(f"void used by value at {key}")
        if node.kind == "complex":
            return node.size, max(1, node.size // 2)
        return node.size, max(1, min(node.size, 16))
    if isinstance(node, Pointer):
        return node.size, node.size
    if isinstance(node, Enum):
        return node.size, max(1, node.size)
    if isinstance(node, Array):
        size, alignment = layout_of(model, node.element)
        return size * (node.count or 0), alignment
    if isinstance(node, Struct):
        members = [f.type for f in node.fields]
    elif isinstance(node, Union):
        members = [v.type for v in node.variants]
    elif isinstance(node, Opaque):
        raise CodegenError(
            f"Opaque type '{node.name or node.key}' has no layout",
            "Pass it by pointer instead.",
        )
    else:
        raise CodegenError(f"Function type {node.key} used by value")
    alignment = max((layout_of(model, m)[1] for m in members), default=1)
    return node.size, alignment


@dataclass(frozen=True)
class RecordMember:
    name: str
    type: TypeKey | None
    offset: int
    size: int
    bit_size: int | None = None

    @property
    def is_padding(self) -> bool:
        return self.type is None


@dataclass(frozen=True)
class RecordPlan:
    """Members to emit for a struct or union so the target layout equals
    the debug layout. Padding members have no type."""

    members: tuple[RecordMember, ...]
    packed: bool
    anonymous: tuple[str, ...] = ()

    @property
    def has_bitfields(self) -> bool:
        return any(m.bit_size is not None for m in self.members)


def _member_name(name: str | None, position: int, anonymous: list[str]) -> str:
    if name:
        return name
    generated = f"_anon{position}"
    anonymous.append(generated)
    return generated


def plan_struct(model: IntermediateModel, node: Struct) -> RecordPlan:
    anonymous: list[str] = []
    members = []
    for position, f in enumerate(node.fields):
        name = _member_name(f.name, position, anonymous)
        if f.bit_size is not None:
            members.append(RecordMember(name, f.type, f.offset, 0, f.bit_size))
        else:
            size, _ = layout_of(model, f.type)
            members.append(RecordMember(name, f.type, f.offset, size))

    if any(m.bit_size is not None for m in members):
        return RecordPlan(tuple(members), packed=False, anonymous=tuple(anonymous))

    cursor = 0
    max_align = 1
    natural = True
    for member in members:
        _, alignment = layout_of(model, member.type)
        max_align = max(max_align, alignment)
        if align_up(cursor, alignment) != member.offset:
            natural = False
        cursor = member.offset + member.size
    if align_up(cursor, max_align) != node.size:
        natural = False
    if natural:
        return RecordPlan(tuple(members), packed=False, anonymous=tuple(anonymous))

    padded = []
    cursor = 0
    for member in members:
        if member.offset < cursor:
            raise CodegenError(
                f"Member '{member.name}' of {node.name or node.key} overlaps "
                f"the previous member at offset {member.offset}"
            )
        if member.offset > cursor:
            padded.append(
                RecordMember(f"_pad{len(padded)}", None, cursor, member.offset - cursor)
            )
        padded.append(member)
        cursor = member.offset + member.size
    if node.size > cursor:
        padded.append(RecordMember(f"_pad{len(padded)}", None, cursor, node.size - cursor))
    return RecordPlan(tuple(padded), packed=True, anonymous=tuple(anonymous))


def plan_union(model: IntermediateModel, node: Union) -> RecordPlan:
    anonymous: list[str] = []
    members = []
    max_size = 0
    max_align = 1
    for position, variant in enumerate(node.variants):
        size, alignment = layout_of(model, variant.type)
        max_size = max(max_size, size)
        max_align = max(max_align, alignment)
        name = _member_name(variant.name, position, anonymous)
        members.append(RecordMember(name, variant.type, 0, size))
    natural = align_up(max_size, max_align)
    if natural == node.size:
        return RecordPlan(tuple(members), packed=False, anonymous=tuple(anonymous))
    if natural < node.size:
        members.append(RecordMember("_pad0", None, 0, node.size))
        return RecordPlan(tuple(members), packed=False, anonymous=tuple(anonymous))
    return RecordPlan(tuple(members), packed=True, anonymous=tuple(anonymous))


class NameTable:
    """Target names for records, enums, opaque types and function types.

    A type keeps its own name; an anonymous one borrows the name of a typedef
    that aliases it, else gets `anon_<kind>_<offset>`. A function type takes
    the name of the typedef of a pointer to it with a `_fn` suffix.
    """

    def __init__(self, model: IntermediateModel, reserved=frozenset()):
        self._names: dict[TypeKey, str] = {}
        typedef_names: dict[TypeKey, list[str]] = defaultdict(list)
        pointers_to: dict[TypeKey, list[TypeKey]] = defaultdict(list)
        for node in model.types.values():
            if isinstance(node, Typedef):
                typedef_names[node.aliased].append(node.name)
            elif isinstance(node, Pointer):
                pointers_to[node.target].append(node.key)

        used: set[str] = set()
        for key, node in model.types.items():
            if isinstance(node, (Struct, Union, Enum, Opaque)):
                kind = type(node).__name__.lower()
                if isinstance(node, Opaque) and node.kind == "unspecified":
                    continue
                base = node.name or next(iter(typedef_names.get(key, ())), None)
                if base is None:
                    suffix = f"_{key.variant}" if key.variant else ""
                    base = f"anon_{kind}_{key.offset:x}{suffix}"
            elif isinstance(node, FunctionPointer):
                kind = "fn"
                direct = typedef_names.get(key)
                via_pointer = [
                    name for ptr in pointers_to.get(key, ()) for name in typedef_names.get(ptr, ())
                ]
                if via_pointer:
                    base = f"{via_pointer[0]}_fn"
                elif direct:
                    base = direct[0]
                else:
                    base = f"fn_{key.offset:x}"
            else:
                continue
            name = escape_identifier(base, reserved)
            if name in used:
                name = f"{name}_{kind}"
            counter = 2
            unique = name
            while unique in used:
                unique = f"{name}{counter}"
                counter += 1
            used.add(unique)
            self._names[key] = unique
        self.used = frozenset(used)

    def __getitem__(self, key: TypeKey) -> str:
        return self._names[key]

    def __contains__(self, key: TypeKey) -> bool:
        return key in self._names

    def get(self, key: TypeKey, default=None):
        return self._names.get(key, default)

    def as_dict(self) -> dict[TypeKey, str]:
        return dict(self._names)


def typedef_aliases(model: IntermediateModel, names: NameTable) -> list[tuple[str, TypeKey]]:
    """Typedefs that add a new name for a record, opaque or callback type.

    Transparent typedefs (`typedef struct Point Point`) and names already
    taken by a descriptor are skipped.
    """
    aliases = []
    taken = set(names.used)
    for node in model.types.values():
        if not isinstance(node, Typedef):
            continue
        target = unqualified(model, node.aliased)
        if isinstance(target, Pointer) and isinstance(
            model.node(target.target), FunctionPointer
        ):
            target = model.node(target.target)
        elif not isinstance(target, (Struct, Union, Opaque)):
            continue
        if target.key not in names or names[target.key] == node.name:
            continue
        if node.name in taken:
            continue
        taken.add(node.name)
        aliases.append((node.name, target.key))
    return aliases


def topo_order(keys, deps_of) -> list[TypeKey]:
    """Order `keys` so every key follows its dependencies; ties by key."""
    key_set = set(keys)
    deps = {key: {d for d in deps_of(key) if d in key_set and d != key} for key in keys}

    in_degree = {key: len(dd) for key, dd in deps.items()}
    adj = defaultdict(list)
    for key, dd in deps.items():
        for d in dd:
            adj[d].append(key)

    queue = [key for key in deps if in_degree[key] == 0]
    result = []
    while queue:
        queue.sort()
        node = queue.pop(0)
        result.append(node)
        for neighbor in adj[node]:
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                queue.append(neighbor)

    if len(result) != len(deps):
        remaining = sorted(set(deps) - set(result))
        raise CodegenError(
            "Dependency cycle between types: " + ", ".join(str(k) for k in remaining)
        )
    return result


class BindingGenerator(ABC):
    """One output target. `generate` is a pure function of the model."""

    name = ""
    reserved: frozenset[str] = frozenset()

    @abstractmethod
    def generate(self, model: IntermediateModel, options: GenerateOptions) -> str:
        raise NotImplementedError

    def prepare(self, model: IntermediateModel, options: GenerateOptions) -> IntermediateModel:
        if options.mode == "functions":
            return model.functions_only()
        return model


# ===--- JavaScript (koffi) generator ---=== #

KOFFI_PRIMITIVES = {
    "void": "void",
    "bool": "bool",
    "char": "char",
    "i8": "int8_t",
    "i16": "int16_t",
    "i32": "int32_t",
    "i64": "int64_t",
    "u8": "uint8_t",
    "u16": "uint16_t",
    "u32": "uint32_t",
    "u64": "uint64_t",
    "isize": "intptr_t",
    "usize": "size_t",
    "f32": "float",
    "f64": "double",
}

JS_RESERVED = frozenset(
    {
        "break", "case", "catch", "class", "const", "continue", "debugger",
        "default", "delete", "do", "else", "enum", "export", "extends", "false",
        "finally", "for", "function", "if", "import", "in", "instanceof", "let",
        "new", "null", "return", "static", "super", "switch", "this", "throw",
        "true", "try", "typeof", "var", "void", "while", "with", "yield",
        "await", "arguments", "eval",
        "koffi", "lib", "types", "module", "require", "LIBRARY_PATH",
    }
)


def _quoted(text: str) -> str:
    return f"'{text}'"


def _is_quoted(expr: str) -> bool:
    return expr.startswith("'") and expr.endswith("'")


class KoffiGenerator(BindingGenerator):
    """CommonJS module for the koffi FFI runtime."""

    name = "js"
    reserved = JS_RESERVED

    def generate(self, model: IntermediateModel, options: GenerateOptions) -> str:
        model = self.prepare(model, options)
        return _KoffiModule(model, NameTable(model, self.reserved)).render(options)


class _KoffiModule:
    def __init__(self, model: IntermediateModel, names: NameTable):
        self.model = model
        self.names = names
        self.emitted: set[TypeKey] = set()

    def render(self, options: GenerateOptions) -> str:
        model = self.model
        library_path = options.library_path or model.library
        lines = format_file_header(model, "js", "//")
        lines += [
            "'use strict';",
            "",
            "const koffi = require('koffi');",
            "",
            f"const LIBRARY_PATH = process.env.DWARFBIND_LIBRARY || {json.dumps(library_path)};",
            "const lib = koffi.load(LIBRARY_PATH);",
            "",
            "const types = {};",
        ]

        enums = [n for n in model.types.values() if isinstance(n, Enum)]
        if enums:
            lines.append("")
        for node in enums:
            lines.extend(self.enum_lines(node))

        opaques = [
            n
            for n in model.types.values()
            if isinstance(n, Opaque) and n.key in self.names
        ]
        if opaques:
            lines.append("")
        for node in opaques:
            name = self.names[node.key]
            lines.append(f"types.{name} = koffi.opaque({_quoted(name)});")
            self.emitted.add(node.key)

        descriptors = [
            key
            for key, node in model.types.items()
            if isinstance(node, (Struct, Union, FunctionPointer))
        ]
        for key in topo_order(descriptors, self.descriptor_deps):
            lines.append("")
            lines.extend(self.descriptor_lines(model.node(key)))
            self.emitted.add(key)

        aliases = typedef_aliases(model, self.names)
        if aliases:
            lines.append("")
        for alias, target in aliases:
            if isinstance(model.node(target), FunctionPointer):
                target_expr = _quoted(f"{self.names[target]} *")
            else:
                target_expr = _quoted(self.names[target])
            lines.append(f"types.{alias} = koffi.alias({_quoted(alias)}, {target_expr});")

        exports = ["lib", "types"]
        if model.functions:
            lines.append("")
        for sig in model.functions:
            identifier = escape_identifier(sig.name, JS_RESERVED)
            lines.append(f"const {identifier} = {self.function_expr(sig)};")
            exports.append(identifier if identifier == sig.name else f"{sig.name}: {identifier}")

        lines.append("")
        lines.append("module.exports = {")
        for name in exports:
            lines.append(f"  {name},")
        lines.append("};")
        lines.append("")
        return "\n".join(lines)

    def enum_lines(self, node: Enum) -> list[str]:
        name = self.names[node.key]
        lines = [f"types.{name} = Object.freeze({{"]
        for member, value in node.members:
            lines.append(f"  {member}: {value},")
        lines.append("});")
        return lines

    def descriptor_deps(self, key: TypeKey) -> set[TypeKey]:
        """By-value dependencies of a descriptor, plus the prototypes it
        points at unless such a prototype leads back to it.

        A pointer to a prototype that is not emitted yet is bound as
        'void *', which breaks a record <-> callback cycle.
        """
        deps, pointed = self._direct_deps(key)
        for proto in pointed:
            if not self._reaches(proto, key):
                deps.add(proto)
        return deps

    def _direct_deps(self, key: TypeKey) -> tuple[set[TypeKey], set[TypeKey]]:
        node = self.model.node(key)
        if isinstance(node, Struct):
            refs = [f.type for f in node.fields]
        elif isinstance(node, Union):
            refs = [v.type for v in node.variants]
        else:
            refs = [node.return_type, *node.params]
        deps: set[TypeKey] = set()
        pointed: set[TypeKey] = set()
        for ref in refs:
            self._collect_deps(ref, deps, pointed, through_pointer=False)
        return deps, pointed

    def _reaches(self, start: TypeKey, goal: TypeKey) -> bool:
        seen = set()
        stack = [start]
        while stack:
            key = stack.pop()
            if key == goal:
                return True
            if key in seen:
                continue
            seen.add(key)
            deps, pointed = self._direct_deps(key)
            stack.extend(deps | pointed)
        return False

    def _collect_deps(
        self,
        key: TypeKey,
        deps: set[TypeKey],
        pointed: set[TypeKey],
        through_pointer: bool,
    ) -> None:
        node = self.model.node(key)
        if isinstance(node, Typedef):
            self._collect_deps(node.aliased, deps, pointed, through_pointer)
        elif isinstance(node, Qualified):
            self._collect_deps(node.target, deps, pointed, through_pointer)
        elif isinstance(node, Array):
            self._collect_deps(node.element, deps, pointed, through_pointer)
        elif isinstance(node, Pointer):
            self._collect_deps(node.target, deps, pointed, through_pointer=True)
        elif isinstance(node, FunctionPointer):
            (pointed if through_pointer else deps).add(key)
        elif isinstance(node, (Struct, Union)) and not through_pointer:
            deps.add(key)

    def descriptor_lines(self, node: TypeNode) -> list[str]:
        name = self.names[node.key]
        if isinstance(node, FunctionPointer):
            context = f"function type '{name}'"
            ret = self.type_expr(node.return_type, context, returning=True)
            params = [self.type_expr(p, context) for p in node.params]
            if node.variadic:
                params.append(_quoted("..."))
            return [
                f"types.{name} = koffi.proto({_quoted(name)}, {ret}, [{', '.join(params)}]);"
            ]

        if isinstance(node, Struct):
            plan = plan_struct(self.model, node)
            if plan.has_bitfields:
                raise CodegenError(
                    f"Struct '{name}' has bitfields, which koffi cannot describe"
                )
            if node.fields:
                last = self.model.resolve(node.fields[-1].type)
                if isinstance(last, Array) and last.count is None:
                    raise CodegenError(
                        f"Struct '{name}' ends in a flexible array member"
                    )
            factory = "koffi.pack" if plan.packed else "koffi.struct"
        else:
            plan = plan_union(self.model, node)
            factory = "koffi.union"
            if plan.packed:
                raise CodegenError(f"Union '{name}' is packed, which koffi cannot describe")

        context = f"{type(node).__name__.lower()} '{name}'"
        lines = [f"types.{name} = {factory}({_quoted(name)}, {{"]
        for member in plan.members:
            if member.is_padding:
                expr = f"koffi.array('uint8_t', {member.size})"
            else:
                expr = self.type_expr(member.type, f"{context} member '{member.name}'")
            lines.append(f"  {member.name}: {expr},")
        lines.append("});")
        return lines

    def function_expr(self, sig: FunctionSignature) -> str:
        context = f"function '{sig.name}'"
        ret = self.type_expr(sig.return_type, context, returning=True)
        params = [self.type_expr(p.type, context) for p in sig.params]
        if sig.variadic:
            params.append(_quoted("..."))
        return f"lib.func({_quoted(sig.name)}, {ret}, [{', '.join(params)}])"

    def type_expr(self, key: TypeKey, context: str, returning: bool = False) -> str:
        node = self.model.node(key)
        if isinstance(node, Primitive):
            if node.kind == "void" and not returning:
                raise CodegenError(f"{context}: void used by value")
            koffi_name = KOFFI_PRIMITIVES.get(node.kind)
            if koffi_name is None:
                raise CodegenError(
                    f"{context}: {node.name} ({node.kind}) has no koffi equivalent"
                )
            return _quoted(koffi_name)
        if isinstance(node, Typedef):
            return self.type_expr(node.aliased, context, returning)
        if isinstance(node, Qualified):
            return self.type_expr(node.target, context, returning)
        if isinstance(node, Enum):
            return self.type_expr(node.underlying, context)
        if isinstance(node, (Struct, Union)):
            return _quoted(self.names[key])
        if isinstance(node, Opaque):
            if node.kind == "unspecified":
                raise CodegenError(f"{context}: {node.name or 'unspecified type'} used by value")
            raise CodegenError(
                f"{context}: opaque type '{self.names[key]}' cannot be used by value",
                "Only pointers to opaque types can be bound.",
            )
        if isinstance(node, FunctionPointer):
            raise CodegenError(f"{context}: function type used by value")
        if isinstance(node, Array):
            if node.count is None:
                raise CodegenError(f"{context}: array without a size")
            element = self.type_expr(node.element, context)
            return f"koffi.array({element}, {node.count})"
        return self.pointer_expr(node.target, context)

    def pointer_expr(self, target: TypeKey, context: str) -> str:
        const = False
        node = self.model.node(target)
        while isinstance(node, (Typedef, Qualified)):
            if isinstance(node, Qualified):
                const = const or node.qualifier == "const"
                node = self.model.node(node.target)
            else:
                node = self.model.node(node.aliased)
        prefix = "const " if const else ""

        if isinstance(node, Primitive):
            if node.kind == "void":
                return _quoted("void *")
            koffi_name = KOFFI_PRIMITIVES.get(node.kind)
            if koffi_name is None:
                raise CodegenError(
                    f"{context}: pointer to {node.name} ({node.kind}) has no koffi equivalent"
                )
            return _quoted(f"{prefix}{koffi_name} *")
        if isinstance(node, Enum):
            underlying = self.type_expr(node.underlying, context)
            return _quoted(f"{prefix}{underlying[1:-1]} *")
        if isinstance(node, Opaque):
            if node.key not in self.names:
                return _quoted("void *")
            return _quoted(f"{self.names[node.key]} *")
        if isinstance(node, FunctionPointer):
            if node.key not in self.emitted:
                return _quoted("void *")
            return _quoted(f"{self.names[node.key]} *")
        if isinstance(node, (Struct, Union)):
            if node.key in self.emitted:
                return _quoted(f"{prefix}{self.names[node.key]} *")
            return _quoted("void *")
        if isinstance(node, Pointer):
            inner = self.pointer_expr(node.target, context)
            if _is_quoted(inner):
                return _quoted(f"{inner[1:-1]} *")
            return f"koffi.pointer({inner})"
        return _quoted("void *")


# ===--- Python (ctypes) generator ---=== #

CTYPES_PRIMITIVES = {
    "void": "None",
    "bool": "ctypes.c_bool",
    "char": "ctypes.c_char",
    "i8": "ctypes.c_int8",
    "i16": "ctypes.c_int16",
    "i32": "ctypes.c_int32",
    "i64": "ctypes.c_int64",
    "u8": "ctypes.c_uint8",
    "u16": "ctypes.c_uint16",
    "u32": "ctypes.c_uint32",
    "u64": "ctypes.c_uint64",
    "isize": "ctypes.c_ssize_t",
    "usize": "ctypes.c_size_t",
    "f32": "ctypes.c_float",
    "f64": "ctypes.c_double",
    "longdouble": "ctypes.c_longdouble",
}

PYTHON_RESERVED = frozenset(keyword.kwlist) | {"ctypes", "enum", "os", "LIBRARY_PATH"}


class CtypesGenerator(BindingGenerator):
    """Python module for the standard ctypes bridge."""

    name = "ctypes"
    reserved = PYTHON_RESERVED

    def generate(self, model: IntermediateModel, options: GenerateOptions) -> str:
        model = self.prepare(model, options)
        return _CtypesModule(model, NameTable(model, self.reserved)).render(options)


class _CtypesModule:
    def __init__(self, model: IntermediateModel, names: NameTable):
        self.model = model
        self.names = names

    def render(self, options: GenerateOptions) -> str:
        model = self.model
        library_path = options.library_path or model.library
        lines = format_file_header(model, "ctypes", "#")
        lines += [
            "",
            "import ctypes",
            "import enum",
            "import os",
            "",
            f"LIBRARY_PATH = os.environ.get(\"DWARFBIND_LIBRARY\", {json.dumps(library_path)})",
            "_lib = ctypes.CDLL(LIBRARY_PATH)",
        ]

        for node in model.types.values():
            if isinstance(node, Enum):
                lines += ["", ""]
                lines.extend(self.enum_lines(node))

        records = []
        for key, node in model.types.items():
            if isinstance(node, (Struct, Union)) or (
                isinstance(node, Opaque) and key in self.names
            ):
                records.append(key)
                lines += ["", ""]
                lines.extend(self.class_lines(node))

        definitions = [
            key
            for key, node in model.types.items()
            if isinstance(node, (Struct, Union, FunctionPointer))
        ]
        ordered = topo_order(definitions, self.definition_deps)
        if ordered:
            lines += ["", ""]
        for key in ordered:
            lines.extend(self.definition_lines(model.node(key)))

        aliases = typedef_aliases(model, self.names)
        if aliases:
            lines.append("")
        for alias, target in aliases:
            lines.append(f"{escape_identifier(alias, PYTHON_RESERVED)} = {self.names[target]}")

        decodes = [sig for sig in model.functions if self.returns_string(sig)]
        if decodes:
            lines += [
                "",
                "",
                "def _decode_string(result, func, args):",
                "    if result is None:",
                "        return None",
                "    return result.decode(\"utf-8\")",
            ]

        if model.functions:
            lines.append("")
        taken = PYTHON_RESERVED | self.names.used | {alias for alias, _ in aliases}
        for sig in model.functions:
            lines.append("")
            lines.extend(self.function_lines(sig, escape_identifier(sig.name, taken)))
        lines.append("")
        return "\n".join(lines)

    def enum_lines(self, node: Enum) -> list[str]:
        lines = [f"class {self.names[node.key]}(enum.IntEnum):"]
        if not node.members:
            lines.append("    pass")
        for member, value in node.members:
            lines.append(f"    {escape_identifier(member, PYTHON_RESERVED)} = {value}")
        return lines

    def class_lines(self, node: TypeNode) -> list[str]:
        base = "ctypes.Union" if isinstance(node, Union) else "ctypes.Structure"
        lines = [f"class {self.names[node.key]}({base}):"]
        packed = False
        if isinstance(node, Struct):
            packed = plan_struct(self.model, node).packed
        elif isinstance(node, Union):
            packed = plan_union(self.model, node).packed
        if packed:
            lines.append("    _pack_ = 1")
            lines.append("    _layout_ = \"ms\"")
        else:
            lines.append("    pass")
        return lines

    def definition_deps(self, key: TypeKey) -> set[TypeKey]:
        node = self.model.node(key)
        # Every class is declared up front, so a prototype only waits on
        # other prototypes.
        prototype = isinstance(node, FunctionPointer)
        if isinstance(node, Struct):
            refs = [f.type for f in node.fields]
        elif isinstance(node, Union):
            refs = [v.type for v in node.variants]
        else:
            refs = [node.return_type, *node.params]
        deps: set[TypeKey] = set()
        for ref in refs:
            self._collect_deps(ref, deps, through_pointer=prototype)
        return deps

    def _collect_deps(self, key: TypeKey, deps: set[TypeKey], through_pointer: bool) -> None:
        node = self.model.node(key)
        if isinstance(node, Typedef):
            self._collect_deps(node.aliased, deps, through_pointer)
        elif isinstance(node, Qualified):
            self._collect_deps(node.target, deps, through_pointer)
        elif isinstance(node, Array):
            self._collect_deps(node.element, deps, through_pointer)
        elif isinstance(node, Pointer):
            self._collect_deps(node.target, deps, through_pointer=True)
        elif isinstance(node, FunctionPointer):
            deps.add(key)
        elif isinstance(node, (Struct, Union)) and not through_pointer:
            deps.add(key)

    def definition_lines(self, node: TypeNode) -> list[str]:
        name = self.names[node.key]
        if isinstance(node, FunctionPointer):
            context = f"function type '{name}'"
            if node.variadic:
                raise CodegenError(
                    f"{context} is variadic, which ctypes.CFUNCTYPE cannot describe"
                )
            args = [self.type_expr(node.return_type, context, returning=True)]
            args += [self.type_expr(p, context) for p in node.params]
            return [f"{name} = ctypes.CFUNCTYPE({', '.join(args)})"]

        if isinstance(node, Struct):
            plan = plan_struct(self.model, node)
        else:
            plan = plan_union(self.model, node)
        context = f"{type(node).__name__.lower()} '{name}'"
        lines = []
        if plan.anonymous:
            listed = ", ".join(json.dumps(a) for a in plan.anonymous)
            lines.append(f"{name}._anonymous_ = ({listed},)")
        if not plan.members:
            lines.append(f"{name}._fields_ = []")
            return lines
        lines.append(f"{name}._fields_ = [")
        for member in plan.members:
            if member.is_padding:
                lines.append(f"    ({json.dumps(member.name)}, ctypes.c_uint8 * {member.size}),")
                continue
            expr = self.type_expr(member.type, f"{context} member '{member.name}'")
            if member.bit_size is not None:
                lines.append(f"    ({json.dumps(member.name)}, {expr}, {member.bit_size}),")
            else:
                lines.append(f"    ({json.dumps(member.name)}, {expr}),")
        lines.append("]")
        return lines

    def returns_string(self, sig: FunctionSignature) -> bool:
        node = self.model.node(sig.return_type)
        while isinstance(node, Typedef):
            node = self.model.node(node.aliased)
        if not isinstance(node, Pointer):
            return False
        target = self.model.resolve(node.target)
        return (
            isinstance(target, Primitive)
            and target.kind == "char"
            and self.model.is_const(node.target)
        )

    def function_lines(self, sig: FunctionSignature, identifier: str) -> list[str]:
        context = f"function '{sig.name}'"
        argtypes = [self.type_expr(p.type, context) for p in sig.params]
        restype = self.type_expr(sig.return_type, context, returning=True)
        lines = [
            f"{identifier} = _lib[{json.dumps(sig.name)}]",
            f"{identifier}.argtypes = [{', '.join(argtypes)}]",
            f"{identifier}.restype = {restype}",
        ]
        if self.returns_string(sig):
            lines.append(f"{identifier}.errcheck = _decode_string")
        return lines

    def type_expr(self, key: TypeKey, context: str, returning: bool = False) -> str:
        node = self.model.node(key)
        if isinstance(node, Primitive):
            if node.kind == "void" and not returning:
                raise CodegenError(f"{context}: void used by value")
            ctype = CTYPES_PRIMITIVES.get(node.kind)
            if ctype is None:
                raise CodegenError(
                    f"{context}: {node.name} ({node.kind}) has no ctypes equivalent"
                )
            return ctype
        if isinstance(node, Typedef):
            return self.type_expr(node.aliased, context, returning)
        if isinstance(node, Qualified):
            return self.type_expr(node.target, context, returning)
        if isinstance(node, Enum):
            return self.type_expr(node.underlying, context)
        if isinstance(node, (Struct, Union)):
            return self.names[key]
        if isinstance(node, Opaque):
            raise CodegenError(
                f"{context}: opaque type '{self.names.get(key, node.name)}' "
                "cannot be used by value",
                "Only pointers to opaque types can be bound.",
            )
        if isinstance(node, FunctionPointer):
            raise CodegenError(f"{context}: function type used by value")
        if isinstance(node, Array):
            element = self.type_expr(node.element, context)
            if " * " in element:
                element = f"({element})"
            return f"{element} * {node.count or 0}"
        return self.pointer_expr(node.target, context)

    def pointer_expr(self, target: TypeKey, context: str) -> str:
        node = self.model.resolve(target)
        if isinstance(node, Primitive):
            if node.kind == "void":
                return "ctypes.c_void_p"
            if node.kind == "char":
                return "ctypes.c_char_p"
        if isinstance(node, FunctionPointer):
            return self.names[node.key]
        if isinstance(node, Opaque):
            if node.key not in self.names:
                return "ctypes.c_void_p"
            return f"ctypes.POINTER({self.names[node.key]})"
        if isinstance(node, (Struct, Union)):
            return f"ctypes.POINTER({self.names[node.key]})"
        return f"ctypes.POINTER({self.type_expr(node.key, context)})"


# ===--- C declarations generator ---=== #

C_RESERVED = frozenset(
    {
        "auto", "break", "case", "char", "const", "continue", "default", "do",
        "double", "else", "enum", "extern", "float", "for", "goto", "if",
        "inline", "int", "long", "register", "restrict", "return", "short",
        "signed", "sizeof", "static", "struct", "switch", "typedef", "union",
        "unsigned", "void", "volatile", "while", "_Bool", "_Atomic",
    }
)


class CDeclarationsGenerator(BindingGenerator):
    """Plain C declarations: type definitions, then prototypes.

    In functions mode only the prototypes are printed. That output is a
    listing of the exported API and does not compile on its own, since the
    typedef names it uses are never declared.
    """

    name = "c"
    reserved = C_RESERVED

    def generate(self, model: IntermediateModel, options: GenerateOptions) -> str:
        functions_only = options.mode == "functions"
        model = self.prepare(model, options)
        names = NameTable(model, self.reserved)
        lines = format_file_header(model, "C", "//")
        lines.append("")
        if any(
            isinstance(node, Primitive) and node.name in SIZE_WIDTH_NAMES
            for node in model.types.values()
        ):
            lines += ["#include <stddef.h>", "#include <stdint.h>", "#include <sys/types.h>", ""]
        if not functions_only:
            lines.extend(self.type_lines(model, names))
        for sig in model.functions:
            lines.append(self.prototype(model, sig, names))
        if model.functions:
            lines.append("")
        return "\n".join(lines)

    def prototype(self, model: IntermediateModel, sig: FunctionSignature, names) -> str:
        params = [
            c_declarator(model, p.declared_type or p.type, p.name or "", names)
            for p in sig.params
        ]
        if sig.variadic:
            params.append("...")
        declarator = f"{sig.name}({', '.join(params) or 'void'})"
        return c_declarator(model, sig.return_type, declarator, names) + ";"

    def type_lines(self, model: IntermediateModel, names: NameTable) -> list[str]:
        lines = []
        forward = [
            key
            for key, node in model.types.items()
            if isinstance(node, (Struct, Union))
            or (isinstance(node, Opaque) and node.kind in ("struct", "union"))
        ]
        for key in forward:
            node = model.node(key)
            is_union = isinstance(node, Union) or (
                isinstance(node, Opaque) and node.kind == "union"
            )
            tag = "union" if is_union else "struct"
            lines.append(f"{tag} {names[key]};")
        if forward:
            lines.append("")

        definitions = [
            key
            for key, node in model.types.items()
            if isinstance(node, (Struct, Union, Enum, Typedef))
        ]

        def deps_of(key: TypeKey) -> set[TypeKey]:
            node = model.node(key)
            deps: set[TypeKey] = set()
            if isinstance(node, Typedef):
                direct = model.node(node.aliased)
                self._collect_deps(
                    model, node.aliased, deps, isinstance(direct, (Struct, Union))
                )
            else:
                for ref in node_references(node):
                    self._collect_deps(model, ref, deps, through_pointer=False)
            return deps

        in_typedefs = False
        for key in topo_order(definitions, deps_of):
            node = model.node(key)
            if isinstance(node, Typedef):
                lines.append(f"typedef {c_declarator(model, node.aliased, node.name, names)};")
                in_typedefs = True
                continue
            if in_typedefs:
                lines.append("")
                in_typedefs = False
            if isinstance(node, Enum):
                lines.append(f"enum {names[key]} {{")
                for member, value in node.members:
                    lines.append(f"    {member} = {value},")
                lines.append("};")
            else:
                tag = "struct" if isinstance(node, Struct) else "union"
                lines.append(f"{tag} {names[key]} {{")
                lines.extend(self.member_lines(model, node, names))
                lines.append(f"}}; /* size {node.size} */")
            lines.append("")
        if in_typedefs:
            lines.append("")
        return lines

    def member_lines(self, model: IntermediateModel, node, names) -> list[str]:
        lines = []
        if isinstance(node, Struct):
            for position, f in enumerate(node.fields):
                declaration = c_declarator(model, f.type, f.name or f"_anon{position}", names)
                if f.bit_size is not None:
                    lines.append(
                        f"    {declaration} : {f.bit_size}; /* bit offset {f.bit_offset} */"
                    )
                else:
                    lines.append(f"    {declaration}; /* offset {f.offset} */")
        else:
            for position, v in enumerate(node.variants):
                declaration = c_declarator(model, v.type, v.name or f"_anon{position}", names)
                lines.append(f"    {declaration};")
        return lines

    def _collect_deps(self, model, key: TypeKey, deps: set[TypeKey], through_pointer: bool):
        node = model.node(key)
        if isinstance(node, Enum):
            deps.add(key)
        elif isinstance(node, Typedef):
            deps.add(key)
            self._collect_deps(model, node.aliased, deps, through_pointer)
        elif isinstance(node, (Struct, Union)):
            if not through_pointer:
                deps.add(key)
        elif isinstance(node, Qualified):
            self._collect_deps(model, node.target, deps, through_pointer)
        elif isinstance(node, Array):
            self._collect_deps(model, node.element, deps, through_pointer)
        elif isinstance(node, Pointer):
            self._collect_deps(model, node.target, deps, through_pointer=True)
        elif isinstance(node, FunctionPointer):
            for ref in (node.return_type, *node.params):
                self._collect_deps(model, ref, deps, through_pointer=True)


# ===--- JSON generator ---=== #


class JsonGenerator(BindingGenerator):
    """The serialized intermediate model."""

    name = "json"

    def generate(self, model: IntermediateModel, options: GenerateOptions) -> str:
        return self.prepare(model, options).to_json()


GENERATORS: dict[str, BindingGenerator] = {
    generator.name: generator
    for generator in (
        CDeclarationsGenerator(),
        KoffiGenerator(),
        CtypesGenerator(),
        JsonGenerator(),
    )
}


def generate(model: IntermediateModel, target: str, options: GenerateOptions | None = None) -> str:
    try:
        generator = GENERATORS[target]
    except KeyError:
        raise CodegenError(
            f"Unknown target '{target}'",
            f"Choose one of: {', '.join(sorted(GENERATORS))}.",
        ) from None
    return generator.generate(model, options or GenerateOptions())


# ===--- Extraction summary ---=== #


@dataclass(frozen=True)
class ExtractionSummary:
    library: str
    units: int
    exported_symbols: int
    functions: int
    types: int
    skipped: int

    @classmethod
    def from_result(cls, result: ExtractionResult) -> "ExtractionSummary":
        return cls(
            library=result.model.library,
            units=result.units,
            exported_symbols=result.exported_symbols,
            functions=len(result.model.functions),
            types=len(result.model.types),
            skipped=len(result.diagnostics),
        )


def format_extraction_summary(summary: ExtractionSummary) -> str:
    """Render the --verbose summary; one trailing newline."""
    lines = [
        f"Extracted {summary.library}:",
        f"  Units:            {summary.units:>6}",
        f"  Exported symbols: {summary.exported_symbols:>6}",
        f"  Functions:        {summary.functions:>6}",
        f"  Types:            {summary.types:>6}",
        f"  Skipped:          {summary.skipped:>6}",
    ]
    return "\n".join(lines) + "\n"


# ===--- Discovery ---=== #


@dataclass(frozen=True)
class ExportEntry:
    name: str
    address: int
    has_debug_info: bool


def gather_exports(binary: LoadedBinary) -> list[ExportEntry]:
    index = DebugIndex.from_binary(binary)
    candidates = collect_function_candidates(index)
    entries = []
    for name, symbol in sorted(binary.exported_functions().items()):
        if name in TOOLCHAIN_SYMBOLS:
            continue
        entries.append(ExportEntry(name, symbol.address, name in candidates))
    return entries


def format_exports_table(entries: list[ExportEntry], library: str) -> str:
    """Return the complete --list-exports output.

    Output format:

        Exported functions in libtestlib.so:

          0x000011a9  add_two_ints
          0x00001230  mystery        (no debug info)

        2 exported, 1 without debug info
    """
    lines = [f"Exported functions in {library}:", ""]
    width = max((len(e.name) for e in entries), default=0)
    for entry in entries:
        row = f"  {entry.address:#010x}  {entry.name:<{width}}"
        if not entry.has_debug_info:
            row += "  (no debug info)"
        lines.append(row.rstrip())
    missing = sum(1 for e in entries if not e.has_debug_info)
    lines.append("")
    lines.append(f"{len(entries)} exported, {missing} without debug info")
    lines.append("")
    return "\n".join(lines)


def run_discovery(config: DiscoveryConfig) -> None:
    binary = load_binary(config.library)
    if config.command == "list-exports":
        entries = gather_exports(binary)
        print(format_exports_table(entries, config.library.name), end="")


# ===--- Main generation ---=== #


def run_generate(config: GenerateConfig) -> str:
    """Extract once, render the configured target and return its text."""
    result = extract(
        config.library,
        mode=config.mode,
        strict=config.strict,
        include_internal=config.include_internal,
        jobs=config.jobs,
    )
    if not config.quiet:
        for diagnostic in result.diagnostics:
            print(diagnostic, file=sys.stderr)
    if config.verbose:
        summary = ExtractionSummary.from_result(result)
        print(format_extraction_summary(summary), end="", file=sys.stderr)

    options = GenerateOptions(mode=config.mode, library_path=config.library_path)
    return generate(result.model, config.target, options)


def main(argv: list[str] | None = None):
    try:
        config = build_config(argv)
    except ConfigError as err:
        print(f"Config error [{err.code}]: {err.message}", file=sys.stderr)
        if err.suggestion:
            print(f"Hint: {err.suggestion}", file=sys.stderr)
        raise SystemExit(1) from err

    try:
        if isinstance(config, DiscoveryConfig):
            run_discovery(config)
            return
        output = run_generate(config)
    except BindgenError as err:
        print(f"Error [{err.code}]: {err.message}", file=sys.stderr)
        if err.suggestion:
            print(f"Hint: {err.suggestion}", file=sys.stderr)
        raise SystemExit(1) from err

    sys.stdout.write(output)


if __name__ == "__main__":
    main()
