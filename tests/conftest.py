import argparse
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

TOOL_DIR = Path(__file__).resolve().parent.parent
if str(TOOL_DIR) not in sys.path:
    sys.path.insert(0, str(TOOL_DIR))

import dwarfbind  # noqa: E402

REF_ATTRIBUTES = {"type", "abstract_origin", "specification"}

DW_ATE_FLOAT = 0x04
DW_ATE_SIGNED = 0x05
DW_ATE_SIGNED_CHAR = 0x06
DW_ATE_UNSIGNED = 0x07
DW_ATE_UNSIGNED_CHAR = 0x08


def build_entry(
    offset: int,
    tag: str,
    *children: dwarfbind.DebugEntry,
    forms: dict[str, str] | None = None,
    **attributes: object,
) -> dwarfbind.DebugEntry:
    if not tag.startswith("DW_TAG_"):
        tag = f"DW_TAG_{tag}"
    attrs: dict[str, object] = {}
    refs: dict[str, int] = {}
    all_forms: dict[str, str] = {}
    for key, value in attributes.items():
        name = f"DW_AT_{key}"
        if key in REF_ATTRIBUTES:
            refs[name] = value
            all_forms[name] = "DW_FORM_ref4"
        elif isinstance(value, bool):
            attrs[name] = value
            all_forms[name] = "DW_FORM_flag_present"
        elif isinstance(value, str):
            attrs[name] = value
            all_forms[name] = "DW_FORM_string"
        else:
            attrs[name] = value
            all_forms[name] = "DW_FORM_sdata" if isinstance(value, int) and value < 0 else "DW_FORM_data4"
    all_forms.update(forms or {})
    return dwarfbind.DebugEntry(
        offset=offset,
        tag=tag,
        attributes=attrs,
        refs=refs,
        forms=all_forms,
        children=tuple(children),
    )


def build_unit(offset: int, *children: dwarfbind.DebugEntry) -> dwarfbind.CompilationUnit:
    root = build_entry(offset + 0xB, "compile_unit", *children, name=f"unit_{offset:x}.c")
    return dwarfbind.CompilationUnit(offset=offset, version=5, address_size=8, root=root)


def build_symbol(
    name: str,
    address: int = 0x1000,
    *,
    kind: str = "STT_FUNC",
    binding: str = "STB_GLOBAL",
    visibility: str = "STV_DEFAULT",
    defined: bool = True,
) -> dwarfbind.Symbol:
    return dwarfbind.Symbol(
        name=name,
        address=address,
        kind=kind,
        binding=binding,
        visibility=visibility,
        defined=defined,
    )


def build_binary(
    units: list[dwarfbind.CompilationUnit],
    symbols: list[dwarfbind.Symbol],
    path: str = "libsample.so",
) -> dwarfbind.LoadedBinary:
    return dwarfbind.LoadedBinary(
        path=Path(path),
        elf_type="ET_DYN",
        pointer_size=8,
        little_endian=True,
        units=tuple(units),
        symbols=tuple(symbols),
        dynamic=True,
    )


def sample_units() -> list[dwarfbind.CompilationUnit]:
    """Two units shaped like a small C library compiled with -g.

    Unit 0x0 holds the public API; unit 0x400 defines the struct that the
    public header only forward-declares, plus a hidden helper.
    """
    e = build_entry
    unit_a = build_unit(
        0x0,
        e(0x20, "base_type", name="int", byte_size=4, encoding=DW_ATE_SIGNED),
        e(0x27, "base_type", name="double", byte_size=8, encoding=DW_ATE_FLOAT),
        e(0x2E, "base_type", name="char", byte_size=1, encoding=DW_ATE_SIGNED_CHAR),
        e(0x35, "const_type", type=0x2E),
        e(0x3A, "pointer_type", byte_size=8, type=0x35),
        e(
            0x40,
            "structure_type",
            e(0x48, "member", name="x", type=0x27, data_member_location=0),
            e(0x52, "member", name="y", type=0x27, data_member_location=8),
            name="Point",
            byte_size=16,
        ),
        e(0x60, "typedef", name="Point", type=0x40),
        e(
            0x68,
            "structure_type",
            e(0x70, "member", name="min", type=0x60, data_member_location=0),
            e(0x78, "member", name="max", type=0x60, data_member_location=16),
            name="BoundingBox",
            byte_size=32,
        ),
        e(0x80, "typedef", name="BoundingBox", type=0x68),
        e(
            0x88,
            "enumeration_type",
            e(0x90, "enumerator", name="COLOR_RED", const_value=0),
            e(0x98, "enumerator", name="COLOR_GREEN", const_value=1),
            e(0xA0, "enumerator", name="COLOR_BLUE", const_value=2),
            name="Color",
            byte_size=4,
            type=0x20,
        ),
        e(0xA8, "typedef", name="Color", type=0x88),
        e(
            0xB0,
            "structure_type",
            e(0xB8, "member", name="value", type=0x20, data_member_location=0),
            e(0xC0, "member", name="next", type=0xD0, data_member_location=8),
            name="Node",
            byte_size=16,
        ),
        e(0xD0, "pointer_type", byte_size=8, type=0xB0),
        e(0xD8, "structure_type", name="InternalState", declaration=True),
        e(0xE0, "pointer_type", byte_size=8, type=0xD8),
        e(0xE8, "subroutine_type", e(0xF0, "formal_parameter", type=0x20), prototyped=True),
        e(0xF8, "pointer_type", byte_size=8, type=0xE8),
        e(0x100, "typedef", name="Callback", type=0xF8),
        e(0x108, "base_type", name="unsigned char", byte_size=1, encoding=DW_ATE_UNSIGNED_CHAR),
        e(0x110, "base_type", name="long long int", byte_size=8, encoding=DW_ATE_SIGNED),
        e(
            0x200,
            "subprogram",
            e(0x210, "formal_parameter", name="a", type=0x20),
            e(0x218, "formal_parameter", name="b", type=0x20),
            name="add_two_ints",
            type=0x20,
            external=True,
            low_pc=0x1100,
        ),
        e(
            0x220,
            "subprogram",
            e(0x230, "formal_parameter", name="p1", type=0x60),
            e(0x238, "formal_parameter", name="p2", type=0x60),
            name="calculate_distance",
            type=0x27,
            external=True,
            low_pc=0x1120,
        ),
        e(0x240, "subprogram", name="get_string", type=0x3A, external=True, low_pc=0x1140),
        e(
            0x250,
            "subprogram",
            e(0x258, "formal_parameter", name="value", type=0x108),
            name="process_byte",
            type=0x108,
            external=True,
            low_pc=0x1160,
        ),
        e(
            0x260,
            "subprogram",
            e(0x268, "formal_parameter", name="value", type=0x110),
            name="process_long",
            type=0x110,
            external=True,
            low_pc=0x1180,
        ),
        e(
            0x270,
            "subprogram",
            e(0x278, "formal_parameter", name="count", type=0x20),
            e(0x280, "unspecified_parameters"),
            name="sum_varargs",
            type=0x20,
            external=True,
            low_pc=0x11A0,
        ),
        e(
            0x290,
            "subprogram",
            e(0x298, "formal_parameter", name="x", type=0x20),
            name="internal_helper",
            type=0x20,
            low_pc=0x1300,
        ),
        e(
            0x2A0,
            "subprogram",
            e(0x2A8, "formal_parameter", name="cb", type=0x100),
            name="register_callback",
            external=True,
            low_pc=0x11C0,
        ),
        e(0x2B0, "subprogram", name="create_state", type=0xE0, external=True, low_pc=0x11E0),
        e(
            0x2C0,
            "subprogram",
            e(0x2C8, "formal_parameter", name="head", type=0xD0),
            name="list_length",
            type=0x20,
            external=True,
            low_pc=0x1200,
        ),
        e(0x2D0, "subprogram", name="get_bounds", type=0x80, external=True, low_pc=0x1220),
    )
    unit_b = build_unit(
        0x400,
        e(0x420, "base_type", name="int", byte_size=4, encoding=DW_ATE_SIGNED),
        e(
            0x428,
            "structure_type",
            e(0x430, "member", name="counter", type=0x420, data_member_location=0),
            e(0x438, "member", name="flags", type=0x420, data_member_location=4),
            name="InternalState",
            byte_size=8,
        ),
        e(
            0x440,
            "subprogram",
            e(0x448, "formal_parameter", name="state", type=0x420),
            name="internal_compute",
            type=0x420,
            low_pc=0x1400,
        ),
    )
    return [unit_a, unit_b]


SAMPLE_EXPORTS = (
    "add_two_ints",
    "calculate_distance",
    "create_state",
    "get_bounds",
    "get_string",
    "list_length",
    "process_byte",
    "process_long",
    "register_callback",
    "sum_varargs",
)


def sample_symbols() -> list[dwarfbind.Symbol]:
    symbols = [
        build_symbol(name, 0x1100 + 0x20 * position)
        for position, name in enumerate(SAMPLE_EXPORTS)
    ]
    symbols += [
        build_symbol("internal_helper", 0x1300, binding="STB_LOCAL", visibility="STV_HIDDEN"),
        build_symbol("mystery_export", 0x1500),
        build_symbol("_init", 0x1000),
        build_symbol("global_counter", 0x4000, kind="STT_OBJECT"),
        build_symbol("printf", 0, defined=False),
    ]
    return symbols


@pytest.fixture
def make_entry() -> Callable[..., dwarfbind.DebugEntry]:
    return build_entry


@pytest.fixture
def make_unit() -> Callable[..., dwarfbind.CompilationUnit]:
    return build_unit


@pytest.fixture
def make_symbol() -> Callable[..., dwarfbind.Symbol]:
    return build_symbol


@pytest.fixture
def make_binary() -> Callable[..., dwarfbind.LoadedBinary]:
    return build_binary


@pytest.fixture
def make_index() -> Callable[..., dwarfbind.DebugIndex]:
    def _make_index(*units: dwarfbind.CompilationUnit) -> dwarfbind.DebugIndex:
        return dwarfbind.DebugIndex(units, pointer_size=8, little_endian=True)

    return _make_index


@pytest.fixture
def make_model() -> Callable[..., dwarfbind.IntermediateModel]:
    """Build a model straight from a list of units, every function exported."""

    def _make_model(*units: dwarfbind.CompilationUnit, mode: str = "full") -> dwarfbind.IntermediateModel:
        names = []
        for unit in units:
            for child in unit.root.children:
                if child.tag == "DW_TAG_subprogram" and child.name:
                    names.append(child.name)
        binary = build_binary(list(units), [build_symbol(n) for n in names])
        return dwarfbind.extract(binary, mode=mode).model

    return _make_model


@pytest.fixture
def sample_binary() -> dwarfbind.LoadedBinary:
    return build_binary(sample_units(), sample_symbols())


@pytest.fixture
def sample_result(sample_binary: dwarfbind.LoadedBinary) -> dwarfbind.ExtractionResult:
    return dwarfbind.extract(sample_binary)


@pytest.fixture
def sample_model(sample_result: dwarfbind.ExtractionResult) -> dwarfbind.IntermediateModel:
    return sample_result.model


@pytest.fixture
def library_file(tmp_path: Path) -> Path:
    path = tmp_path / "libfake.so"
    path.write_bytes(b"\x7fELF placeholder")
    return path


@pytest.fixture
def missing_path(tmp_path: Path) -> Path:
    return tmp_path / "missing.so"


@pytest.fixture
def make_args(library_file: Path) -> Callable[..., argparse.Namespace]:
    def _make_args(**overrides: object) -> argparse.Namespace:
        base_args: dict[str, object] = {
            "library": library_file,
            "target": None,
            "js": False,
            "json": False,
            "mode": "full",
            "strict": False,
            "all": False,
            "lib_path": None,
            "jobs": 1,
            "quiet": False,
            "verbose": False,
            "list_exports": False,
        }
        base_args.update(overrides)
        return argparse.Namespace(**base_args)

    return _make_args
