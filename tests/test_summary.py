from __future__ import annotations

from collections.abc import Callable

import pytest

import dwarfbind


def _require_callable(name: str) -> Callable[..., object]:
    symbol = getattr(dwarfbind, name, None)
    assert callable(symbol), f"Missing summary API symbol: dwarfbind.{name}"
    return symbol


def _make_summary(
    *,
    library: str = "libfoo.so",
    units: int = 3,
    exported_symbols: int = 12,
    functions: int = 10,
    types: int = 31,
    skipped: int = 2,
) -> dwarfbind.ExtractionSummary:
    return dwarfbind.ExtractionSummary(
        library=library,
        units=units,
        exported_symbols=exported_symbols,
        functions=functions,
        types=types,
        skipped=skipped,
    )


def test_t_01_api_surface_symbols_exist() -> None:
    for name in ("format_extraction_summary", "run_generate"):
        _require_callable(name)
    assert isinstance(dwarfbind.ExtractionSummary, type)


def test_t_02_summary_from_result_counts_model_and_diagnostics(
    sample_result: dwarfbind.ExtractionResult,
) -> None:
    summary = dwarfbind.ExtractionSummary.from_result(sample_result)

    assert summary.library == "libsample.so"
    assert summary.units == 2
    assert summary.exported_symbols == 12
    assert summary.functions == len(sample_result.model.functions)
    assert summary.types == len(sample_result.model.types)
    assert summary.skipped == 1


def test_t_03_format_extraction_summary_emits_rows_in_order() -> None:
    output = dwarfbind.format_extraction_summary(_make_summary())

    heading = output.index("Extracted libfoo.so:")
    units = output.index("Units:")
    exported = output.index("Exported symbols:")
    functions = output.index("Functions:")
    types = output.index("Types:")
    skipped = output.index("Skipped:")

    assert heading < units < exported < functions < types < skipped


def test_t_04_format_extraction_summary_right_aligns_counts() -> None:
    output = dwarfbind.format_extraction_summary(_make_summary(types=31, functions=7))
    rows = output.splitlines()[1:]

    assert rows[2].split() == ["Functions:", "7"]
    assert rows[3].split() == ["Types:", "31"]
    assert len({len(row) for row in rows}) == 1
    assert all(row.startswith("  ") for row in rows)


def test_t_05_format_extraction_summary_is_newline_terminated() -> None:
    output = dwarfbind.format_extraction_summary(_make_summary())

    assert output.endswith("\n")
    assert not output.endswith("\n\n")
    assert len(output.splitlines()) == 6


@pytest.mark.parametrize("quiet", [False, True])
def test_t_06_run_generate_prints_diagnostics_unless_quiet(
    monkeypatch: pytest.MonkeyPatch,
    sample_binary: dwarfbind.LoadedBinary,
    capsys: pytest.CaptureFixture[str],
    quiet: bool,
) -> None:
    monkeypatch.setattr(dwarfbind, "load_binary", lambda path: sample_binary)
    config = dwarfbind.GenerateConfig(
        library=sample_binary.path,
        target="json",
        mode="full",
        strict=False,
        include_internal=False,
        library_path=str(sample_binary.path),
        jobs=1,
        quiet=quiet,
        verbose=False,
    )

    output = dwarfbind.run_generate(config)

    err = capsys.readouterr().err
    assert output.startswith("{")
    assert ("mystery_export" in err) is not quiet
