from collections.abc import Callable
from pathlib import Path

import pytest

import boundgen

C = boundgen.Capability


def test_format_file_header_lists_source_and_capabilities() -> None:
    header = boundgen.format_file_header(
        boundgen.WriteConfig(source="types.xml", capabilities=(C.CLONE, C.PARTIAL_EQ))
    )

    assert header == [
        "// x-------------------------------------------x //",
        "// | Generated by boundgen",
        "// | Source: types.xml",
        "// | Capabilities: Clone, PartialEq",
        "// x-------------------------------------------x //",
    ]


def test_format_file_header_without_forced_capabilities() -> None:
    header = boundgen.format_file_header(boundgen.WriteConfig(source="types.xml"))

    assert "// | Capabilities: per type" in header


def test_format_file_header_rejects_empty_source() -> None:
    with pytest.raises(ValueError):
        boundgen.format_file_header(boundgen.WriteConfig(source=""))


def test_assemble_output_source_separates_impls_with_blank_lines(
    make_type_def: Callable[..., boundgen.TypeDefinition],
) -> None:
    pair = make_type_def("Pair", ("T",), fields=(("t", "T"),))
    marker = make_type_def("Marker")
    results = [
        boundgen.derive(pair, [C.CLONE, C.EQ]),
        boundgen.derive(marker, [C.EQ]),
    ]

    source = boundgen.assemble_output_source(
        boundgen.WriteConfig(source="types.xml"), results
    )

    assert source.endswith("}\n\nimpl ::core::cmp::Eq for Marker {}\n")
    assert source.count("\n\nimpl") == 3
    assert source.index("Clone for Pair") < source.index("Eq for Pair")


def test_write_output_creates_parents_and_reports_size(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "derives.rs"

    result = boundgen.write_output(target, "line one\nline two\n")

    assert target.read_text(encoding="utf-8") == "line one\nline two\n"
    assert result == boundgen.FileWriteResult(
        path=target.resolve(), line_count=2, byte_count=18
    )
