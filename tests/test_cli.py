import argparse
from collections.abc import Callable
from dataclasses import FrozenInstanceError
from pathlib import Path

import pytest

import boundgen


def _assert_config_code(exc_info: pytest.ExceptionInfo[Exception], code: str) -> None:
    err = exc_info.value
    assert getattr(err, "code") == code
    assert getattr(err, "code") in boundgen.VALID_ERROR_CODES


def test_import_boundgen_module_smoke() -> None:
    assert callable(boundgen.main)


def test_build_argument_parser_exposes_surface_and_defaults() -> None:
    parser = boundgen.build_argument_parser()
    option_actions = {
        option: action for action in parser._actions for option in action.option_strings
    }

    assert {
        "--input",
        "--output",
        "--derive",
        "--type",
        "--phantom-type",
        "--list-types",
        "--list-capabilities",
        "--verbose",
        "--log-json",
    }.issubset(option_actions.keys())
    assert option_actions["--input"].default is None
    assert option_actions["--derive"].default is None
    assert option_actions["--list-types"].default is False


def test_parse_args_enforces_discovery_mutual_exclusion() -> None:
    with pytest.raises(SystemExit) as exc_info:
        boundgen.parse_args(["--list-types", "--list-capabilities"])

    assert exc_info.value.code == 2


def test_build_config_generate_mode(types_xml: Path, tmp_path: Path) -> None:
    config = boundgen.build_config(
        [
            "--input",
            str(types_xml),
            "--derive",
            "PartialEq",
            "clone",
            "--derive",
            "Clone,Debug",
            "--type",
            "Pair",
            "--phantom-type",
            "Ghost",
            "--output",
            str(tmp_path / "out.rs"),
        ]
    )

    assert isinstance(config, boundgen.GenerateConfig)
    assert config.capabilities == (
        boundgen.Capability.DEBUG,
        boundgen.Capability.CLONE,
        boundgen.Capability.PARTIAL_EQ,
    )
    assert config.type_names == frozenset({"Pair"})
    assert config.phantom_types == boundgen.DEFAULT_PHANTOM_TYPES | {"Ghost"}
    assert config.output_path == tmp_path / "out.rs"


def test_generate_config_is_frozen(make_args: Callable[..., argparse.Namespace]) -> None:
    config = boundgen.validate_config(make_args())

    with pytest.raises(FrozenInstanceError):
        config.verbose = True  # type: ignore[misc]


def test_validate_config_without_derive_uses_per_type_derives(
    make_args: Callable[..., argparse.Namespace],
) -> None:
    config = boundgen.validate_config(make_args())

    assert isinstance(config, boundgen.GenerateConfig)
    assert config.capabilities == ()
    assert config.phantom_types == boundgen.DEFAULT_PHANTOM_TYPES


def test_validate_config_rejects_unknown_capability(
    make_args: Callable[..., argparse.Namespace],
) -> None:
    with pytest.raises(boundgen.ConfigError) as exc_info:
        boundgen.validate_config(make_args(derive=[["Hash"]]))

    _assert_config_code(exc_info, "INVALID_CAPABILITY")
    assert "Default, Debug, Clone, PartialEq, Eq" in exc_info.value.suggestion


@pytest.mark.parametrize(
    "overrides",
    [{"type": [["not-a-name"]]}, {"phantom_type": [["Phantom<T>"]]}],
)
def test_validate_config_rejects_invalid_type_names(
    make_args: Callable[..., argparse.Namespace], overrides: dict[str, object]
) -> None:
    with pytest.raises(boundgen.ConfigError) as exc_info:
        boundgen.validate_config(make_args(**overrides))

    _assert_config_code(exc_info, "INVALID_TYPE_NAME")


def test_validate_config_rejects_missing_input(
    make_args: Callable[..., argparse.Namespace], missing_path: Path
) -> None:
    with pytest.raises(boundgen.ConfigError) as exc_info:
        boundgen.validate_config(make_args(input=missing_path))

    _assert_config_code(exc_info, "PATH_NOT_FOUND")


def test_validate_config_requires_input_for_generate(
    make_args: Callable[..., argparse.Namespace],
) -> None:
    with pytest.raises(boundgen.ConfigError) as exc_info:
        boundgen.validate_config(make_args(input=None))

    _assert_config_code(exc_info, "PATH_NOT_FOUND")


@pytest.mark.parametrize(
    "overrides",
    [
        {"list_types": True, "derive": [["Clone"]]},
        {"list_capabilities": True, "output": Path("out.rs")},
    ],
)
def test_validate_config_rejects_generate_discovery_conflict(
    make_args: Callable[..., argparse.Namespace], overrides: dict[str, object]
) -> None:
    with pytest.raises(boundgen.ConfigError) as exc_info:
        boundgen.validate_config(make_args(**overrides))

    _assert_config_code(exc_info, "CONFLICT_GENERATE_DISCOVERY")


def test_validate_config_discovery_modes(
    make_args: Callable[..., argparse.Namespace], types_xml: Path
) -> None:
    capabilities = boundgen.validate_config(make_args(input=None, list_capabilities=True))
    types = boundgen.validate_config(make_args(list_types=True, verbose=True))

    assert capabilities == boundgen.DiscoveryConfig("list-capabilities", None)
    assert types == boundgen.DiscoveryConfig("list-types", types_xml, verbose=True)


def test_config_error_rejects_unknown_code() -> None:
    with pytest.raises(ValueError):
        boundgen.ConfigError("NOT_A_CODE", "boom")


def test_main_prints_config_error_and_exits(
    capsys: pytest.CaptureFixture[str], missing_path: Path
) -> None:
    with pytest.raises(SystemExit) as exc_info:
        boundgen.main(["--input", str(missing_path)])

    out = capsys.readouterr().out
    assert exc_info.value.code == 1
    assert "Config error [PATH_NOT_FOUND]" in out
    assert "Hint:" in out


def test_main_reports_unknown_type_filter(
    capsys: pytest.CaptureFixture[str], types_xml: Path
) -> None:
    with pytest.raises(SystemExit) as exc_info:
        boundgen.main(["--input", str(types_xml), "--type", "Missing"])

    assert exc_info.value.code == 1
    assert "Type not found in input: Missing" in capsys.readouterr().out


def test_main_reports_malformed_xml(
    capsys: pytest.CaptureFixture[str], tmp_path: Path
) -> None:
    broken = tmp_path / "broken.xml"
    broken.write_text("<registry><types>", encoding="utf-8")

    with pytest.raises(SystemExit) as exc_info:
        boundgen.main(["--input", str(broken)])

    assert exc_info.value.code == 1
    assert capsys.readouterr().out.startswith("Error:")


def test_main_generate_to_file_succeeds(
    capsys: pytest.CaptureFixture[str], types_xml: Path, tmp_path: Path
) -> None:
    output = tmp_path / "gen" / "derives.rs"

    boundgen.main(["--input", str(types_xml), "--output", str(output)])

    text = output.read_text(encoding="utf-8")
    assert "impl<T, U> ::core::clone::Clone for Pair<T, U>" in text
    assert "impl<T, U> ::core::cmp::PartialEq for Pair<T, U>" in text
    assert "Total: 2 impls generated, 0 failed" in capsys.readouterr().out


def test_main_exits_nonzero_when_a_capability_fails(
    capsys: pytest.CaptureFixture[str], tmp_path: Path
) -> None:
    source = tmp_path / "shapes.xml"
    source.write_text(
        '<types><type category="enum" name="Shape">'
        '<variant name="Circle"><member><type>f64</type></member></variant>'
        "</type></types>",
        encoding="utf-8",
    )

    with pytest.raises(SystemExit) as exc_info:
        boundgen.main(["--input", str(source), "--derive", "Default", "Clone"])

    captured = capsys.readouterr()
    assert exc_info.value.code == 1
    assert "impl ::core::clone::Clone for Shape {" in captured.out
    assert "[UNSUPPORTED_SHAPE_FOR_CAPABILITY]" in captured.err
