import json
import logging

import pytest
import structlog

import boundgen


def test_verbose_enables_debug_level() -> None:
    boundgen.configure_logging(verbose=True)

    assert logging.getLogger("boundgen").level == logging.DEBUG
    assert logging.getLogger().level == logging.WARNING


def test_default_level_is_warning() -> None:
    boundgen.configure_logging()

    assert logging.getLogger("boundgen").level == logging.WARNING


def test_json_output_is_parseable(capfd: pytest.CaptureFixture[str]) -> None:
    boundgen.configure_logging(verbose=True, log_json=True)

    structlog.get_logger("boundgen").info("test.event", key="value")

    data = json.loads(capfd.readouterr().err.strip().splitlines()[-1])
    assert data["event"] == "test.event"
    assert data["key"] == "value"
    assert data["level"] == "info"
    assert data["logger"] == "boundgen"


def test_eq_without_partial_eq_logs_warning(
    capfd: pytest.CaptureFixture[str],
) -> None:
    boundgen.configure_logging(log_json=True)
    type_def = boundgen.TypeDefinition(
        name="Token", params=(), shape=boundgen.StructShape(())
    )

    result = boundgen.derive(type_def, [boundgen.Capability.EQ])

    assert [g.capability for g in result.impls] == [boundgen.Capability.EQ]
    events = [json.loads(line) for line in capfd.readouterr().err.strip().splitlines()]
    assert events[-1]["event"] == "derive.eq_without_partial_eq"
    assert events[-1]["type_name"] == "Token"
    assert events[-1]["level"] == "warning"


def test_debug_events_hidden_without_verbose(capfd: pytest.CaptureFixture[str]) -> None:
    boundgen.configure_logging(log_json=True)
    type_def = boundgen.TypeDefinition(
        name="Token", params=(), shape=boundgen.StructShape(())
    )

    boundgen.derive(type_def, [boundgen.Capability.CLONE])

    assert "bounds.consolidated" not in capfd.readouterr().err
