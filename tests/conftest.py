import argparse
import logging
import sys
import xml.etree.ElementTree as ET
from collections.abc import Callable
from pathlib import Path

import pytest
import structlog

GENERATOR_DIR = Path(__file__).resolve().parent.parent
if str(GENERATOR_DIR) not in sys.path:
    sys.path.insert(0, str(GENERATOR_DIR))

import boundgen  # noqa: E402


@pytest.fixture(autouse=True)
def _restore_logging():
    """Route engine logs to stderr at WARNING, as the CLI does, then undo it."""
    root = logging.getLogger()
    saved_handlers = root.handlers[:]
    saved_level = root.level
    boundgen.configure_logging()
    yield
    root.handlers = saved_handlers
    root.setLevel(saved_level)
    logging.getLogger("boundgen").setLevel(logging.NOTSET)
    structlog.reset_defaults()


@pytest.fixture
def types_xml(tmp_path: Path) -> Path:
    path = tmp_path / "types.xml"
    path.write_text(
        "<registry><types>"
        '<type category="struct" name="Pair" derive="Clone, PartialEq">'
        '<param name="T"/><param name="U"/>'
        "<member><type>T</type><name>t</name></member>"
        '<member skip="true"><type>PhantomMarker&lt;U&gt;</type><name>marker</name></member>'
        "</type>"
        "</types></registry>\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def missing_path(tmp_path: Path) -> Path:
    return tmp_path / "missing.xml"


@pytest.fixture
def make_args(types_xml: Path) -> Callable[..., argparse.Namespace]:
    def _make_args(**overrides: object) -> argparse.Namespace:
        base_args: dict[str, object] = {
            "input": types_xml,
            "output": None,
            "derive": None,
            "type": None,
            "phantom_type": None,
            "list_types": False,
            "list_capabilities": False,
            "verbose": False,
            "log_json": False,
        }
        base_args.update(overrides)
        return argparse.Namespace(**base_args)

    return _make_args


@pytest.fixture
def make_type_element() -> Callable[[str], ET.Element]:
    def _make_type_element(xml: str) -> ET.Element:
        return ET.fromstring(xml)

    return _make_type_element


@pytest.fixture
def make_type_def() -> Callable[..., boundgen.TypeDefinition]:
    """Build a TypeDefinition without going through XML.

    Fields are given as (key, type_text) pairs or as ready Field objects.
    """

    def _make_field(entry: object) -> boundgen.Field:
        if isinstance(entry, boundgen.Field):
            return entry
        key, type_text = entry
        return boundgen.Field(key=key, type_expr=boundgen.parse_type_expr(type_text))

    def _make_type_def(
        name: str,
        params: tuple[str, ...] = (),
        *,
        fields: tuple[object, ...] = (),
        variants: tuple[boundgen.Variant, ...] | None = None,
        tuple_style: bool = False,
        bounded_to: tuple[boundgen.BoundedTo, ...] = (),
    ) -> boundgen.TypeDefinition:
        built = tuple(_make_field(entry) for entry in fields)
        if variants is not None:
            shape: boundgen.Shape = boundgen.EnumShape(variants)
        elif tuple_style:
            shape = boundgen.TupleShape(built)
        else:
            shape = boundgen.StructShape(built)
        return boundgen.TypeDefinition(
            name=name,
            params=tuple(boundgen.GenericParam(p) for p in params),
            shape=shape,
            bounded_to=bounded_to,
        )

    return _make_type_def


@pytest.fixture
def make_field() -> Callable[..., boundgen.Field]:
    def _make_field(
        key: str | int,
        type_text: str,
        *,
        skip: bool = False,
        overrides: dict[boundgen.Capability, tuple[str, ...]] | None = None,
    ) -> boundgen.Field:
        return boundgen.Field(
            key=key,
            type_expr=boundgen.parse_type_expr(type_text),
            skip=skip,
            bound_overrides=tuple(
                boundgen.BoundOverride(capability, params)
                for capability, params in (overrides or {}).items()
            ),
        )

    return _make_field
