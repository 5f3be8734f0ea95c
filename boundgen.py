"""Derive generator with inferred, minimal bounds.

Reads generic type definitions (structs, tuple structs, enums) from an XML
type registry and emits Rust `impl` items for Default, Debug, Clone,
PartialEq and Eq. Each impl carries a `where` clause that only bounds the
type parameters its fields actually use.

Usage:
    python boundgen.py --input types.xml --derive Clone PartialEq --output derives.rs
"""

import argparse
import logging
import re
import sys
import xml.etree.ElementTree as ET
from collections.abc import Callable, Collection, Iterable, Iterator
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path

import structlog

log = structlog.get_logger("boundgen")


# ===--- CLI config contracts ---=== #


@dataclass(frozen=True)
class GenerateConfig:
    input_path: Path
    output_path: Path | None
    capabilities: tuple["Capability", ...]
    type_names: frozenset[str]
    phantom_types: frozenset[str]
    verbose: bool = False
    log_json: bool = False


@dataclass(frozen=True)
class DiscoveryConfig:
    command: str
    input_path: Path | None
    verbose: bool = False
    log_json: bool = False


VALID_ERROR_CODES = {
    "INVALID_CAPABILITY",
    "INVALID_TYPE_NAME",
    "CONFLICT_GENERATE_DISCOVERY",
    "PATH_NOT_FOUND",
}
_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


def parse_capability_arg(raw: str) -> "Capability":
    try:
        return capability_from_name(raw)
    except ValueError as err:
        raise ConfigError(
            "INVALID_CAPABILITY",
            f"Unknown capability: {raw}",
            f"Use one of: {', '.join(c.value for c in CAPABILITY_ORDER)}.",
        ) from err


def validate_type_name(name: str, flag: str) -> str:
    if _IDENT_RE.match(name):
        return name
    raise ConfigError(
        "INVALID_TYPE_NAME",
        f"Invalid type name for {flag}: {name}",
        "Type names must be plain identifiers (for example Pair or PhantomData).",
    )


def validate_path_exists(
    path: Path | None, flag: str, suggestion: str | None = None
) -> Path:
    if path is None:
        raise ConfigError(
            "PATH_NOT_FOUND",
            f"{flag} is required: no path provided.",
            suggestion or f"Pass the path explicitly: {flag} /path/to/types.xml",
        )
    if path.exists():
        return path
    raise ConfigError(
        "PATH_NOT_FOUND",
        f"Path for {flag} does not exist: {path}",
        suggestion or "Provide an existing path for this flag.",
    )


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate Rust derive impls with minimal inferred bounds"
    )

    parser.add_argument("--input", type=Path, default=None)
    parser.add_argument("--output", type=Path, default=None)
    parser.add_argument("--derive", action="append", nargs="+", default=None)
    parser.add_argument("--type", action="append", nargs="+", default=None)
    parser.add_argument("--phantom-type", action="append", nargs="+", default=None)

    discovery_group = parser.add_mutually_exclusive_group()
    discovery_group.add_argument("--list-types", action="store_true", default=False)
    discovery_group.add_argument(
        "--list-capabilities", action="store_true", default=False
    )

    parser.add_argument("--verbose", action="store_true", default=False)
    parser.add_argument("--log-json", action="store_true", default=False)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def normalize_names(raw_names: object, flag: str) -> tuple[str, ...]:
    """Flatten an `action="append", nargs="+"` value, splitting on commas."""
    if raw_names is None:
        return tuple()
    if not isinstance(raw_names, list):
        raise ConfigError(
            "INVALID_TYPE_NAME",
            f"Invalid {flag} value type: {type(raw_names).__name__}",
            f"Pass names as {flag} NAME [NAME ...].",
        )

    normalized: list[str] = []
    for entry in raw_names:
        group = entry if isinstance(entry, list) else [entry]
        for name in group:
            if not isinstance(name, str):
                raise ConfigError(
                    "INVALID_TYPE_NAME",
                    f"Invalid {flag} entry type: {type(name).__name__}",
                    f"Pass names as {flag} NAME [NAME ...].",
                )
            normalized.extend(part for part in split_names(name))

    return tuple(normalized)


def validate_config(args: argparse.Namespace) -> GenerateConfig | DiscoveryConfig:
    raw_capabilities = normalize_names(args.derive, "--derive")
    raw_types = normalize_names(args.type, "--type")
    raw_phantoms = normalize_names(args.phantom_type, "--phantom-type")
    has_generate_input = bool(
        raw_capabilities or raw_types or raw_phantoms or args.output
    )
    has_discovery_command = bool(args.list_types or args.list_capabilities)

    if has_generate_input and has_discovery_command:
        raise ConfigError(
            "CONFLICT_GENERATE_DISCOVERY",
            "Generate flags cannot be combined with discovery flags.",
            "Choose either generate mode or one discovery command.",
        )

    if args.list_capabilities:
        return DiscoveryConfig(
            command="list-capabilities",
            input_path=None,
            verbose=bool(args.verbose),
            log_json=bool(args.log_json),
        )

    input_path = validate_path_exists(args.input, "--input")

    if args.list_types:
        return DiscoveryConfig(
            command="list-types",
            input_path=input_path,
            verbose=bool(args.verbose),
            log_json=bool(args.log_json),
        )

    capabilities = order_capabilities(
        parse_capability_arg(raw) for raw in raw_capabilities
    )
    type_names = frozenset(validate_type_name(name, "--type") for name in raw_types)
    phantom_types = DEFAULT_PHANTOM_TYPES | frozenset(
        validate_type_name(name, "--phantom-type") for name in raw_phantoms
    )

    return GenerateConfig(
        input_path=input_path,
        output_path=args.output,
        capabilities=capabilities,
        type_names=type_names,
        phantom_types=phantom_types,
        verbose=bool(args.verbose),
        log_json=bool(args.log_json),
    )


def build_config(argv: list[str] | None = None) -> GenerateConfig | DiscoveryConfig:
    return validate_config(parse_args(argv))


# ===--- Constants ---=== #


class Capability(Enum):
    DEFAULT = "Default"
    DEBUG = "Debug"
    CLONE = "Clone"
    PARTIAL_EQ = "PartialEq"
    EQ = "Eq"

    @property
    def trait_path(self) -> str:
        return CAPABILITY_TRAIT_PATHS[self]


CAPABILITY_ORDER: tuple[Capability, ...] = tuple(Capability)

CAPABILITY_TRAIT_PATHS: dict[Capability, str] = {
    Capability.DEFAULT: "::core::default::Default",
    Capability.DEBUG: "::core::fmt::Debug",
    Capability.CLONE: "::core::clone::Clone",
    Capability.PARTIAL_EQ: "::core::cmp::PartialEq",
    Capability.EQ: "::core::cmp::Eq",
}

_CAPABILITY_ALIASES: dict[str, Capability] = {
    "default": Capability.DEFAULT,
    "debug": Capability.DEBUG,
    "clone": Capability.CLONE,
    "partialeq": Capability.PARTIAL_EQ,
    "partial_eq": Capability.PARTIAL_EQ,
    "eq": Capability.EQ,
}

# Skipped fields drop out of these capabilities entirely. Default and Clone
# still have to produce every field.
SKIPPABLE_CAPABILITIES = frozenset(
    {Capability.DEBUG, Capability.PARTIAL_EQ, Capability.EQ}
)

# Zero-size markers implement all five capabilities for any argument.
DEFAULT_PHANTOM_TYPES = frozenset({"PhantomData", "PhantomMarker"})

PARAM_KIND_TYPE = "type"
PARAM_KIND_LIFETIME = "lifetime"
PARAM_KIND_CONST = "const"
PARAM_KINDS = {PARAM_KIND_TYPE, PARAM_KIND_LIFETIME, PARAM_KIND_CONST}

ORIGIN_INFERRED = "inferred"
ORIGIN_OVERRIDE = "override"

STYLE_STRUCT = "struct"
STYLE_TUPLE = "tuple"
STYLE_UNIT = "unit"

_TRUE_VALUES = {"true", "1", "yes"}


def capability_from_name(name: str) -> Capability:
    key = name.strip().rsplit("::", maxsplit=1)[-1].lower()
    if key in _CAPABILITY_ALIASES:
        return _CAPABILITY_ALIASES[key]
    raise ValueError(f"Unknown capability: {name}")


def order_capabilities(capabilities: Iterable[Capability]) -> tuple[Capability, ...]:
    requested = set(capabilities)
    return tuple(c for c in CAPABILITY_ORDER if c in requested)


def split_names(text: str | None) -> tuple[str, ...]:
    if not text:
        return tuple()
    return tuple(part for part in re.split(r"[,\s]+", text) if part)


# ===--- Errors ---=== #


VALID_DERIVE_ERROR_CODES = {
    "UNRECOGNIZED_SHAPE",
    "UNSUPPORTED_SHAPE_FOR_CAPABILITY",
    "INVALID_OVERRIDE",
    "INVALID_TYPE_EXPR",
    "UNKNOWN_CAPABILITY",
}


class DeriveError(Exception):
    """Failure tied to one type definition, optionally to a field and capability."""

    def __init__(
        self,
        code: str,
        message: str,
        *,
        type_name: str | None = None,
        field: str | None = None,
        capability: Capability | None = None,
    ):
        if code not in VALID_DERIVE_ERROR_CODES:
            raise ValueError(f"Unknown derive error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.type_name = type_name
        self.field = field
        self.capability = capability


class UnrecognizedShape(DeriveError):
    def __init__(self, message: str, **context):
        super().__init__("UNRECOGNIZED_SHAPE", message, **context)


class UnsupportedShapeForCapability(DeriveError):
    def __init__(self, message: str, **context):
        super().__init__("UNSUPPORTED_SHAPE_FOR_CAPABILITY", message, **context)


class InvalidOverride(DeriveError):
    def __init__(self, message: str, **context):
        super().__init__("INVALID_OVERRIDE", message, **context)


class TypeExprError(DeriveError):
    def __init__(self, message: str, **context):
        super().__init__("INVALID_TYPE_EXPR", message, **context)


class UnknownCapability(DeriveError):
    def __init__(self, message: str, **context):
        super().__init__("UNKNOWN_CAPABILITY", message, **context)


# ===--- Type expressions ---=== #


@dataclass(frozen=True)
class PathSegment:
    name: str
    args: tuple["TypeExpr", ...] = ()


@dataclass(frozen=True)
class PathType:
    segments: tuple[PathSegment, ...]
    leading_colon: bool = False


@dataclass(frozen=True)
class QualifiedPathType:
    self_type: "TypeExpr"
    trait_path: PathType | None
    segments: tuple[PathSegment, ...]


@dataclass(frozen=True)
class ReferenceType:
    inner: "TypeExpr"
    mutable: bool = False
    lifetime: str | None = None


@dataclass(frozen=True)
class PointerType:
    inner: "TypeExpr"
    mutable: bool


@dataclass(frozen=True)
class TupleType:
    elements: tuple["TypeExpr", ...]


@dataclass(frozen=True)
class ArrayType:
    """Array `[T; N]`, or slice `[T]` when length is None."""

    element: "TypeExpr"
    length: str | None = None


@dataclass(frozen=True)
class FnPointerType:
    params: tuple["TypeExpr", ...]
    output: "TypeExpr | None" = None


@dataclass(frozen=True)
class LifetimeArg:
    name: str


@dataclass(frozen=True)
class ConstArg:
    text: str


TypeExpr = (
    PathType
    | QualifiedPathType
    | ReferenceType
    | PointerType
    | TupleType
    | ArrayType
    | FnPointerType
    | LifetimeArg
    | ConstArg
)

_TOKEN_RE = re.compile(
    r"(?P<ws>\s+)"
    r"|(?P<lifetime>'[A-Za-z_][A-Za-z0-9_]*)"
    r"|(?P<ident>[A-Za-z_][A-Za-z0-9_]*)"
    r"|(?P<number>[0-9][A-Za-z0-9_]*)"
    r"|(?P<punct>::|->|[<>()\[\]{},;&*=+\-/])"
)
_UNSUPPORTED_TYPE_KEYWORDS = {"dyn", "impl", "_"}
_OPENERS = {"(": ")", "[": "]", "{": "}"}


def tokenize_type_expr(text: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise TypeExprError(
                f"Invalid type {text!r}: unexpected character {text[pos]!r} "
                f"at offset {pos}"
            )
        if match.lastgroup != "ws":
            tokens.append((match.lastgroup, match.group()))
        pos = match.end()
    return tokens


class _TypeExprParser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = tokenize_type_expr(text)
        self.pos = 0

    def peek(self, offset: int = 0) -> str | None:
        index = self.pos + offset
        if index < len(self.tokens):
            return self.tokens[index][1]
        return None

    def peek_kind(self, offset: int = 0) -> str | None:
        index = self.pos + offset
        if index < len(self.tokens):
            return self.tokens[index][0]
        return None

    def advance(self) -> tuple[str, str]:
        if self.pos >= len(self.tokens):
            raise self.error("unexpected end of type")
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def expect(self, text: str) -> None:
        _, value = self.advance()
        if value != text:
            raise self.error(f"expected {text!r}, found {value!r}")

    def error(self, detail: str) -> TypeExprError:
        return TypeExprError(f"Invalid type {self.text!r}: {detail}")

    def parse(self) -> TypeExpr:
        if not self.tokens:
            raise self.error("empty type")
        expr = self.parse_type()
        if self.pos != len(self.tokens):
            raise self.error(f"unexpected trailing {self.peek()!r}")
        return expr

    def parse_type(self) -> TypeExpr:
        token = self.peek()
        if token is None:
            raise self.error("unexpected end of type")
        if token == "&":
            return self.parse_reference()
        if token == "*":
            return self.parse_pointer()
        if token == "(":
            return self.parse_tuple()
        if token == "[":
            return self.parse_array()
        if token == "<":
            return self.parse_qualified_path()
        if token == "fn":
            return self.parse_fn_pointer()
        if token in _UNSUPPORTED_TYPE_KEYWORDS:
            raise self.error(f"'{token}' types are not supported")
        if token == "::" or self.peek_kind() == "ident":
            return self.parse_path()
        raise self.error(f"unexpected {token!r}")

    def parse_reference(self) -> ReferenceType:
        self.expect("&")
        lifetime = None
        if self.peek_kind() == "lifetime":
            lifetime = self.advance()[1]
        mutable = False
        if self.peek() == "mut":
            self.advance()
            mutable = True
        return ReferenceType(self.parse_type(), mutable=mutable, lifetime=lifetime)

    def parse_pointer(self) -> PointerType:
        self.expect("*")
        _, qualifier = self.advance()
        if qualifier not in ("const", "mut"):
            raise self.error(f"expected 'const' or 'mut' after '*', found {qualifier!r}")
        return PointerType(self.parse_type(), mutable=qualifier == "mut")

    def parse_type_list(self, closing: str) -> tuple[list[TypeExpr], bool]:
        items: list[TypeExpr] = []
        trailing_comma = False
        while self.peek() != closing:
            items.append(self.parse_type())
            trailing_comma = self.peek() == ","
            if not trailing_comma:
                break
            self.advance()
        self.expect(closing)
        return items, trailing_comma

    def parse_tuple(self) -> TypeExpr:
        self.expect("(")
        elements, trailing_comma = self.parse_type_list(")")
        if len(elements) == 1 and not trailing_comma:
            return elements[0]
        return TupleType(tuple(elements))

    def parse_array(self) -> ArrayType:
        self.expect("[")
        element = self.parse_type()
        length = None
        if self.peek() == ";":
            self.advance()
            length = self.collect_until("]")
        self.expect("]")
        return ArrayType(element, length)

    def collect_until(self, closing: str) -> str:
        """Consume raw tokens up to an unbalanced `closing`, returning their text."""
        parts: list[str] = []
        stack: list[str] = []
        while True:
            token = self.peek()
            if token is None:
                raise self.error(f"missing {closing!r}")
            if not stack and token == closing:
                break
            if token in _OPENERS:
                stack.append(_OPENERS[token])
            elif stack and token == stack[-1]:
                stack.pop()
            parts.append(self.advance()[1])
        if not parts:
            raise self.error(f"empty expression before {closing!r}")
        return " ".join(parts)

    def parse_qualified_path(self) -> QualifiedPathType:
        self.expect("<")
        self_type = self.parse_type()
        trait_path = None
        if self.peek() == "as":
            self.advance()
            trait_path = self.parse_path()
        self.expect(">")
        self.expect("::")
        return QualifiedPathType(self_type, trait_path, self.parse_segments())

    def parse_fn_pointer(self) -> FnPointerType:
        self.expect("fn")
        self.expect("(")
        params, _ = self.parse_type_list(")")
        output = None
        if self.peek() == "->":
            self.advance()
            output = self.parse_type()
        return FnPointerType(tuple(params), output)

    def parse_path(self) -> PathType:
        leading_colon = False
        if self.peek() == "::":
            self.advance()
            leading_colon = True
        return PathType(self.parse_segments(), leading_colon=leading_colon)

    def parse_segments(self) -> tuple[PathSegment, ...]:
        segments = [self.parse_segment()]
        while self.peek() == "::" and self.peek_kind(1) == "ident":
            self.advance()
            segments.append(self.parse_segment())
        return tuple(segments)

    def parse_segment(self) -> PathSegment:
        kind, name = self.advance()
        if kind != "ident":
            raise self.error(f"expected a path segment, found {name!r}")
        args: tuple[TypeExpr, ...] = ()
        if self.peek() == "<":
            args = self.parse_generic_args()
        return PathSegment(name, args)

    def parse_generic_args(self) -> tuple[TypeExpr, ...]:
        self.expect("<")
        args: list[TypeExpr] = []
        while self.peek() != ">":
            args.append(self.parse_generic_arg())
            if self.peek() != ",":
                break
            self.advance()
        self.expect(">")
        return tuple(args)

    def parse_generic_arg(self) -> TypeExpr:
        kind = self.peek_kind()
        if kind == "lifetime":
            return LifetimeArg(self.advance()[1])
        if kind == "number":
            return ConstArg(self.advance()[1])
        if self.peek() == "-" and self.peek_kind(1) == "number":
            self.advance()
            return ConstArg("-" + self.advance()[1])
        if self.peek() == "{":
            self.advance()
            text = self.collect_until("}")
            self.expect("}")
            return ConstArg("{ " + text + " }")
        return self.parse_type()


def parse_type_expr(text: str) -> TypeExpr:
    """Parse a Rust type expression into a TypeExpr tree.

    Supports paths with generic arguments (`Vec<T>`, `std::marker::PhantomData<U>`,
    `T::Assoc`), qualified paths (`<T::D as Associate>::A`), references,
    raw pointers, tuples, arrays, slices and `fn` pointers.

    Raises:
        TypeExprError: If the text is empty, malformed, or uses an
            unsupported form (`dyn Trait`, `impl Trait`, `_`).
    """
    return _TypeExprParser(text).parse()


def _render_segments(segments: tuple[PathSegment, ...]) -> str:
    rendered = []
    for segment in segments:
        if segment.args:
            args = ", ".join(render_type_expr(arg) for arg in segment.args)
            rendered.append(f"{segment.name}<{args}>")
        else:
            rendered.append(segment.name)
    return "::".join(rendered)


def render_type_expr(expr: TypeExpr) -> str:
    if isinstance(expr, PathType):
        prefix = "::" if expr.leading_colon else ""
        return prefix + _render_segments(expr.segments)
    if isinstance(expr, QualifiedPathType):
        inner = render_type_expr(expr.self_type)
        if expr.trait_path is not None:
            inner += " as " + render_type_expr(expr.trait_path)
        return f"<{inner}>::{_render_segments(expr.segments)}"
    if isinstance(expr, ReferenceType):
        lifetime = f"{expr.lifetime} " if expr.lifetime else ""
        mutable = "mut " if expr.mutable else ""
        return f"&{lifetime}{mutable}{render_type_expr(expr.inner)}"
    if isinstance(expr, PointerType):
        qualifier = "mut" if expr.mutable else "const"
        return f"*{qualifier} {render_type_expr(expr.inner)}"
    if isinstance(expr, TupleType):
        if len(expr.elements) == 1:
            return f"({render_type_expr(expr.elements[0])},)"
        return "(" + ", ".join(render_type_expr(e) for e in expr.elements) + ")"
    if isinstance(expr, ArrayType):
        element = render_type_expr(expr.element)
        if expr.length is None:
            return f"[{element}]"
        return f"[{element}; {expr.length}]"
    if isinstance(expr, FnPointerType):
        params = ", ".join(render_type_expr(p) for p in expr.params)
        if expr.output is None:
            return f"fn({params})"
        return f"fn({params}) -> {render_type_expr(expr.output)}"
    if isinstance(expr, LifetimeArg):
        return expr.name
    if isinstance(expr, ConstArg):
        return expr.text
    raise TypeError(f"Not a type expression: {expr!r}")


def _walk_type_params(
    expr: TypeExpr,
    wanted: frozenset[str],
    phantom_types: Collection[str],
) -> Iterator[str]:
    if isinstance(expr, PathType):
        head = expr.segments[0]
        if not expr.leading_colon and head.name in wanted:
            yield head.name
        last = len(expr.segments) - 1
        for index, segment in enumerate(expr.segments):
            if index == last and segment.name in phantom_types:
                continue
            for arg in segment.args:
                yield from _walk_type_params(arg, wanted, phantom_types)
    elif isinstance(expr, QualifiedPathType):
        yield from _walk_type_params(expr.self_type, wanted, phantom_types)
        if expr.trait_path is not None:
            yield from _walk_type_params(expr.trait_path, wanted, phantom_types)
        for segment in expr.segments:
            for arg in segment.args:
                yield from _walk_type_params(arg, wanted, phantom_types)
    elif isinstance(expr, (ReferenceType, PointerType)):
        yield from _walk_type_params(expr.inner, wanted, phantom_types)
    elif isinstance(expr, TupleType):
        for element in expr.elements:
            yield from _walk_type_params(element, wanted, phantom_types)
    elif isinstance(expr, ArrayType):
        yield from _walk_type_params(expr.element, wanted, phantom_types)
    elif isinstance(expr, FnPointerType):
        for param in expr.params:
            yield from _walk_type_params(param, wanted, phantom_types)
        if expr.output is not None:
            yield from _walk_type_params(expr.output, wanted, phantom_types)


def type_params_in(
    expr: TypeExpr,
    names: Collection[str],
    phantom_types: Collection[str] = DEFAULT_PHANTOM_TYPES,
) -> frozenset[str]:
    """Return the generic parameter names referenced anywhere inside expr.

    A path counts as a reference to `T` when its leading segment is `T`, so
    both `T` and the associated path `T::Assoc` reference `T`. Generic
    arguments are searched recursively, except the arguments of a phantom
    marker type (matched on the last path segment, e.g. `PhantomData<U>`).

    Args:
        expr: Parsed type expression of one field.
        names: Declared type parameter names of the enclosing type.
        phantom_types: Marker type names whose arguments are not searched.

    Returns:
        The subset of names that expr references.
    """
    return frozenset(_walk_type_params(expr, frozenset(names), phantom_types))


# ===--- Data classes ---=== #


@dataclass(frozen=True)
class GenericParam:
    name: str
    kind: str = PARAM_KIND_TYPE
    bounds: str | None = None
    const_type: str | None = None


@dataclass(frozen=True)
class BoundOverride:
    """Explicit replacement of the inferred bounds of one field for one capability.

    An empty params tuple means the field needs no bound for that capability.
    """

    capability: Capability
    params: tuple[str, ...]


@dataclass(frozen=True)
class Field:
    key: str | int
    type_expr: TypeExpr
    skip: bool = False
    bound_overrides: tuple[BoundOverride, ...] = ()

    @property
    def is_named(self) -> bool:
        return isinstance(self.key, str)

    @property
    def label(self) -> str:
        return str(self.key)

    @property
    def display_name(self) -> str:
        return self.label.removeprefix("r#")

    @property
    def type_text(self) -> str:
        return render_type_expr(self.type_expr)

    def override_for(self, capability: Capability) -> tuple[str, ...] | None:
        for bound_override in self.bound_overrides:
            if bound_override.capability is capability:
                return bound_override.params
        return None


@dataclass(frozen=True)
class Variant:
    name: str
    style: str
    fields: tuple[Field, ...] = ()


@dataclass(frozen=True)
class StructShape:
    fields: tuple[Field, ...]
    kind = "struct"


@dataclass(frozen=True)
class TupleShape:
    fields: tuple[Field, ...]
    kind = "tuple"


@dataclass(frozen=True)
class EnumShape:
    variants: tuple[Variant, ...]
    kind = "enum"


Shape = StructShape | TupleShape | EnumShape


@dataclass(frozen=True)
class BoundedTo:
    """Type-level explicit bound, e.g. `T::B` rendered as `T::B: Clone`.

    Applies to every capability when capability is None.
    """

    type_expr: TypeExpr
    capability: Capability | None = None

    def applies_to(self, capability: Capability) -> bool:
        return self.capability is None or self.capability is capability


@dataclass(frozen=True)
class TypeDefinition:
    name: str
    params: tuple[GenericParam, ...]
    shape: Shape
    bounded_to: tuple[BoundedTo, ...] = ()
    derives: tuple[Capability, ...] = ()

    @property
    def type_param_names(self) -> tuple[str, ...]:
        return tuple(p.name for p in self.params if p.kind == PARAM_KIND_TYPE)


@dataclass(frozen=True)
class BoundRequirement:
    param: str
    capability: Capability
    origin: str = ORIGIN_INFERRED

    @property
    def key(self) -> tuple[str, Capability]:
        return (self.param, self.capability)


@dataclass(frozen=True)
class GeneratedImpl:
    """One generated impl for one (type, capability) pair.

    Attributes:
        type_name: Name of the type the impl is for.
        capability: Capability implemented.
        bounds: Consolidated capability bounds, ordered by parameter
            declaration order.
        predicates: Rendered `where` predicates: declared parameter bounds,
            then type-level bounded_to predicates, then bounds.
        body: Impl item body (method definitions), unindented. Empty for Eq.
    """

    type_name: str
    capability: Capability
    bounds: tuple[BoundRequirement, ...]
    predicates: tuple[str, ...]
    body: str


@dataclass(frozen=True)
class CapabilityFailure:
    type_name: str
    capability: Capability | None
    code: str
    message: str
    field: str | None = None

    @classmethod
    def from_error(
        cls, err: DeriveError, type_name: str | None = None
    ) -> "CapabilityFailure":
        return cls(
            type_name=err.type_name or type_name or "<unknown>",
            capability=err.capability,
            code=err.code,
            message=err.message,
            field=err.field,
        )


@dataclass(frozen=True)
class DeriveResult:
    type_def: TypeDefinition
    impls: tuple[GeneratedImpl, ...]
    failures: tuple[CapabilityFailure, ...]


# ===--- Shape classification ---=== #


def iter_fields(shape: Shape) -> Iterator[Field]:
    if isinstance(shape, EnumShape):
        for variant in shape.variants:
            yield from variant.fields
    else:
        yield from shape.fields


def _parse_capability_ref(raw: str | None, type_name: str, where: str) -> Capability:
    if raw is None:
        raise UnknownCapability(
            f"{type_name}: {where} is missing its capability attribute",
            type_name=type_name,
        )
    try:
        return capability_from_name(raw)
    except ValueError as err:
        raise UnknownCapability(
            f"{type_name}: {where} names unknown capability {raw!r}",
            type_name=type_name,
        ) from err


def parse_param(element: ET.Element, type_name: str) -> GenericParam:
    name = (element.get("name") or "").strip()
    kind = element.get("kind", PARAM_KIND_TYPE)
    if kind not in PARAM_KINDS:
        raise UnrecognizedShape(
            f"{type_name}: generic parameter {name!r} has unknown kind {kind!r}",
            type_name=type_name,
        )
    if kind == PARAM_KIND_LIFETIME:
        valid_name = name.startswith("'") and bool(_IDENT_RE.match(name[1:]))
    else:
        valid_name = bool(_IDENT_RE.match(name))
    if not valid_name:
        raise UnrecognizedShape(
            f"{type_name}: invalid {kind} parameter name {name!r}",
            type_name=type_name,
        )
    const_type = element.get("type")
    if kind == PARAM_KIND_CONST and not const_type:
        raise UnrecognizedShape(
            f"{type_name}: const parameter {name} needs a type attribute",
            type_name=type_name,
        )
    bounds = (element.get("bounds") or "").strip() or None
    return GenericParam(name=name, kind=kind, bounds=bounds, const_type=const_type)


def parse_member(
    element: ET.Element, position: int, type_name: str, owner: str
) -> Field:
    name = (element.findtext("name") or "").strip()
    key: str | int = name if name else position
    label = f"{owner}.{key}"

    type_text = element.findtext("type")
    if type_text is None or not type_text.strip():
        raise UnrecognizedShape(
            f"{label}: member has no <type>", type_name=type_name, field=str(key)
        )
    try:
        type_expr = parse_type_expr(type_text)
    except TypeExprError as err:
        raise TypeExprError(
            f"{label}: {err.message}", type_name=type_name, field=str(key)
        ) from err

    overrides: dict[Capability, tuple[str, ...]] = {}
    for bound in element.findall("bound"):
        capability = _parse_capability_ref(
            bound.get("capability"), type_name, f"bound on {label}"
        )
        params = overrides.get(capability, ()) + split_names(bound.text)
        overrides[capability] = tuple(dict.fromkeys(params))

    return Field(
        key=key,
        type_expr=type_expr,
        skip=(element.get("skip") or "").lower() in _TRUE_VALUES,
        bound_overrides=tuple(
            BoundOverride(capability, params) for capability, params in overrides.items()
        ),
    )


def classify_fields(
    members: list[ET.Element], type_name: str, owner: str
) -> tuple[str, tuple[Field, ...]]:
    """Classify a member list as struct, tuple or unit style.

    All members named gives struct style; none named gives tuple style; no
    members gives unit style.

    Raises:
        UnrecognizedShape: Named and positional members are mixed, or a
            field name repeats.
    """
    if not members:
        return STYLE_UNIT, ()

    fields = tuple(
        parse_member(member, position, type_name, owner)
        for position, member in enumerate(members)
    )
    named = [f for f in fields if f.is_named]
    if named and len(named) != len(fields):
        raise UnrecognizedShape(
            f"{owner}: mixes named and positional members",
            type_name=type_name,
        )
    labels = [f.label for f in fields]
    for label in labels:
        if labels.count(label) > 1:
            raise UnrecognizedShape(
                f"{owner}: duplicate field {label!r}",
                type_name=type_name,
                field=label,
            )
    return (STYLE_STRUCT if named else STYLE_TUPLE), fields


def classify_type(element: ET.Element) -> TypeDefinition:
    """Normalize a raw `<type>` element into a TypeDefinition.

    category="struct" yields StructShape (named members, or no members for a
    unit struct) or TupleShape (positional members). category="enum" yields
    EnumShape with one Variant per `<variant>` child. Anything else, such as
    category="union", is rejected.

    Args:
        element: `<type>` element from the type registry.

    Returns:
        TypeDefinition with params in declaration order.

    Raises:
        UnrecognizedShape: Unsupported category or malformed definition.
        TypeExprError: A member or bounded-to type does not parse.
        UnknownCapability: A derive list or bound names an unknown capability.
    """
    name = (element.get("name") or "").strip()
    if not _IDENT_RE.match(name):
        raise UnrecognizedShape(f"Type element has an invalid name: {name!r}")

    category = element.get("category")
    params = tuple(parse_param(p, name) for p in element.findall("param"))
    param_names = [p.name for p in params]
    for param_name in param_names:
        if param_names.count(param_name) > 1:
            raise UnrecognizedShape(
                f"{name}: duplicate generic parameter {param_name}", type_name=name
            )

    if category == "struct":
        style, fields = classify_fields(element.findall("member"), name, name)
        shape: Shape = TupleShape(fields) if style == STYLE_TUPLE else StructShape(fields)
    elif category == "enum":
        if element.findall("member"):
            raise UnrecognizedShape(
                f"{name}: enum members must be declared inside <variant>",
                type_name=name,
            )
        variants: list[Variant] = []
        for variant_el in element.findall("variant"):
            variant_name = (variant_el.get("name") or "").strip()
            if not _IDENT_RE.match(variant_name):
                raise UnrecognizedShape(
                    f"{name}: variant has an invalid name: {variant_name!r}",
                    type_name=name,
                )
            if any(v.name == variant_name for v in variants):
                raise UnrecognizedShape(
                    f"{name}: duplicate variant {variant_name}", type_name=name
                )
            style, fields = classify_fields(
                variant_el.findall("member"), name, f"{name}::{variant_name}"
            )
            variants.append(Variant(variant_name, style, fields))
        shape = EnumShape(tuple(variants))
    else:
        raise UnrecognizedShape(
            f"{name}: unsupported category {category!r}; expected 'struct' or 'enum'",
            type_name=name,
        )

    bounded_to: list[BoundedTo] = []
    for bounded_el in element.findall("bounded-to"):
        capability = None
        if bounded_el.get("capability") is not None:
            capability = _parse_capability_ref(
                bounded_el.get("capability"), name, "bounded-to"
            )
        try:
            bounded_to.append(BoundedTo(parse_type_expr(bounded_el.text or ""), capability))
        except TypeExprError as err:
            raise TypeExprError(f"{name}: bounded-to {err.message}", type_name=name) from err

    derives = order_capabilities(
        _parse_capability_ref(raw, name, "derive")
        for raw in split_names(element.get("derive"))
    )

    type_def = TypeDefinition(
        name=name,
        params=params,
        shape=shape,
        bounded_to=tuple(bounded_to),
        derives=derives,
    )
    log.debug(
        "type.classified",
        type_name=name,
        shape=shape.kind,
        params=param_names,
    )
    return type_def


def load_type_elements(path: Path) -> list[ET.Element]:
    """Parse a type registry file and return its `<type>` elements in order.

    The document root may be `<types>` or `<registry>` holding `<types>`.
    """
    root = ET.parse(path).getroot()
    if root.tag != "types":
        types_el = root.find("types")
        if types_el is not None:
            root = types_el
    return root.findall("type")


# ===--- Bound collection ---=== #


def _override_requirements(
    type_def: TypeDefinition,
    field: Field,
    capability: Capability,
    params: tuple[str, ...],
) -> tuple[BoundRequirement, ...]:
    declared = type_def.type_param_names
    for param in params:
        if param not in declared:
            raise InvalidOverride(
                f"{type_def.name}.{field.label}: {capability.value} bound override "
                f"names {param!r}, which is not a type parameter of {type_def.name}",
                type_name=type_def.name,
                field=field.label,
                capability=capability,
            )
    return tuple(BoundRequirement(p, capability, ORIGIN_OVERRIDE) for p in params)


def collect_field_bounds(
    type_def: TypeDefinition,
    field: Field,
    capability: Capability,
    phantom_types: Collection[str] = DEFAULT_PHANTOM_TYPES,
) -> tuple[BoundRequirement, ...]:
    """Return the bound requirements one field imposes for one capability.

    Resolution order:
        1. A bound override for the capability is validated first, so a bad
           override is reported even on a skipped field.
        2. Skipped fields impose nothing for Debug, PartialEq and Eq.
        3. An override replaces inference: exactly its params, origin
           "override".
        4. Eq reuses the field's PartialEq requirements (including a PartialEq
           override), retagged as Eq.
        5. Otherwise every declared type parameter referenced by the field
           type, in declaration order, origin "inferred".

    Raises:
        InvalidOverride: The override names a parameter that is not a
            declared type parameter of type_def.
    """
    explicit = field.override_for(capability)
    if explicit is not None:
        requirements = _override_requirements(type_def, field, capability, explicit)
    if field.skip and capability in SKIPPABLE_CAPABILITIES:
        return ()
    if explicit is not None:
        return requirements

    if capability is Capability.EQ:
        return tuple(
            BoundRequirement(r.param, Capability.EQ, r.origin)
            for r in collect_field_bounds(
                type_def, field, Capability.PARTIAL_EQ, phantom_types
            )
        )

    found = type_params_in(field.type_expr, type_def.type_param_names, phantom_types)
    return tuple(
        BoundRequirement(name, capability)
        for name in type_def.type_param_names
        if name in found
    )


def collect_type_bounds(
    type_def: TypeDefinition,
    capability: Capability,
    phantom_types: Collection[str] = DEFAULT_PHANTOM_TYPES,
) -> list[BoundRequirement]:
    if capability is Capability.DEFAULT and isinstance(type_def.shape, EnumShape):
        return []
    requirements: list[BoundRequirement] = []
    for field in iter_fields(type_def.shape):
        requirements.extend(
            collect_field_bounds(type_def, field, capability, phantom_types)
        )
    return requirements


# ===--- Bound consolidation ---=== #


def bounded_to_for(
    type_def: TypeDefinition, capability: Capability
) -> tuple[BoundedTo, ...]:
    """Return the bounded-to entries that apply to capability.

    Eq shares its bounds with PartialEq, so PartialEq-only entries apply to Eq
    as well and render against the Eq trait.
    """
    return tuple(
        b
        for b in type_def.bounded_to
        if b.applies_to(capability)
        or (capability is Capability.EQ and b.applies_to(Capability.PARTIAL_EQ))
    )


def consolidate_bounds(
    type_def: TypeDefinition,
    capability: Capability,
    requirements: Iterable[BoundRequirement],
) -> tuple[BoundRequirement, ...]:
    """Merge per-field requirements into one deterministic bound set.

    Requirements are unique per (param, capability). When the same pair
    arrives both inferred and from an override, the override record is kept.
    Inferred requirements on a parameter mentioned by a type-level
    bounded-to expression for this capability are dropped; the bounded-to
    predicate stands in for them. Output is sorted by parameter declaration
    order, then capability name.

    Raises:
        InvalidOverride: A requirement names an undeclared type parameter.
    """
    declared = type_def.type_param_names
    order = {name: index for index, name in enumerate(declared)}
    superseded = frozenset().union(
        *(
            type_params_in(b.type_expr, declared, ())
            for b in bounded_to_for(type_def, capability)
        )
    )

    merged: dict[tuple[str, Capability], BoundRequirement] = {}
    for requirement in requirements:
        if requirement.param not in order:
            raise InvalidOverride(
                f"{type_def.name}: {requirement.capability.value} bound names "
                f"{requirement.param!r}, which is not a type parameter of {type_def.name}",
                type_name=type_def.name,
                capability=requirement.capability,
            )
        if requirement.origin == ORIGIN_INFERRED and requirement.param in superseded:
            continue
        current = merged.get(requirement.key)
        if current is None or (
            requirement.origin == ORIGIN_OVERRIDE and current.origin != ORIGIN_OVERRIDE
        ):
            merged[requirement.key] = requirement

    bounds = tuple(
        sorted(merged.values(), key=lambda r: (order[r.param], r.capability.value))
    )
    log.debug(
        "bounds.consolidated",
        type_name=type_def.name,
        capability=capability.value,
        bounds=[r.param for r in bounds],
    )
    return bounds


def build_where_predicates(
    type_def: TypeDefinition,
    capability: Capability,
    bounds: tuple[BoundRequirement, ...],
) -> tuple[str, ...]:
    predicates = [f"{p.name}: {p.bounds}" for p in type_def.params if p.bounds]
    predicates.extend(
        f"{render_type_expr(b.type_expr)}: {capability.trait_path}"
        for b in bounded_to_for(type_def, capability)
    )
    predicates.extend(f"{r.param}: {r.capability.trait_path}" for r in bounds)
    return tuple(dict.fromkeys(predicates))


# ===--- Capability generators ---=== #


def _binding(prefix: str, field: Field) -> str:
    return f"__{prefix}_{field.display_name}"


def _variant_pattern(
    variant: Variant,
    prefix: str,
    include: Callable[[Field], bool] = lambda field: True,
) -> str:
    path = f"Self::{variant.name}"
    if variant.style == STYLE_UNIT:
        return path
    if variant.style == STYLE_TUPLE:
        parts = [_binding(prefix, f) if include(f) else "_" for f in variant.fields]
        return f"{path}({', '.join(parts)})"
    parts = [
        f"{f.label}: {_binding(prefix, f) if include(f) else '_'}"
        for f in variant.fields
    ]
    return f"{path} {{ {', '.join(parts)} }}"


def _compared(field: Field) -> bool:
    return not field.skip


def _fn_block(signature: str, inner: list[str]) -> list[str]:
    return [f"{signature} {{", *(f"    {line}" if line else "" for line in inner), "}"]


def generate_default(type_def: TypeDefinition) -> list[str]:
    shape = type_def.shape
    if isinstance(shape, EnumShape):
        raise UnsupportedShapeForCapability(
            f"{type_def.name}: Default cannot be derived for an enum; "
            "there is no canonical default variant",
            type_name=type_def.name,
            capability=Capability.DEFAULT,
        )

    call = f"{Capability.DEFAULT.trait_path}::default()"
    if isinstance(shape, TupleShape):
        inner = ["Self(", *(f"    {call}," for _ in shape.fields), ")"]
    elif shape.fields:
        inner = ["Self {", *(f"    {f.label}: {call}," for f in shape.fields), "}"]
    else:
        inner = ["Self {}"]
    return _fn_block("fn default() -> Self", inner)


def _debug_chain(builder: str, entries: list[str]) -> list[str]:
    return [builder, *(f"    .field({entry})" for entry in entries), "    .finish()"]


def generate_debug(type_def: TypeDefinition) -> list[str]:
    shape = type_def.shape
    signature = (
        "fn fmt(&self, f: &mut ::core::fmt::Formatter<'_>) -> ::core::fmt::Result"
    )
    name = type_def.name

    if isinstance(shape, TupleShape):
        entries = [f"&self.{f.label}" for f in shape.fields if not f.skip]
        return _fn_block(signature, _debug_chain(f'f.debug_tuple("{name}")', entries))
    if isinstance(shape, StructShape):
        if not shape.fields:
            return _fn_block(signature, [f'f.write_str("{name}")'])
        entries = [f'"{f.display_name}", &self.{f.label}' for f in shape.fields if not f.skip]
        return _fn_block(signature, _debug_chain(f'f.debug_struct("{name}")', entries))

    if not shape.variants:
        return _fn_block(signature, ["match *self {}"])

    inner = ["match self {"]
    for variant in shape.variants:
        pattern = _variant_pattern(variant, "self", _compared)
        if variant.style == STYLE_UNIT:
            inner.append(f'    {pattern} => f.write_str("{variant.name}"),')
            continue
        if variant.style == STYLE_TUPLE:
            entries = [_binding("self", f) for f in variant.fields if not f.skip]
            builder = f'f.debug_tuple("{variant.name}")'
        else:
            entries = [
                f'"{f.display_name}", {_binding("self", f)}'
                for f in variant.fields
                if not f.skip
            ]
            builder = f'f.debug_struct("{variant.name}")'
        inner.append(f"    {pattern} => {{")
        inner.extend(f"        {line}" for line in _debug_chain(builder, entries))
        inner.append("    }")
    inner.append("}")
    return _fn_block(signature, inner)


def generate_clone(type_def: TypeDefinition) -> list[str]:
    shape = type_def.shape
    signature = "fn clone(&self) -> Self"
    clone = Capability.CLONE.trait_path + "::clone"

    if isinstance(shape, TupleShape):
        inner = ["Self(", *(f"    {clone}(&self.{f.label})," for f in shape.fields), ")"]
        return _fn_block(signature, inner)
    if isinstance(shape, StructShape):
        if not shape.fields:
            return _fn_block(signature, ["Self {}"])
        inner = [
            "Self {",
            *(f"    {f.label}: {clone}(&self.{f.label})," for f in shape.fields),
            "}",
        ]
        return _fn_block(signature, inner)

    if not shape.variants:
        return _fn_block(signature, ["match *self {}"])

    inner = ["match self {"]
    for variant in shape.variants:
        pattern = _variant_pattern(variant, "self")
        path = f"Self::{variant.name}"
        if variant.style == STYLE_UNIT:
            value = path
        elif variant.style == STYLE_TUPLE:
            args = ", ".join(f"{clone}({_binding('self', f)})" for f in variant.fields)
            value = f"{path}({args})"
        else:
            args = ", ".join(
                f"{f.label}: {clone}({_binding('self', f)})" for f in variant.fields
            )
            value = f"{path} {{ {args} }}"
        inner.append(f"    {pattern} => {value},")
    inner.append("}")
    return _fn_block(signature, inner)


def generate_partial_eq(type_def: TypeDefinition) -> list[str]:
    shape = type_def.shape
    signature = "fn eq(&self, other: &Self) -> bool"

    if isinstance(shape, (StructShape, TupleShape)):
        comparisons = [
            f"self.{f.label} == other.{f.label}" for f in shape.fields if not f.skip
        ]
        if not comparisons:
            return _fn_block(signature, ["true"])
        inner = [comparisons[0], *(f"    && {c}" for c in comparisons[1:])]
        return _fn_block(signature, inner)

    if not shape.variants:
        return _fn_block(signature, ["match *self {}"])

    # Discriminants are compared before any payload field.
    inner = [
        "if ::core::mem::discriminant(self) != ::core::mem::discriminant(other) {",
        "    return false;",
        "}",
        "match (self, other) {",
    ]
    for variant in shape.variants:
        left = _variant_pattern(variant, "self", _compared)
        right = _variant_pattern(variant, "other", _compared)
        comparisons = [
            f"{_binding('self', f)} == {_binding('other', f)}"
            for f in variant.fields
            if not f.skip
        ]
        result = " && ".join(comparisons) if comparisons else "true"
        inner.append(f"    ({left}, {right}) => {result},")
    if len(shape.variants) > 1:
        inner.append("    _ => false,")
    inner.append("}")
    return _fn_block(signature, inner)


def generate_eq(type_def: TypeDefinition) -> list[str]:
    return []


CAPABILITY_GENERATORS: dict[Capability, Callable[[TypeDefinition], list[str]]] = {
    Capability.DEFAULT: generate_default,
    Capability.DEBUG: generate_debug,
    Capability.CLONE: generate_clone,
    Capability.PARTIAL_EQ: generate_partial_eq,
    Capability.EQ: generate_eq,
}


# ===--- Impl rendering ---=== #


def format_impl_generics(params: tuple[GenericParam, ...]) -> str:
    if not params:
        return ""
    parts = [
        f"const {p.name}: {p.const_type}" if p.kind == PARAM_KIND_CONST else p.name
        for p in params
    ]
    return "<" + ", ".join(parts) + ">"


def format_type_generics(params: tuple[GenericParam, ...]) -> str:
    if not params:
        return ""
    return "<" + ", ".join(p.name for p in params) + ">"


def render_impl(type_def: TypeDefinition, generated: GeneratedImpl) -> str:
    """Render a GeneratedImpl as a complete Rust impl item.

    Output format (where clause omitted when there are no predicates):
        impl<T, U> ::core::clone::Clone for Pair<T, U>
        where
            T: ::core::clone::Clone,
        {
            fn clone(&self) -> Self {
                ...
            }
        }

    An empty body renders as `{}`. Declared parameter bounds live in the
    where clause, so impl generics carry names only.

    Returns:
        Impl source without a trailing newline.
    """
    header = (
        f"impl{format_impl_generics(type_def.params)} "
        f"{generated.capability.trait_path} for "
        f"{type_def.name}{format_type_generics(type_def.params)}"
    )
    body_lines = generated.body.splitlines()

    lines: list[str] = []
    if generated.predicates:
        lines.append(header)
        lines.append("where")
        lines.extend(f"    {predicate}," for predicate in generated.predicates)
        opener = "{"
    else:
        opener = header + " {"

    if not body_lines:
        lines.append(opener + "}")
        return "\n".join(lines)

    lines.append(opener)
    lines.extend(f"    {line}" if line else "" for line in body_lines)
    lines.append("}")
    return "\n".join(lines)


# ===--- Derive pipeline ---=== #


def derive_capability(
    type_def: TypeDefinition,
    capability: Capability,
    phantom_types: Collection[str] = DEFAULT_PHANTOM_TYPES,
) -> GeneratedImpl:
    """Generate one impl: body first, then bounds, then where predicates.

    Raises:
        UnsupportedShapeForCapability: Default requested for an enum.
        InvalidOverride: A field override names an undeclared parameter.
    """
    body_lines = CAPABILITY_GENERATORS[capability](type_def)
    requirements = collect_type_bounds(type_def, capability, phantom_types)
    bounds = consolidate_bounds(type_def, capability, requirements)
    return GeneratedImpl(
        type_name=type_def.name,
        capability=capability,
        bounds=bounds,
        predicates=build_where_predicates(type_def, capability, bounds),
        body="\n".join(body_lines),
    )


def derive(
    type_def: TypeDefinition,
    capabilities: Iterable[Capability],
    phantom_types: Collection[str] = DEFAULT_PHANTOM_TYPES,
) -> DeriveResult:
    """Generate every requested capability for one type definition.

    Capabilities are processed in canonical order (Default, Debug, Clone,
    PartialEq, Eq) regardless of request order. A capability that fails
    becomes a CapabilityFailure and contributes no impl; the others are
    still generated.

    Args:
        type_def: Classified type definition.
        capabilities: Requested capabilities; duplicates are ignored.
        phantom_types: Marker type names whose generic arguments need no bound.

    Returns:
        DeriveResult with impls and failures, both in canonical order.
    """
    requested = order_capabilities(capabilities)
    if Capability.EQ in requested and Capability.PARTIAL_EQ not in requested:
        log.warning(
            "derive.eq_without_partial_eq",
            type_name=type_def.name,
            hint="Eq requires a PartialEq impl for the same type",
        )

    impls: list[GeneratedImpl] = []
    failures: list[CapabilityFailure] = []
    for capability in requested:
        try:
            impls.append(derive_capability(type_def, capability, phantom_types))
        except (UnsupportedShapeForCapability, InvalidOverride) as err:
            # Eq reports its own failure even when raised while reusing PartialEq.
            failure = CapabilityFailure.from_error(err, type_def.name)
            failures.append(replace(failure, capability=capability))
            log.warning(
                "derive.capability_failed",
                type_name=type_def.name,
                capability=capability.value,
                code=err.code,
                field=err.field,
            )

    return DeriveResult(type_def=type_def, impls=tuple(impls), failures=tuple(failures))


def derive_element(
    element: ET.Element,
    capabilities: Iterable[Capability] | None = None,
    phantom_types: Collection[str] = DEFAULT_PHANTOM_TYPES,
) -> DeriveResult:
    """Classify a raw `<type>` element and derive its capabilities.

    When capabilities is None, the element's own `derive` attribute decides.
    Classification errors are not caught: without a shape nothing can be
    generated for this type.
    """
    type_def = classify_type(element)
    requested = type_def.derives if capabilities is None else capabilities
    return derive(type_def, requested, phantom_types)


# ===--- Discovery ---=== #


def format_capabilities_table() -> str:
    lines = ["Capabilities:", ""]
    for capability in CAPABILITY_ORDER:
        notes = []
        if capability in SKIPPABLE_CAPABILITIES:
            notes.append("honors skip")
        if capability is Capability.DEFAULT:
            notes.append("structs only")
        if capability is Capability.EQ:
            notes.append("reuses PartialEq bounds")
        lines.append(
            f"  {capability.value:<11}{capability.trait_path:<28}{', '.join(notes)}"
        )
    lines.append("")
    return "\n".join(lines)


def _shape_size(shape: Shape) -> str:
    if isinstance(shape, EnumShape):
        return f"{len(shape.variants)} variants"
    return f"{len(shape.fields)} fields"


def format_types_table(
    source_label: str,
    type_defs: list[TypeDefinition],
    failures: list[CapabilityFailure],
) -> str:
    lines = [f"Types in {source_label}:", ""]
    if not type_defs and not failures:
        lines.append("  (none)")
    for type_def in type_defs:
        params = ", ".join(p.name for p in type_def.params) or "-"
        derives = ", ".join(c.value for c in type_def.derives) or "-"
        lines.append(
            f"  {type_def.name:<20}{type_def.shape.kind:<8}{params:<16}"
            f"{_shape_size(type_def.shape):<14}{derives}"
        )
    for failure in failures:
        lines.append(f"  {failure.type_name:<20}error   [{failure.code}] {failure.message}")
    lines.append("")
    return "\n".join(lines)


def run_discovery(config: DiscoveryConfig) -> None:
    """Print the discovery listing selected by config.command.

    "list-capabilities" needs no input file. "list-types" classifies every
    type in the input and lists classification errors inline instead of
    stopping at the first one.
    """
    if config.command == "list-capabilities":
        print(format_capabilities_table(), end="")
        return

    assert config.input_path is not None
    type_defs: list[TypeDefinition] = []
    failures: list[CapabilityFailure] = []
    for element in load_type_elements(config.input_path):
        try:
            type_defs.append(classify_type(element))
        except DeriveError as err:
            failures.append(CapabilityFailure.from_error(err, element.get("name")))
    print(format_types_table(config.input_path.name, type_defs, failures), end="")


# ===--- Output writer ---=== #


@dataclass(frozen=True)
class WriteConfig:
    """Run metadata embedded in the generated file header.

    Attributes:
        source: Input file label, e.g. "types.xml".
        capabilities: Capabilities forced by --derive. Empty when each type's
            own derive attribute was used.
    """

    source: str
    capabilities: tuple[Capability, ...] = ()


@dataclass(frozen=True)
class FileWriteResult:
    path: Path
    line_count: int
    byte_count: int


_HEADER_BORDER: str = "// x-------------------------------------------x //"


def format_file_header(config: WriteConfig) -> list[str]:
    """Return the boxed comment block that opens every generated file.

    Output format:
        // x-------------------------------------------x //
        // | Generated by boundgen
        // | Source: types.xml
        // | Capabilities: Clone, PartialEq
        // x-------------------------------------------x //

    The Capabilities line reads "per type" when no capabilities were forced.

    Raises:
        ValueError: If config.source is empty.
    """
    if not config.source:
        raise ValueError("source must not be empty")

    capabilities = ", ".join(c.value for c in config.capabilities) or "per type"
    return [
        _HEADER_BORDER,
        "// | Generated by boundgen",
        f"// | Source: {config.source}",
        f"// | Capabilities: {capabilities}",
        _HEADER_BORDER,
    ]


def assemble_output_source(config: WriteConfig, results: list[DeriveResult]) -> str:
    """Join the header and every rendered impl, one blank line apart.

    Impls appear in result order, then canonical capability order within a
    type. The returned string ends with exactly one newline.
    """
    parts: list[str] = list(format_file_header(config))
    for result in results:
        for generated in result.impls:
            parts.append("")
            parts.append(render_impl(result.type_def, generated))
    return "\n".join(parts) + "\n"


def write_output(path: Path, content: str) -> FileWriteResult:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    resolved = path.resolve()
    return FileWriteResult(
        path=resolved,
        line_count=content.count("\n"),
        byte_count=len(resolved.read_bytes()),
    )


# ===--- Summary report ---=== #


@dataclass(frozen=True)
class TypeSummary:
    name: str
    shape_kind: str
    generated: tuple[Capability, ...]
    failed: tuple[Capability, ...]


@dataclass(frozen=True)
class GenerationSummary:
    """Data for the post-generation console report.

    Attributes:
        source_label: Input file label.
        output_label: Written file path, or "<stdout>".
        types: One row per successfully classified type, input order.
        failures: Type-level failures first, then capability failures.
        write_result: File write result, None when writing to stdout.
    """

    source_label: str
    output_label: str
    types: tuple[TypeSummary, ...]
    failures: tuple[CapabilityFailure, ...]
    write_result: FileWriteResult | None = None

    @property
    def impl_count(self) -> int:
        return sum(len(t.generated) for t in self.types)


def build_generation_summary(
    config: WriteConfig,
    results: list[DeriveResult],
    type_failures: list[CapabilityFailure],
    write_result: FileWriteResult | None,
) -> GenerationSummary:
    rows = tuple(
        TypeSummary(
            name=result.type_def.name,
            shape_kind=result.type_def.shape.kind,
            generated=tuple(i.capability for i in result.impls),
            failed=tuple(f.capability for f in result.failures if f.capability),
        )
        for result in results
    )
    failures = tuple(type_failures) + tuple(
        failure for result in results for failure in result.failures
    )
    return GenerationSummary(
        source_label=config.source,
        output_label=str(write_result.path) if write_result else "<stdout>",
        types=rows,
        failures=failures,
        write_result=write_result,
    )


def format_generation_summary(summary: GenerationSummary) -> str:
    type_count = len(summary.types) + len(
        {f.type_name for f in summary.failures if f.capability is None}
    )
    lines: list[str] = [f"boundgen: {type_count} types processed", ""]
    lines.append(f"  Source:     {summary.source_label}")
    lines.append(f"  Output:     {summary.output_label}")
    if summary.write_result is not None:
        lines.append(f"  Written:    {summary.write_result.line_count:,} lines")
    lines.append("")

    if summary.types:
        lines.append("  Types:")
        for row in summary.types:
            generated = ", ".join(c.value for c in row.generated) or "-"
            status = f"  ({len(row.failed)} failed)" if row.failed else ""
            lines.append(f"    {row.name:<20}{row.shape_kind:<8}{generated}{status}")
        lines.append("")

    if summary.failures:
        lines.append("  Failures:")
        for failure in summary.failures:
            capability = failure.capability.value if failure.capability else "-"
            lines.append(
                f"    {failure.type_name}: {capability} [{failure.code}] {failure.message}"
            )
        lines.append("")

    lines.append(
        f"  Total: {summary.impl_count} impls generated, "
        f"{len(summary.failures)} failed"
    )
    lines.append("")
    return "\n".join(lines)


def select_type_elements(
    elements: list[ET.Element], type_names: frozenset[str]
) -> list[ET.Element]:
    if not type_names:
        return elements
    available = {element.get("name") for element in elements}
    missing = sorted(type_names - available)
    if missing:
        raise ConfigError(
            "INVALID_TYPE_NAME",
            f"Type not found in input: {', '.join(missing)}",
            "Run with --list-types to see the available types.",
        )
    return [element for element in elements if element.get("name") in type_names]


def run_generate(config: GenerateConfig) -> GenerationSummary:
    """Execute the generation pipeline for a GenerateConfig.

    Progress and the summary go to stdout when an output file is given and
    to stderr otherwise, so that generated code on stdout stays clean.

    Raises:
        OSError: Input not readable or output write failure.
        ET.ParseError: Malformed input XML.
        ConfigError: A --type name is not present in the input.
    """
    stream = sys.stdout if config.output_path else sys.stderr
    print(f"Parsing: {config.input_path}", file=stream)
    elements = select_type_elements(
        load_type_elements(config.input_path), config.type_names
    )
    print(f"  Types: {len(elements)} selected", file=stream)

    results: list[DeriveResult] = []
    type_failures: list[CapabilityFailure] = []
    for element in elements:
        try:
            results.append(
                derive_element(
                    element, config.capabilities or None, config.phantom_types
                )
            )
        except DeriveError as err:
            type_failures.append(CapabilityFailure.from_error(err, element.get("name")))
            log.warning(
                "derive.type_failed", type_name=element.get("name"), code=err.code
            )

    write_config = WriteConfig(
        source=config.input_path.name, capabilities=config.capabilities
    )
    source = assemble_output_source(write_config, results)
    write_result = None
    if config.output_path:
        write_result = write_output(config.output_path, source)
    else:
        sys.stdout.write(source)

    summary = build_generation_summary(write_config, results, type_failures, write_result)
    print(format_generation_summary(summary), end="", file=stream)
    return summary


# ===--- Logging ---=== #


def configure_logging(*, verbose: bool = False, log_json: bool = False) -> None:
    """Route structlog through stdlib logging to stderr.

    Args:
        verbose: Enable DEBUG-level output for the boundgen logger. When
            False, only WARNING+.
        log_json: Use the JSON renderer instead of the console renderer.
    """
    level = logging.DEBUG if verbose else logging.WARNING

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_json:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.WARNING)

    logging.getLogger("boundgen").setLevel(level)


# ===--- Main ---=== #


def _print_config_error(err: ConfigError) -> None:
    print(f"Config error [{err.code}]: {err.message}")
    if err.suggestion:
        print(f"Hint: {err.suggestion}")


def main(argv: list[str] | None = None) -> None:
    try:
        config = build_config(argv)
    except ConfigError as err:
        _print_config_error(err)
        raise SystemExit(1) from err

    configure_logging(verbose=config.verbose, log_json=config.log_json)

    try:
        if isinstance(config, DiscoveryConfig):
            run_discovery(config)
            return
        summary = run_generate(config)
    except ConfigError as err:
        _print_config_error(err)
        raise SystemExit(1) from err
    except (OSError, ET.ParseError) as err:
        print(f"Error: {err}")
        raise SystemExit(1) from err

    if summary.failures:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
