"""Label selector parsing and matching.

Implements the Kubernetes label selector grammar so that the file-based store
filters records exactly like the API server does for the ConfigMap store::

    env=prod,tier!=cache
    team in (sre, obs),!deprecated
    priority>2

Requirements are separated by commas and ANDed together. An empty selector
matches every label set.
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass

OP_EXISTS = "exists"
OP_DOES_NOT_EXIST = "!"
OP_EQUALS = "="
OP_DOUBLE_EQUALS = "=="
OP_NOT_EQUALS = "!="
OP_IN = "in"
OP_NOT_IN = "notin"
OP_GREATER_THAN = ">"
OP_LESS_THAN = "<"

_SPECIAL_CHARS = "!=<>(),"
_KEYWORDS = (OP_IN, OP_NOT_IN)

_NAME_MAX_LENGTH = 63
_PREFIX_MAX_LENGTH = 253
_NAME_RE = re.compile(r"^([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9]$")
_PREFIX_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")
_VALUE_RE = re.compile(r"^(([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9])?$")
_INTEGER_RE = re.compile(r"^-?[0-9]+$")

# Token kinds
_IDENTIFIER = "identifier"
_KEYWORD = "keyword"
_SYMBOL = "symbol"


class SelectorError(ValueError):
    """Raised when a label selector cannot be parsed."""

    pass


def validate_label_key(key: str) -> None:
    """Validate a qualified label key (``[prefix/]name``).

    Raises:
        SelectorError: If the key is not a valid qualified name.
    """
    prefix, sep, name = key.rpartition("/")
    if sep:
        if not prefix or len(prefix) > _PREFIX_MAX_LENGTH or not _PREFIX_RE.match(prefix):
            raise SelectorError(f"invalid label key {key!r}: prefix must be a DNS subdomain")
    if not name or len(name) > _NAME_MAX_LENGTH or not _NAME_RE.match(name):
        raise SelectorError(
            f"invalid label key {key!r}: name must be 1-{_NAME_MAX_LENGTH} alphanumeric characters, "
            "'-', '_' or '.', starting and ending with an alphanumeric character"
        )


def validate_label_value(value: str) -> None:
    """Validate a label value (may be empty).

    Raises:
        SelectorError: If the value is not a valid label value.
    """
    if len(value) > _NAME_MAX_LENGTH or not _VALUE_RE.match(value):
        raise SelectorError(
            f"invalid label value {value!r}: must be at most {_NAME_MAX_LENGTH} alphanumeric characters, "
            "'-', '_' or '.', starting and ending with an alphanumeric character"
        )


@dataclass(frozen=True)
class Requirement:
    """A single ``key <op> values`` clause of a selector."""

    key: str
    operator: str
    values: tuple[str, ...] = ()

    def matches(self, labels: Mapping[str, str]) -> bool:
        """Return True if the label set satisfies this requirement."""
        present = self.key in labels

        if self.operator == OP_EXISTS:
            return present
        if self.operator == OP_DOES_NOT_EXIST:
            return not present
        if self.operator in (OP_EQUALS, OP_DOUBLE_EQUALS, OP_IN):
            return present and labels[self.key] in self.values
        if self.operator in (OP_NOT_EQUALS, OP_NOT_IN):
            return not present or labels[self.key] not in self.values

        # Numeric comparison; non-integer label values never match
        if not present or not _INTEGER_RE.match(labels[self.key]):
            return False
        label_value = int(labels[self.key])
        bound = int(self.values[0])
        if self.operator == OP_GREATER_THAN:
            return label_value > bound
        return label_value < bound

    def __str__(self) -> str:
        if self.operator == OP_EXISTS:
            return self.key
        if self.operator == OP_DOES_NOT_EXIST:
            return f"!{self.key}"
        if self.operator in (OP_IN, OP_NOT_IN):
            return f"{self.key} {self.operator} ({','.join(self.values)})"
        return f"{self.key}{self.operator}{self.values[0]}"


@dataclass(frozen=True)
class Selector:
    """A parsed label selector: the AND of its requirements."""

    requirements: tuple[Requirement, ...] = ()

    def matches(self, labels: Mapping[str, str] | None) -> bool:
        """Return True if every requirement matches. None is an empty label set."""
        if labels is None:
            labels = {}
        return all(req.matches(labels) for req in self.requirements)

    def is_empty(self) -> bool:
        return not self.requirements

    def __str__(self) -> str:
        return ",".join(str(req) for req in self.requirements)


def _tokenize(selector: str) -> list[tuple[str, str]]:
    """Split a selector string into (kind, text) tokens."""
    tokens: list[tuple[str, str]] = []
    i = 0
    length = len(selector)

    while i < length:
        char = selector[i]
        if char.isspace():
            i += 1
            continue

        if char in _SPECIAL_CHARS:
            pair = selector[i:i + 2]
            if pair in ("!=", "=="):
                tokens.append((_SYMBOL, pair))
                i += 2
            else:
                tokens.append((_SYMBOL, char))
                i += 1
            continue

        start = i
        while i < length and not selector[i].isspace() and selector[i] not in _SPECIAL_CHARS:
            i += 1
        word = selector[start:i]
        tokens.append((_KEYWORD if word in _KEYWORDS else _IDENTIFIER, word))

    return tokens


class _Parser:
    """Recursive-descent parser over the token list."""

    def __init__(self, selector: str) -> None:
        self._selector = selector
        self._tokens = _tokenize(selector)
        self._pos = 0

    def _peek(self) -> tuple[str, str] | None:
        if self._pos < len(self._tokens):
            return self._tokens[self._pos]
        return None

    def _next(self) -> tuple[str, str] | None:
        token = self._peek()
        if token is not None:
            self._pos += 1
        return token

    def _error(self, message: str) -> SelectorError:
        return SelectorError(f"unable to parse requirement: {message} in selector {self._selector!r}")

    def parse(self) -> Selector:
        requirements: list[Requirement] = []
        if self._peek() is None:
            return Selector()

        while True:
            requirements.append(self._parse_requirement())
            token = self._next()
            if token is None:
                break
            if token != (_SYMBOL, ","):
                raise self._error(f"found {token[1]!r}, expected ','")
            if self._peek() is None:
                raise self._error("found end of input after ','")

        return Selector(tuple(requirements))

    def _parse_requirement(self) -> Requirement:
        token = self._next()
        negated = False
        if token == (_SYMBOL, "!"):
            negated = True
            token = self._next()

        if token is None or token[0] != _IDENTIFIER:
            found = "end of input" if token is None else repr(token[1])
            raise self._error(f"found {found}, expected a label key")
        key = token[1]
        validate_label_key(key)

        following = self._peek()
        if following is None or following == (_SYMBOL, ","):
            return Requirement(key, OP_DOES_NOT_EXIST if negated else OP_EXISTS)
        if negated:
            raise self._error(f"found {following[1]!r}, expected ',' or end of input after '!{key}'")

        operator = self._parse_operator()

        if operator in (OP_IN, OP_NOT_IN):
            values = self._parse_value_set()
        else:
            values = (self._parse_single_value(),)

        if operator in (OP_GREATER_THAN, OP_LESS_THAN):
            if not _INTEGER_RE.match(values[0]):
                raise self._error(f"for '{operator}' operator, the value must be an integer, got {values[0]!r}")
        else:
            for value in values:
                validate_label_value(value)

        return Requirement(key, operator, values)

    def _parse_operator(self) -> str:
        token = self._next()
        if token is None:
            raise self._error("found end of input, expected an operator")
        kind, text = token
        if kind == _KEYWORD:
            return text
        if kind == _SYMBOL and text in (OP_EQUALS, OP_DOUBLE_EQUALS, OP_NOT_EQUALS, OP_GREATER_THAN, OP_LESS_THAN):
            return text
        raise self._error(f"found {text!r}, expected one of '=', '==', '!=', 'in', 'notin', '>', '<'")

    def _parse_single_value(self) -> str:
        token = self._peek()
        # key= with nothing after it selects the empty value
        if token is None or token == (_SYMBOL, ","):
            return ""
        if token[0] == _SYMBOL:
            raise self._error(f"found {token[1]!r}, expected a value")
        self._pos += 1
        return token[1]

    def _parse_value_set(self) -> tuple[str, ...]:
        token = self._next()
        if token != (_SYMBOL, "("):
            found = "end of input" if token is None else repr(token[1])
            raise self._error(f"found {found}, expected '('")

        values: list[str] = []
        expect_value = True
        while True:
            token = self._next()
            if token is None:
                raise self._error("found end of input, expected ')'")
            if token == (_SYMBOL, ")"):
                if expect_value and values:
                    values.append("")
                break
            if token == (_SYMBOL, ","):
                if expect_value:
                    values.append("")
                expect_value = True
                continue
            if token[0] == _SYMBOL or not expect_value:
                raise self._error(f"found {token[1]!r}, expected a value, ',' or ')'")
            values.append(token[1])
            expect_value = False

        if not values:
            raise self._error("for 'in' and 'notin' operators, the value set can't be empty")
        return tuple(sorted(set(values)))


def parse(selector: str | None) -> Selector:
    """Parse a label selector string.

    Args:
        selector: Selector expression; None or blank selects everything.

    Returns:
        The parsed Selector.

    Raises:
        SelectorError: If the expression is malformed.
    """
    if selector is None:
        return Selector()
    return _Parser(selector).parse()
