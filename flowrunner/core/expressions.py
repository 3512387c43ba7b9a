"""Sandboxed template and expression evaluation.

Three capabilities live here, all operating only on the values handed in
through an execution context:

- Template resolution of ``{{path.to.value}}`` placeholders.
- Condition evaluation over the resolved text: comparisons, string
  predicates, existence checks and boolean combinators.
- The transform action's JSON-path extraction (jsonpath-ng) and
  safe-expression mode (simpleeval).

Which operators and functions are available is decided by a ``Sandbox``
value handed to the ``Evaluator``; nothing in this module keeps mutable
state at import level, so concurrent executions never share evaluator state.
"""

import json
import math
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional

from jsonpath_ng.ext import parse as parse_jsonpath
from simpleeval import EvalWithCompoundTypes, InvalidExpression

from .exceptions import EvaluationError
from .logging import get_logger

logger = get_logger(__name__)

TEMPLATE_PATTERN = re.compile(r"\{\{([^}]+)\}\}")
_INDEX_PATTERN = re.compile(r"\[(\d+)\]")
_NUMBER_PATTERN = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")

COMPARISON_OPERATORS = frozenset({"==", "!=", "===", "!==", ">", ">=", "<", "<="})
STRING_PREDICATES = frozenset({"contains", "startsWith", "endsWith"})

_PREDICATE_ALIASES = {
    "contains": "contains",
    "startsWith": "startsWith",
    "startswith": "startsWith",
    "starts_with": "startsWith",
    "endsWith": "endsWith",
    "endswith": "endsWith",
    "ends_with": "endsWith",
}


def _to_number_strict(value: Any) -> Any:
    if isinstance(value, bool):
        raise EvaluationError(f"Cannot convert boolean {value!r} to a number")
    if isinstance(value, (int, float)):
        return value
    text = str(value).strip()
    if not _NUMBER_PATTERN.match(text):
        raise EvaluationError(f"Cannot convert {value!r} to a number")
    number = float(text)
    return int(number) if number.is_integer() and "." not in text and "e" not in text.lower() else number


def _coalesce(*values):
    for value in values:
        if value is not None and value != "":
            return value
    return None


def _default_functions() -> Dict[str, Callable]:
    return {
        "length": lambda value: len(value) if value is not None else 0,
        "lower": lambda value: str(value).lower(),
        "upper": lambda value: str(value).upper(),
        "trim": lambda value: str(value).strip(),
        "toString": lambda value: render_value(value),
        "toNumber": _to_number_strict,
        "isNull": lambda value: value is None,
        "coalesce": _coalesce,
        "round": round,
        "abs": abs,
        "min": min,
        "max": max,
    }


@dataclass(frozen=True)
class Sandbox:
    """Immutable evaluator configuration: what expressions may use."""
    comparison_operators: frozenset = COMPARISON_OPERATORS
    string_predicates: frozenset = STRING_PREDICATES
    functions: Mapping[str, Callable] = field(default_factory=lambda: MappingProxyType(_default_functions()))
    max_expression_length: int = 1000

    def __post_init__(self):
        if not isinstance(self.functions, MappingProxyType):
            object.__setattr__(self, "functions", MappingProxyType(dict(self.functions)))


def default_sandbox() -> Sandbox:
    return Sandbox()


def render_value(value: Any) -> str:
    """Render a context value the way it is substituted into a template."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float)):
        return str(value)
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return str(value)


def lookup_path(context: Mapping[str, Any], path: str) -> Any:
    """
    Return the value at a dotted path, or None when any segment is missing.

    Numeric segments index into lists; ``items[0]`` is accepted as ``items.0``.
    """
    path = _INDEX_PATTERN.sub(r".\1", path.strip())
    current: Any = context
    for segment in path.split("."):
        if segment == "":
            continue
        if isinstance(current, Mapping):
            if segment not in current:
                return None
            current = current[segment]
        elif isinstance(current, (list, tuple)):
            if not segment.lstrip("-").isdigit():
                return None
            index = int(segment)
            if index < -len(current) or index >= len(current):
                return None
            current = current[index]
        else:
            return None
    return current


# --- condition language -------------------------------------------------

_OPERATOR_TOKENS = ("===", "!==", "==", "!=", ">=", "<=", "&&", "||", ">", "<", "!")
_MISSING = object()


@dataclass
class _Token:
    kind: str  # OP, LPAREN, RPAREN, WORD, STRING
    value: Any
    text: str


def _tokenize(text: str) -> List[_Token]:
    tokens: List[_Token] = []
    i = 0
    length = len(text)
    while i < length:
        char = text[i]
        if char.isspace():
            i += 1
            continue
        if char == "(":
            tokens.append(_Token("LPAREN", "(", "("))
            i += 1
            continue
        if char == ")":
            tokens.append(_Token("RPAREN", ")", ")"))
            i += 1
            continue
        if char in ("'", '"'):
            end = i + 1
            chars = []
            while end < length and text[end] != char:
                if text[end] == "\\" and end + 1 < length:
                    end += 1
                chars.append(text[end])
                end += 1
            if end >= length:
                raise EvaluationError("Unterminated string literal in condition", expression=text)
            tokens.append(_Token("STRING", "".join(chars), text[i:end + 1]))
            i = end + 1
            continue
        operator_token = _match_operator(text, i)
        if operator_token:
            tokens.append(_Token("OP", operator_token, operator_token))
            i += len(operator_token)
            continue

        start = i
        while i < length:
            char = text[i]
            if char.isspace() or char in "()":
                break
            matched = _match_operator(text, i)
            if matched and matched != "!":
                break
            i += 1
        tokens.append(_Token("WORD", text[start:i], text[start:i]))
    return tokens


def _match_operator(text: str, index: int) -> Optional[str]:
    for candidate in _OPERATOR_TOKENS:
        if text.startswith(candidate, index):
            return candidate
    return None


def _word_literal(word: str) -> Any:
    if word == "true":
        return True
    if word == "false":
        return False
    if word in ("null", "undefined", "None"):
        return None
    if _NUMBER_PATTERN.match(word):
        number = float(word)
        if number.is_integer() and "." not in word and "e" not in word.lower():
            return int(number)
        return number
    return word


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and _NUMBER_PATTERN.match(value.strip()):
        return float(value.strip())
    return None


def _truthy(value: Any) -> bool:
    if value is None or value is _MISSING:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0 and not (isinstance(value, float) and math.isnan(value))
    if isinstance(value, str):
        return value != ""
    return bool(value)


class _ConditionParser:
    """Recursive-descent evaluator over the tokens of one resolved condition."""

    _KEYWORDS = {"and", "or", "not", "exists", "empty", "is"} | set(_PREDICATE_ALIASES)

    def __init__(self, tokens: List[_Token], sandbox: Sandbox, source: str):
        self.tokens = tokens
        self.position = 0
        self.sandbox = sandbox
        self.source = source

    def parse(self) -> bool:
        value = self._or_expr()
        if self.position < len(self.tokens):
            raise self._error(f"Unexpected token '{self.tokens[self.position].text}'")
        return value

    def _error(self, message: str) -> EvaluationError:
        return EvaluationError(f"Malformed condition: {message}", expression=self.source)

    def _peek(self) -> Optional[_Token]:
        if self.position < len(self.tokens):
            return self.tokens[self.position]
        return None

    def _is_keyword(self, token: Optional[_Token], *words: str) -> bool:
        return token is not None and token.kind == "WORD" and token.value in words

    def _is_op(self, token: Optional[_Token], *ops: str) -> bool:
        return token is not None and token.kind == "OP" and token.value in ops

    def _or_expr(self) -> bool:
        value = self._and_expr()
        while self._is_op(self._peek(), "||") or self._is_keyword(self._peek(), "or"):
            self.position += 1
            right = self._and_expr()
            value = value or right
        return value

    def _and_expr(self) -> bool:
        value = self._not_expr()
        while self._is_op(self._peek(), "&&") or self._is_keyword(self._peek(), "and"):
            self.position += 1
            right = self._not_expr()
            value = value and right
        return value

    def _not_expr(self) -> bool:
        token = self._peek()
        if self._is_op(token, "!") or self._is_keyword(token, "not"):
            self.position += 1
            return not self._not_expr()
        return self._primary()

    def _primary(self) -> bool:
        token = self._peek()
        if token is not None and token.kind == "LPAREN":
            self.position += 1
            value = self._or_expr()
            closing = self._peek()
            if closing is None or closing.kind != "RPAREN":
                raise self._error("missing closing parenthesis")
            self.position += 1
            return value
        if token is not None and token.kind == "RPAREN":
            raise self._error("unbalanced closing parenthesis")
        if self._is_keyword(token, "exists"):
            self.position += 1
            return not self._is_missing_value(self._prefix_operand())
        if self._is_keyword(token, "empty"):
            self.position += 1
            return self._is_empty(self._prefix_operand())
        return self._comparison()

    def _prefix_operand(self) -> Any:
        """Operand of a prefix check, optionally wrapped in parentheses."""
        if self._peek() is not None and self._peek().kind == "LPAREN":
            self.position += 1
            value = self._operand()
            closing = self._peek()
            if closing is None or closing.kind != "RPAREN":
                raise self._error("missing closing parenthesis")
            self.position += 1
            return value
        return self._operand()

    @staticmethod
    def _is_empty(value: Any) -> bool:
        return value is None or value is _MISSING or value in ("", "[]", "{}")

    def _operand(self) -> Any:
        """Collect adjacent words/strings into one operand; nothing at all means missing."""
        parts = []
        while True:
            token = self._peek()
            if token is None or token.kind not in ("WORD", "STRING"):
                break
            if token.kind == "WORD" and token.value in self._KEYWORDS:
                break
            parts.append(token)
            self.position += 1
        if not parts:
            return _MISSING
        if len(parts) == 1:
            token = parts[0]
            return token.value if token.kind == "STRING" else _word_literal(token.value)
        return " ".join(token.value for token in parts)

    def _comparison(self) -> bool:
        left = self._operand()
        token = self._peek()

        if self._is_op(token, *COMPARISON_OPERATORS):
            operator_text = token.value
            if operator_text not in self.sandbox.comparison_operators:
                raise EvaluationError(f"Operator '{operator_text}' is not allowed", expression=self.source)
            self.position += 1
            right = self._operand()
            self._ensure_operand_follows(right)
            return _compare(operator_text, left, right)

        if token is not None and token.kind == "WORD" and token.value in _PREDICATE_ALIASES:
            predicate = _PREDICATE_ALIASES[token.value]
            if predicate not in self.sandbox.string_predicates:
                raise EvaluationError(f"Predicate '{predicate}' is not allowed", expression=self.source)
            self.position += 1
            right = self._operand()
            self._ensure_operand_follows(right)
            return _string_predicate(predicate, left, right)

        if self._is_keyword(token, "exists"):
            self.position += 1
            return not self._is_missing_value(left)

        if self._is_keyword(token, "is"):
            self.position += 1
            negate = False
            if self._is_keyword(self._peek(), "not"):
                self.position += 1
                negate = True
            if not self._is_keyword(self._peek(), "empty"):
                raise self._error("expected 'empty' after 'is'")
            self.position += 1
            return self._is_empty(left) != negate

        if left is _MISSING:
            if token is None:
                raise self._error("expected an operand")
            raise self._error(f"unexpected '{token.text}'")
        return _truthy(left)

    def _ensure_operand_follows(self, right: Any) -> None:
        if right is not _MISSING:
            return
        token = self._peek()
        if token is not None and token.kind == "OP" and token.value not in ("&&", "||", "!"):
            raise self._error(f"unexpected operator '{token.value}'")

    @staticmethod
    def _is_missing_value(value: Any) -> bool:
        return value is _MISSING or value is None or value == ""


def _text(value: Any) -> str:
    if value is _MISSING:
        return ""
    return render_value(value)


def _compare(operator_text: str, left: Any, right: Any) -> bool:
    if operator_text in ("===", "!=="):
        equal = _strict_equal(left, right)
        return equal if operator_text == "===" else not equal

    left_number = _as_number(None if left is _MISSING else left)
    right_number = _as_number(None if right is _MISSING else right)
    if left_number is not None and right_number is not None:
        a, b = left_number, right_number
    else:
        # non-numeric operands fall back to string comparison
        a, b = _text(left), _text(right)

    if operator_text == "==":
        return a == b
    if operator_text == "!=":
        return a != b
    if operator_text == ">":
        return a > b
    if operator_text == ">=":
        return a >= b
    if operator_text == "<":
        return a < b
    if operator_text == "<=":
        return a <= b
    raise EvaluationError(f"Unknown operator '{operator_text}'")


def _strict_equal(left: Any, right: Any) -> bool:
    left = "" if left is _MISSING else left
    right = "" if right is _MISSING else right
    left_is_number = isinstance(left, (int, float)) and not isinstance(left, bool)
    right_is_number = isinstance(right, (int, float)) and not isinstance(right, bool)
    if left_is_number and right_is_number:
        return float(left) == float(right)
    return type(left) is type(right) and left == right


def _string_predicate(predicate: str, left: Any, right: Any) -> bool:
    haystack, needle = _text(left), _text(right)
    if predicate == "contains":
        return needle in haystack
    if predicate == "startsWith":
        return haystack.startswith(needle)
    return haystack.endswith(needle)


def flatten_context(context: Mapping[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Flatten nested mappings into ``a_b_c`` names usable as expression variables."""
    flat: Dict[str, Any] = {}
    for key, value in context.items():
        name = re.sub(r"\W", "_", str(key))
        full_name = f"{prefix}_{name}" if prefix else name
        if isinstance(value, Mapping):
            flat[full_name] = dict(value)
            flat.update(flatten_context(value, full_name))
        else:
            flat[full_name] = value
    return flat


class Evaluator:
    """Resolves templates and evaluates expressions inside a fixed Sandbox."""

    def __init__(self, sandbox: Optional[Sandbox] = None):
        self.sandbox = sandbox or default_sandbox()

    # templates

    def resolve_template(self, template: str, context: Mapping[str, Any]) -> str:
        """Replace each ``{{path}}`` with the rendered value; missing paths become ''."""
        if "{{" not in template:
            return template
        return TEMPLATE_PATTERN.sub(
            lambda match: render_value(lookup_path(context, match.group(1))),
            template
        )

    def resolve(self, value: Any, context: Mapping[str, Any]) -> Any:
        """Resolve templates recursively through strings, dicts and lists."""
        if isinstance(value, str):
            return self.resolve_template(value, context)
        if isinstance(value, dict):
            return {key: self.resolve(item, context) for key, item in value.items()}
        if isinstance(value, list):
            return [self.resolve(item, context) for item in value]
        return value

    # conditions

    def evaluate_condition(self, expression: str, context: Mapping[str, Any]) -> bool:
        """Resolve templates in ``expression`` and evaluate it as a condition."""
        self._check_expression(expression)
        return self.evaluate_resolved_condition(self.resolve_template(expression, context), original=expression)

    def evaluate_resolved_condition(self, text: str, original: Optional[str] = None) -> bool:
        """
        Evaluate an already-resolved condition.

        Raises:
            EvaluationError: If the expression is malformed
        """
        source = original if original is not None else text
        self._check_expression(source)
        if not text.strip():
            # every placeholder resolved to nothing
            return False
        tokens = _tokenize(text)
        return bool(_ConditionParser(tokens, self.sandbox, source).parse())

    def _check_expression(self, expression: Any) -> None:
        if not isinstance(expression, str) or not expression.strip():
            raise EvaluationError("Condition expression is empty")
        if len(expression) > self.sandbox.max_expression_length:
            raise EvaluationError(
                f"Expression too long ({len(expression)} chars, max {self.sandbox.max_expression_length})"
            )

    # transform modes

    def extract_json_path(self, path: str, context: Mapping[str, Any]) -> Any:
        """
        Extract values at a JSON path from the context.

        Returns None for no match, the value for a single match and a list
        when several values match.
        """
        if not isinstance(path, str) or not path.strip():
            raise EvaluationError("JSON path is empty")
        path = path.strip()
        if len(path) > self.sandbox.max_expression_length:
            raise EvaluationError(f"JSON path too long (max {self.sandbox.max_expression_length})")
        if not path.startswith("$"):
            path = "$" + path if path.startswith("[") else "$." + path

        try:
            compiled = parse_jsonpath(path)
        except Exception as e:
            raise EvaluationError(f"Invalid JSON path '{path}': {e}", expression=path) from e

        matches = [match.value for match in compiled.find(dict(context))]
        if not matches:
            return None
        if len(matches) == 1 and not _has_multi_selector(path):
            return matches[0]
        return matches

    def evaluate_safe_expression(self, expression: str, context: Mapping[str, Any]) -> Any:
        """
        Evaluate an arithmetic/string expression over flattened context variables.

        An empty expression returns the context unchanged.
        """
        if expression is None or not str(expression).strip():
            return dict(context)
        expression = str(expression).strip()
        if len(expression) > self.sandbox.max_expression_length:
            raise EvaluationError(
                f"Expression too long ({len(expression)} chars, max {self.sandbox.max_expression_length})"
            )

        names = flatten_context(context)
        names.update({"true": True, "false": False, "null": None})
        evaluator = EvalWithCompoundTypes(names=names, functions=dict(self.sandbox.functions))
        try:
            return evaluator.eval(expression)
        except EvaluationError:
            raise
        except InvalidExpression as e:
            raise EvaluationError(f"Invalid expression: {e}", expression=expression) from e
        except (SyntaxError, TypeError, ValueError, KeyError, IndexError, ZeroDivisionError, AttributeError) as e:
            raise EvaluationError(f"Expression evaluation failed: {e}", expression=expression) from e


def _has_multi_selector(path: str) -> bool:
    return "*" in path or "[?" in path or ".." in path or ":" in path


__all__ = [
    "Evaluator",
    "Sandbox",
    "default_sandbox",
    "flatten_context",
    "lookup_path",
    "render_value",
    "TEMPLATE_PATTERN",
]
