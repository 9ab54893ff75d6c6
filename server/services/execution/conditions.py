"""Condition evaluation for edge-level conditional branching.

An edge condition is either a string expression or a structured dict
``{"field": ..., "operator": ..., "value": ...}``. Both are evaluated
against a scope made of the execution context plus the lead snapshot
under ``lead``. Evaluation never raises: a malformed expression, a
type mismatch or a reference to a missing variable all evaluate to False.

String expression grammar (no eval):

    expr     := or_expr
    or_expr  := and_expr (("or" | "||") and_expr)*
    and_expr := not_expr (("and" | "&&") not_expr)*
    not_expr := ("not" | "!") not_expr | cmp
    cmp      := operand [op operand]
    op       := == != > >= < <= contains in "not in" matches startswith endswith
    operand  := path | string | number | true | false | null | list | "(" expr ")"

Supported structured operators:
- eq / neq: Equal / not equal
- gt / lt / gte / lte: Ordered comparison (numeric first, then string)
- contains / not_contains: String/list/dict contains value
- exists / not_exists: Field exists and is not None
- is_empty / is_not_empty: Field is empty (None, "", [], {})
- matches: Regex search
- in / not_in: Value is in list
- starts_with / ends_with: String prefix/suffix
- is_true / is_false: Boolean checks
"""

import re
from functools import lru_cache
from typing import Dict, Any, Optional, List, Tuple, Union

from core.logging import get_logger
from services.execution.errors import ConditionSyntaxError

logger = get_logger(__name__)


# Type alias for condition dict
ConditionDict = Dict[str, Any]
EdgeCondition = Union[str, ConditionDict, None]


class _Missing:
    """Sentinel for a path that does not resolve."""

    def __repr__(self) -> str:
        return "<missing>"


MISSING = _Missing()


def resolve_path(data: Any, field_path: str) -> Any:
    """Resolve a dot-notation path, returning MISSING when any segment is absent.

    Examples:
        >>> resolve_path({"result": {"status": "ok"}}, "result.status")
        'ok'
        >>> resolve_path({"items": [{"name": "a"}]}, "items.0.name")
        'a'
    """
    if not field_path:
        return MISSING

    current = data
    for part in field_path.split('.'):
        # Handle array index
        if part.isdigit() and isinstance(current, (list, tuple)):
            index = int(part)
            if 0 <= index < len(current):
                current = current[index]
            else:
                return MISSING
        # Handle dict key
        elif isinstance(current, dict):
            if part not in current:
                return MISSING
            current = current[part]
        else:
            return MISSING

    return current


def get_nested_value(data: Dict[str, Any], field_path: str) -> Any:
    """Get a nested value using dot notation, or None if not found."""
    value = resolve_path(data, field_path)
    return None if value is MISSING else value


# =============================================================================
# STRUCTURED CONDITIONS
# =============================================================================

def evaluate_condition(condition: ConditionDict, scope: Dict[str, Any]) -> bool:
    """Evaluate a structured condition against the scope.

    Args:
        condition: Condition dict with field, operator, value
            {
                "field": "lead.status",      # Path to check
                "operator": "eq",            # Comparison operator
                "value": "qualified"         # Value to compare against
            }
        scope: Execution context plus lead snapshot

    Returns:
        True if condition matches, False otherwise. A missing field only
        satisfies not_exists and is_empty.
    """
    if not condition:
        return True  # No condition = always follow

    field = condition.get("field", "")
    operator = condition.get("operator", "eq")
    target_value = condition.get("value")

    actual_value = resolve_path(scope, field)
    if actual_value is MISSING:
        logger.debug("Condition field missing", field=field, operator=operator)
        return operator in ("not_exists", "is_empty")

    try:
        return _evaluate_operator(operator, actual_value, target_value)
    except Exception as e:
        logger.warning("Condition evaluation error",
                       field=field,
                       operator=operator,
                       error=str(e))
        return False


def _evaluate_operator(operator: str, actual: Any, target: Any) -> bool:
    """Evaluate a single operator."""
    # Equality operators
    if operator == "eq":
        return actual == target

    elif operator == "neq":
        return actual != target

    # Comparison operators (numeric)
    elif operator == "gt":
        return _safe_compare(actual, target, lambda a, b: a > b)

    elif operator == "lt":
        return _safe_compare(actual, target, lambda a, b: a < b)

    elif operator == "gte":
        return _safe_compare(actual, target, lambda a, b: a >= b)

    elif operator == "lte":
        return _safe_compare(actual, target, lambda a, b: a <= b)

    # String/list contains
    elif operator == "contains":
        if actual is None:
            return False
        if isinstance(actual, str):
            return str(target) in actual
        elif isinstance(actual, (list, tuple, dict)):
            return target in actual
        return False

    elif operator == "not_contains":
        return not _evaluate_operator("contains", actual, target)

    # Existence checks
    elif operator == "exists":
        return actual is not None

    elif operator == "not_exists":
        return actual is None

    # Empty checks
    elif operator == "is_empty":
        if actual is None:
            return True
        if isinstance(actual, (str, list, dict, tuple)):
            return len(actual) == 0
        return False

    elif operator == "is_not_empty":
        return not _evaluate_operator("is_empty", actual, target)

    # Regex match
    elif operator == "matches":
        if actual is None or target is None:
            return False
        try:
            return bool(re.search(str(target), str(actual)))
        except re.error:
            logger.warning("Invalid regex pattern", pattern=target)
            return False

    # List membership
    elif operator == "in":
        if isinstance(target, str):
            return isinstance(actual, str) and actual in target
        if not isinstance(target, (list, tuple)):
            return actual == target
        return actual in target

    elif operator == "not_in":
        return not _evaluate_operator("in", actual, target)

    # String prefix/suffix
    elif operator == "starts_with":
        if actual is None or target is None:
            return False
        return str(actual).startswith(str(target))

    elif operator == "ends_with":
        if actual is None or target is None:
            return False
        return str(actual).endswith(str(target))

    # Boolean checks
    elif operator == "is_true":
        return actual is True or actual == "true" or actual == 1

    elif operator == "is_false":
        return actual is False or actual == "false" or actual == 0

    else:
        logger.warning("Unknown operator", operator=operator)
        return False


def _safe_compare(actual: Any, target: Any, comparator) -> bool:
    """Compare two values, numeric first, then as strings. False if impossible."""
    if actual is None or target is None:
        return False
    if isinstance(actual, bool) or isinstance(target, bool):
        return False

    try:
        return comparator(float(actual), float(target))
    except (ValueError, TypeError):
        pass

    if isinstance(actual, str) and isinstance(target, str):
        return comparator(actual, target)
    return False


# =============================================================================
# STRING EXPRESSIONS
# =============================================================================

_TOKEN_PATTERN = re.compile(r"""
    (?P<ws>\s+)
  | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<op>==|!=|>=|<=|&&|\|\||[><!(),\[\]])
  | (?P<word>[A-Za-z_]\w*(?:\.\w+)*)
""", re.VERBOSE)

_KEYWORDS = {
    "and", "or", "not", "in", "contains", "matches", "startswith", "endswith",
    "true", "false", "null",
}

# Expression operator -> structured operator
_COMPARISON_OPS = {
    "==": "eq",
    "!=": "neq",
    ">": "gt",
    ">=": "gte",
    "<": "lt",
    "<=": "lte",
    "contains": "contains",
    "in": "in",
    "not in": "not_in",
    "matches": "matches",
    "startswith": "starts_with",
    "endswith": "ends_with",
}

Token = Tuple[str, Any, int]


def _tokenize(expression: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    while pos < len(expression):
        match = _TOKEN_PATTERN.match(expression, pos)
        if not match:
            raise ConditionSyntaxError(expression, f"unexpected character '{expression[pos]}'", pos)
        kind = match.lastgroup
        text = match.group(kind)
        if kind == "string":
            tokens.append(("lit", _unquote(text), pos))
        elif kind == "number":
            tokens.append(("lit", float(text) if "." in text else int(text), pos))
        elif kind == "op":
            tokens.append(("op", text, pos))
        elif kind == "word":
            lowered = text.lower()
            if lowered in ("true", "false"):
                tokens.append(("lit", lowered == "true", pos))
            elif lowered in ("null", "none"):
                tokens.append(("lit", None, pos))
            elif lowered in _KEYWORDS:
                tokens.append(("kw", lowered, pos))
            else:
                tokens.append(("path", text, pos))
        pos = match.end()
    return tokens


def _unquote(text: str) -> str:
    body = text[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


class _Parser:
    """Recursive-descent parser producing a small tuple AST."""

    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = _tokenize(expression)
        self.index = 0

    def parse(self):
        if not self.tokens:
            raise ConditionSyntaxError(self.expression, "empty expression")
        node = self._or()
        if self.index < len(self.tokens):
            _, value, pos = self.tokens[self.index]
            raise ConditionSyntaxError(self.expression, f"unexpected '{value}'", pos)
        return node

    def _peek(self, offset: int = 0) -> Optional[Token]:
        i = self.index + offset
        return self.tokens[i] if i < len(self.tokens) else None

    def _accept(self, *values: str) -> Optional[Token]:
        tok = self._peek()
        if tok and tok[0] in ("op", "kw") and tok[1] in values:
            self.index += 1
            return tok
        return None

    def _expect(self, value: str) -> None:
        if not self._accept(value):
            tok = self._peek()
            pos = tok[2] if tok else len(self.expression)
            raise ConditionSyntaxError(self.expression, f"expected '{value}'", pos)

    def _or(self):
        parts = [self._and()]
        while self._accept("or", "||"):
            parts.append(self._and())
        return parts[0] if len(parts) == 1 else ("or", parts)

    def _and(self):
        parts = [self._not()]
        while self._accept("and", "&&"):
            parts.append(self._not())
        return parts[0] if len(parts) == 1 else ("and", parts)

    def _not(self):
        if self._accept("not", "!"):
            return ("not", self._not())
        return self._comparison()

    def _comparison(self):
        left = self._operand()
        tok = self._peek()
        if tok is None or tok[0] not in ("op", "kw"):
            return ("truthy", left)

        op = tok[1]
        if op == "not":
            nxt = self._peek(1)
            if nxt and nxt[0] == "kw" and nxt[1] == "in":
                self.index += 2
                return ("cmp", "not in", left, self._operand())
            return ("truthy", left)
        if op in _COMPARISON_OPS:
            self.index += 1
            return ("cmp", op, left, self._operand())
        return ("truthy", left)

    def _operand(self):
        tok = self._peek()
        if tok is None:
            raise ConditionSyntaxError(self.expression, "unexpected end of expression",
                                       len(self.expression))
        kind, value, pos = tok
        if kind == "lit":
            self.index += 1
            return ("lit", value)
        if kind == "path":
            self.index += 1
            return ("path", value)
        if self._accept("("):
            node = self._or()
            self._expect(")")
            return node
        if self._accept("["):
            items = []
            if not self._accept("]"):
                items.append(self._operand())
                while self._accept(","):
                    items.append(self._operand())
                self._expect("]")
            return ("list", items)
        raise ConditionSyntaxError(self.expression, f"unexpected '{value}'", pos)


class _MissingVariable(Exception):
    """Raised internally when an expression references an absent path."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(path)


@lru_cache(maxsize=1024)
def parse_condition(expression: str):
    """Parse a condition expression into an AST.

    Raises:
        ConditionSyntaxError: the expression does not parse
    """
    return _Parser(expression).parse()


def _eval(node, scope: Dict[str, Any]) -> Any:
    kind = node[0]
    if kind == "lit":
        return node[1]
    if kind == "path":
        value = resolve_path(scope, node[1])
        if value is MISSING:
            raise _MissingVariable(node[1])
        return value
    if kind == "list":
        return [_eval(item, scope) for item in node[1]]
    if kind == "or":
        # Every operand is evaluated so a missing variable anywhere is seen
        results = [bool(_eval(part, scope)) for part in node[1]]
        return any(results)
    if kind == "and":
        results = [bool(_eval(part, scope)) for part in node[1]]
        return all(results)
    if kind == "not":
        return not bool(_eval(node[1], scope))
    if kind == "truthy":
        return bool(_eval(node[1], scope))
    if kind == "cmp":
        _, op, left, right = node
        actual = _eval(left, scope)
        target = _eval(right, scope)
        return _evaluate_operator(_COMPARISON_OPS[op], actual, target)
    raise ValueError(f"unknown node {kind}")


def evaluate_expression(expression: str, scope: Dict[str, Any]) -> bool:
    """Evaluate a string expression. Never raises."""
    try:
        ast = parse_condition(expression)
    except ConditionSyntaxError as e:
        logger.warning("Condition syntax error", expression=expression, error=str(e))
        return False

    try:
        return bool(_eval(ast, scope))
    except _MissingVariable as e:
        logger.debug("Condition references missing variable",
                     expression=expression, path=e.path)
        return False
    except Exception as e:
        logger.warning("Condition evaluation error", expression=expression, error=str(e))
        return False


# =============================================================================
# EDGE SELECTION
# =============================================================================

def evaluate_edge_condition(condition: EdgeCondition, scope: Dict[str, Any]) -> bool:
    """True when the edge should be taken. No condition = always follow."""
    if condition is None:
        return True
    if isinstance(condition, str):
        return evaluate_expression(condition, scope)
    if isinstance(condition, dict):
        return evaluate_condition(condition, scope)
    return False


def validate_condition(condition: EdgeCondition) -> Optional[str]:
    """Return an error message when a condition is malformed, else None."""
    if condition is None:
        return None
    if isinstance(condition, str):
        try:
            parse_condition(condition)
        except ConditionSyntaxError as e:
            return str(e)
        return None
    if isinstance(condition, dict):
        if not condition.get("field"):
            return "structured condition requires 'field'"
        operator = condition.get("operator", "eq")
        if operator not in OPERATORS:
            return f"unknown operator '{operator}'"
        if OPERATORS[operator] and "value" not in condition:
            return f"operator '{operator}' requires 'value'"
        return None
    return f"unsupported condition type {type(condition).__name__}"


def decide_next_edges(edges: List[Any], scope: Dict[str, Any], take_all: bool = False) -> List[Any]:
    """Select outgoing edges to follow.

    Every edge whose condition passes is taken (fan-out), unconditional
    edges always pass. With take_all (split_path) conditions are ignored.
    An empty result ends that branch silently.
    """
    if take_all:
        return list(edges)

    selected = []
    for edge in edges:
        if evaluate_edge_condition(edge.condition, scope):
            selected.append(edge)
        else:
            logger.debug("Edge not taken", source=edge.source, target=edge.target,
                         condition=edge.condition)
    return selected


# Structured condition operators; True when the operator needs a 'value'
OPERATORS = {
    "eq": True,
    "neq": True,
    "gt": True,
    "lt": True,
    "gte": True,
    "lte": True,
    "contains": True,
    "not_contains": True,
    "exists": False,
    "not_exists": False,
    "is_empty": False,
    "is_not_empty": False,
    "matches": True,
    "in": True,
    "not_in": True,
    "starts_with": True,
    "ends_with": True,
    "is_true": False,
    "is_false": False,
}
