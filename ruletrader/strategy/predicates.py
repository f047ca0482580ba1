"""
Boolean predicates over a rule's metadata record.

Queries are written as mappings (YAML/JSON friendly) and compiled once into a
small expression tree:

    {"price": {"$lt": 12.5}, "change_percent": {"$gt": 1}}
    {"$or": [{"price": {"$lte": "$prev_close"}}, {"volume": {"$gte": 1000000}}]}

Top-level keys are combined with AND. Operand strings starting with ``$``
reference other metadata fields.
"""

from __future__ import annotations

import json
import operator
import threading
from dataclasses import dataclass, fields
from typing import Any, Callable, Mapping, Union


class StrategyConfigError(ValueError):
    """Query cannot be compiled (unknown field, operator, or shape)."""


class NoStrategy(StrategyConfigError):
    """Rule defines neither an entry nor an exit predicate."""


@dataclass(frozen=True, slots=True)
class Metadata:
    # rule
    symbol: str
    exchange: str
    number_of_shares: float
    risk_percentage: float
    profit_percentage: float | None
    hold_overnight: bool
    # account
    cash: float | None = None
    buying_power: float | None = None
    equity: float | None = None
    portfolio_value: float | None = None
    daytrade_count: int | None = None
    # quote
    price: float | None = None
    open: float | None = None
    high: float | None = None
    low: float | None = None
    volume: float | None = None
    prev_close: float | None = None
    change: float | None = None
    change_percent: float | None = None

    def lookup(self, name: str) -> Any:
        return getattr(self, name)


METADATA_FIELDS = frozenset(f.name for f in fields(Metadata))


@dataclass(frozen=True, slots=True)
class FieldRef:
    name: str


@dataclass(frozen=True, slots=True)
class Literal:
    value: Any


Operand = Union[FieldRef, Literal]


@dataclass(frozen=True, slots=True)
class Compare:
    op: str
    left: FieldRef
    right: Operand


@dataclass(frozen=True, slots=True)
class AllOf:
    terms: tuple["Expr", ...]


@dataclass(frozen=True, slots=True)
class AnyOf:
    terms: tuple["Expr", ...]


@dataclass(frozen=True, slots=True)
class Not:
    term: "Expr"


Expr = Union[Compare, AllOf, AnyOf, Not]


_ORDERING: dict[str, Callable[[Any, Any], bool]] = {
    "$gt": operator.gt,
    "$gte": operator.ge,
    "$lt": operator.lt,
    "$lte": operator.le,
}
_OPERATORS = frozenset({"$eq", "$ne", "$in", "$nin", *_ORDERING})


def _field(name: str) -> FieldRef:
    if name not in METADATA_FIELDS:
        raise StrategyConfigError(f"Unknown metadata field '{name}'")
    return FieldRef(name)


def _operand(raw: Any) -> Operand:
    if isinstance(raw, str) and raw.startswith("$"):
        return _field(raw[1:])
    return Literal(raw)


def _compile_field(name: str, condition: Any) -> Expr:
    left = _field(name)
    if not isinstance(condition, Mapping):
        return Compare("$eq", left, _operand(condition))
    if not condition:
        raise StrategyConfigError(f"Empty condition for field '{name}'")
    terms: list[Expr] = []
    for op, raw in condition.items():
        if op not in _OPERATORS:
            raise StrategyConfigError(f"Unsupported operator '{op}' on field '{name}'")
        if op in {"$in", "$nin"}:
            if not isinstance(raw, (list, tuple)):
                raise StrategyConfigError(f"Operator '{op}' on '{name}' needs a list")
            terms.append(Compare(op, left, Literal(tuple(raw))))
        else:
            terms.append(Compare(op, left, _operand(raw)))
    return terms[0] if len(terms) == 1 else AllOf(tuple(terms))


def _compile(query: Any) -> Expr:
    if not isinstance(query, Mapping) or not query:
        raise StrategyConfigError(f"Query must be a non-empty mapping, got {query!r}")
    terms: list[Expr] = []
    for key, value in query.items():
        if key in {"$and", "$or"}:
            if not isinstance(value, (list, tuple)) or not value:
                raise StrategyConfigError(f"'{key}' needs a non-empty list")
            children = tuple(_compile(item) for item in value)
            terms.append(AllOf(children) if key == "$and" else AnyOf(children))
        elif key == "$not":
            terms.append(Not(_compile(value)))
        elif key.startswith("$"):
            raise StrategyConfigError(f"Unsupported operator '{key}'")
        else:
            terms.append(_compile_field(key, value))
    return terms[0] if len(terms) == 1 else AllOf(tuple(terms))


def _resolve(operand: Operand, metadata: Metadata) -> Any:
    if isinstance(operand, FieldRef):
        return metadata.lookup(operand.name)
    return operand.value


def _compare(op: str, left: Any, right: Any) -> bool:
    if op == "$eq":
        return left == right
    if op == "$ne":
        return left != right
    if op == "$in":
        return left in right
    if op == "$nin":
        return left not in right
    if left is None or right is None:
        return False
    try:
        return _ORDERING[op](left, right)
    except TypeError:
        return False


def evaluate(expr: Expr, metadata: Metadata) -> bool:
    if isinstance(expr, Compare):
        return _compare(expr.op, metadata.lookup(expr.left.name), _resolve(expr.right, metadata))
    if isinstance(expr, AllOf):
        return all(evaluate(term, metadata) for term in expr.terms)
    if isinstance(expr, AnyOf):
        return any(evaluate(term, metadata) for term in expr.terms)
    if isinstance(expr, Not):
        return not evaluate(expr.term, metadata)
    raise TypeError(f"Unknown expression node {type(expr).__name__}")


@dataclass(frozen=True, slots=True)
class Predicate:
    source: str
    expr: Expr

    def test(self, metadata: Metadata) -> bool:
        return evaluate(self.expr, metadata)


def compile_predicate(query: Mapping[str, Any] | None) -> Predicate | None:
    if not query:
        return None
    return Predicate(source=json.dumps(query, sort_keys=True), expr=_compile(query))


class PredicateCache:
    """Compiles each rule's queries once; recompiles when the stored query changes."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cache: dict[str, Predicate] = {}

    def get(self, key: str, query: Mapping[str, Any] | None) -> Predicate | None:
        if not query:
            return None
        source = json.dumps(query, sort_keys=True)
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None and cached.source == source:
            return cached
        predicate = Predicate(source=source, expr=_compile(query))
        with self._lock:
            self._cache[key] = predicate
        return predicate
