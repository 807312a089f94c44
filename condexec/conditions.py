"""
Trigger conditions: an algebraic tree of simple comparisons joined by AND/OR.

A simple condition compares one scalar input (mark price, last price, volume,
funding rate, ...) against a threshold. A composite condition combines one or
more children with AND/OR and may nest arbitrarily.

Conditions are plain values: they hold no callbacks and no market state, so
the monitoring engine can re-evaluate them tick after tick without side
effects. They serialize to plain dicts for persistence.

Examples:
    >>> from decimal import Decimal
    >>> cond = CompositeCondition(
    ...     logic=Logic.AND,
    ...     sub_conditions=[
    ...         SimpleCondition(TriggerKind.PRICE, Operator.GT, Decimal("100")),
    ...         SimpleCondition(
    ...             TriggerKind.PRICE_CHANGE_PCT, Operator.GT, Decimal("5"),
    ...             base_price=Decimal("80"),
    ...         ),
    ...     ],
    ... )
    >>> cond.summary()
    '(PRICE > 100 AND PRICE_CHANGE_PCT > 5 [base=80])'
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum, auto
from typing import Any, Dict, Iterator, List, Optional, Union

from .errors import InvalidTriggerCondition


class TriggerKind(Enum):
    """Scalar input a simple condition is evaluated against."""

    PRICE = auto()
    MARK_PRICE = auto()
    LAST_PRICE = auto()
    PRICE_CHANGE_PCT = auto()
    VOLUME = auto()
    UNREALIZED_PNL = auto()
    FUNDING_RATE = auto()
    MARGIN_RATIO = auto()


class Operator(Enum):
    """Comparison operator; value is the canonical symbol."""

    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="
    EQ = "=="
    NE = "!="

    @classmethod
    def parse(cls, raw: Union[str, "Operator"]) -> "Operator":
        """Accept an Operator, its name ("GTE") or a symbol (">=", "≥", "=")."""
        if isinstance(raw, Operator):
            return raw
        text = str(raw).strip()
        aliases = {"≥": ">=", "≤": "<=", "=": "==", "≠": "!=", "<>": "!="}
        text = aliases.get(text, text)
        for op in cls:
            if text == op.value or text.upper() == op.name:
                return op
        raise InvalidTriggerCondition(f"unknown operator: {raw!r}")

    def apply(self, value: Decimal, threshold: Decimal) -> bool:
        if self is Operator.GT:
            return value > threshold
        if self is Operator.GTE:
            return value >= threshold
        if self is Operator.LT:
            return value < threshold
        if self is Operator.LTE:
            return value <= threshold
        if self is Operator.EQ:
            return value == threshold
        if self is Operator.NE:
            return value != threshold
        raise InvalidTriggerCondition(f"unknown operator: {self!r}")


class Logic(Enum):
    AND = auto()
    OR = auto()


DEFAULT_VOLUME_WINDOW = 3600  # seconds


@dataclass
class SimpleCondition:
    """Leaf comparison ``input <operator> threshold``.

    Attributes:
        kind: Which scalar input to compare
        operator: Comparison operator
        threshold: Right-hand side of the comparison
        base_price: Reference price for PRICE_CHANGE_PCT
        window: Look-back window in seconds for VOLUME
    """

    kind: TriggerKind
    operator: Operator
    threshold: Decimal
    base_price: Optional[Decimal] = None
    window: Optional[int] = None

    def leaves(self) -> Iterator["SimpleCondition"]:
        yield self

    @property
    def volume_window(self) -> int:
        return self.window if self.window else DEFAULT_VOLUME_WINDOW

    def summary(self) -> str:
        text = f"{self.kind.name} {self.operator.value} {self.threshold}"
        if self.kind is TriggerKind.PRICE_CHANGE_PCT and self.base_price is not None:
            text += f" [base={self.base_price}]"
        if self.kind is TriggerKind.VOLUME:
            text += f" [window={self.volume_window}s]"
        return text

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.name,
            "operator": self.operator.value,
            "threshold": str(self.threshold),
            "base_price": str(self.base_price) if self.base_price is not None else None,
            "window": self.window,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "SimpleCondition":
        try:
            kind = TriggerKind[str(d["kind"]).upper()]
        except KeyError:
            raise InvalidTriggerCondition(f"unknown trigger kind: {d.get('kind')!r}")
        try:
            threshold = Decimal(str(d["threshold"]))
            base_price = Decimal(str(d["base_price"])) if d.get("base_price") is not None else None
        except (KeyError, InvalidOperation) as e:
            raise InvalidTriggerCondition(f"invalid numeric field in condition: {d!r}", cause=e)
        window = d.get("window")
        return SimpleCondition(
            kind=kind,
            operator=Operator.parse(d["operator"]),
            threshold=threshold,
            base_price=base_price,
            window=int(window) if window is not None else None,
        )


@dataclass
class CompositeCondition:
    """AND/OR over one or more child conditions."""

    logic: Logic
    sub_conditions: List["TriggerCondition"] = field(default_factory=list)

    def leaves(self) -> Iterator[SimpleCondition]:
        for sub in self.sub_conditions:
            yield from sub.leaves()

    def summary(self) -> str:
        joiner = f" {self.logic.name} "
        return "(" + joiner.join(sub.summary() for sub in self.sub_conditions) + ")"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "logic": self.logic.name,
            "sub_conditions": [sub.to_dict() for sub in self.sub_conditions],
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "CompositeCondition":
        try:
            logic = Logic[str(d["logic"]).upper()]
        except KeyError:
            raise InvalidTriggerCondition(f"unknown logic operator: {d.get('logic')!r}")
        return CompositeCondition(
            logic=logic,
            sub_conditions=[condition_from_dict(sub) for sub in d.get("sub_conditions", [])],
        )


TriggerCondition = Union[SimpleCondition, CompositeCondition]


def condition_from_dict(d: Dict[str, Any]) -> TriggerCondition:
    """Rebuild a condition tree from its to_dict() form."""
    if not isinstance(d, dict):
        raise InvalidTriggerCondition(f"condition must be a mapping, got {type(d).__name__}")
    if "logic" in d:
        return CompositeCondition.from_dict(d)
    return SimpleCondition.from_dict(d)


# Kinds whose threshold may legitimately be zero on derivatives.
ZERO_THRESHOLD_KINDS = frozenset({TriggerKind.FUNDING_RATE, TriggerKind.UNREALIZED_PNL})

# Kinds that need an open position to produce an input.
POSITION_KINDS = frozenset({TriggerKind.UNREALIZED_PNL, TriggerKind.MARGIN_RATIO})

# Kinds only available on derivatives.
FUTURES_ONLY_KINDS = frozenset(
    {TriggerKind.MARK_PRICE, TriggerKind.FUNDING_RATE} | POSITION_KINDS
)


def validate_condition(condition: Optional[TriggerCondition], *, futures: bool = False) -> None:
    """Check a condition tree before it is accepted at create/update time.

    Raises:
        InvalidTriggerCondition: On any structural or semantic problem
    """
    if condition is None:
        raise InvalidTriggerCondition("trigger condition cannot be empty")

    if isinstance(condition, CompositeCondition):
        if not isinstance(condition.logic, Logic):
            raise InvalidTriggerCondition(f"unknown logic operator: {condition.logic!r}")
        if not condition.sub_conditions:
            raise InvalidTriggerCondition("composite condition must have at least one sub-condition")
        for sub in condition.sub_conditions:
            validate_condition(sub, futures=futures)
        return

    if not isinstance(condition, SimpleCondition):
        raise InvalidTriggerCondition(f"unsupported condition type: {type(condition).__name__}")
    if not isinstance(condition.kind, TriggerKind):
        raise InvalidTriggerCondition(f"unknown trigger kind: {condition.kind!r}")
    if not isinstance(condition.operator, Operator):
        raise InvalidTriggerCondition(f"unknown operator: {condition.operator!r}")
    if not isinstance(condition.threshold, Decimal):
        raise InvalidTriggerCondition("threshold must be a Decimal")

    if condition.kind is TriggerKind.PRICE_CHANGE_PCT:
        if condition.base_price is None or condition.base_price <= 0:
            raise InvalidTriggerCondition("base price must be greater than 0 for price change percentage")
    if condition.kind is TriggerKind.VOLUME and condition.window is not None and condition.window <= 0:
        raise InvalidTriggerCondition("volume window must be greater than 0")

    if futures:
        if condition.threshold == 0 and condition.kind not in ZERO_THRESHOLD_KINDS:
            raise InvalidTriggerCondition(f"threshold cannot be 0 for {condition.kind.name}")
    elif condition.kind in FUTURES_ONLY_KINDS:
        raise InvalidTriggerCondition(f"{condition.kind.name} is only available for futures orders")
