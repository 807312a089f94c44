"""Pure evaluation of trigger conditions.

The evaluator never fetches data and never fires anything: it answers
"does this condition hold for these inputs?" and nothing else. Firing is the
monitoring engine's job.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, List, Optional

from .conditions import (
    CompositeCondition,
    Logic,
    Operator,
    SimpleCondition,
    TriggerCondition,
)
from .errors import InvalidTriggerCondition

Resolver = Callable[[SimpleCondition], Decimal]


@dataclass
class SatisfiedLeaf:
    """A simple condition that held at evaluation time."""

    index: int
    condition: SimpleCondition
    observed_value: Decimal

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "kind": self.condition.kind.name,
            "operator": self.condition.operator.value,
            "threshold": str(self.condition.threshold),
            "observed_value": str(self.observed_value),
        }


class TriggerEvaluator:
    """Stateless evaluator for simple and composite conditions.

    ``evaluate`` applies a single scalar to every leaf. ``evaluate_with``
    resolves each leaf's input through a callable, which is how the engine
    feeds composites that mix kinds (price and price change, say) from one
    consistent snapshot.

    Example:
        >>> from decimal import Decimal
        >>> from condexec.conditions import SimpleCondition, TriggerKind, Operator
        >>> ev = TriggerEvaluator()
        >>> ev.evaluate(SimpleCondition(TriggerKind.MARK_PRICE, Operator.GT, Decimal("50000")), Decimal("50000.01"))
        True
    """

    def evaluate(self, condition: TriggerCondition, value: Decimal) -> bool:
        return self.evaluate_with(condition, lambda _leaf: value)

    def evaluate_with(self, condition: TriggerCondition, resolve: Resolver) -> bool:
        if isinstance(condition, SimpleCondition):
            return self._evaluate_simple(condition, resolve(condition))

        if isinstance(condition, CompositeCondition):
            if not condition.sub_conditions:
                raise InvalidTriggerCondition("composite condition must have at least one sub-condition")
            if condition.logic is Logic.AND:
                return all(self.evaluate_with(sub, resolve) for sub in condition.sub_conditions)
            if condition.logic is Logic.OR:
                return any(self.evaluate_with(sub, resolve) for sub in condition.sub_conditions)
            raise InvalidTriggerCondition(f"unknown logic operator: {condition.logic!r}")

        raise InvalidTriggerCondition(f"unsupported condition type: {type(condition).__name__}")

    def satisfied_leaves(self, condition: TriggerCondition, resolve: Resolver) -> List[SatisfiedLeaf]:
        """Every leaf that holds, indexed depth-first across the whole tree."""
        satisfied = []
        for index, leaf in enumerate(condition.leaves()):
            observed = resolve(leaf)
            if self._evaluate_simple(leaf, observed):
                satisfied.append(SatisfiedLeaf(index=index, condition=leaf, observed_value=observed))
        return satisfied

    @staticmethod
    def _evaluate_simple(condition: SimpleCondition, value: Optional[Decimal]) -> bool:
        if not isinstance(condition.operator, Operator):
            raise InvalidTriggerCondition(f"unknown operator: {condition.operator!r}")
        if value is None:
            return False
        return condition.operator.apply(value, condition.threshold)
