from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping

from common.exceptions import InvalidTransitionError, ValidationFailedError

logger = logging.getLogger(__name__)


class TransitionTable:
    """Finite-state machine over a model's state field.

    The table holds the allowed edges and the side-effect hooks registered per
    edge. `apply` validates the edge, runs the hooks and only then writes the
    new state, so a hook that raises leaves the instance in its previous state.
    Callers run `apply` inside `transaction.atomic()` and persist the instance
    themselves.

    Hooks are called as ``hook(instance, source=<previous state>, **context)``.
    """

    def __init__(self, entity: str, edges: Mapping[str, Iterable[str]], *, field: str = "state"):
        self.entity = entity
        self.field = field
        self.edges = {str(state): frozenset(str(target) for target in targets) for state, targets in edges.items()}
        unknown = {target for targets in self.edges.values() for target in targets} - set(self.edges)
        if unknown:
            raise ValueError(f"{entity} transitions reference undeclared states: {sorted(unknown)}")
        self._hooks: dict[tuple[str | None, str], list[Callable]] = defaultdict(list)

    @property
    def states(self) -> frozenset[str]:
        return frozenset(self.edges)

    def targets(self, state: str) -> frozenset[str]:
        return self.edges.get(str(state), frozenset())

    def is_terminal(self, state: str) -> bool:
        return not self.targets(state)

    def can_transition(self, source: str, target: str) -> bool:
        return str(target) in self.targets(source)

    def check(self, source: str, target: str) -> None:
        source, target = str(source), str(target)
        if target not in self.edges:
            raise ValidationFailedError(
                f"Unknown {self.entity} state '{target}'.",
                details={self.field: f"Must be one of: {', '.join(sorted(self.edges))}."},
            )
        if not self.can_transition(source, target):
            raise InvalidTransitionError(self.entity, source, target, allowed=self.targets(source))

    def on(self, target: str, *, source: str | None = None):
        """Register a side-effect hook for edges into `target` (optionally only from `source`)."""
        if str(target) not in self.edges:
            raise ValueError(f"Unknown {self.entity} state '{target}'.")

        def decorator(func):
            self._hooks[(None if source is None else str(source), str(target))].append(func)
            return func

        return decorator

    def apply(self, instance, target: str, **context) -> str:
        source = str(getattr(instance, self.field))
        target = str(target)
        self.check(source, target)

        for hook in self._hooks[(None, target)] + self._hooks[(source, target)]:
            hook(instance, source=source, **context)

        setattr(instance, self.field, target)
        logger.info(
            f"{self.entity}_transitioned",
            extra={"entity": self.entity, "from_state": source, "to_state": target, f"{self.entity}_id": instance.pk},
        )
        return source
