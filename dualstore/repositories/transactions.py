from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass

from ..domain import Entity


@dataclass(frozen=True)
class Put:
    """Create or overwrite ``entity`` under the same rules as ``Repository.save``."""

    entity: Entity


@dataclass(frozen=True)
class Delete:
    """Remove ``entity``.

    The record must exist. If ``entity.updated_at`` is set, the stored record
    must also still carry that marker.
    """

    entity: Entity


WriteOperation = Put | Delete


class TransactionRunner(ABC):
    """Applies a bounded batch of writes atomically.

    Either every operation in the batch takes effect or none does. A failed
    precondition raises ``ConflictError`` (or ``ValidationFailure`` for a
    dangling relationship) after the whole batch has been undone.

    Examples:
        Move a stack to another team and register a resource with it:

        >>> saved = runner.execute([
        ...     Put(stack.model_copy(update={"team_id": new_team.id})),
        ...     Put(StackResource(stack_id=stack.id, name="db", resource_type="rds")),
        ... ])
    """

    @abstractmethod
    def execute(self, operations: Sequence[WriteOperation]) -> list[Entity]:
        """Apply ``operations`` in order.

        Returns:
            One entity per operation: the stamped entity for a ``Put`` and the
            entity as given for a ``Delete``.
        """
