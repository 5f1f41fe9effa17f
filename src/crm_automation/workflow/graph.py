"""Arena-style view of a workflow's step graph (cycles allowed via go_to)."""

from collections import deque
from typing import Dict, Iterator, List, Optional, Set, Tuple

from .models import Step, StepType, Workflow


class StepGraph:
    """Id-indexed lookup over a workflow's steps.

    Traversal is always iterative; go_to steps may form cycles, which the
    executor bounds with its hop counter rather than by rejecting the graph.
    """

    def __init__(self, workflow: Workflow):
        self.workflow_id = workflow.id
        self.start_step_id = workflow.entry_step_id
        self._steps: Dict[str, Step] = {step.id: step for step in workflow.steps}

    def __len__(self) -> int:
        return len(self._steps)

    def __contains__(self, step_id: str) -> bool:
        return step_id in self._steps

    def get(self, step_id: Optional[str]) -> Optional[Step]:
        if step_id is None:
            return None
        return self._steps.get(step_id)

    @staticmethod
    def references(step: Step) -> Iterator[Tuple[str, Optional[str]]]:
        """Yield (label, target) for every outgoing reference of a step."""
        if step.type == StepType.GO_TO:
            # go_to ignores next_step_id; only the target matters
            yield "go_to target", step.config.target_step_id
            return
        if step.type == StepType.END:
            return
        yield "next_step_id", step.next_step_id
        for branch in getattr(step, "branches", []):
            yield f"branch '{branch.name or branch.id}'", branch.next_step_id

    def successors(self, step: Step) -> List[str]:
        return [target for _, target in self.references(step) if target is not None]

    def reachable_step_ids(self) -> Set[str]:
        """Breadth-first walk from the start step over resolvable references."""
        if self.start_step_id is None or self.start_step_id not in self._steps:
            return set()

        reachable: Set[str] = set()
        queue = deque([self.start_step_id])
        while queue:
            step_id = queue.popleft()
            if step_id in reachable:
                continue
            reachable.add(step_id)
            for target in self.successors(self._steps[step_id]):
                if target in self._steps and target not in reachable:
                    queue.append(target)
        return reachable

    def dangling_references(self) -> List[str]:
        """Describe every reference that names a step that does not exist."""
        problems = []
        for step in self._steps.values():
            for label, target in self.references(step):
                if target is not None and target not in self._steps:
                    problems.append(
                        f"{step.label}: {label} references missing step '{target}'"
                    )
        return problems

    def unreachable_step_ids(self) -> List[str]:
        reachable = self.reachable_step_ids()
        return [step_id for step_id in self._steps if step_id not in reachable]

    def hop_ceiling(self, multiplier: int, minimum: int) -> int:
        """Maximum logic hops allowed within one executor pass."""
        return max(minimum, multiplier * len(self._steps))
