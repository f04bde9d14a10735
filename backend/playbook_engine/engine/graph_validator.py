"""Graph Validator - Structural validation of a playbook's step DAG"""
from collections import deque
from typing import Any, Dict, Iterator, List, Optional, Sequence

from ..domain.models import PlaybookStep
from ..domain.errors import GraphInvalidError, GraphCyclicError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class DependencyGraph:
    """
    Adjacency structure computed once per run

    predecessors[step_id] -> direct dependencies of the step
    successors[step_id]   -> steps that directly depend on it
    order                 -> one topologically consistent ordering

    The orchestrator keeps one per active run so that a step transition
    only re-examines that step's direct successors.
    """

    def __init__(
        self,
        predecessors: Dict[str, List[str]],
        successors: Dict[str, List[str]],
        order: List[str]
    ):
        self.predecessors = predecessors
        self.successors = successors
        self.order = order


class GraphValidator:
    """
    Validate playbook step graphs

    Checks, in order:
    1. Step id uniqueness
    2. Every depends_on_steps entry resolves to a step in the same playbook
    3. No step depends on itself
    4. Signal-waiting steps name the signal type they wait for
    5. No cycle (depth-first search tracking the current path)

    Structural problems raise GraphInvalidError listing every problem found;
    a cycle raises GraphCyclicError reporting the offending path.
    """

    def validate(self, steps: Sequence[PlaybookStep]) -> DependencyGraph:
        """
        Validate steps and build the dependency graph

        Raises:
            GraphInvalidError: Duplicate ids, unknown references, self-dependency
            GraphCyclicError: Dependency cycle found
        """
        errors = self.collect_structural_errors(steps)
        if errors:
            logger.warning(f"Playbook graph invalid: {len(errors)} error(s)")
            raise GraphInvalidError(
                f"Playbook graph is invalid: {errors[0]['message']}",
                errors=errors
            )

        predecessors: Dict[str, List[str]] = {}
        successors: Dict[str, List[str]] = {}
        for step in steps:
            predecessors[step.step_id] = list(dict.fromkeys(step.depends_on_steps))
            successors.setdefault(step.step_id, [])
        for step in steps:
            for dep in predecessors[step.step_id]:
                successors[dep].append(step.step_id)

        cycle = self.find_cycle(predecessors, [s.step_id for s in steps])
        if cycle:
            logger.warning(f"Playbook graph cyclic: {' -> '.join(cycle)}")
            raise GraphCyclicError(cycle)

        order = self._topological_order(predecessors, [s.step_id for s in steps])
        return DependencyGraph(predecessors, successors, order)

    def collect_structural_errors(self, steps: Sequence[PlaybookStep]) -> List[Dict[str, Any]]:
        """Return every uniqueness / reference / self-dependency problem"""
        errors: List[Dict[str, Any]] = []

        if not steps:
            errors.append({
                "type": "EMPTY_PLAYBOOK",
                "message": "Playbook must define at least one step"
            })
            return errors

        seen = set()
        for step in steps:
            if step.step_id in seen:
                errors.append({
                    "type": "DUPLICATE_STEP_ID",
                    "message": f"Duplicate step id: {step.step_id}",
                    "step_id": step.step_id
                })
            seen.add(step.step_id)

        for step in steps:
            for dep in step.depends_on_steps:
                if dep == step.step_id:
                    errors.append({
                        "type": "SELF_DEPENDENCY",
                        "message": f"Step {step.step_id} depends on itself",
                        "step_id": step.step_id
                    })
                elif dep not in seen:
                    errors.append({
                        "type": "UNKNOWN_DEPENDENCY",
                        "message": f"Step {step.step_id} depends on unknown step {dep}",
                        "step_id": step.step_id,
                        "depends_on": dep
                    })

            if step.wait_for_signals and not (step.signal_conditions and step.signal_conditions.signal_type):
                errors.append({
                    "type": "MISSING_SIGNAL_TYPE",
                    "message": f"Step {step.step_id} waits for signals but declares no signal type",
                    "step_id": step.step_id
                })

        return errors

    def find_cycle(
        self,
        predecessors: Dict[str, List[str]],
        step_ids: List[str]
    ) -> Optional[List[str]]:
        """
        Depth-first search following dependency edges

        Iterative, with an explicit stack of edge iterators, so chain length
        is not bounded by the interpreter's recursion limit.

        Returns the cycle as a path that starts and ends on the same step
        (e.g. ["a", "b", "a"]), or None for a DAG.
        """
        visited = set()
        on_stack = set()

        for root in step_ids:
            if root in visited:
                continue

            path: List[str] = [root]
            edges: List[Iterator[str]] = [iter(predecessors.get(root, []))]
            visited.add(root)
            on_stack.add(root)

            while edges:
                dep = next(edges[-1], None)
                if dep is None:
                    edges.pop()
                    on_stack.discard(path.pop())
                    continue
                if dep in on_stack:
                    start = path.index(dep)
                    # Report in execution order: dependency first
                    return list(reversed(path[start:] + [dep]))
                if dep not in visited:
                    visited.add(dep)
                    on_stack.add(dep)
                    path.append(dep)
                    edges.append(iter(predecessors.get(dep, [])))
        return None

    def _topological_order(
        self,
        predecessors: Dict[str, List[str]],
        step_ids: List[str]
    ) -> List[str]:
        """Kahn's algorithm, stable with respect to declaration order"""
        remaining = {step_id: len(predecessors[step_id]) for step_id in step_ids}
        dependents: Dict[str, List[str]] = {step_id: [] for step_id in step_ids}
        for step_id in step_ids:
            for dep in predecessors[step_id]:
                dependents[dep].append(step_id)

        order: List[str] = []
        queue = deque(step_id for step_id in step_ids if remaining[step_id] == 0)
        while queue:
            current = queue.popleft()
            order.append(current)
            for child in dependents[current]:
                remaining[child] -= 1
                if remaining[child] == 0:
                    queue.append(child)
        return order
