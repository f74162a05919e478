"""Declarative workflow DAG: validation, ordering and next-step resolution.

A workflow is a list of steps with ``depends_on`` edges.  The engine is
stateless; execution progress lives in a ``WorkflowExecutionState`` the
driving loop owns.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from attosprint.errors import WorkflowValidationError
from attosprint.protocol.models import (
    SprintPaths,
    StepRetryPolicy,
    StepStatus,
    WorkflowDefinition,
    WorkflowExecutionState,
    WorkflowStep,
)

logger = logging.getLogger(__name__)

DEFAULT_WORKFLOW = WorkflowDefinition(
    id="default",
    name="Standard Code-Review-Merge",
    version=1,
    steps=[
        WorkflowStep(
            id="code",
            name="Implement",
            agent_role="coder",
            success_condition="tests_pass",
            retry_policy=StepRetryPolicy(max_attempts=6, escalate_model=True),
        ),
        WorkflowStep(
            id="review",
            name="Review",
            agent_role="reviewer",
            depends_on=["code"],
            success_condition="review_approved",
            retry_policy=StepRetryPolicy(max_attempts=4, escalate_model=False),
        ),
        WorkflowStep(
            id="merge",
            name="Merge",
            agent_role="merger",
            depends_on=["review"],
            success_condition="merge_clean",
            retry_policy=StepRetryPolicy(max_attempts=3, escalate_model=False),
        ),
    ],
)

_TERMINAL: frozenset[str] = frozenset({"completed", "skipped"})


class WorkflowEngine:
    """Validates workflow definitions and resolves what runs next.

    Usage::

        engine = WorkflowEngine()
        state = engine.init_execution_state(definition, "task-1")
        step = engine.get_next_step(definition, state)
    """

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    def validate(self, definition: WorkflowDefinition) -> None:
        """Raise ``WorkflowValidationError`` listing every structural issue."""
        issues: list[str] = []
        if not definition.steps:
            issues.append("Workflow must have at least one step")

        ids: set[str] = set()
        for step in definition.steps:
            if step.id in ids:
                issues.append(f"Duplicate step ID: {step.id}")
            ids.add(step.id)

        for step in definition.steps:
            for dep in step.depends_on:
                if dep not in ids:
                    issues.append(f'Step "{step.id}" depends on non-existent step "{dep}"')

        cycle = self._find_cycle(definition)
        if cycle:
            issues.append(f"Dependency cycle detected: {' -> '.join(cycle)}")

        if issues:
            raise WorkflowValidationError(issues[0], issues)

    def topological_sort(self, definition: WorkflowDefinition) -> list[WorkflowStep]:
        """Dependencies before dependents; ties keep declaration order."""
        self.validate(definition)
        by_id = {step.id: step for step in definition.steps}
        visited: set[str] = set()
        order: list[WorkflowStep] = []

        def visit(step_id: str) -> None:
            if step_id in visited:
                return
            visited.add(step_id)
            step = by_id[step_id]
            for dep in step.depends_on:
                visit(dep)
            order.append(step)

        for step in definition.steps:
            visit(step.id)
        return order

    def _find_cycle(self, definition: WorkflowDefinition) -> list[str] | None:
        by_id = {step.id: step for step in definition.steps}
        visited: set[str] = set()
        in_stack: set[str] = set()
        path: list[str] = []

        def dfs(step_id: str) -> list[str] | None:
            visited.add(step_id)
            in_stack.add(step_id)
            path.append(step_id)
            for dep in by_id[step_id].depends_on:
                if dep not in by_id:
                    continue
                if dep in in_stack:
                    return path[path.index(dep):] + [dep]
                if dep not in visited:
                    found = dfs(dep)
                    if found:
                        return found
            in_stack.discard(step_id)
            path.pop()
            return None

        for step in definition.steps:
            if step.id not in visited:
                found = dfs(step.id)
                if found:
                    return found
        return None

    # ------------------------------------------------------------------
    # Execution state
    # ------------------------------------------------------------------

    def init_execution_state(self, definition: WorkflowDefinition, task_id: str) -> WorkflowExecutionState:
        return WorkflowExecutionState(
            workflow_id=definition.id,
            task_id=task_id,
            step_states={step.id: "pending" for step in definition.steps},
            current_step_id=None,
        )

    def get_next_step(
        self, definition: WorkflowDefinition, state: WorkflowExecutionState
    ) -> WorkflowStep | None:
        for step in self.topological_sort(definition):
            if state.step_states.get(step.id, "pending") != "pending":
                continue
            if all(state.step_states.get(dep) == "completed" for dep in step.depends_on):
                return step
        return None

    def is_complete(self, state: WorkflowExecutionState) -> bool:
        return all(status in _TERMINAL for status in state.step_states.values())

    def is_stuck(self, definition: WorkflowDefinition, state: WorkflowExecutionState) -> bool:
        if self.is_complete(state):
            return False
        current = state.current_step_id
        if current is not None and state.step_states.get(current) == "in_progress":
            return False
        return self.get_next_step(definition, state) is None

    def mark_step(self, state: WorkflowExecutionState, step_id: str, status: StepStatus) -> None:
        state.step_states[step_id] = status
        if status == "in_progress":
            state.current_step_id = step_id
        elif state.current_step_id == step_id:
            state.current_step_id = None

    def reset_steps(self, state: WorkflowExecutionState, step_ids: list[str]) -> None:
        for step_id in step_ids:
            if step_id in state.step_states:
                state.step_states[step_id] = "pending"
        if state.current_step_id in step_ids:
            state.current_step_id = None


def load_workflow(repo_path: str | Path, engine: WorkflowEngine | None = None) -> WorkflowDefinition:
    """Load the repository's workflow override, or the built-in default.

    A missing or unparseable file falls back to ``DEFAULT_WORKFLOW``; a
    parseable but structurally invalid one raises ``WorkflowValidationError``.
    """
    path = Path(repo_path) / SprintPaths.WORKFLOW
    if not path.exists():
        return DEFAULT_WORKFLOW
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            raise TypeError("workflow must be a JSON object")
        definition = WorkflowDefinition.from_dict(raw)
    except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
        logger.warning("Ignoring unreadable workflow %s, using default: %s", path, exc)
        return DEFAULT_WORKFLOW
    (engine or WorkflowEngine()).validate(definition)
    return definition
