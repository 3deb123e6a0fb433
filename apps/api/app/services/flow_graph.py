"""Explicit execution graph built from a parsed flow definition.

Nodes are definition steps plus two kinds of virtual node: one join node per
branch/decision step (``"<stepId>:join"``) and a single ``END`` node.

Edges:
- NEXT: step -> following step in the same scope (or END on the main path)
- PATH: branch -> first step of a path (or straight to the join for empty paths)
- JOIN: last step of a path -> the owning branch's join node
- GOTO: goto -> destination on the main path
- TERMINATE: terminate -> END

A branch step has no NEXT edge of its own; the flow continues from its join
node once the selected paths have finished.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from app.schemas.flow_definition import (
    BaseStep,
    FlowDefinition,
    GotoStep,
    TerminateStep,
    scope_key,
)

END = "END"
JOIN_SUFFIX = ":join"


class EdgeKind(str, Enum):
    NEXT = "NEXT"
    PATH = "PATH"
    JOIN = "JOIN"
    GOTO = "GOTO"
    TERMINATE = "TERMINATE"


@dataclass(frozen=True)
class StepNode:
    step: BaseStep
    scope: str | None
    position: int
    parent_step_id: str | None = None
    path_id: str | None = None
    top_index: int = 0

    @property
    def step_id(self) -> str:
        return self.step.step_id

    @property
    def is_main(self) -> bool:
        return self.scope is None


@dataclass(frozen=True)
class Edge:
    kind: EdgeKind
    source: str
    target: str
    # Path/outcome id for PATH and JOIN edges
    label: str | None = None


def join_node(branch_step_id: str) -> str:
    return f"{branch_step_id}{JOIN_SUFFIX}"


def is_join_node(node_id: str) -> bool:
    return node_id.endswith(JOIN_SUFFIX)


def branch_of_join(node_id: str) -> str:
    return node_id[: -len(JOIN_SUFFIX)]


class FlowGraph:
    def __init__(self, definition: FlowDefinition):
        self.definition = definition
        self.nodes: dict[str, StepNode] = {}
        self.edges: list[Edge] = []
        self._outgoing: dict[str, list[Edge]] = {}
        self._build(definition.steps, scope=None, exit_target=END, exit_label=None)

    # -- construction ---------------------------------------------------------

    def _add_edge(self, kind: EdgeKind, source: str, target: str, label: str | None = None) -> None:
        edge = Edge(kind=kind, source=source, target=target, label=label)
        self.edges.append(edge)
        self._outgoing.setdefault(source, []).append(edge)

    def _build(
        self,
        steps: list[BaseStep],
        *,
        scope: str | None,
        exit_target: str,
        exit_label: str | None,
        parent_step_id: str | None = None,
        path_id: str | None = None,
        top_index: int = 0,
    ) -> None:
        # exit_label is set when leaving this scope means joining a parent branch
        for position, step in enumerate(steps):
            node = StepNode(
                step=step,
                scope=scope,
                position=position,
                parent_step_id=parent_step_id,
                path_id=path_id,
                top_index=position if scope is None else top_index,
            )
            self.nodes[step.step_id] = node

            if position + 1 < len(steps):
                continuation = (EdgeKind.NEXT, steps[position + 1].step_id, None)
            elif exit_label is not None:
                continuation = (EdgeKind.JOIN, exit_target, exit_label)
            else:
                continuation = (EdgeKind.NEXT, exit_target, None)

            paths = step.child_paths()
            if paths:
                join = join_node(step.step_id)
                for path in paths:
                    entry = path.steps[0].step_id if path.steps else join
                    self._add_edge(EdgeKind.PATH, step.step_id, entry, path.path_id)
                    self._build(
                        path.steps,
                        scope=scope_key(scope, step.step_id, path.path_id),
                        exit_target=join,
                        exit_label=path.path_id,
                        parent_step_id=step.step_id,
                        path_id=path.path_id,
                        top_index=node.top_index,
                    )
                self._add_edge(continuation[0], join, continuation[1], continuation[2])
                continue

            if isinstance(step, TerminateStep):
                self._add_edge(EdgeKind.TERMINATE, step.step_id, END)
                continue

            if isinstance(step, GotoStep) and step.target:
                self._add_edge(EdgeKind.GOTO, step.step_id, step.target)
            self._add_edge(continuation[0], step.step_id, continuation[1], continuation[2])

    # -- queries --------------------------------------------------------------

    def node(self, step_id: str) -> StepNode:
        return self.nodes[step_id]

    def outgoing(self, node_id: str) -> list[Edge]:
        return list(self._outgoing.get(node_id, []))

    def continuation(self, node_id: str) -> Edge | None:
        """The NEXT/JOIN edge followed when ``node_id`` is done."""
        for edge in self._outgoing.get(node_id, []):
            if edge.kind in (EdgeKind.NEXT, EdgeKind.JOIN):
                return edge
        return None

    def path_edges(self, branch_step_id: str) -> list[Edge]:
        return [e for e in self._outgoing.get(branch_step_id, []) if e.kind == EdgeKind.PATH]

    def path_entry(self, branch_step_id: str, path_id: str) -> Edge | None:
        for edge in self.path_edges(branch_step_id):
            if edge.label == path_id:
                return edge
        return None

    def goto_edge(self, step_id: str) -> Edge | None:
        for edge in self._outgoing.get(step_id, []):
            if edge.kind == EdgeKind.GOTO:
                return edge
        return None

    @property
    def main_nodes(self) -> list[StepNode]:
        return [self.nodes[s.step_id] for s in self.definition.steps]

    def scope_nodes(self, scope: str | None) -> list[StepNode]:
        """Nodes whose scope is ``scope`` or nested below it, in definition order."""
        if scope is None:
            return list(self.nodes.values())
        prefix = f"{scope}::"
        return [
            n for n in self.nodes.values()
            if n.scope == scope or (n.scope is not None and n.scope.startswith(prefix))
        ]

    def descendants(self, branch_step_id: str) -> list[StepNode]:
        """Every node nested under any path of ``branch_step_id``."""
        node = self.nodes[branch_step_id]
        result: list[StepNode] = []
        for path in node.step.child_paths():
            result.extend(self.scope_nodes(scope_key(node.scope, branch_step_id, path.path_id)))
        return result

    def milestone_map(self) -> dict[str, str]:
        """step_id -> name of the milestone (phase) the step belongs to.

        A milestone starts after its ``afterStepId`` (or at the beginning when
        unset). Nested steps inherit the phase of their top-level step.
        """
        main = self.definition.steps
        positions = {s.step_id: i for i, s in enumerate(main)}
        starts: list[tuple[int, str]] = []
        for milestone in self.definition.milestones:
            if milestone.after_step_id is None:
                starts.append((0, milestone.name))
            elif milestone.after_step_id in positions:
                starts.append((positions[milestone.after_step_id] + 1, milestone.name))
        starts.sort(key=lambda item: item[0])

        result: dict[str, str] = {}
        for step_id, node in self.nodes.items():
            current = None
            for start, name in starts:
                if start <= node.top_index:
                    current = name
            if current is not None:
                result[step_id] = current
        return result
