"""Static process graph definitions.

A graph maps every step name to the transition taken once that step is DONE:
``None`` for a leaf, :class:`Next` for a linear hop, or :class:`FanOut` to
start parallel members that join into a single target step.
"""

from __future__ import annotations

from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, field_validator

from .constants import DEFAULT_INITIAL_STEP, DEFAULT_TERMINAL_STEP
from .errors import GraphValidationError, NotFoundError


class Next(BaseModel):
    """Linear transition to ``target``."""

    model_config = ConfigDict(frozen=True)

    target: str


class FanOut(BaseModel):
    """Parallel transition: create ``members`` tagged with ``group``.

    When every member is DONE, ``join_to`` is created exactly once.
    """

    model_config = ConfigDict(frozen=True)

    group: str
    members: Tuple[str, ...]
    join_to: str

    @field_validator("members")
    @classmethod
    def _ensure_members(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        if not v:
            raise ValueError("fan-out must have at least one member step")
        if len(set(v)) != len(v):
            raise ValueError("fan-out member steps must be unique")
        return v


Transition = Union[Next, FanOut, None]


class ProcessGraph:
    """Validated, immutable step graph for one process type.

    Construction fails with :class:`GraphValidationError` when a transition
    references an undeclared step, a join group or member is declared twice,
    the terminal step has an outgoing transition, or the graph has a cycle.
    """

    def __init__(
        self,
        nodes: Mapping[str, Transition],
        initial_step: str = DEFAULT_INITIAL_STEP,
        terminal_step: str = DEFAULT_TERMINAL_STEP,
    ) -> None:
        self._nodes: Dict[str, Transition] = dict(nodes)
        self.initial_step = initial_step
        self.terminal_step = terminal_step
        self._join_targets: Dict[str, str] = {}
        self._member_groups: Dict[str, str] = {}
        self._validate()

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Mapping[str, Any]],
        initial_step: str = DEFAULT_INITIAL_STEP,
        terminal_step: str = DEFAULT_TERMINAL_STEP,
    ) -> "ProcessGraph":
        """Build a graph from plain data.

        Each node maps to ``{}`` (leaf), ``{"next": target}`` or
        ``{"fan_out": {"group": ..., "steps": [...], "join_to": ...}}``.
        """
        nodes: Dict[str, Transition] = {}
        for name, node in data.items():
            node = node or {}
            if "next" in node and "fan_out" in node:
                raise GraphValidationError(
                    f"Step '{name}' declares both 'next' and 'fan_out'"
                )
            if "next" in node:
                nodes[name] = Next(target=node["next"])
            elif "fan_out" in node:
                fan = node["fan_out"]
                try:
                    nodes[name] = FanOut(
                        group=fan["group"],
                        members=tuple(fan.get("steps") or fan.get("members") or ()),
                        join_to=fan["join_to"],
                    )
                except (KeyError, ValueError) as exc:
                    raise GraphValidationError(
                        f"Invalid fan-out for step '{name}': {exc}"
                    ) from exc
            else:
                nodes[name] = None
        return cls(nodes, initial_step=initial_step, terminal_step=terminal_step)

    # ------------------------------------------------------------------
    def _validate(self) -> None:
        for required in (self.initial_step, self.terminal_step):
            if required not in self._nodes:
                raise GraphValidationError(f"Step '{required}' is not declared")
        if self._nodes[self.terminal_step] is not None:
            raise GraphValidationError(
                f"Terminal step '{self.terminal_step}' must not have a transition"
            )

        for name, transition in self._nodes.items():
            if isinstance(transition, Next):
                self._require_declared(name, transition.target)
            elif isinstance(transition, FanOut):
                if transition.group in self._join_targets:
                    raise GraphValidationError(
                        f"Join group '{transition.group}' is declared more than once"
                    )
                self._join_targets[transition.group] = transition.join_to
                self._require_declared(name, transition.join_to)
                for member in transition.members:
                    self._require_declared(name, member)
                    if member in self._member_groups:
                        raise GraphValidationError(
                            f"Step '{member}' is a member of both "
                            f"'{self._member_groups[member]}' and '{transition.group}'"
                        )
                    self._member_groups[member] = transition.group

        self._check_acyclic()

    def _require_declared(self, source: str, target: str) -> None:
        if target not in self._nodes:
            raise GraphValidationError(
                f"Step '{source}' references undeclared step '{target}'"
            )

    def _edges(self, name: str) -> List[str]:
        transition = self._nodes[name]
        edges: List[str] = []
        if isinstance(transition, Next):
            edges.append(transition.target)
        elif isinstance(transition, FanOut):
            edges.extend(transition.members)
        group = self._member_groups.get(name)
        if group is not None:
            edges.append(self._join_targets[group])
        return edges

    def _check_acyclic(self) -> None:
        visiting, done = set(), set()

        def visit(name: str, path: List[str]) -> None:
            if name in done:
                return
            if name in visiting:
                cycle = " -> ".join(path[path.index(name):] + [name])
                raise GraphValidationError(f"Process graph has a cycle: {cycle}")
            visiting.add(name)
            for target in self._edges(name):
                visit(target, path + [name])
            visiting.discard(name)
            done.add(name)

        for name in self._nodes:
            visit(name, [])

    # ------------------------------------------------------------------
    def transition_for(self, step_name: str) -> Transition:
        """Return the transition taken after ``step_name`` is DONE."""
        try:
            return self._nodes[step_name]
        except KeyError:
            raise NotFoundError(f"Step '{step_name}' is not part of the process graph")

    def resolve_join_target(self, join_group: str) -> str:
        """Return the step created once every member of ``join_group`` is DONE."""
        try:
            return self._join_targets[join_group]
        except KeyError:
            raise NotFoundError(f"Join group '{join_group}' is not declared")

    def join_group_of(self, step_name: str) -> Optional[str]:
        return self._member_groups.get(step_name)

    def __contains__(self, step_name: object) -> bool:
        return step_name in self._nodes

    def __iter__(self) -> Iterator[str]:
        return iter(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)
