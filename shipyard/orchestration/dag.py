"""Stage graph validation and deterministic ordering."""

from typing import Dict, Iterable, List, Optional, Set

from shipyard.core.exceptions import (
    CycleDetectedError,
    PipelineDefinitionError,
    UnknownDependencyError,
)

from .models import StageDefinition


def _index(stages: Iterable[StageDefinition]) -> Dict[str, StageDefinition]:
    by_name: Dict[str, StageDefinition] = {}
    for stage in stages:
        if not isinstance(stage.name, str) or not stage.name.strip():
            raise PipelineDefinitionError("Stage name must be a non-empty string")
        if stage.name in by_name:
            raise PipelineDefinitionError(f"Duplicate stage name: {stage.name}")
        by_name[stage.name] = stage
    return by_name


def _find_cycle(by_name: Dict[str, StageDefinition]) -> Optional[List[str]]:
    """Return one cycle as a closed path (a -> b -> a), or None"""
    WHITE, GREY, BLACK = 0, 1, 2
    color = {name: WHITE for name in by_name}
    stack: List[str] = []

    def visit(name: str) -> Optional[List[str]]:
        color[name] = GREY
        stack.append(name)
        for dep in by_name[name].dependencies:
            if color[dep] == GREY:
                return stack[stack.index(dep):] + [dep]
            if color[dep] == WHITE:
                cycle = visit(dep)
                if cycle:
                    return cycle
        stack.pop()
        color[name] = BLACK
        return None

    for name in by_name:
        if color[name] == WHITE:
            cycle = visit(name)
            if cycle:
                return cycle
    return None


def validate_graph(stages: Iterable[StageDefinition]) -> Dict[str, StageDefinition]:
    """Check that the stages form a DAG

    Raises:
        PipelineDefinitionError: empty, duplicate or self-referencing stages
        UnknownDependencyError: a dependency names no declared stage
        CycleDetectedError: the dependencies form a cycle
    """
    by_name = _index(stages)
    if not by_name:
        raise PipelineDefinitionError("Pipeline declares no stages")

    for name, stage in by_name.items():
        for dep in stage.dependencies:
            if dep == name:
                raise PipelineDefinitionError(f"Stage '{name}' depends on itself")
            if dep not in by_name:
                raise UnknownDependencyError(name, dep)

    cycle = _find_cycle(by_name)
    if cycle:
        raise CycleDetectedError(cycle)
    return by_name


def topological_order(stages: Iterable[StageDefinition]) -> List[str]:
    """Kahn's algorithm; ties are broken by declaration order"""
    by_name = validate_graph(stages)
    position = {name: i for i, name in enumerate(by_name)}
    incoming = {name: len(set(stage.dependencies)) for name, stage in by_name.items()}
    dependents: Dict[str, Set[str]] = {name: set() for name in by_name}
    for name, stage in by_name.items():
        for dep in set(stage.dependencies):
            dependents[dep].add(name)

    ready = [name for name in by_name if incoming[name] == 0]
    order: List[str] = []
    while ready:
        ready.sort(key=position.__getitem__)
        name = ready.pop(0)
        order.append(name)
        for child in dependents[name]:
            incoming[child] -= 1
            if incoming[child] == 0:
                ready.append(child)
    return order


def ancestors(stages: Iterable[StageDefinition], name: str) -> Set[str]:
    """All stages *name* depends on, directly or transitively"""
    by_name = {stage.name: stage for stage in stages}
    seen: Set[str] = set()
    pending = list(by_name[name].dependencies)
    while pending:
        dep = pending.pop()
        if dep not in seen:
            seen.add(dep)
            pending.extend(by_name[dep].dependencies)
    return seen
