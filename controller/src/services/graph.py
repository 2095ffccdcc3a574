"""
Dependency graph resolution for jobs.

Jobs are nodes referenced by name in an adjacency map (job -> needs).
Resolution validates the graph is acyclic and partitions the candidate jobs
into layers: every job's candidate dependencies sit in earlier layers.
"""

from typing import Dict, Iterable, List, Mapping, Optional, Set

from pydantic import BaseModel

from controller.src.errors import CycleError, UnknownJobError

WHITE, GRAY, BLACK = 0, 1, 2

class Resolution(BaseModel):
    layers: List[List[str]]
    pruned: List[str] = []

    def order(self) -> List[str]:
        return flatten(self)

    def layer_of(self, job: str) -> Optional[int]:
        for index, layer in enumerate(self.layers):
            if job in layer:
                return index
        return None

def find_cycle(needs_edges: Mapping[str, Iterable[str]]) -> Optional[List[str]]:
    """
    Depth-first search with white/gray/black colouring.

    Returns the first cycle found as a path that starts and ends on the same
    job, or None when the graph is acyclic.
    """
    color: Dict[str, int] = {name: WHITE for name in needs_edges}

    for root in needs_edges:
        if color[root] != WHITE:
            continue
        # Iterative DFS; each frame is (node, iterator over its needs)
        path: List[str] = [root]
        stack = [(root, iter(needs_edges[root]))]
        color[root] = GRAY
        while stack:
            node, children = stack[-1]
            child = next(children, None)
            if child is None:
                color[node] = BLACK
                stack.pop()
                path.pop()
                continue
            if child not in color:
                continue
            if color[child] == GRAY:
                return path[path.index(child):] + [child]
            if color[child] == WHITE:
                color[child] = GRAY
                path.append(child)
                stack.append((child, iter(needs_edges[child])))
    return None

def resolve(candidates: Iterable[str], needs_edges: Mapping[str, Iterable[str]]) -> Resolution:
    """
    Order `candidates` into topological layers.

    `needs_edges` covers every job in the definition. Dependencies that are
    not candidates are reported as pruned; they do not hold up layering, the
    scheduler decides what their skip means for dependents.

    Raises CycleError if the graph has a cycle.
    """
    edges = {name: list(needs) for name, needs in needs_edges.items()}
    for name, needs in edges.items():
        for dep in needs:
            if dep not in edges:
                raise UnknownJobError(f"Job '{name}' needs unknown job '{dep}'")

    cycle = find_cycle(edges)
    if cycle:
        raise CycleError(cycle)

    candidate_set: Set[str] = set()
    for name in candidates:
        if name not in edges:
            raise UnknownJobError(f"Unknown candidate job '{name}'")
        candidate_set.add(name)

    # Declaration order drives the order within a layer
    declared = [name for name in edges if name in candidate_set]
    position = {name: i for i, name in enumerate(declared)}

    # Kahn's algorithm, one layer per round
    waiting: Dict[str, int] = {}
    followers: Dict[str, List[str]] = {name: [] for name in declared}
    for name in declared:
        deps = [d for d in dict.fromkeys(edges[name]) if d in candidate_set]
        waiting[name] = len(deps)
        for dep in deps:
            followers[dep].append(name)

    layers: List[List[str]] = []
    current = [name for name in declared if waiting[name] == 0]
    while current:
        layers.append(current)
        unblocked = []
        for name in current:
            for follower in followers[name]:
                waiting[follower] -= 1
                if waiting[follower] == 0:
                    unblocked.append(follower)
        current = sorted(unblocked, key=position.__getitem__)

    pruned = [name for name in edges if name not in candidate_set]
    return Resolution(layers=layers, pruned=pruned)

def flatten(resolution: Resolution) -> List[str]:
    """A total order consistent with every needs edge."""
    return [name for layer in resolution.layers for name in layer]

def dependents(needs_edges: Mapping[str, Iterable[str]], job: str) -> List[str]:
    """Jobs that directly need `job`."""
    return [name for name, needs in needs_edges.items() if job in needs]
