"""
Definition Graph Utilities

Structural validation, cycle detection, topological ordering and id-remapping
clones for workflow definition graphs. All functions are pure.
"""

import copy
from collections import deque
from typing import Dict, List, Optional, Tuple

from .exceptions import ValidationError
from .executor import CONDITION_OPERATORS
from .models import StepKind, WorkflowEdge, WorkflowGraph, WorkflowNode, new_id


def _outgoing(graph: WorkflowGraph) -> Dict[str, List[str]]:
    outgoing: Dict[str, List[str]] = {node.id: [] for node in graph.nodes}
    for edge in graph.edges:
        if edge.source in outgoing:
            outgoing[edge.source].append(edge.target)
    return outgoing


def find_cycle(graph: WorkflowGraph) -> Optional[List[str]]:
    """
    Return one dependency cycle as a list of node ids (first id repeated at
    the end), or None when the graph is acyclic.

    Iterative depth-first search over an explicit stack of edge iterators.
    """
    outgoing = _outgoing(graph)
    visited = set()

    for root in graph.nodes:
        if root.id in visited:
            continue
        visited.add(root.id)
        path = [root.id]
        on_path = {root.id}
        pending = [iter(outgoing[root.id])]

        while pending:
            target = next(pending[-1], None)
            if target is None:
                pending.pop()
                on_path.discard(path.pop())
                continue
            if target in on_path:
                return path[path.index(target):] + [target]
            if target in visited:
                continue
            visited.add(target)
            path.append(target)
            on_path.add(target)
            pending.append(iter(outgoing.get(target, [])))
    return None


def topological_order(graph: WorkflowGraph) -> List[str]:
    """
    Kahn's algorithm. Ties keep the declared node order so the step snapshot
    of an instance is stable.

    Raises:
        ValidationError: if the graph contains a cycle
    """
    position = {node.id: i for i, node in enumerate(graph.nodes)}
    in_degree = {node.id: 0 for node in graph.nodes}
    for edge in graph.edges:
        if edge.target in in_degree:
            in_degree[edge.target] += 1

    outgoing = _outgoing(graph)
    ready = deque(sorted((n for n, d in in_degree.items() if d == 0), key=position.get))
    order: List[str] = []

    while ready:
        node_id = ready.popleft()
        order.append(node_id)
        released = []
        for target in outgoing[node_id]:
            in_degree[target] -= 1
            if in_degree[target] == 0:
                released.append(target)
        if released:
            ready = deque(sorted(list(ready) + released, key=position.get))

    if len(order) != len(graph.nodes):
        cycle = find_cycle(graph) or []
        raise ValidationError(
            f"Workflow graph contains a cycle: {' -> '.join(cycle)}",
            {"cycle": cycle}
        )
    return order


def validate_graph(graph: WorkflowGraph) -> None:
    """
    Validate the structure of a definition graph.

    Raises:
        ValidationError: on the first structural problem found
    """
    if not graph.nodes:
        raise ValidationError("Workflow graph must have at least one node")

    seen = set()
    for node in graph.nodes:
        if not node.id or not str(node.id).strip():
            raise ValidationError("Every node must have a non-empty id")
        if node.id in seen:
            raise ValidationError(f"Duplicate node id: {node.id}", {"node_id": node.id})
        seen.add(node.id)
        if not isinstance(node.kind, StepKind):
            raise ValidationError(f"Node {node.id} has an unknown kind", {"node_id": node.id})
        if not node.label or not node.label.strip():
            raise ValidationError(f"Node {node.id} must have a label", {"node_id": node.id})
        if node.kind == StepKind.APPROVAL and not node.assignee:
            raise ValidationError(f"Approval node {node.id} must name an assignee", {"node_id": node.id})
        if node.due_in_hours is not None and node.due_in_hours <= 0:
            raise ValidationError(f"Node {node.id} due_in_hours must be positive", {"node_id": node.id})
        if node.kind == StepKind.CONDITION:
            op = node.config.get('operator')
            if op is not None and op not in CONDITION_OPERATORS:
                raise ValidationError(f"Condition node {node.id} has unknown operator '{op}'",
                                      {"node_id": node.id})
        if node.kind == StepKind.DELAY:
            minutes = node.config.get('delay_minutes', 0)
            if isinstance(minutes, bool) or not isinstance(minutes, (int, float)) or minutes < 0:
                raise ValidationError(f"Delay node {node.id} delay_minutes must be a non-negative number",
                                      {"node_id": node.id})

    pairs = set()
    for edge in graph.edges:
        if edge.source not in seen or edge.target not in seen:
            raise ValidationError(
                f"Edge {edge.source} -> {edge.target} references an unknown node",
                {"edge_id": edge.id}
            )
        if edge.source == edge.target:
            raise ValidationError(f"Node {edge.source} cannot depend on itself", {"edge_id": edge.id})
        if (edge.source, edge.target) in pairs:
            raise ValidationError(f"Duplicate edge {edge.source} -> {edge.target}", {"edge_id": edge.id})
        pairs.add((edge.source, edge.target))

    cycle = find_cycle(graph)
    if cycle:
        raise ValidationError(
            f"Workflow graph contains a cycle: {' -> '.join(cycle)}",
            {"cycle": cycle}
        )


def clone_graph(graph: WorkflowGraph) -> Tuple[WorkflowGraph, Dict[str, str]]:
    """
    Deep-copy a graph giving every node and edge a fresh id.

    Returns:
        (new graph, old node id -> new node id)
    """
    id_map = {node.id: new_id() for node in graph.nodes}

    nodes = [
        WorkflowNode(
            id=id_map[node.id],
            kind=node.kind,
            label=node.label,
            config=copy.deepcopy(node.config),
            assignee=node.assignee,
            optional=node.optional,
            due_in_hours=node.due_in_hours,
            fail_on_error=node.fail_on_error
        )
        for node in graph.nodes
    ]
    edges = [
        WorkflowEdge(source=id_map[edge.source], target=id_map[edge.target])
        for edge in graph.edges
    ]
    return WorkflowGraph(nodes=nodes, edges=edges), id_map


def structural_signature(graph: WorkflowGraph) -> Tuple:
    """
    Id-independent description of a graph: node contents in declared order
    and edges expressed as (source position, target position).
    """
    position = {node.id: i for i, node in enumerate(graph.nodes)}
    nodes = tuple(
        (n.kind.value, n.label, tuple(sorted(n.config.items(), key=lambda kv: kv[0])),
         n.assignee, n.optional, n.due_in_hours, n.fail_on_error)
        for n in graph.nodes
    )
    edges = tuple(sorted((position[e.source], position[e.target]) for e in graph.edges))
    return nodes, edges
