"""
Dependency graph construction for the IAM Engine.

Nodes are individual entities, flattened membership records, pending
deletions and deletion-protection shadow nodes. An edge ``a -> b`` means
``b`` needs ``a`` to complete first.
"""

import logging
from typing import Optional

import networkx as nx

from ..exceptions import CycleDetected
from ..models import NodeRef, PlanAction
from .planner import Plan
from .protection import DeletionProtectionGate

logger = logging.getLogger(__name__)


def build_dependency_graph(plan: Plan,
                           gate: Optional[DeletionProtectionGate] = None) -> nx.DiGraph:
    """
    Build the DAG the executor walks.

    Desired nodes depend on the nodes they reference. A pending deletion
    depends on the removal of every applied node that referenced it,
    replaced nodes included, so dependents are removed first. Protected
    nodes get a shadow node in front of them when the gate is active.

    Args:
        plan: Plan produced by the planner
        gate: Deletion protection gate, None for no protection

    Returns:
        networkx DiGraph with an ``action`` attribute on every node

    Raises:
        CycleDetected: if the edges are not acyclic
    """
    graph = nx.DiGraph()

    for ref, action in plan.actions.items():
        graph.add_node(ref, action=action)

    for ref, deps in plan.depends_on.items():
        for dep in deps:
            graph.add_edge(dep, ref)

    # Applied resources that go away must go before what they referenced.
    # A replaced node drops its old resource too, so it is ordered ahead of
    # stale dependencies. Stale nodes also go before a replaced dependency.
    for ref, entry in plan.deletions.items():
        for dep_name in entry.depends_on:
            dep = NodeRef.parse(dep_name)
            if plan.action_for(dep) in (PlanAction.DELETE, PlanAction.REPLACE):
                graph.add_edge(ref, dep)

    for ref, entry in plan.replacements.items():
        for dep_name in entry.depends_on:
            dep = NodeRef.parse(dep_name)
            if plan.action_for(dep) == PlanAction.DELETE:
                graph.add_edge(ref, dep)

    if gate is not None:
        for shadow, companion in gate.shadow_nodes(plan.actions).items():
            graph.add_node(shadow, action=PlanAction.GUARD, companion=companion)
            graph.add_edge(shadow, companion)

    if not nx.is_directed_acyclic_graph(graph):
        cycle = nx.find_cycle(graph)
        raise CycleDetected(cycle)

    logger.info(
        f"Built dependency graph with {graph.number_of_nodes()} nodes "
        f"and {graph.number_of_edges()} edges"
    )
    return graph
