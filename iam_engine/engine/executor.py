"""
Graph Executor for the IAM Engine.

Walks the dependency graph in topological order, dispatching eligible nodes
onto a bounded thread pool. A failed node blocks everything that depends on
it; unrelated branches keep going.
"""

import logging
import threading
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, Optional, Tuple

import networkx as nx

from ..models import NodeOutcome, NodeRef, NodeStatus, PlanAction

logger = logging.getLogger(__name__)

NodeHandler = Callable[[NodeRef, PlanAction], Optional[str]]


class GraphExecutor:
    """
    Bounded-parallelism topological walker.

    A node becomes eligible once every predecessor has succeeded. Only the
    coordinating thread touches the scheduling state; workers just run the
    handler and report back through their futures.
    """

    def __init__(self, graph: nx.DiGraph, handler: NodeHandler, max_workers: int = 4,
                 cancel_event: Optional[threading.Event] = None):
        """
        Initialize the executor.

        Args:
            graph: DAG built by build_dependency_graph
            handler: Called per node with its action, returns the node identifier
            max_workers: Maximum concurrent dispatches
            cancel_event: When set, no new node is dispatched
        """
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.graph = graph
        self.handler = handler
        self.max_workers = max_workers
        self.cancel_event = cancel_event or threading.Event()
        self.outcomes: Dict[NodeRef, NodeOutcome] = {}

    def run(self) -> Dict[NodeRef, NodeOutcome]:
        """
        Walk the whole graph.

        Returns:
            Outcome per node: succeeded, failed, blocked or not_attempted
        """
        pending = {node: self.graph.in_degree(node) for node in self.graph.nodes}
        ready: Deque[NodeRef] = deque(
            sorted((node for node, degree in pending.items() if degree == 0), key=str)
        )
        in_flight: Dict[Future, NodeRef] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers,
                                thread_name_prefix="iam-node") as pool:
            while in_flight or (ready and not self.cancel_event.is_set()):
                while ready and len(in_flight) < self.max_workers and not self.cancel_event.is_set():
                    node = ready.popleft()
                    future = pool.submit(self._dispatch, node)
                    in_flight[future] = node

                if not in_flight:
                    break

                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    node = in_flight.pop(future)
                    outcome = future.result()
                    self.outcomes[node] = outcome

                    if outcome.status == NodeStatus.SUCCEEDED:
                        for successor in sorted(self.graph.successors(node), key=str):
                            pending[successor] -= 1
                            if pending[successor] == 0 and successor not in self.outcomes:
                                ready.append(successor)
                    else:
                        self._block_descendants(node)

        if self.cancel_event.is_set():
            logger.warning("Graph walk cancelled; remaining nodes were not dispatched")

        for node in self.graph.nodes:
            if node not in self.outcomes:
                self.outcomes[node] = NodeOutcome(
                    node=str(node),
                    status=NodeStatus.NOT_ATTEMPTED,
                    action=self.graph.nodes[node].get("action"),
                )

        return self.outcomes

    def _dispatch(self, node: NodeRef) -> NodeOutcome:
        """Run the handler for one node inside a worker thread."""
        action = self.graph.nodes[node].get("action")
        outcome = NodeOutcome(node=str(node), status=NodeStatus.SUCCEEDED, action=action,
                              started_at=datetime.now(timezone.utc))
        try:
            outcome.identifier = self.handler(node, action)
        except Exception as e:
            outcome.status = NodeStatus.FAILED
            outcome.error = str(e)
            logger.error(f"Node {node} failed: {e}")
        outcome.completed_at = datetime.now(timezone.utc)
        return outcome

    def _block_descendants(self, node: NodeRef):
        for descendant in sorted(nx.descendants(self.graph, node), key=str):
            if descendant in self.outcomes:
                continue
            self.outcomes[descendant] = NodeOutcome(
                node=str(descendant),
                status=NodeStatus.BLOCKED,
                action=self.graph.nodes[descendant].get("action"),
                blocked_by=str(node),
            )
            logger.warning(f"Node {descendant} blocked by failure of {node}")


def summarize_outcomes(outcomes: Dict[NodeRef, NodeOutcome]) -> Tuple[int, int, int, int]:
    """Count succeeded, failed, blocked and not-attempted nodes."""
    counts = {status: 0 for status in NodeStatus}
    for outcome in outcomes.values():
        counts[outcome.status] += 1
    return (
        counts[NodeStatus.SUCCEEDED],
        counts[NodeStatus.FAILED],
        counts[NodeStatus.BLOCKED],
        counts[NodeStatus.NOT_ATTEMPTED],
    )
