"""
State Manager for the IAM Engine.

Keeps the applied state of every provisioned node: its identifier, the
declared fields it was last applied with and the nodes it depended on.
The planner diffs the desired model against this state to find updates,
replacements and deletions.
"""

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from ..models import EntityKind, EntityModel, NodeRef

logger = logging.getLogger(__name__)


class StateEntry(BaseModel):
    """Applied state of one node."""
    kind: EntityKind
    key: str
    identifier: str
    fields: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def ref(self) -> NodeRef:
        return NodeRef(self.kind, self.key)


class StateManager:
    """
    Applied-state store with optional JSON file persistence.

    Workers record nodes concurrently, so every mutation and save happens
    under one lock.
    """

    def __init__(self, storage_path: Optional[Union[str, Path]] = None):
        """
        Initialize the state manager.

        Args:
            storage_path: Path to store applied state as JSON.
                         If None, state is kept in memory only.
        """
        self.storage_path = Path(storage_path) if storage_path else None
        self.entries: Dict[NodeRef, StateEntry] = {}
        self._lock = threading.Lock()

        if self.storage_path:
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_state()

        logger.info(
            f"Initialized StateManager with {'persistent' if self.storage_path else 'in-memory'} storage"
        )

    def get(self, ref: NodeRef) -> Optional[StateEntry]:
        return self.entries.get(ref)

    def all_entries(self) -> List[StateEntry]:
        """Get every applied entry."""
        return list(self.entries.values())

    def in_memory_copy(self) -> "StateManager":
        """Copy of the applied state that is never written back to storage."""
        copy = StateManager()
        with self._lock:
            copy.entries = dict(self.entries)
        return copy

    def record(self, ref: NodeRef, identifier: str, fields: Dict[str, Any],
               depends_on: Optional[List[NodeRef]] = None) -> StateEntry:
        """
        Record a node as applied.

        Args:
            ref: Node that was created or updated
            identifier: Identifier assigned by the provisioner
            fields: Declared (symbolic) fields the node was applied with
            depends_on: Nodes the applied node referenced

        Returns:
            The stored StateEntry
        """
        entry = StateEntry(
            kind=ref.kind,
            key=ref.key,
            identifier=identifier,
            fields=fields,
            depends_on=[str(dep) for dep in depends_on or []],
        )
        with self._lock:
            self.entries[ref] = entry
            self._save_state()
        logger.debug(f"Recorded applied state for {ref}")
        return entry

    def remove(self, ref: NodeRef) -> bool:
        """
        Forget a deleted node.

        Returns:
            True if the node was present
        """
        with self._lock:
            removed = self.entries.pop(ref, None) is not None
            if removed:
                self._save_state()
        if removed:
            logger.debug(f"Removed {ref} from applied state")
        return removed

    def hydrate(self, model: EntityModel) -> int:
        """
        Fill a model's identifier slots from applied state.

        Only nodes still declared in the model are hydrated; their observed
        fields are the declared fields they were applied with.

        Returns:
            Number of hydrated nodes
        """
        count = 0
        for ref, _ in model.iter_refs():
            entry = self.entries.get(ref)
            if entry is None or model.is_resolved(ref):
                continue
            model.assign_identifier(ref, entry.identifier, entry.fields)
            count += 1
        return count

    def get_summary(self) -> Dict[str, Any]:
        """Count applied entries by kind."""
        by_kind: Dict[str, int] = {}
        for entry in self.entries.values():
            by_kind[entry.kind.value] = by_kind.get(entry.kind.value, 0) + 1
        return {"total_entries": len(self.entries), "entries_by_kind": by_kind}

    def _save_state(self):
        """Save current state to persistent storage."""
        if not self.storage_path:
            return

        state_data = {
            "entries": {str(ref): entry.model_dump(mode="json") for ref, entry in self.entries.items()},
            "last_updated": datetime.now(timezone.utc).isoformat(),
        }
        with open(self.storage_path, "w", encoding="utf-8") as f:
            json.dump(state_data, f, indent=2, default=str)

    def _load_state(self):
        """Load state from persistent storage."""
        if not self.storage_path or not self.storage_path.exists():
            return

        with open(self.storage_path, encoding="utf-8") as f:
            state_data = json.load(f)

        for entry_data in state_data.get("entries", {}).values():
            entry = StateEntry(**entry_data)
            self.entries[entry.ref] = entry

        logger.info(f"Loaded state for {len(self.entries)} nodes from {self.storage_path}")
