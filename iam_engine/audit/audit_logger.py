"""
Audit Logging Module.

Appends one JSON line per provisioning outcome so every change the engine
made to the backend can be reviewed later. Sensitive fields (API-key secret
material, user emails) are never written.
"""

import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..models import ProvisioningRecord

logger = logging.getLogger(__name__)


class AuditLogger:
    """JSONL logger for provisioning records, one file per day."""

    def __init__(self, audit_dir: str = "audit_logs"):
        """
        Initialize the audit logger.

        Args:
            audit_dir: Directory to store audit logs
        """
        self.audit_dir = Path(audit_dir)
        self.audit_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def log_event(self, record: ProvisioningRecord) -> str:
        """
        Log an audit record.

        Args:
            record: The provisioning record to log

        Returns:
            The record ID
        """
        date_str = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        log_file = self.audit_dir / f"audit_{date_str}.jsonl"

        line = json.dumps(record.model_dump(mode="json")) + "\n"
        with self._lock:
            with open(log_file, "a", encoding="utf-8") as f:
                f.write(line)

        logger.debug(f"Logged audit record {record.id} for {record.node}")
        return record.id

    def log_outcome(self, run_id: str, node: str, action: str, success: bool,
                    identifier: Optional[str] = None, error: Optional[str] = None,
                    metadata: Optional[Dict[str, Any]] = None) -> str:
        """Build and log a record for one node outcome."""
        record = ProvisioningRecord(
            id=str(uuid.uuid4()),
            run_id=run_id,
            node=node,
            action=action,
            success=success,
            identifier=identifier,
            error_message=error,
            metadata=metadata or {},
        )
        return self.log_event(record)

    def get_events(self, run_id: Optional[str] = None, limit: int = 100) -> List[ProvisioningRecord]:
        """
        Retrieve audit records, most recent first.

        Args:
            run_id: Only records from this reconcile run
            limit: Maximum number of records to return

        Returns:
            List of matching ProvisioningRecords
        """
        results: List[ProvisioningRecord] = []

        for log_file in sorted(self.audit_dir.glob("audit_*.jsonl"), reverse=True):
            with open(log_file, encoding="utf-8") as f:
                lines = f.readlines()
            for line in reversed(lines):
                if len(results) >= limit:
                    return results
                try:
                    record = ProvisioningRecord(**json.loads(line))
                except ValueError as e:
                    logger.warning(f"Skipping unreadable audit line in {log_file}: {e}")
                    continue
                if run_id and record.run_id != run_id:
                    continue
                results.append(record)

        return results
