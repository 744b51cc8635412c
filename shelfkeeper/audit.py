import json
import sqlite3
from typing import Any, Dict, List, Optional

from .models import AuditAction, AuditEntry, new_id


def record(conn: sqlite3.Connection, action: AuditAction, module: str, entity_type: str,
           entity_id: str, details: Optional[Dict[str, Any]] = None) -> None:
    """Append an audit entry on the caller's connection.

    Must run inside the same transaction as the change it describes, so the
    entry disappears with it on rollback.
    """
    conn.execute(
        """
        INSERT INTO audit_log (id, action, module, entity_type, entity_id, details)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (new_id(), action.value, module, entity_type, entity_id,
         json.dumps(details, default=str) if details is not None else None),
    )


def list_entries(conn: sqlite3.Connection, module: Optional[str] = None, action: Optional[str] = None,
                 entity_id: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[AuditEntry]:
    query = "SELECT * FROM audit_log WHERE 1=1"
    params: List[Any] = []
    if module:
        query += " AND module = ?"
        params.append(module)
    if action:
        query += " AND action = ?"
        params.append(action)
    if entity_id:
        query += " AND entity_id = ?"
        params.append(entity_id)
    query += " ORDER BY timestamp DESC, rowid DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])
    return [AuditEntry.from_row(row) for row in conn.execute(query, params).fetchall()]
