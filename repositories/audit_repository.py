# -*- coding: utf-8 -*-
"""
Audit log repository.
"""

import json
from typing import Any, Dict, List, Optional

from utils.datetime_utils import to_isoformat, utc_now


class AuditRepository:
    """Append-only record of pipeline actions."""

    def __init__(self, db):
        self.db = db

    def record(self, entity_type: str, entity_id: str, action: str,
               performed_by: Optional[str] = None,
               details: Optional[Dict[str, Any]] = None) -> None:
        self.db.execute_update("""
            INSERT INTO audit_log (entity_type, entity_id, action, performed_by, details, performed_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (entity_type, entity_id, action, performed_by,
              json.dumps(details or {}, ensure_ascii=False, default=str),
              to_isoformat(utc_now())))

    def history(self, entity_type: str, entity_id: str) -> List[Dict[str, Any]]:
        rows = self.db.fetch_all("""
            SELECT * FROM audit_log WHERE entity_type = ? AND entity_id = ?
            ORDER BY id
        """, (entity_type, entity_id))
        entries = []
        for row in rows:
            entry = row.to_dict()
            entry['details'] = json.loads(entry['details']) if entry['details'] else {}
            entries.append(entry)
        return entries
