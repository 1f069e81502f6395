"""
core/allotment/change_log.py

变更日志 - 每次变更追加一条，按时间排序，只追加不修改
"""
from datetime import datetime
from typing import Any, Dict, Optional

from core.allotment.models import ChangeAction, ChangeLogEntry


def make_entry(now: datetime, action: ChangeAction, user_id: Optional[str],
               changes: Optional[Dict[str, Any]] = None, reason: Optional[str] = None) -> ChangeLogEntry:
    return ChangeLogEntry(timestamp=now, action=action, user_id=user_id, changes=changes or {}, reason=reason)


def entry_to_dict(entry: ChangeLogEntry) -> Dict[str, Any]:
    return {
        "timestamp": entry.timestamp.isoformat(),
        "action": entry.action.value,
        "user_id": entry.user_id,
        "changes": entry.changes,
        "reason": entry.reason,
    }


CSV_HEADER = ["Timestamp", "Action", "User", "Reason", "Changes"]
