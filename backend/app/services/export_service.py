"""
导出服务 - 每日配额与变更日志的 JSON / CSV 导出
"""
import csv
import io
import json
from datetime import date, datetime
from typing import List, Optional, Sequence, Tuple
from sqlalchemy.orm import Session
from app.security.auth import Caller
from app.services.allotment_service import hotel_scope
from app.services.inventory_store import InventoryStore
from core.allotment.change_log import CSV_HEADER, entry_to_dict
from core.allotment.daily_records import clip
from core.allotment.errors import AllotmentValidationError
from core.allotment.models import ChangeAction
from core.allotment.serialization import config_to_dict, records_to_list

ALLOTMENT_CSV_HEADER = [
    "Date", "Total Inventory", "Total Sold", "Free Stock", "Occupancy Rate",
    "Channel", "Allocated", "Sold", "Available", "Blocked",
]

EXPORT_FORMATS = ("json", "csv")


def _check_format(fmt: str) -> None:
    if fmt not in EXPORT_FORMATS:
        raise AllotmentValidationError(
            "format 只能是 json 或 csv",
            errors=[{"field": "format", "message": "must be json or csv"}],
        )


class ExportService:
    """导出服务"""

    def __init__(self, db: Session):
        self.db = db
        self.store = InventoryStore(db)

    def export_allotments(self, config_id: str, caller: Caller, fmt: str = "json",
                          start: Optional[date] = None, end: Optional[date] = None) -> Tuple[str, str, str]:
        """
        Returns:
            (内容, media_type, 文件名)
        """
        _check_format(fmt)
        config = self.store.load_by_id(config_id, hotel_scope(caller))
        records = clip(config, start, end)

        if fmt == "csv":
            output = io.StringIO()
            writer = csv.writer(output)
            writer.writerow(ALLOTMENT_CSV_HEADER)
            for record in records:
                for a in record.channel_allotments:
                    writer.writerow([
                        record.date.isoformat(), record.total_inventory, record.total_sold,
                        record.free_stock, record.occupancy_rate,
                        a.channel_id, a.allocated, a.sold, a.available, a.blocked,
                    ])
            return output.getvalue(), "text/csv", f"allotment_{config.room_type_id}.csv"

        data = config_to_dict(config)
        data["daily_allotments"] = records_to_list(records)
        return json.dumps(data, ensure_ascii=False), "application/json", f"allotment_{config.room_type_id}.json"

    def query_change_log(self, config_id: str, caller: Caller, start: Optional[datetime] = None,
                         end: Optional[datetime] = None,
                         actions: Optional[Sequence[ChangeAction]] = None) -> List[dict]:
        config = self.store.load_by_id(config_id, hotel_scope(caller))
        return [entry_to_dict(e) for e in self.store.query_log(config.config_id, start, end, actions)]

    def export_change_log(self, config_id: str, caller: Caller, fmt: str = "json",
                          start: Optional[datetime] = None, end: Optional[datetime] = None,
                          actions: Optional[Sequence[ChangeAction]] = None) -> Tuple[str, str, str]:
        _check_format(fmt)
        entries = self.query_change_log(config_id, caller, start, end, actions)

        if fmt == "csv":
            output = io.StringIO()
            writer = csv.writer(output)
            writer.writerow(CSV_HEADER)
            for e in entries:
                writer.writerow([
                    e["timestamp"], e["action"], e["user_id"] or "", e["reason"] or "",
                    json.dumps(e["changes"], ensure_ascii=False, sort_keys=True),
                ])
            return output.getvalue(), "text/csv", f"allotment_changes_{config_id}.csv"

        return json.dumps(entries, ensure_ascii=False), "application/json", f"allotment_changes_{config_id}.json"
