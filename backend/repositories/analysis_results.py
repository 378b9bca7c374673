import json
import uuid
from typing import Any

from db.models import ANALYSIS_RESULTS
from repositories.base import OwnedRepository, integrity_errors
from repositories.schemas import AnalysisResultIn, validate_payload
from utils.datetime_utils import utcnow_iso


def _decode(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


class AnalysisResultRepository(OwnedRepository):
    table = ANALYSIS_RESULTS
    entity = "analysis result"

    def to_record(self, row):
        record = super().to_record(row)
        if record is not None:
            record["insights"] = _decode(record.get("insights"))
            record["recommendations"] = _decode(record.get("recommendations"))
        return record

    def create(self, data: Any) -> dict[str, Any]:
        payload: AnalysisResultIn = validate_payload(AnalysisResultIn, data)
        record_id = payload.id or str(uuid.uuid4())
        now = utcnow_iso()
        values = {
            "id": record_id,
            "user_id": payload.user_id,
            "analysis_date": payload.analysis_date or now,
            "data_period_start": payload.data_period_start,
            "data_period_end": payload.data_period_end,
            "insights": json.dumps(payload.insights),
            "recommendations": json.dumps(payload.recommendations),
            "confidence_score": payload.confidence_score,
            "created_at": now,
        }
        with integrity_errors(self.entity), self.db.transaction() as tx:
            self._insert(tx, values)
            return self._fetch(tx, record_id)

    def find_by_user_id(self, user_id: str, start_date=None, end_date=None, limit=None, offset=None):
        return self._find_by_user_id(
            user_id,
            date_column="analysis_date",
            order_by="analysis_date DESC",
            start_date=start_date,
            end_date=end_date,
            limit=limit,
            offset=offset,
        )

    def find_latest_by_user_id(self, user_id: str) -> dict[str, Any] | None:
        results = self.find_by_user_id(user_id, limit=1)
        return results[0] if results else None
