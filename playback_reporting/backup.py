import json
import logging
from datetime import datetime, timezone
from typing import Any, Union

from pydantic import ValidationError

from .exceptions import ReportParameterError
from .models import PlaybackRecord

logger = logging.getLogger(__name__)


def parse_record_date(value: Union[str, datetime]) -> datetime:
    """Parse the date forms found in backups; naive values are UTC."""
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            try:
                parsed = datetime.strptime(value, "%Y-%m-%d %H:%M:%S.%f")
            except ValueError:
                parsed = datetime.strptime(value[:19], "%Y-%m-%d %H:%M:%S")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


async def export_backup(store) -> str:
    """Serialize every stored record as a JSON list."""
    records = await store.get_all_records()
    logger.info(f"Exporting {len(records)} playback records")
    return json.dumps([record.model_dump(mode="json") for record in records])


async def import_backup(store, payload: Union[str, bytes, list[dict[str, Any]]]) -> int:
    """Load records from a backup payload, skipping ids already stored."""
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as e:
            raise ReportParameterError(f"Backup payload is not valid JSON: {e}") from e
    if not isinstance(payload, list):
        raise ReportParameterError("Backup payload must be a list of records")

    records = []
    skipped = 0
    for item in payload:
        try:
            data = dict(item)
            data["date"] = parse_record_date(data["date"])
            records.append(PlaybackRecord(**data))
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            logger.warning(f"Skipping invalid backup record: {e}")
            skipped += 1

    imported = await store.import_records(records)
    skipped += len(records) - imported
    logger.info(f"Backup loaded: {imported} imported, {skipped} skipped")
    return imported
