"""CSV export of a room's attendance ledger."""

import csv
import io
from datetime import datetime

from attendance.models import AttendanceRecord

CSV_HEADER = ["Name", "Roll No", "Time", "Device Status"]


def device_status(record: AttendanceRecord) -> str:
    if record.is_proxy:
        return f"PROXY (Orig: {record.proxy_original_name})"
    return "Verified"


def records_to_csv(records: list[AttendanceRecord]) -> str:
    """Render records as CSV text, one row per record, in ledger order."""
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for record in records:
        writer.writerow([
            record.name,
            record.roll_number,
            datetime.fromtimestamp(record.timestamp).strftime("%H:%M:%S"),
            device_status(record),
        ])
    return buf.getvalue()
