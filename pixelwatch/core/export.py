"""Report serialization for exports."""

import csv
import io
import json
from typing import Any, Sequence


def _csv_field(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def to_csv(records: Sequence[dict]) -> str:
    """
    Header is the first record's keys, bare. Every row field is
    double-quoted with embedded quotes doubled; nested values are JSON-encoded.
    """
    if not records:
        return ""
    headers = list(records[0].keys())
    buf = io.StringIO()
    buf.write(",".join(headers) + "\n")
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    for record in records:
        writer.writerow([_csv_field(record.get(h)) for h in headers])
    return buf.getvalue().rstrip("\n")
