"""CSV download helper shared by the admin export endpoints"""

import csv
from datetime import datetime
from io import StringIO
from typing import Iterable, Sequence

from fastapi.responses import StreamingResponse


def format_timestamp(value) -> str:
    return value.isoformat() if value else ""


def csv_response(headers: Sequence[str], rows: Iterable[Sequence], filename_prefix: str) -> StreamingResponse:
    """Render rows as a CSV attachment named <prefix>_<YYYY-MM-DD>.csv"""
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(headers)
    for row in rows:
        writer.writerow(["" if value is None else value for value in row])

    output.seek(0)
    filename = f"{filename_prefix}_{datetime.now().strftime('%Y-%m-%d')}.csv"

    return StreamingResponse(
        iter([output.getvalue()]),
        media_type="text/csv",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Cache-Control": "no-cache",
        },
    )
