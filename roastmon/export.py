import csv
import io
import math
from datetime import datetime

CSV_HEADERS = ["Time_s", "Time_Str", "Temp_C", "RoR"]


def format_duration(seconds) -> str:
    """Format seconds as MM:SS, rounded half up and clamped at zero."""
    total = max(0, math.floor(seconds + 0.5))
    minutes, secs = divmod(total, 60)
    return f"{minutes:02d}:{secs:02d}"


def _format_val(value, decimals=2):
    """Format a number for CSV output; anything non-finite becomes NAN."""
    if value is None or isinstance(value, bool):
        return "NAN"
    try:
        num = float(value)
    except (TypeError, ValueError):
        return "NAN"
    if not math.isfinite(num):
        return "NAN"
    return f"{num:.{decimals}f}"


def session_rows(samples):
    for sample in samples:
        yield [
            _format_val(sample.elapsed_seconds),
            format_duration(sample.elapsed_seconds),
            _format_val(sample.temperature_c),
            _format_val(sample.rate_of_rise),
        ]


def samples_to_csv(samples) -> str:
    """Render samples as CSV text with a header row."""
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_HEADERS)
    writer.writerows(session_rows(samples))
    return buffer.getvalue()


def csv_filename(now=None) -> str:
    now = now or datetime.now()
    return f"roast-{now.strftime('%Y%m%d_%H%M%S')}.csv"
