"""
Roast session data model and its JSON wire format.

Sessions are stored and exchanged in the shape the viewer already uses:

    {
        "id": str, "name": str, "createdAt": str, "totalTime": float,
        "beanName": str?, "beanWeight": float?, "roastedWeight": float?,
        "tastingNote": str?,
        "data": [{"time": float, "temp": float, "ror": float}, ...]
    }

Only the metadata fields of a session change after it is created; samples
and totalTime are fixed at recording-stop time.
"""

import math
from dataclasses import dataclass, field

from roastmon.errors import ValidationError

METADATA_FIELDS = ("bean_name", "bean_weight_grams", "roasted_weight_grams", "tasting_note")
NUMERIC_METADATA_FIELDS = ("bean_weight_grams", "roasted_weight_grams")

# python attribute -> wire key
_WIRE_KEYS = {
    "bean_name": "beanName",
    "bean_weight_grams": "beanWeight",
    "roasted_weight_grams": "roastedWeight",
    "tasting_note": "tastingNote",
}


@dataclass(frozen=True)
class RoastSample:
    elapsed_seconds: float
    temperature_c: float
    rate_of_rise: float

    def to_dict(self):
        return {"time": self.elapsed_seconds, "temp": self.temperature_c, "ror": self.rate_of_rise}

    @classmethod
    def from_dict(cls, data):
        return cls(
            elapsed_seconds=float(data["time"]),
            temperature_c=float(data["temp"]),
            rate_of_rise=float(data["ror"]),
        )


@dataclass(frozen=True)
class RoastSession:
    id: str
    name: str
    created_at: str
    total_time_seconds: float
    samples: tuple = field(default_factory=tuple)
    bean_name: str | None = None
    bean_weight_grams: float | None = None
    roasted_weight_grams: float | None = None
    tasting_note: str | None = None

    def to_dict(self):
        data = {
            "id": self.id,
            "name": self.name,
            "createdAt": self.created_at,
            "totalTime": self.total_time_seconds,
        }
        for attr, key in _WIRE_KEYS.items():
            value = getattr(self, attr)
            if value is not None:
                data[key] = value
        data["data"] = [s.to_dict() for s in self.samples]
        return data

    @classmethod
    def from_dict(cls, data):
        """Build a session from an already validated wire dict."""
        kwargs = {attr: data.get(key) for attr, key in _WIRE_KEYS.items()}
        for attr in NUMERIC_METADATA_FIELDS:
            if kwargs[attr] is not None:
                kwargs[attr] = float(kwargs[attr])
        return cls(
            id=data["id"],
            name=data["name"],
            created_at=data["createdAt"],
            total_time_seconds=float(data["totalTime"]),
            samples=tuple(RoastSample.from_dict(s) for s in data.get("data", [])),
            **kwargs,
        )


def _coerce_finite(value: object) -> float | None:
    """Convert to a finite float, or None. Booleans are not numbers here."""
    if isinstance(value, bool):
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(num):
        return None
    return num


def clean_weight(value) -> float | None:
    """Operator-entered weight as a finite, non-negative float, else None."""
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    num = _coerce_finite(value)
    if num is None or num < 0:
        return None
    return num


def clean_text(value) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _validate_samples(raw, label: str, errors: list[str]):
    if not isinstance(raw, list):
        errors.append(f"{label}.data must be an array")
        return
    last_time = None
    for idx, sample in enumerate(raw):
        if not isinstance(sample, dict):
            errors.append(f"{label}.data[{idx}] must be an object")
            continue
        values = {}
        for key in ("time", "temp", "ror"):
            if isinstance(sample.get(key), str) or _coerce_finite(sample.get(key)) is None:
                errors.append(f"{label}.data[{idx}].{key} must be a finite number")
            else:
                values[key] = float(sample[key])
        t = values.get("time")
        if t is not None:
            if last_time is not None and t <= last_time:
                errors.append(f"{label}.data[{idx}].time must be strictly increasing")
            last_time = t


def _validate_session(raw, idx: int, errors: list[str]):
    label = f"sessions[{idx}]"
    if not isinstance(raw, dict):
        errors.append(f"{label} must be an object")
        return None

    session_id = raw.get("id")
    if not isinstance(session_id, str) or not session_id:
        errors.append(f"{label}.id must be a non-empty string")
    for key in ("name", "createdAt"):
        if not isinstance(raw.get(key), str):
            errors.append(f"{label}.{key} must be a string")

    total = raw.get("totalTime")
    if isinstance(total, str) or _coerce_finite(total) is None or float(total) < 0:
        errors.append(f"{label}.totalTime must be a finite, non-negative number")

    for key in ("beanName", "tastingNote"):
        value = raw.get(key)
        if value is not None and not isinstance(value, str):
            errors.append(f"{label}.{key} must be a string or null")
    for key in ("beanWeight", "roastedWeight"):
        value = raw.get(key)
        if value is None:
            continue
        num = None if isinstance(value, str) else _coerce_finite(value)
        if num is None or num < 0:
            errors.append(f"{label}.{key} must be a finite, non-negative number or null")

    _validate_samples(raw.get("data"), label, errors)
    return session_id


def parse_sessions_payload(payload) -> list[RoastSession]:
    """
    Validate a replace payload and convert it into sessions.

    The only accepted shape is ``{"sessions": [session, ...]}``. A bare array
    or anything else is rejected; no partial result is ever returned.

    Raises:
        ValidationError: Listing every problem found.
    """
    if not isinstance(payload, dict) or "sessions" not in payload:
        raise ValidationError(["payload must be an object with a 'sessions' array"])
    raw_sessions = payload["sessions"]
    if not isinstance(raw_sessions, list):
        raise ValidationError(["sessions must be an array"])

    errors: list[str] = []
    seen_ids = set()
    for idx, raw in enumerate(raw_sessions):
        session_id = _validate_session(raw, idx, errors)
        if isinstance(session_id, str) and session_id:
            if session_id in seen_ids:
                errors.append(f"sessions[{idx}].id duplicates {session_id!r}")
            seen_ids.add(session_id)

    if errors:
        raise ValidationError(errors)
    return [RoastSession.from_dict(raw) for raw in raw_sessions]


def sessions_to_payload(sessions) -> dict:
    return {"sessions": [s.to_dict() for s in sessions]}
