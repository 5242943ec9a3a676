"""Storage key scheme: strict parsing, validation, and key builders.

Keys encode kind, owner, and date so that a blob's role can be recovered from
its key alone::

    private/uploads/<gymId>/<yyyy>/<mm>/<uuid>.<ext>
    private/gym/<gymId>/candidates/<sha|name>.<ext>
    private/global/approved/<equipmentId>/<yyyy>/<mm>/<sha>.<ext>
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Final

from equipment_vision.errors import StorageKeyError

ALLOWED_EXTENSIONS: Final[frozenset[str]] = frozenset({"jpg", "png", "webp"})

_ID = r"[A-Za-z0-9_-]+"
_UUID = r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-4[0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}"
_NAME = r"[A-Za-z0-9_.-]+"
_EXT = r"(?P<ext>[a-z0-9]+)"
_YM = r"(?P<year>\d{4})/(?P<month>\d{2})"

_CANDIDATE_RE: Final[re.Pattern[str]] = re.compile(
    rf"^private/gym/(?P<gym_id>{_ID})/candidates/(?P<name>{_NAME})\.{_EXT}$"
)

_PATTERNS: Final[tuple[tuple[str, re.Pattern[str]], ...]] = (
    ("golden", re.compile(rf"^public/golden/(?P<equipment_id>{_ID})/(?P<uuid>{_UUID})\.{_EXT}$")),
    ("training", re.compile(rf"^public/training/(?P<equipment_id>{_ID})/(?P<uuid>{_UUID})\.{_EXT}$")),
    (
        "upload_global",
        re.compile(rf"^private/uploads/global/(?P<equipment_id>{_ID})/{_YM}/(?P<uuid>{_UUID})\.{_EXT}$"),
    ),
    ("upload", re.compile(rf"^private/uploads/(?P<gym_id>{_ID})/{_YM}/(?P<uuid>{_UUID})\.{_EXT}$")),
    ("candidate", _CANDIDATE_RE),
    ("approved_gym", re.compile(rf"^private/gym/(?P<gym_equipment_id>{_ID})/approved/(?P<name>{_NAME})\.{_EXT}$")),
    ("quarantine_gym", re.compile(rf"^private/gym/(?P<gym_id>{_ID})/quarantine/(?P<name>{_NAME})\.{_EXT}$")),
    ("staging_global", re.compile(rf"^private/global/candidates/(?P<equipment_id>{_ID})/(?P<name>[0-9a-f]{{64}})\.{_EXT}$")),
    (
        "approved_global",
        re.compile(rf"^private/global/equipment/(?P<equipment_id>{_ID})/approved/(?P<name>{_NAME})\.{_EXT}$"),
    ),
    (
        "approved_global",
        re.compile(rf"^private/global/approved/(?P<equipment_id>{_ID})/{_YM}/(?P<name>[0-9a-f]{{64}})\.{_EXT}$"),
    ),
    (
        "quarantine_global",
        re.compile(rf"^private/global/equipment/(?P<equipment_id>{_ID})/quarantine/(?P<name>{_NAME})\.{_EXT}$"),
    ),
)

_MIME_EXTENSIONS: Final[dict[str, str]] = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}


@dataclass(frozen=True)
class ParsedKey:
    """Result of parsing a storage key: its kind plus the named path segments."""

    kind: str
    key: str
    parts: dict[str, str]

    @property
    def ext(self) -> str:
        return self.parts["ext"]

    def get(self, name: str) -> str | None:
        return self.parts.get(name)


def parse_storage_key(key: str) -> ParsedKey:
    """Parse ``key`` into a :class:`ParsedKey`, raising :class:`StorageKeyError` when invalid."""

    for kind, pattern in _PATTERNS:
        match = pattern.match(key)
        if match is None:
            continue
        parts = {name: value for name, value in match.groupdict().items() if value is not None}
        if parts["ext"] not in ALLOWED_EXTENSIONS:
            raise StorageKeyError(f"Unsupported extension in key: {key}")
        month = parts.get("month")
        if month is not None and not 1 <= int(month) <= 12:
            raise StorageKeyError(f"Invalid month in key: {key}")
        return ParsedKey(kind=kind, key=key, parts=parts)
    raise StorageKeyError(f"Unrecognized storage key: {key}")


def is_valid_storage_key(key: str) -> bool:
    try:
        parse_storage_key(key)
    except StorageKeyError:
        return False
    return True


def is_candidate_key(key: str) -> bool:
    return _CANDIDATE_RE.match(key) is not None


def file_ext_from(key: str | None, content_type: str | None = None) -> str:
    """Return the file extension for a blob, preferring the key suffix."""

    if key and "." in key.rsplit("/", 1)[-1]:
        suffix = key.rsplit(".", 1)[-1].lower()
        if 0 < len(suffix) <= 5:
            return suffix
    if content_type:
        mapped = _MIME_EXTENSIONS.get(content_type.split(";", 1)[0].strip().lower())
        if mapped:
            return mapped
    return "jpg"


def _year_month(now: datetime | None) -> tuple[str, str]:
    moment = now or datetime.now(timezone.utc)
    return f"{moment.year:04d}", f"{moment.month:02d}"


def _checked_ext(ext: str) -> str:
    normalized = ext.lower().lstrip(".")
    if normalized == "jpeg":
        normalized = "jpg"
    if normalized not in ALLOWED_EXTENSIONS:
        raise StorageKeyError(f"Unsupported extension: {ext}")
    return normalized


def make_upload_key(gym_id: str, ext: str, now: datetime | None = None) -> str:
    year, month = _year_month(now)
    return f"private/uploads/{gym_id}/{year}/{month}/{uuid.uuid4()}.{_checked_ext(ext)}"


def make_global_upload_key(equipment_id: str, ext: str, now: datetime | None = None) -> str:
    year, month = _year_month(now)
    return f"private/uploads/global/{equipment_id}/{year}/{month}/{uuid.uuid4()}.{_checked_ext(ext)}"


def candidate_key(gym_id: str, name: str, ext: str) -> str:
    return f"private/gym/{gym_id}/candidates/{name}.{ext}"


def candidate_hash_key(key: str, sha256: str) -> str:
    """Return the content-addressed sibling of a candidate key."""

    prefix, _ = key.rsplit("/", 1)
    return f"{prefix}/{sha256}.{file_ext_from(key)}"


def approved_gym_key(gym_equipment_id: str, name: str, ext: str) -> str:
    return f"private/gym/{gym_equipment_id}/approved/{name}.{ext}"


def staging_global_key(equipment_id: str, sha256: str, ext: str) -> str:
    return f"private/global/candidates/{equipment_id}/{sha256}.{ext}"


def promoted_global_key(equipment_id: str, name: str, ext: str) -> str:
    return f"private/global/equipment/{equipment_id}/approved/{name}.{ext}"


def approved_global_key(equipment_id: str, sha256: str, ext: str, now: datetime | None = None) -> str:
    year, month = _year_month(now)
    return f"private/global/approved/{equipment_id}/{year}/{month}/{sha256}.{ext}"


def quarantine_key_for(key: str) -> str | None:
    """Return where a blocked blob should move, or ``None`` when the key has no quarantine home."""

    if "/candidates/" in key and key.startswith("private/gym/"):
        return key.replace("/candidates/", "/quarantine/", 1)

    try:
        parsed = parse_storage_key(key)
    except StorageKeyError:
        return None

    name = parsed.get("uuid") or parsed.get("name")
    if parsed.kind == "upload":
        return f"private/gym/{parsed.parts['gym_id']}/quarantine/{name}.{parsed.ext}"
    if parsed.kind == "approved_gym":
        return f"private/gym/{parsed.parts['gym_equipment_id']}/quarantine/{name}.{parsed.ext}"
    if parsed.kind in {"upload_global", "approved_global", "staging_global"}:
        return f"private/global/equipment/{parsed.parts['equipment_id']}/quarantine/{name}.{parsed.ext}"
    return None


__all__ = [
    "ALLOWED_EXTENSIONS",
    "ParsedKey",
    "approved_global_key",
    "approved_gym_key",
    "candidate_hash_key",
    "candidate_key",
    "file_ext_from",
    "is_candidate_key",
    "is_valid_storage_key",
    "make_global_upload_key",
    "make_upload_key",
    "parse_storage_key",
    "promoted_global_key",
    "quarantine_key_for",
    "staging_global_key",
]
