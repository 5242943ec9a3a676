from __future__ import annotations

import re
from datetime import datetime, timezone

import pytest

from equipment_vision.errors import StorageKeyError
from equipment_vision.storage_keys import (
    approved_global_key,
    candidate_hash_key,
    file_ext_from,
    is_candidate_key,
    is_valid_storage_key,
    make_upload_key,
    parse_storage_key,
    quarantine_key_for,
)

UUID4 = "3f2b8c1e-9a4d-4c6b-8e2f-1a2b3c4d5e6f"
SHA = "a" * 64


@pytest.mark.parametrize(
    "key,kind",
    [
        (f"public/golden/eq-1/{UUID4}.jpg", "golden"),
        (f"public/training/eq-1/{UUID4}.webp", "training"),
        (f"private/uploads/gym-1/2024/05/{UUID4}.png", "upload"),
        (f"private/uploads/global/eq-1/2024/12/{UUID4}.jpg", "upload_global"),
        ("private/gym/gym-1/candidates/photo.jpg", "candidate"),
        (f"private/gym/ge-1/approved/{SHA}.jpg", "approved_gym"),
        ("private/gym/gym-1/quarantine/photo.jpg", "quarantine_gym"),
        (f"private/global/candidates/eq-1/{SHA}.png", "staging_global"),
        (f"private/global/equipment/eq-1/approved/{SHA}.jpg", "approved_global"),
        (f"private/global/approved/eq-1/2025/01/{SHA}.jpg", "approved_global"),
        ("private/global/equipment/eq-1/quarantine/photo.jpg", "quarantine_global"),
    ],
)
def test_parse_recognizes_every_key_kind(key: str, kind: str) -> None:
    assert parse_storage_key(key).kind == kind
    assert is_valid_storage_key(key)


@pytest.mark.parametrize(
    "key",
    [
        f"private/uploads/gym-1/2024/13/{UUID4}.png",
        f"private/uploads/gym-1/2024/00/{UUID4}.png",
        "private/uploads/gym-1/2024/05/3f2b8c1e-9a4d-1c6b-8e2f-1a2b3c4d5e6f.png",
        f"private/uploads/gym-1/2024/05/{UUID4}.gif",
        f"public/golden/eq-1/{UUID4}.jpeg",
        "private/gym/gym-1/candidates/../../etc/passwd.jpg",
        "totally/unrelated.jpg",
        "",
    ],
)
def test_invalid_keys_are_rejected(key: str) -> None:
    assert not is_valid_storage_key(key)
    with pytest.raises(StorageKeyError):
        parse_storage_key(key)


def test_parsed_key_exposes_segments() -> None:
    parsed = parse_storage_key(f"private/uploads/gym-1/2024/05/{UUID4}.png")

    assert parsed.get("gym_id") == "gym-1"
    assert parsed.get("month") == "05"
    assert parsed.ext == "png"


def test_candidate_hash_key_keeps_directory_and_extension() -> None:
    key = "private/gym/gym-1/candidates/upload-1.webp"

    assert candidate_hash_key(key, SHA) == f"private/gym/gym-1/candidates/{SHA}.webp"
    assert is_candidate_key(key)
    assert not is_candidate_key(f"private/uploads/gym-1/2024/05/{UUID4}.png")


@pytest.mark.parametrize(
    "key,expected",
    [
        ("private/gym/gym-1/candidates/photo.jpg", "private/gym/gym-1/quarantine/photo.jpg"),
        (f"private/uploads/gym-1/2024/05/{UUID4}.png", f"private/gym/gym-1/quarantine/{UUID4}.png"),
        (f"private/gym/ge-1/approved/{SHA}.jpg", f"private/gym/ge-1/quarantine/{SHA}.jpg"),
        (
            f"private/uploads/global/eq-1/2024/12/{UUID4}.jpg",
            f"private/global/equipment/eq-1/quarantine/{UUID4}.jpg",
        ),
        (
            f"private/global/approved/eq-1/2025/01/{SHA}.jpg",
            f"private/global/equipment/eq-1/quarantine/{SHA}.jpg",
        ),
        (f"public/golden/eq-1/{UUID4}.jpg", None),
        ("not-a-key", None),
    ],
)
def test_quarantine_key_for(key: str, expected: str | None) -> None:
    assert quarantine_key_for(key) == expected


def test_file_ext_from_prefers_key_suffix() -> None:
    assert file_ext_from("a/b/c.png", "image/jpeg") == "png"
    assert file_ext_from("a/b/noext", "image/webp; charset=binary") == "webp"
    assert file_ext_from(None, None) == "jpg"
    assert file_ext_from("a/b/c.toolongext", None) == "jpg"


def test_builders_produce_parseable_keys() -> None:
    when = datetime(2024, 3, 9, tzinfo=timezone.utc)

    upload = make_upload_key("gym-1", "jpeg", now=when)
    assert re.match(r"^private/uploads/gym-1/2024/03/[0-9a-f-]{36}\.jpg$", upload)
    assert parse_storage_key(upload).kind == "upload"

    approved = approved_global_key("eq-1", SHA, "png", now=when)
    assert approved == f"private/global/approved/eq-1/2024/03/{SHA}.png"
    assert parse_storage_key(approved).kind == "approved_global"

    with pytest.raises(StorageKeyError):
        make_upload_key("gym-1", "gif")
