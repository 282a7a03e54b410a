from __future__ import annotations

from datetime import datetime, timezone

import pytest

from edugov.core.errors import ValidationError
from edugov.services.intake import UploadPayload, infer_media_kind, validate_payload
from edugov.services.quota import QuotaSnapshot, month_bounds


def _payload(**overrides) -> UploadPayload:
    values = {"title": "Lesson notes", "mime_type": "application/pdf", "filename": "notes.pdf", "data": b"%PDF"}
    values.update(overrides)
    return UploadPayload(**values)


@pytest.mark.parametrize(
    ("mime_type", "kind"),
    [
        ("video/mp4", "video"),
        ("image/png", "image"),
        ("text/plain; charset=utf-8", "document"),
        ("application/pdf", "document"),
        ("application/vnd.openxmlformats-officedocument.wordprocessingml.document", "document"),
        ("application/zip", "other"),
        ("", "other"),
    ],
)
def test_media_kind_inference(mime_type: str, kind: str) -> None:
    assert infer_media_kind(mime_type) == kind


def test_validation_trims_and_normalizes() -> None:
    cleaned = validate_payload(_payload(title="  Notes  ", tags=(" a ", "", "b"), category="  "))
    assert cleaned.title == "Notes"
    assert cleaned.tags == ("a", "b")
    assert cleaned.category is None


@pytest.mark.parametrize(
    "overrides",
    [
        {"title": "   "},
        {"title": "x" * 201},
        {"description": "d" * 2001},
        {"tags": tuple(f"t{i}" for i in range(21))},
        {"tags": ("x" * 51,)},
        {"category": "c" * 101},
        {"data": b""},
    ],
)
def test_validation_rejects_bad_payloads(overrides: dict) -> None:
    with pytest.raises(ValidationError):
        validate_payload(_payload(**overrides))


def test_oversized_upload_is_rejected(monkeypatch) -> None:
    from edugov.core.config import get_settings

    monkeypatch.setenv("UPLOAD_MAX_BYTES", "4")
    get_settings.cache_clear()
    with pytest.raises(ValidationError):
        validate_payload(_payload(data=b"12345"))


def test_month_bounds_roll_over_december() -> None:
    start, end = month_bounds(datetime(2026, 12, 31, 23, 59, tzinfo=timezone.utc))
    assert start == datetime(2026, 12, 1, tzinfo=timezone.utc)
    assert end == datetime(2027, 1, 1, tzinfo=timezone.utc)


def test_quota_snapshot_semantics() -> None:
    unlimited = QuotaSnapshot(1, "video", 0, 500, None, None)
    assert unlimited.unlimited and not unlimited.exhausted and unlimited.remaining is None
    full = QuotaSnapshot(1, "video", 50, 50, None, None)
    assert full.exhausted and full.remaining == 0
