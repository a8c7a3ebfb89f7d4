from datetime import datetime, timedelta, timezone

from feedsentry.storage import chunked
from feedsentry.utils import isoformat_utc, parse_iso, sha256_hex


def test_isoformat_utc_fixed_precision():
    value = datetime(2025, 3, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
    assert isoformat_utc(value) == "2025-03-01T10:00:00.000000+00:00"
    assert isoformat_utc(datetime(2025, 3, 1)) == "2025-03-01T00:00:00.000000+00:00"


def test_parse_iso_accepts_z_and_naive():
    assert parse_iso("2025-03-01T10:00:00Z") == datetime(2025, 3, 1, 10, tzinfo=timezone.utc)
    assert parse_iso("2025-03-01T10:00:00").tzinfo == timezone.utc


def test_sha256_hex_accepts_text_and_bytes():
    assert sha256_hex("abc") == sha256_hex(b"abc")
    assert len(sha256_hex("abc")) == 64


def test_chunked():
    assert chunked(["a", "b", "c"], 2) == [["a", "b"], ["c"]]
    assert chunked([], 5) == []
