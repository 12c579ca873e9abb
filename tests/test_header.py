"""Header parsing and lookup tests."""

import logging

import pytest

from s3file import HeaderError, S3File, UsageError

from conftest import NATIVE, SWAPPED, header, marker


def test_minimal_header():
    data = header()
    with S3File(data) as s:
        s.parse_header()
        assert s.headers == []
        assert s.swap is False
        assert s.byteorder == NATIVE
        assert s.cursor == len(data)
        assert s.checksum == 0
        assert s.remaining() == 0


@pytest.mark.parametrize("n", [0, 1, 5])
def test_header_count(n):
    lines = [f"key{i} value{i}" for i in range(n)]
    with S3File(header(*lines)) as s:
        s.parse_header()
        assert len(s.headers) == n
        for i in range(n):
            assert s.header_name(i) == f"key{i}"
            assert s.header_value(i) == f"value{i}"


def test_comments_are_skipped():
    data = header("# written by hand", "version 1.0", "#another", "chksum0 yes")
    with S3File(data) as s:
        s.parse_header()
        assert len(s.headers) == 2
        assert s.header_name_is(0, "version")
        assert s.header_name_is(1, b"chksum0")
        assert s.has_checksum


def test_swapped_marker():
    with S3File(header("version 1", order=SWAPPED)) as s:
        s.parse_header()
        assert s.swap is True
        assert s.byteorder == SWAPPED


def test_spans_point_into_buffer():
    data = header("version 1.0")
    with S3File(data) as s:
        s.parse_header()
        entry = s.headers[0]
        assert data[entry.name.start : entry.name.stop] == b"version"
        assert data[entry.value.start : entry.value.stop] == b"1.0"


def test_value_keeps_inner_spaces():
    with S3File(header("description  a small  model   ")) as s:
        s.parse_header()
        assert s.header_name(0) == "description"
        assert s.header_value(0) == "a small  model"
        assert s.header_value_is(0, "a small  model")
        assert not s.header_value_is(0, "a small")


def test_lookup_helpers():
    with S3File(header("version 1.0", "feat 1s_c_d_dd", "version 2.0")) as s:
        s.parse_header()
        assert s.header_index("feat") == 1
        assert s.header_index("missing") is None
        assert s.version == "1.0"
        assert s.header_dict() == {"version": "2.0", "feat": "1s_c_d_dd"}
        assert not s.has_checksum


def test_index_out_of_range():
    with S3File(header("version 1")) as s:
        s.parse_header()
        with pytest.raises(UsageError):
            s.header_name(1)
        with pytest.raises(UsageError):
            s.header_value(5)
        with pytest.raises(UsageError):
            s.header_name_is(1, "version")
        with pytest.raises(UsageError):
            s.header_value_is(-1, "1")


def test_version_mismatch_warns(caplog):
    with S3File(header("version 0.1")) as s:
        with caplog.at_level(logging.WARNING, logger="s3file"):
            s.parse_header(expected_version="1.0")
    assert "Version mismatch: 0.1, expecting 1.0" in caplog.text


def test_swapped_input_is_reported(caplog):
    with S3File(header(order=SWAPPED)) as s:
        with caplog.at_level(logging.INFO, logger="s3file"):
            s.parse_header()
    assert "byte-swapped" in caplog.text


def test_length_limits_view():
    data = header("version 1") + b"\x00" * 8
    with S3File(data, length=len(data) - 8) as s:
        s.parse_header()
        assert s.remaining() == 0


# ── Malformed headers ──────────────────────────────────────────────────────


@pytest.mark.parametrize(
    "data",
    [
        b"",
        b"s4\nendhdr\n" + marker(),
        b"s3",
        b"s3\nversion 1\n",
        b"s3\nversion 1\nendhdr",
        b"s3\nendhdr\n\x44\x33",
        b"s3\nendhdr\n\xde\xad\xbe\xef",
        b"s3\nlonely\nendhdr\n" + marker(),
        b"s3\n\nendhdr\n" + marker(),
    ],
    ids=[
        "empty",
        "wrong-magic",
        "magic-without-newline",
        "missing-endhdr",
        "endhdr-without-newline",
        "truncated-marker",
        "corrupt-marker",
        "name-without-value",
        "blank-line",
    ],
)
def test_malformed_header(data):
    with S3File(data) as s:
        with pytest.raises(HeaderError):
            s.parse_header()
        assert s.cursor == 0
        assert s.checksum == 0
        assert s.headers == []
        with pytest.raises(UsageError):
            s.read_1d("f4")
        with pytest.raises(UsageError):
            s.verify_checksum()


def test_parse_twice_is_usage_error():
    with S3File(header()) as s:
        s.parse_header()
        with pytest.raises(UsageError):
            s.parse_header()


def test_parse_after_failure_is_usage_error():
    with S3File(b"nope") as s:
        with pytest.raises(HeaderError):
            s.parse_header()
        with pytest.raises(UsageError):
            s.parse_header()


def test_header_error_is_logged(caplog):
    with S3File(b"s3\nversion 1\n") as s:
        with caplog.at_level(logging.ERROR, logger="s3file"):
            with pytest.raises(HeaderError, match="endhdr"):
                s.parse_header()
    assert "Failed to read s3 header" in caplog.text
