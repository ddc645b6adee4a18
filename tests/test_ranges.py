import pytest

from recording_ingest.ranges import ByteRange, RangeNotSatisfiable, parse_range


class TestParseRange:
    """Range header handling for recording playback."""

    def test_no_header_means_full_content(self):
        assert parse_range(None, 1000) is None
        assert parse_range("  ", 1000) is None

    def test_closed_range(self):
        byte_range = parse_range("bytes=0-99", 1000)
        assert byte_range == ByteRange(0, 99)
        assert byte_range.length == 100
        assert byte_range.content_range(1000) == "bytes 0-99/1000"

    def test_open_ended_range_runs_to_last_byte(self):
        assert parse_range("bytes=500-", 1000) == ByteRange(500, 999)

    def test_suffix_range(self):
        assert parse_range("bytes=-100", 1000) == ByteRange(900, 999)

    def test_suffix_longer_than_file_serves_whole_file(self):
        assert parse_range("bytes=-5000", 1000) == ByteRange(0, 999)

    def test_end_is_clamped_to_file_size(self):
        assert parse_range("bytes=900-5000", 1000) == ByteRange(900, 999)

    def test_only_first_of_multiple_ranges_is_used(self):
        assert parse_range("bytes=0-9, 20-29", 1000) == ByteRange(0, 9)

    def test_start_past_end_is_not_satisfiable(self):
        with pytest.raises(RangeNotSatisfiable) as exc_info:
            parse_range("bytes=1000-", 1000)
        assert exc_info.value.size == 1000

    @pytest.mark.parametrize(
        "header",
        ["bytes=50-10", "items=0-10", "bytes=abc", "bytes=a-b", "bytes=-0", "bytes="],
    )
    def test_invalid_ranges(self, header):
        with pytest.raises(RangeNotSatisfiable):
            parse_range(header, 1000)

    def test_empty_file_has_no_satisfiable_range(self):
        with pytest.raises(RangeNotSatisfiable):
            parse_range("bytes=0-", 0)
        with pytest.raises(RangeNotSatisfiable):
            parse_range("bytes=-10", 0)
