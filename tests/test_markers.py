"""Tests for the harness marker grammar."""
from labrunner.adapters import markers

NONCE = "0123456789abcdef"


def line(kind: str, idx: int, msg: str = "") -> str:
    return "\n" + markers.marker_line(NONCE, kind, idx) + (f" {msg}" if msg else "") + "\n"


class TestCollect:
    def test_reads_ok_and_fail(self) -> None:
        out = "hello\n" + line("OK", 0) + line("FAIL", 1, '"bad \\"thing\\""')
        found = markers.collect(out, NONCE)

        assert found[0].passed is True
        assert found[1].passed is False
        assert found[1].message == 'bad "thing"'

    def test_ignores_markers_with_wrong_nonce(self) -> None:
        out = "\n@@LABRUNNER:ffffffffffffffff@@ <OK 0>\n"

        assert markers.collect(out, NONCE) == {}

    def test_marker_must_start_a_line(self) -> None:
        out = "text " + markers.marker_line(NONCE, "OK", 0)

        assert markers.collect(out, NONCE) == {}

    def test_fail_overrides_ok_for_same_index(self) -> None:
        out = line("OK", 2) + line("FAIL", 2, '"late failure"')

        assert markers.collect(out, NONCE)[2].passed is False

    def test_first_ok_wins_over_later_ok(self) -> None:
        out = line("OK", 0) + line("OK", 0)

        assert len(markers.collect(out, NONCE)) == 1

    def test_tolerates_interleaved_output(self) -> None:
        out = "a" + line("OK", 0) + "b\nc" + line("OK", 1) + "tail"

        assert set(markers.collect(out, NONCE)) == {0, 1}

    def test_non_json_message_kept_raw(self) -> None:
        out = line("FAIL", 0, "not json")

        assert markers.collect(out, NONCE)[0].message == "not json"

    def test_long_message_truncated(self) -> None:
        out = line("FAIL", 0, '"' + "x" * 2000 + '"')
        msg = markers.collect(out, NONCE)[0].message

        assert len(msg) == markers.MAX_MESSAGE_CHARS + 3
        assert msg.endswith("...")


class TestStrip:
    def test_removes_markers_and_their_leading_newline(self) -> None:
        out = "hello\n" + line("OK", 0) + "world\n" + line("FAIL", 1, '"x"')

        assert markers.strip(out, NONCE) == "hello\nworld\n"

    def test_restores_output_printed_without_newline(self) -> None:
        out = "hello" + line("OK", 0) + "world"

        assert markers.strip(out, NONCE) == "helloworld"

    def test_keeps_foreign_marker_lookalikes(self) -> None:
        out = "@@LABRUNNER:deadbeefdeadbeef@@ <OK 0>\n"

        assert markers.strip(out, NONCE) == out
