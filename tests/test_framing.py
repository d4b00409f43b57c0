"""Tests for newline-delimited framing."""

import pytest

from ado_mcp_wrapper.relay.framing import FrameTooLargeError, LineAccumulator


def test_splits_complete_lines():
    acc = LineAccumulator()

    messages = acc.feed(b'{"id":1}\n{"id":2}\n')

    assert messages == ['{"id":1}', '{"id":2}']
    assert acc.pending == ""


def test_keeps_partial_line_until_newline():
    acc = LineAccumulator()

    assert acc.feed(b'{"jsonrpc":"2.0",') == []
    assert acc.pending == '{"jsonrpc":"2.0",'
    assert acc.feed(b'"id":3}\n') == ['{"jsonrpc":"2.0","id":3}']


def test_blank_and_whitespace_lines_are_skipped():
    acc = LineAccumulator()

    assert acc.feed("\n   \n  {\"id\":1}  \r\n") == ['{"id":1}']


def test_multibyte_character_split_across_chunks():
    acc = LineAccumulator()
    encoded = '{"name":"café"}\n'.encode("utf-8")
    split = encoded.index(b"\xc3") + 1

    assert acc.feed(encoded[:split]) == []
    assert acc.feed(encoded[split:]) == ['{"name":"café"}']


def test_flush_returns_unterminated_remainder():
    acc = LineAccumulator()
    acc.feed(b'{"id":9}')

    assert acc.flush() == ['{"id":9}']
    assert acc.flush() == []


class TestOversizedLines:
    """A line past the limit is reported once and discarded."""

    def test_overflow_raises_once_with_earlier_messages(self):
        acc = LineAccumulator(max_size=16)

        with pytest.raises(FrameTooLargeError) as exc_info:
            acc.feed(b'{"id":1}\n' + b"x" * 40)

        assert exc_info.value.messages == ['{"id":1}']
        assert exc_info.value.limit == 16
        assert acc.pending == ""

        # Rest of the same oversized line is swallowed silently
        assert acc.feed(b"y" * 40) == []

    def test_recovers_after_newline(self):
        acc = LineAccumulator(max_size=16)
        with pytest.raises(FrameTooLargeError):
            acc.feed(b"z" * 32)

        assert acc.feed(b'zzz\n{"id":2}\n') == ['{"id":2}']

    def test_flush_drops_oversized_tail(self):
        acc = LineAccumulator(max_size=8)
        with pytest.raises(FrameTooLargeError):
            acc.feed(b"a" * 20)

        assert acc.flush() == []

    def test_terminated_oversized_line_in_one_chunk(self):
        acc = LineAccumulator(max_size=16)

        with pytest.raises(FrameTooLargeError) as exc_info:
            acc.feed(b'{"id":1}\n' + b"x" * 40 + b'\n{"id":2}\n')

        assert exc_info.value.messages == ['{"id":1}', '{"id":2}']
        assert exc_info.value.count == 1
        assert exc_info.value.size == 40

        # Not left in discard mode: the next line is accepted
        assert acc.feed(b'{"id":3}\n') == ['{"id":3}']

    def test_counts_every_oversized_line_in_chunk(self):
        acc = LineAccumulator(max_size=8)

        with pytest.raises(FrameTooLargeError) as exc_info:
            acc.feed(b"a" * 10 + b"\n" + b"b" * 12 + b"\n" + b"c" * 20)

        assert exc_info.value.count == 3
        assert exc_info.value.messages == []
