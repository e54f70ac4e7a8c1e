import logging

import pytest

from zarrsinks.sink import Sink, finalize_sink


class RecordingSink(Sink):
    def __init__(self, fail_flush=False):
        self.events = []
        self.fail_flush = fail_flush

    def write(self, offset, data):
        self.events.append(("write", offset, bytes(data)))

    def _flush(self):
        self.events.append("flush")
        if self.fail_flush:
            raise RuntimeError("flush failed")

    def close(self):
        self.events.append("close")


def test_sink_is_abstract():
    with pytest.raises(TypeError):
        Sink()


def test_finalize_flushes_then_closes():
    sink = RecordingSink()
    sink.write(0, b"ab")
    finalize_sink(sink)
    assert sink.events == [("write", 0, b"ab"), "flush", "close"]


def test_finalize_propagates_flush_failure_and_keeps_sink_open():
    sink = RecordingSink(fail_flush=True)
    with pytest.raises(RuntimeError, match="flush failed"):
        finalize_sink(sink)
    assert sink.events == ["flush"]


def test_finalize_none_logs(caplog):
    with caplog.at_level(logging.INFO, logger="zarrsinks.sink"):
        result = finalize_sink(None)
    assert result is None
    assert "Nothing to finalize" in caplog.text


def test_default_close_does_nothing_harmful():
    class MinimalSink(Sink):
        def __init__(self):
            self.flushed = 0

        def write(self, offset, data):
            pass

        def _flush(self):
            self.flushed += 1

    sink = MinimalSink()
    finalize_sink(sink)
    assert sink.flushed == 1