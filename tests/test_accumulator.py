from __future__ import annotations

from bubbles.accumulator import TurnAccumulator


def _shape(records):
    return [(r.speaker, r.text, r.open) for r in records]


def test_snapshot_grows_with_each_delta():
    acc = TurnAccumulator()
    h = acc.start("hello", ["a", "b"])

    assert acc.on_delta(h, "[START:a]h") == acc.snapshot(h)
    assert _shape(acc.snapshot(h)) == [("a", "h", True)]

    acc.on_delta(h, "i[")
    assert _shape(acc.snapshot(h)) == [("a", "hi[", True)]

    acc.on_delta(h, "END]")
    assert _shape(acc.snapshot(h)) == [("a", "hi", False)]

    acc.on_delta(h, "")
    assert _shape(acc.snapshot(h)) == [("a", "hi", False)]
    assert acc.raw_text == "[START:a]hi[END]"


def test_stream_end_closes_unterminated_segment():
    acc = TurnAccumulator()
    h = acc.start("q", ["a", "b"])
    acc.on_delta(h, "[START:a]done[END][START:b]half")
    final = acc.on_stream_end(h)
    assert _shape(final) == [("a", "done", False), ("b", "half", False)]
    assert acc.finished


def test_created_at_is_stable_across_reparses():
    acc = TurnAccumulator()
    h = acc.start("q", ["a"])
    first = acc.on_delta(h, "[START:a]x")[0]
    again = acc.on_delta(h, "yz")[0]
    final = acc.on_stream_end(h)[0]
    assert first.created_at == again.created_at == final.created_at
    assert final.text == "xyz"


def test_failure_keeps_partial_content_closed():
    acc = TurnAccumulator()
    h = acc.start("q", ["a"])
    acc.on_delta(h, "[START:a]partial")
    cause = ConnectionError("reset")
    failure = acc.on_stream_failure(h, cause)
    assert failure.cause is cause
    assert failure.handle is h
    assert _shape(failure.records) == [("a", "partial", False)]

    # Further deltas are ignored.
    acc.on_delta(h, " more[END]")
    assert _shape(acc.snapshot(h)) == [("a", "partial", False)]


def test_failure_before_any_delta_has_no_records():
    acc = TurnAccumulator()
    h = acc.start("q", ["a"])
    assert acc.on_stream_failure(h, RuntimeError("x")).records == []


def test_start_resets_buffer_and_stale_handles_are_ignored():
    acc = TurnAccumulator()
    old = acc.start("one", ["a"])
    acc.on_delta(old, "[START:a]first[END]")
    acc.on_stream_end(old)

    new = acc.start("two", ["a"])
    assert acc.raw_text == ""
    assert acc.snapshot(new) == []
    assert acc.snapshot(old) == []

    assert acc.on_delta(old, "[START:a]late[END]") == []
    assert acc.raw_text == ""


def test_roster_is_fixed_for_the_turn():
    acc = TurnAccumulator()
    active = ["a"]
    h = acc.start("q", active)
    active.append("b")
    acc.on_delta(h, "[START:b]not yet[END][START:a]ok[END]")
    assert _shape(acc.snapshot(h)) == [("a", "ok", False)]
    assert h.roster == frozenset({"a"})
