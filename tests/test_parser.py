from __future__ import annotations

import pytest

from bubbles.grammar import Placeholders, format_segment, iter_segments, protocol_instruction
from bubbles.parser import parse_bubbles

ROSTER = {"a", "b"}


def _shape(records):
    return [(r.speaker, r.text, r.open) for r in records]


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("[START:a]hi[END]", [("a", "hi", False)]),
        ("[START:a]hi", [("a", "hi", True)]),
        ("[START:a]hi[END][START:b]yo[END]", [("a", "hi", False), ("b", "yo", False)]),
        ("[START:c]nope[END]", []),
        ("random preamble [START:a]hi[END] trailing", [("a", "hi", False)]),
    ],
)
def test_concrete_cases(raw, expected):
    assert _shape(parse_bubbles(raw, ROSTER)) == expected


def test_records_are_agent_records():
    (rec,) = parse_bubbles("[START:b]hello[END]", ROSTER)
    assert rec.role == "agent"
    assert rec.speaker == "b"
    assert not rec.is_user


def test_no_markers_yields_nothing():
    assert parse_bubbles("the model ignored the protocol", ROSTER) == []
    assert parse_bubbles("", ROSTER) == []


def test_whitespace_is_trimmed():
    recs = parse_bubbles("[START:a]\n  spaced out \n[END][START:b]   tail", ROSTER)
    assert _shape(recs) == [("a", "spaced out", False), ("b", "tail", True)]


def test_empty_segments_use_distinct_placeholders():
    closed, still_open = parse_bubbles("[START:a][END][START:b]  ", ROSTER)
    assert (closed.text, closed.open) == ("...", False)
    assert (still_open.text, still_open.open) == ("thinking…", True)


def test_custom_placeholders():
    ph = Placeholders(open="typing", closed="(silence)")
    recs = parse_bubbles("[START:a][END][START:b]", ROSTER, placeholders=ph)
    assert [r.text for r in recs] == ["(silence)", "typing"]


def test_same_persona_twice_gives_two_records():
    recs = parse_bubbles("[START:a]one[END][START:a]two[END]", ROSTER)
    assert _shape(recs) == [("a", "one", False), ("a", "two", False)]


def test_segments_do_not_nest():
    # The inner opening marker is plain content of the open segment.
    recs = parse_bubbles("[START:a]x [START:b]y[END] z", ROSTER)
    assert _shape(recs) == [("a", "x [START:b]y", False)]


def test_partial_marker_at_tail_is_not_emitted():
    assert _shape(parse_bubbles("[START:a]hi[END][START:", ROSTER)) == [("a", "hi", False)]
    assert _shape(parse_bubbles("[START:a]hi[END][START:b", ROSTER)) == [("a", "hi", False)]
    # Inside an open segment the partial marker is trailing content.
    assert _shape(parse_bubbles("[START:a]hi[STA", ROSTER)) == [("a", "hi[STA", True)]


def test_partial_end_marker_keeps_segment_open():
    assert _shape(parse_bubbles("[START:a]hi[EN", ROSTER)) == [("a", "hi[EN", True)]


def test_unknown_persona_swallows_its_content():
    raw = "[START:zed]secret [START:a]hidden[END][START:b]shown[END]"
    assert _shape(parse_bubbles(raw, ROSTER)) == [("b", "shown", False)]


def test_ids_are_case_sensitive():
    assert parse_bubbles("[START:A]upper[END]", ROSTER) == []


def test_malformed_marker_is_ignored():
    assert parse_bubbles("[START:not-an-id]x[END]", ROSTER) == []
    assert parse_bubbles("[START:]x[END]", ROSTER) == []


def test_trailing_newline_does_not_close_segment():
    (rec,) = parse_bubbles("[START:a]line\n", ROSTER)
    assert rec.open and rec.text == "line"


def test_finalize_closes_open_segment():
    recs = parse_bubbles("[START:a]done[END][START:b]cut off", ROSTER, finalize=True)
    assert _shape(recs) == [("a", "done", False), ("b", "cut off", False)]
    (empty,) = parse_bubbles("[START:a]", ROSTER, finalize=True)
    assert empty.text == "..."


def test_timestamps_are_reused_by_position():
    recs = parse_bubbles("[START:a]x[END][START:b]y", ROSTER, timestamps=[1.0])
    assert recs[0].created_at == 1.0
    assert recs[1].created_at != 1.0


def test_roster_accepts_any_collection():
    assert _shape(parse_bubbles("[START:a]x[END]", ["a"])) == [("a", "x", False)]
    assert _shape(parse_bubbles("[START:a]x[END]", {"a": object()})) == [("a", "x", False)]


# -----------------------------
# Properties
# -----------------------------

SAMPLES = [
    "[START:a]hi[END][START:b]yo[END]",
    "chatter [START:a]  first  [END]\n[START:c]ignored[END][START:b]second is long[END] tail",
    "[START:b][END][START:a]a[START:b]inner[END][START:a]open end",
    "[START:a]多字节内容[END][START:b]继续",
]


@pytest.mark.parametrize("raw", SAMPLES)
def test_idempotent(raw):
    assert _shape(parse_bubbles(raw, ROSTER)) == _shape(parse_bubbles(raw, ROSTER))


@pytest.mark.parametrize("raw", SAMPLES)
def test_closed_records_survive_every_extension(raw):
    for cut in range(len(raw) + 1):
        before = parse_bubbles(raw[:cut], ROSTER)
        after = parse_bubbles(raw, ROSTER)
        closed = [(r.speaker, r.text) for r in before if not r.open]
        assert [(r.speaker, r.text) for r in after[: len(closed)]] == closed
        assert all(not r.open for r in after[: len(closed)])


@pytest.mark.parametrize("raw", SAMPLES)
def test_at_most_last_record_open(raw):
    for cut in range(len(raw) + 1):
        recs = parse_bubbles(raw[:cut], ROSTER)
        assert all(not r.open for r in recs[:-1])


@pytest.mark.parametrize("raw", SAMPLES)
def test_roster_filtering(raw):
    for cut in range(len(raw) + 1):
        assert all(r.speaker in ROSTER for r in parse_bubbles(raw[:cut], ROSTER))
    assert parse_bubbles(raw, {"nobody"}) == []


# -----------------------------
# Grammar helpers
# -----------------------------

def test_format_segment_round_trips_through_parser():
    raw = format_segment("a", "hello") + format_segment("b", "still going", closed=False)
    assert _shape(parse_bubbles(raw, ROSTER)) == [("a", "hello", False), ("b", "still going", True)]


def test_format_segment_rejects_bad_ids():
    with pytest.raises(ValueError):
        format_segment("has space", "x")


def test_iter_segments_reports_spans():
    raw = "xx[START:a]hi[END]"
    (seg,) = list(iter_segments(raw))
    assert raw[seg.start:seg.end] == "[START:a]hi[END]"
    assert seg.closed


def test_protocol_instruction_lists_ids():
    text = protocol_instruction(["a", "b"])
    assert "[START:id]content[END]" in text
    assert "Valid IDs: a, b." in text
