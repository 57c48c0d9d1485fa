import pytest

from buffers import END_OF_LINE, START, BufferStore, LineBuffer, Position, PositionSpec
from evaluator import EvaluationError
from matcher import Matcher, SearchPattern, glob_to_regex


def _buffer(*lines):
    return LineBuffer("b", list(lines))


def _matcher(kind, body, flags=""):
    return Matcher(SearchPattern(kind, body, flags))


def test_position_spec_resolution():
    cursor = Position(3, 4)
    assert PositionSpec.parse("1:2").resolve(cursor) == Position(1, 2)
    assert PositionSpec.parse("+1:-1").resolve(cursor) == Position(4, 3)
    assert PositionSpec.parse("0:0").resolve(cursor) == Position(3, END_OF_LINE)
    assert PositionSpec.parse("-2").resolve(cursor) == Position(1, 4)
    with pytest.raises(EvaluationError, match="Invalid position"):
        PositionSpec.parse("here")


def test_clamp_to_end_of_line():
    buffer = _buffer("Line1", "Line2")
    assert buffer.clamp(Position(9, 99)) == Position(2, 6)
    assert buffer.clamp(Position(0, 0)) == START
    assert LineBuffer("empty").clamp(Position(5, 5)) == START


def test_forward_search_moves_behind_hit():
    buffer = _buffer("alpha", "beta gamma")
    assert buffer.search(_matcher("s", "gam"))
    assert buffer.match.start == Position(2, 6)
    assert buffer.cursor == Position(2, 9)
    assert buffer.match.hit == "gam"


def test_backward_search_moves_to_hit_start():
    buffer = _buffer("one x", "two x")
    buffer.move_to(Position(2, 3))
    assert buffer.search(_matcher("s", "x", "B"))
    assert buffer.cursor == Position(1, 5)


def test_backward_search_finds_overlapping_hit():
    buffer = _buffer("aaa")
    buffer.move_to(Position(1, 4))
    assert buffer.search(_matcher("r", "aa", "B"))
    assert buffer.match.start == Position(1, 2)
    assert buffer.cursor == Position(1, 2)


def test_failed_search_keeps_cursor():
    buffer = _buffer("abc")
    buffer.move_to(Position(1, 2))
    assert not buffer.search(_matcher("s", "zzz"))
    assert buffer.cursor == Position(1, 2)
    assert buffer.match.found is False
    assert buffer.match.hit == ""


def test_line_scoped_search_and_anchor():
    buffer = _buffer("abc", "xyz")
    assert not buffer.search(_matcher("s", "xyz", "L"))
    assert buffer.search(_matcher("s", "a", "<"))
    assert buffer.match.start == Position(1, 1)


def test_capture_groups_are_recorded():
    buffer = _buffer("key=value")
    buffer.search(_matcher("r", r"(\w+)=(\w+)"))
    assert buffer.match.groups == ("key", "value")


def test_marks_stack():
    buffer = _buffer("abc", "def")
    assert buffer.mark == START
    buffer.push_mark(Position(2, 2))
    buffer.move_to(Position(1, 3))
    buffer.exchange_mark()
    assert buffer.cursor == Position(2, 2)
    assert buffer.mark == Position(1, 3)
    buffer.pop_mark()
    assert buffer.mark == START
    buffer.pop_mark()
    assert buffer.marks == [START]


def test_extract_is_half_open():
    buffer = _buffer("abcd", "efgh", "ijkl")
    assert buffer.extract(Position(1, 2), Position(1, 4)) == ["bc"]
    assert buffer.extract(Position(1, 3), Position(3, 2)) == ["cd", "efgh", "i"]


def test_delete_range_joins_lines():
    buffer = _buffer("abcd", "efgh")
    buffer.delete_range(Position(1, 3), Position(2, 2))
    assert buffer.lines == ["abfgh"]
    assert buffer.cursor == Position(1, 3)


def test_insert_single_and_multiple_lines():
    buffer = _buffer("Line1", "Line2")
    buffer.insert(Position(2, 5), ["XXX"])
    assert buffer.lines == ["Line1", "LineXXX2"]
    assert buffer.cursor == Position(2, 8)
    buffer.insert(Position(1, 1), ["new", ""])
    assert buffer.lines == ["new", "Line1", "LineXXX2"]
    buffer.insert(Position(9, 1), ["tail"])
    assert buffer.lines[-1] == "tail"


def test_replace_respects_range_and_limit():
    buffer = _buffer("aaa aaa", "aaa")
    count = buffer.replace(_matcher("s", "a"), "b", START, buffer.end_position(), 4)
    assert count == 4
    assert buffer.lines == ["bbb baa", "aaa"]


def test_replace_expands_groups():
    buffer = _buffer("x=1, y=2")
    buffer.replace(_matcher("r", r"(\w)=(\d)"), "$2:$1$9", START, buffer.end_position())
    assert buffer.lines == ["1:x$9, 2:y$9"]


def test_replace_line_filter_skips_other_lines():
    buffer = _buffer("a x", "a", "a x")
    count = buffer.replace(_matcher("s", "a"), "b", START, buffer.end_position(), line_filter=_matcher("s", "x"))
    assert count == 2
    assert buffer.lines == ["b x", "a", "b x"]



def test_selection_of_lines():
    buffer = _buffer("a", "b", "c")
    assert buffer.selection(2) == "b"
    assert buffer.selection(2, 3) == "b\nc"
    assert buffer.selection(7) == ""


def test_store_has_reserved_buffers():
    store = BufferStore()
    assert "_main" in store and "_result" in store
    assert store.get("other") is None
    assert store.ensure("other") is store.get("other")
    assert store.names() == ["_main", "_result", "other"]


def test_glob_translation():
    matcher = _matcher("m", "*.t?t")
    assert matcher.matches("notes.txt")
    assert not matcher.matches("notes.md")
    assert glob_to_regex("[!a]b") == "[^a]b"
