import pytest

from lexer import Lexer, SesParseError, SigilProfile


def _tokens(text, profile=SigilProfile.DOLLAR):
    return [t for t in Lexer(text, "<test>", profile=profile).tokenize() if t.type not in ("NEWLINE", "EOF")]


def test_comments_and_blank_lines_are_skipped():
    tokens = Lexer("# header\n\n  log \"hi\"\n", "<test>").tokenize()
    assert [t.type for t in tokens] == ["WORD", "STRING", "NEWLINE", "EOF"]
    assert tokens[0].line == 3


def test_assignment_kinds():
    plain, conditional = _tokens("x = \"a\""), _tokens("y ?= 2")
    assert [(t.type, t.value) for t in plain] == [("IDENT", "x"), ("ASSIGN", "="), ("STRING", "a")]
    assert [(t.type, t.value) for t in conditional][:2] == [("IDENT", "y"), ("ASSIGN", "?=")]


def test_numeric_assignment_keeps_expression_raw():
    tokens = _tokens("n := ($(a) + 2) * 3")
    assert tokens[-1].type == "EXPR"
    assert tokens[-1].value == "($(a) + 2) * 3"


def test_numeric_assignment_with_function_is_tokenized():
    tokens = _tokens("n := string.length \"abc\"")
    assert [t.type for t in tokens] == ["IDENT", "ASSIGN", "WORD", "STRING"]


def test_pattern_token_with_flags():
    (keyword, pattern) = _tokens("move r/a+b/iB")
    assert keyword.value == "move"
    assert pattern.type == "PATTERN"
    assert (pattern.kind, pattern.value, pattern.flags) == ("r", "a+b", "iB")


def test_words_starting_with_pattern_letters_stay_words():
    tokens = _tokens("mark set")
    assert [(t.type, t.value) for t in tokens] == [("WORD", "mark"), ("WORD", "set")]


def test_buffer_with_selector():
    (_, buffer) = _tokens("x = ~data:2-3")
    assert buffer.type == "BUFFER"
    assert buffer.value == "data"
    assert buffer.selector == (2, 3)


def test_other_delimiters_make_strings():
    tokens = _tokens("log 'single' |pipe|")
    assert [(t.type, t.value, t.delimiter) for t in tokens[1:]] == [
        ("STRING", "single", "'"),
        ("STRING", "pipe", "|"),
    ]


def test_signed_positions_are_words():
    tokens = _tokens("move +1:-1")
    assert tokens[1].type == "WORD"
    assert tokens[1].value == "+1:-1"


def test_heredoc_collects_body():
    text = "copy <<EOS ~b\none $(x)\n  two\nEOS\nlog \"after\"\n"
    tokens = Lexer(text, "<test>").tokenize()
    heredoc = tokens[1]
    assert heredoc.type == "HEREDOC"
    assert heredoc.kind == "interpolate"
    assert heredoc.lines == ["one $(x)", "  two"]
    assert tokens[2].type == "BUFFER"
    assert tokens[4].value == "log"
    assert tokens[4].line == 5


def test_quoted_heredoc_is_literal():
    tokens = Lexer("copy <<'END'\n$(x)\nEND\n", "<test>").tokenize()
    assert tokens[1].kind == "literal"
    assert tokens[1].lines == ["$(x)"]


def test_unterminated_heredoc_is_an_error():
    with pytest.raises(SesParseError, match="Unterminated heredoc"):
        Lexer("copy <<EOS\nbody\n", "<test>").tokenize()


def test_malformed_heredoc_tag():
    with pytest.raises(SesParseError, match="Malformed heredoc"):
        Lexer("copy <<'EOS\nbody\n", "<test>").tokenize()


def test_unterminated_string():
    with pytest.raises(SesParseError, match="Unterminated string"):
        Lexer("log \"open", "<test>").tokenize()


def test_bang_profile_references():
    tokens = _tokens("log !(name) !buf", profile=SigilProfile.BANG)
    assert [(t.type, t.value) for t in tokens[1:]] == [("WORD", "!(name)"), ("BUFFER", "buf")]


def test_bang_profile_keeps_not_equal_operator():
    tokens = _tokens("if !(a) != 3", profile=SigilProfile.BANG)
    assert [t.value for t in tokens] == ["if", "!(a)", "!=", "3"]
