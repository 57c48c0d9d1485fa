import pytest

from lexer import SesParseError
from parser import (
    Assignment,
    CallExpression,
    CallScriptStatement,
    CallStatement,
    CopyRangeStatement,
    DeleteStatement,
    IfStatement,
    NumericExpression,
    ReplaceStatement,
    ScriptDef,
    TextExpression,
    WhileStatement,
    parse_script,
)


def _parse(text, **kwargs):
    return parse_script(text, "demo.ses", **kwargs)


def test_script_name_defaults_to_file_stem():
    script = parse_script("log \"x\"\n", "/tmp/scripts/cleanup.ses")
    assert script.name == "cleanup"
    assert script.directory == "/tmp/scripts"


def test_assignment_variants():
    script = _parse('a = "x" ~b:1 append\nb := 1 + 2\nc = string.length "abc"\n')
    first, second, third = script.statements
    assert isinstance(first, Assignment) and first.kind == "plain"
    assert isinstance(first.expression, TextExpression)
    assert first.expression.append is True
    assert [p.type for p in first.expression.parts] == ["STRING", "BUFFER"]
    assert isinstance(second.expression, NumericExpression)
    assert isinstance(third.expression, CallExpression)
    assert third.expression.name == "string.length"


def test_buffer_value_needs_selector():
    with pytest.raises(SesParseError, match="line selector"):
        _parse("a = ~b\n")


def test_if_else_blocks():
    script = _parse('if $(x) == 1\n  log "one"\nelse\n  log "other"\nendif\n')
    (statement,) = script.statements
    assert isinstance(statement, IfStatement)
    assert len(statement.then_block.statements) == 1
    assert statement.else_block is not None
    assert statement.condition.operator == "=="


def test_while_with_search_condition():
    script = _parse("while s/x/ ~b\n  move +1\nendwhile\n")
    (statement,) = script.statements
    assert isinstance(statement, WhileStatement)
    assert statement.condition.is_search
    assert statement.condition.buffer.value == "b"


def test_missing_closer_reports_name_and_line():
    with pytest.raises(SesParseError, match=r"Missing endif in script 'demo' at demo.ses:3"):
        _parse('if 1\n  log "x"\n')


def test_unexpected_closer():
    with pytest.raises(SesParseError, match="Unexpected 'endwhile'"):
        _parse("endwhile\n")


def test_leave_outside_loop():
    with pytest.raises(SesParseError, match="outside of a loop"):
        _parse("leave\n")


def test_leave_inside_subroutine_does_not_see_outer_loop():
    with pytest.raises(SesParseError):
        _parse("while 1\n  script inner\n    leave\n  endscript\nendwhile\n")


def test_unknown_statement():
    with pytest.raises(SesParseError, match="Unknown statement 'frobnicate'"):
        _parse("frobnicate now\n")


def test_readonly_assignment_rejected():
    with pytest.raises(SesParseError, match="read-only"):
        _parse('__line = "1"\n')


def test_invalid_arithmetic_is_a_parse_error():
    with pytest.raises(SesParseError, match="Invalid arithmetic"):
        _parse("n := 1 + abc\n")


def test_subroutines_are_collected():
    script = _parse('script greet\n  log "hi"\nendscript\ncall greet who=me\n')
    assert set(script.subroutines) == {"greet"}
    assert isinstance(script.statements[0], ScriptDef)
    call = script.statements[1]
    assert isinstance(call, CallScriptStatement)
    assert [a.value for a in call.arguments] == ["who=me"]


def test_duplicate_and_nested_scripts():
    with pytest.raises(SesParseError, match="already defined"):
        _parse("script a\nendscript\nscript a\nendscript\n")
    with pytest.raises(SesParseError, match="Nested script"):
        _parse("script a\nscript b\nendscript\nendscript\n")


def test_delete_and_replace_ranges():
    script = _parse(
        "delete behind 3:2 excluding 3:5 in ~b\n"
        'replace s/a/ "b" from 1:1 including 2:0 count=3 if s/z/\n'
    )
    delete, replace = script.statements
    assert isinstance(delete, DeleteStatement)
    assert (delete.start_mode, delete.end_mode, delete.buffer.value) == ("behind", "excluding", "b")
    assert isinstance(replace, ReplaceStatement)
    assert (replace.start_mode, replace.end_mode) == ("from", "including")
    assert replace.count.value == "3"
    assert replace.condition.is_search


def test_copy_range_form():
    script = _parse("copy from ~src starting 2:1 including 3:0 to ~dst append\n")
    (statement,) = script.statements
    assert isinstance(statement, CopyRangeStatement)
    assert statement.end_mode == "including"
    assert statement.target.value == "dst"
    assert statement.append is True


def test_function_namespaces_are_configurable():
    script = _parse("stats.sum ~b\n", function_namespaces={"stats"})
    assert isinstance(script.statements[0], CallStatement)
    with pytest.raises(SesParseError):
        _parse("stats.sum ~b\n")


def test_keyword_bang_suffix_is_accepted():
    script = _parse('log! "x"\n')
    assert script.statements[0].location.statement == 'log! "x"'
