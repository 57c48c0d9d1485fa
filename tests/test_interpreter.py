import re
import sys


def test_move_scenario_ends_at_end_of_last_line(run_script):
    result = run_script(
        """
        move s/bc/
        log "$(__start) $(__hit) $(__position)"
        move 1:3
        move +1:-1
        log "$(__position)"
        move +1
        move 0:+99
        log "$(__position) $(__mark)"
        """,
        data=["Line1", "Line2", "Line3 abc"],
    )
    assert result.code == 0
    assert result.logs == ["3:8 bc 3:10", "2:2", "3:10 1:1"]


def test_delete_scenario(run_script):
    result = run_script(
        """
        delete from 2:2 including 2:4
        delete behind 3:2 excluding 3:5
        delete from 4:2 count 3
        """,
        data=["abcd", "a23456", "b23456", "c23456"],
    )
    assert result.code == 0
    assert result.lines() == ["abcd", "a3456", "b256", "c56"]


def test_conditional_assignment(run_script):
    result = run_script(
        """
        x := 3
        x ?= 2
        y ?= "Hi"
        log "$(x) $(y)"
        """
    )
    assert result.logs == ["3 Hi"]


def test_text_assignment_concatenates_parts(run_script):
    result = run_script(
        """
        copy <<EOS ~b
        first
        second
        EOS
        v = "<" ~b:2 ">"
        v = append "!"
        log "$(v)"
        """
    )
    assert result.logs == ["<second>!"]


def test_heredoc_quoting_controls_interpolation(run_script):
    result = run_script(
        """
        name = "World"
        copy <<'EOS' ~literal
        Hello $(name)
        EOS
        copy <<EOS ~expanded
        Hello $(name)
        EOS
        """
    )
    assert result.lines("literal") == ["Hello $(name)"]
    assert result.lines("expanded") == ["Hello World"]


def test_copy_append_and_range(run_script):
    result = run_script(
        """
        copy "tail" ~_main append
        copy from ~_main starting 1:2 including 2:2 to ~part
        """,
        data=["abcd", "efgh"],
    )
    assert result.lines() == ["abcd", "efgh", "tail"]
    assert result.lines("part") == ["bcd", "ef"]


def test_insert_text_and_heredoc(run_script, four_lines):
    result = run_script(
        """
        insert 2:5 "XXX"
        move 1:1
        if s/LineXXX2/
          log "correct"
        else
          log "wrong"
        endif
        insert 1:1 <<EOS
        header
        EOS
        """,
        data=four_lines,
    )
    assert result.logs == ["correct"]
    assert result.lines() == ["header", "Line1", "LineXXX2", "Line3", "Line4"]


def test_mark_operations(run_script, four_lines):
    result = run_script(
        """
        mark save pos1
        move 2:3
        mark set
        log "$(__mark) $(__position)"
        move +1:-1
        mark exchange
        log "$(__mark) $(__position)"
        mark restore $(pos1)
        log "$(__position)"
        mark push 4:2
        log "$(__mark)"
        mark pop
        log "$(__mark)"
        """,
        data=four_lines,
    )
    assert result.logs == ["2:3 2:3", "3:2 2:3", "1:1", "4:2", "3:2"]


def test_replace_count_caps_substitutions(run_script):
    result = run_script(
        """
        copy <<EOS ~b
        aa
        aaa
        EOS
        replace s/a/ "b" ~b count 4
        """
    )
    assert result.lines("b") == ["bb", "bba"]


def test_replace_scenario(run_script):
    result = run_script(
        """
        replace r/line(.)/i "Y$1" if s/4/
        replace r/line(.)/i "X$1" from 2:1 excluding 3:1
        replace r/line(.)/iL "l$1"
        """,
        data=["Line1 wow", "Line2 ABC", "Line3 abc", "Line4"],
    )
    assert result.code == 0
    assert result.lines() == ["l1 wow", "X2 ABC", "Line3 abc", "Y4"]


def test_replace_covers_buffer_and_line_flag_limits_to_cursor_line(run_script):
    result = run_script(
        """
        replace s/a/ "b"
        move 2:1
        replace r/(\\d)/L "<$1>"
        """,
        data=["a1", "a2", "c3"],
    )
    assert result.lines() == ["b1", "b<2>", "c3"]


def test_replace_search_condition_filters_lines(run_script):
    result = run_script(
        """
        move 2:1
        replace s/a/ "b" if s/x/
        log "$(__position)"
        """,
        data=["a x", "a", "a x"],
    )
    assert result.lines() == ["b x", "a", "b x"]
    assert result.logs == ["2:1"]


def test_replace_comparison_condition_gates_substitution(run_script):
    result = run_script(
        """
        replace s/a/ "A" if $(flag) == 1
        replace s/x/ "y" if $(flag) == 0
        """,
        data=["xa", "ma"],
        variables={"flag": "0"},
    )
    assert result.lines() == ["ya", "ma"]


def test_replace_in_explicit_range(run_script):
    result = run_script(
        'replace s/o/ "0" from 1:3 excluding 2:3\n',
        data=["foo boo", "zoo"],
    )
    assert result.lines() == ["fo0 b00", "z0o"]


def test_while_and_leave(run_script):
    result = run_script(
        """
        i := 0
        while $(i) < 10
          i := $(i) + 1
          leave if $(i) == 3
        endwhile
        log "$(i)"
        """
    )
    assert result.logs == ["3"]


def test_leave_two_levels(run_script):
    result = run_script(
        """
        rounds := 0
        while 1
          rounds := $(rounds) + 1
          while 1
            leave 2
          endwhile
          log "unreachable"
        endwhile
        log "done $(rounds)"
        """
    )
    assert result.logs == ["done 1"]


def test_search_loop_counts_hits(run_script):
    result = run_script(
        """
        hits := 0
        while r/o+/
          hits := $(hits) + 1
        endwhile
        log "$(hits)"
        """,
        data=["foo", "bar", "boo zoo"],
    )
    assert result.logs == ["3"]


def test_string_and_numeric_comparisons(run_script):
    result = run_script(
        """
        if "10" -lt "9"
          log "lexical"
        endif
        if 10 > 9
          log "numeric"
        endif
        if "0"
          log "quoted zero is true"
        endif
        if 0
          log "never"
        endif
        if "abc" ~= r/^a.c$/
          log "matched"
        endif
        """
    )
    assert result.logs == ["lexical", "numeric", "quoted zero is true", "matched"]


def test_subroutine_parameters_and_return_code(run_script):
    result = run_script(
        """
        script add
          sum := $(a) + $(b)
          _total = $(sum)
          exit 7
          log "not reached"
        endscript
        call add a=2 "b=3"
        log "$(_total) $(_rc)"
        """
    )
    assert result.logs == ["5 7"]


def test_subroutine_scope_is_isolated(run_script):
    result = run_script(
        """
        script inner
          hidden = "x"
        endscript
        call inner
        assert hidden
        """
    )
    assert result.code == 1
    assert result.engine.last_error.message == "Assertion failed, missing variable hidden"


def test_parameter_buffer(run_script):
    result = run_script(
        """
        script show
          log "$(name)=$(value)"
        endscript
        copy <<EOS ~params
        name=colour

        value=blue
        EOS
        call show ~params
        """
    )
    assert result.logs == ["colour=blue"]


def test_call_script_file_fills_result(run_script, tmp_path):
    (tmp_path / "helper.ses").write_text('copy "from $(who)" ~_result\n', encoding="utf-8")
    result = run_script(
        """
        call helper who=helper
        line = buffer.shift ~_result
        log "$(line)"
        call "helper.ses" who=path
        log ~_result
        """
    )
    assert result.code == 0
    assert result.logs == ["from helper", "from path"]


def test_missing_script_file(run_script):
    result = run_script("call nowhere\n")
    assert result.code == 1
    assert result.engine.last_error.message == "Script 'nowhere' not found"


def test_exit_global_ends_run(run_script):
    result = run_script(
        """
        script quit
          exit 4 global
        endscript
        call quit
        log "never"
        """
    )
    assert result.code == 4
    assert result.logs == []


def test_top_level_exit_code(run_script):
    result = run_script('log "before"\nexit 3\nlog "after"\n')
    assert result.code == 3
    assert result.logs == ["before"]


def test_stop_logs_error_and_fails(run_script):
    result = run_script('stop "boom"\nlog "after"\n')
    assert result.code == 1
    assert result.logs == []
    assert any("boom" in message for message in result.errors)


def test_recursion_limit(run_script):
    from interpreter import SesRecursionError

    result = run_script(
        """
        script again
          call again
        endscript
        call again
        """,
        recursion_limit=10,
    )
    assert result.code == 1
    assert isinstance(result.engine.last_error, SesRecursionError)


def test_recursion_limit_inside_nested_blocks(run_script):
    from interpreter import SesRecursionError

    before = sys.getrecursionlimit()
    result = run_script(
        """
        script down
          m := $(n) - 1
          while $(m) > 0
            if $(m) > 0
              if 1
                if 1
                  call down "n=$(m)"
                endif
              endif
            endif
            m := 0
          endwhile
        endscript
        call down "n=500"
        """
    )
    assert result.code == 1
    assert isinstance(result.engine.last_error, SesRecursionError)
    assert "Call depth exceeds 100 frames" in result.engine.last_error.message
    assert sys.getrecursionlimit() == before



def test_select_push_and_pop(run_script):
    result = run_script(
        """
        copy "other" ~side
        select push ~side
        log "$(__buffer) $(__lines)"
        select pop
        log "$(__buffer)"
        select pop
        """
    )
    assert result.logs == ["side 1", "_main"]
    assert result.code == 1
    assert "select pop" in result.engine.last_error.message


def test_select_requires_existing_buffer(run_script):
    result = run_script("select ~ghost\n")
    assert result.code == 1
    assert result.engine.last_error.message == "Unknown buffer '~ghost'"


def test_load_and_store(run_script, tmp_path):
    source = tmp_path / "in.txt"
    source.write_text("one\ntwo\n", encoding="utf-8")
    target = tmp_path / "out.txt"
    result = run_script(
        """
        load ~in "$(source)"
        log "$(__file)"
        store ~in "$(target)"
        store ~in "$(target)" append
        """,
        variables={"source": str(source), "target": str(target)},
    )
    assert result.code == 0
    assert target.read_text(encoding="utf-8") == "one\ntwo\none\ntwo\n"
    assert result.lines("in") == ["one", "two"]


def test_load_missing_file(run_script, tmp_path):
    result = run_script('load "$(path)"\n', variables={"path": str(tmp_path / "absent.txt")})
    assert result.code == 1
    assert "does not exist" in result.engine.last_error.message
    assert result.engine.last_error.location.line == 1


def test_unbound_variable_is_runtime_error(run_script):
    result = run_script('log "ok"\nlog "$(undefined)"\n')
    assert result.code == 1
    error = result.engine.last_error
    assert error.message == "Variable 'undefined' used before definition"
    assert error.location.line == 2
    assert any(message.endswith(":2: Variable 'undefined' used before definition") for message in result.errors)


def test_unknown_reserved_variable(run_script):
    result = run_script('log "$(__nonsense)"\n')
    assert result.code == 1
    assert "Unknown reserved variable" in result.engine.last_error.message


def test_log_buffer_writes_each_line(run_script):
    result = run_script("log ~_main\n", data=["a", "b"])
    assert result.logs == ["a", "b"]


def test_date_and_time_variables(run_script):
    result = run_script('log "$(__date) $(__time)"\n')
    assert len(result.logs) == 1
    assert re.fullmatch(r"\d{4}\.\d{2}\.\d{2} \d{2}:\d{2}:\d{2}", result.logs[0])


def test_search_anchors_start_and_end(run_script):
    result = run_script(
        """
        move 2:2
        move s/ab/<
        log "$(__start)"
        move 1:1
        move s/a/>B
        log "$(__start)"
        """,
        data=["ab", "ab"],
    )
    assert result.logs == ["1:1", "2:1"]


def test_local_exit_sets_return_code(run_script):
    result = run_script(
        """
        script sub
          exit 3 local
          log "not reached"
        endscript
        call sub
        log "$(_rc) after"
        """
    )
    assert result.code == 0
    assert result.logs == ["3 after"]
