"""
End-to-end tests: source text in, rendered output and diagnostics out.
"""

import json

import pytest

from interpreter import (
    Environment,
    Interpreter,
    InterpreterConfig,
    OutputBuffer,
    execute,
)


def run(source, **config):
    result = execute(source, InterpreterConfig(**config))
    return result.output, result.diagnostics


class TestScenarios:
    """Whole-program behaviour"""

    def test_hello_world(self):
        output, diagnostics = run(
            "DATA lv_text TYPE string VALUE 'Hola mundo'.\n"
            "WRITE: / 'Mensaje:', lv_text."
        )
        assert output == "Mensaje: Hola mundo"
        assert diagnostics == []

    def test_add_then_write(self):
        output, diagnostics = run("DATA lv_num TYPE i VALUE 5. ADD 3 TO lv_num. WRITE: / lv_num.")
        assert output == "8"
        assert diagnostics == []

    def test_undeclared_variable_does_not_stop_the_run(self):
        output, diagnostics = run("WRITE lv_missing.\nWRITE 'after'.")
        assert output == "after"
        assert len(diagnostics) == 1
        assert "lv_missing" in diagnostics[0]
        assert diagnostics[0].startswith("Line 1:")

    def test_structural_error_runs_nothing(self):
        output, diagnostics = run("WRITE 'before'. IF 1 = 1. WRITE 'x'. ENDDO.")
        assert output == ""
        assert len(diagnostics) == 1

    def test_keywords_and_names_are_case_insensitive(self):
        output, _ = run("data lv type i value 1. write LV.")
        assert output == "1"


class TestStatements:
    """Individual statement handlers"""

    def test_write_lines(self):
        output, _ = run("WRITE: / 'a', / 'b'. WRITE 'c'.")
        assert output == "a\nb c"

    def test_bare_slash_starts_a_line(self):
        output, _ = run("WRITE 'a'. WRITE /. WRITE 'b'.")
        assert output == "a\nb"

    def test_write_is_all_or_nothing(self):
        output, diagnostics = run("WRITE: 'a', lv_missing. WRITE 'b'.")
        assert output == "b"
        assert len(diagnostics) == 1

    def test_subtract_coerces_amount_to_target(self):
        output, _ = run("DATA n TYPE i VALUE 10. SUBTRACT 2.5 FROM n. WRITE n.")
        assert output == "8"

    def test_add_requires_numeric_target(self):
        _, diagnostics = run("DATA s TYPE string. ADD 1 TO s.")
        assert "only supports numeric" in diagnostics[0]

    def test_assignment_coerces(self):
        output, _ = run("DATA n TYPE i. n = 7 / 2. WRITE n.")
        assert output == "3"

    def test_string_assignment_from_boolean(self):
        output, _ = run("DATA s TYPE string. s = 1 < 2. WRITE s.")
        assert output == "TRUE"

    def test_packed_decimals(self):
        output, _ = run("DATA p TYPE p LENGTH 8 DECIMALS 2 VALUE '2.675'. WRITE p.")
        assert output == "2.68"

    def test_redeclaration(self):
        _, diagnostics = run("DATA a TYPE i. DATA a TYPE string.")
        assert diagnostics == ['Line 1: Variable "a" is already declared']

    def test_failed_declaration_is_not_visible(self):
        output, diagnostics = run("DATA lv TYPE i VALUE 'abc'. WRITE lv.")
        assert output == ""
        assert len(diagnostics) == 2
        assert "must be numeric" in diagnostics[0]
        assert "not declared" in diagnostics[1]

    def test_declaration_chain_commits_in_order(self):
        output, diagnostics = run(
            "DATA: a TYPE i VALUE 1, b TYPE i VALUE 'x', c TYPE i VALUE 3. WRITE a. WRITE c."
        )
        assert output == "1"
        assert len(diagnostics) == 2

    def test_invalid_metadata_is_statement_level(self):
        output, diagnostics = run("DATA lv TYPE i LENGTH 4. WRITE 'next'.")
        assert output == "next"
        assert "does not accept LENGTH" in diagnostics[0]

    def test_unsupported_statement(self):
        output, diagnostics = run("FOO bar. WRITE 1.")
        assert output == "1"
        assert diagnostics == ['Line 1: Unsupported statement: "FOO bar"']

    def test_table_assignment_rejected(self):
        _, diagnostics = run("DATA lt TYPE TABLE OF i. lt = 1.")
        assert "use APPEND" in diagnostics[0]

    def test_clear_resets_scalars_and_tables(self):
        interpreter = Interpreter()
        result = interpreter.execute(
            "DATA: lt TYPE TABLE OF string, lv TYPE i VALUE 4. APPEND 'a' TO lt. CLEAR: lt, lv. WRITE lv."
        )
        assert result.output == "0"
        assert interpreter.env.get("lt").value == []

    def test_clear_checks_every_name_first(self):
        output, diagnostics = run("DATA lv TYPE i VALUE 4. CLEAR: lv, lv_missing. WRITE lv.")
        assert output == "4"
        assert len(diagnostics) == 1

    def test_table_value_initializer(self):
        output, _ = run(
            "DATA lt TYPE TABLE OF i. APPEND 7 TO lt. "
            "DATA: lt2 TYPE TABLE OF string VALUE lt, lv TYPE string. "
            "LOOP AT lt2 INTO lv. WRITE lv. ENDLOOP."
        )
        assert output == "7"


class TestDivision:
    """IEEE results surface as text"""

    def test_write_infinity_and_nan(self):
        output, diagnostics = run("WRITE: 1 / 0, -1 / 0, 0 / 0.")
        assert output == "Infinity -Infinity NaN"
        assert diagnostics == []

    def test_string_keeps_infinity(self):
        output, _ = run("DATA s TYPE string. s = 1 / 0. WRITE s.")
        assert output == "Infinity"

    def test_integer_rejects_infinity(self):
        _, diagnostics = run("DATA n TYPE i. n = 1 / 0.")
        assert "finite" in diagnostics[0]


class TestControlFlow:
    """Conditionals and loops"""

    @pytest.mark.parametrize("value, expected", [(9, "big"), (2, "mid"), (0, "small")])
    def test_branch_selection(self, value, expected):
        output, _ = run(
            f"DATA n TYPE i VALUE {value}. "
            "IF n > 5. WRITE 'big'. ELSEIF n > 1. WRITE 'mid'. ELSE. WRITE 'small'. ENDIF."
        )
        assert output == expected

    def test_no_branch_without_else(self):
        output, _ = run("IF 1 = 2. WRITE 'x'. ENDIF. WRITE 'y'.")
        assert output == "y"

    def test_condition_error_skips_the_whole_conditional(self):
        output, diagnostics = run("IF lv_missing = 1. WRITE 'a'. ELSE. WRITE 'b'. ENDIF. WRITE 'c'.")
        assert output == "c"
        assert len(diagnostics) == 1

    def test_do_count_is_fixed_at_entry(self):
        output, _ = run("DATA n TYPE i VALUE 3. DO n TIMES. ADD 1 TO n. WRITE / sy-index. ENDDO. WRITE / n.")
        assert output == "1\n2\n3\n6"

    def test_loop_times(self):
        output, _ = run("LOOP 2 TIMES. WRITE 'x'. ENDLOOP.")
        assert output == "x x"

    def test_zero_times(self):
        output, diagnostics = run("DO 0 TIMES. WRITE 'x'. ENDDO.")
        assert output == ""
        assert diagnostics == []

    def test_negative_count(self):
        output, diagnostics = run("DO -1 TIMES. WRITE 'x'. ENDDO. WRITE 'ok'.")
        assert output == "ok"
        assert "non-negative integer" in diagnostics[0]

    def test_sy_index_restored(self):
        output, _ = run("DO 2 TIMES. DO 3 TIMES. ENDDO. WRITE / sy-index. ENDDO. WRITE / sy-index.")
        assert output == "1\n2\n0"

    def test_loop_at_in_append_order(self):
        output, _ = run(
            "DATA: lt TYPE STANDARD TABLE OF i, lv TYPE i. "
            "APPEND 10 TO lt. APPEND 20 TO lt. APPEND 30 TO lt. "
            "LOOP AT lt INTO lv. WRITE / lv. ENDLOOP."
        )
        assert output == "10\n20\n30"

    def test_loop_at_iterates_entry_snapshot(self):
        output, _ = run(
            "DATA: lt TYPE TABLE OF i, lv TYPE i. APPEND 1 TO lt. APPEND 2 TO lt. "
            "LOOP AT lt INTO lv. APPEND lv TO lt. ENDLOOP. "
            "LOOP AT lt INTO lv. WRITE sy-tabix. ENDLOOP."
        )
        assert output == "1 2 3 4"

    def test_work_area_kind_mismatch(self):
        output, diagnostics = run(
            "DATA: lt TYPE TABLE OF i, lv TYPE string. APPEND 1 TO lt. "
            "LOOP AT lt INTO lv. WRITE 'inside'. ENDLOOP. WRITE 'after'."
        )
        assert output == "after"
        assert len(diagnostics) == 1
        assert "does not match" in diagnostics[0]

    def test_loop_at_requires_table(self):
        _, diagnostics = run("DATA: lv TYPE i, wa TYPE i. LOOP AT lv INTO wa. ENDLOOP.")
        assert "requires an internal table" in diagnostics[0]


class TestIterationBudget:
    """Loop iterations are capped per run"""

    def test_budget_exceeded_keeps_output(self):
        output, diagnostics = run(
            "WRITE 'start'. DO 3 TIMES. WRITE 'x'. ENDDO. "
            "DO 3 TIMES. WRITE 'y'. ENDDO. WRITE 'end'.",
            max_iterations=5,
        )
        assert output == "start x x x"
        assert len(diagnostics) == 1
        assert "Too many iterations" in diagnostics[0]

    def test_budget_is_shared_by_nested_loops(self):
        _, diagnostics = run("DO 3 TIMES. DO 3 TIMES. ENDDO. ENDDO.", max_iterations=10)
        assert len(diagnostics) == 1

    def test_budget_within_limit(self):
        _, diagnostics = run("DO 3 TIMES. DO 2 TIMES. ENDDO. ENDDO.", max_iterations=9)
        assert diagnostics == []


class TestEnvironment:
    """Variable store"""

    def test_system_fields_predeclared(self):
        env = Environment()
        assert env.has("SY-INDEX")
        assert env.get("sy-tabix").value == 0

    def test_fresh_environment_per_run(self):
        interpreter = Interpreter()
        interpreter.execute("DATA a TYPE i.")
        result = interpreter.execute("DATA a TYPE i. WRITE a.")
        assert result.diagnostics == []


class TestOutputBuffer:
    """Line assembly"""

    def test_render_trims(self):
        buffer = OutputBuffer()
        buffer.write("a ")
        buffer.new_line()
        buffer.write("b")
        buffer.new_line()
        assert buffer.render() == "a\nb"

    def test_empty(self):
        assert OutputBuffer().render() == ""


class TestStateLogger:
    """Step trace"""

    def test_verbose_records_snapshots(self):
        interpreter = Interpreter(InterpreterConfig(verbose=True))
        interpreter.execute("DATA n TYPE i VALUE 2. WRITE n.")
        entries = interpreter.logger.entries
        assert [entry.rule for entry in entries] == ["DATA", "WRITE"]
        assert entries[1].env_snapshot["n"] == "I:2"
        assert entries[0].state_id == "s_000000"

    def test_quiet_run_skips_snapshots(self):
        interpreter = Interpreter()
        interpreter.execute("WRITE 1.")
        assert interpreter.logger.entries[0].env_snapshot is None

    def test_json_trace(self):
        interpreter = Interpreter()
        interpreter.execute("DO 1 TIMES. WRITE 1. ENDDO.")
        steps = json.loads(interpreter.logger.to_json())["steps"]
        assert [step["rule"] for step in steps] == ["DO", "WRITE"]
        assert steps[1]["source_location"] == {"line": 1, "statement": "WRITE 1"}

    def test_json_trace_lists_failures(self):
        interpreter = Interpreter()
        interpreter.execute("DATA s TYPE string. ADD 1 TO s. FOO.")
        errors = json.loads(interpreter.logger.to_json())["errors"]
        assert [error["rule"] for error in errors] == ["ADD", "UNKNOWN"]
        assert errors[0]["type"] == "ABAPRuntimeError"
        assert errors[0]["failing_step_index"] == 1
        assert errors[0]["line"] == 1

    def test_expression_failures_use_generic_rule(self):
        interpreter = Interpreter()
        interpreter.execute("WRITE lv_missing.")
        assert interpreter.logger.errors[0]["rule"] == "runtime"
        assert interpreter.logger.errors[0]["type"] == "ExpressionError"


class TestDeepPrograms:
    """Nesting depth is not bounded by the Python call stack"""

    def test_deeply_nested_ifs(self):
        depth = 600
        output, diagnostics = run("IF 1 = 1. " * depth + "WRITE 'x'. " + "ENDIF. " * depth)
        assert output == "x"
        assert diagnostics == []

    def test_deeply_nested_loops_restore_sy_index(self):
        depth = 500
        output, diagnostics = run(
            "DO 1 TIMES. " * depth + "WRITE sy-index. " + "ENDDO. " * depth + "WRITE / sy-index."
        )
        assert output == "1\n0"
        assert diagnostics == []

    def test_budget_abort_restores_sy_index(self):
        interpreter = Interpreter(InterpreterConfig(max_iterations=6))
        result = interpreter.execute("DO 2 TIMES. DO 5 TIMES. ENDDO. ENDDO. WRITE sy-index.")
        assert result.output == ""
        assert "Too many iterations" in result.diagnostics[0]
        assert interpreter.env.get("sy-index").value == 0

    def test_deeply_nested_parentheses(self):
        depth = 400
        output, diagnostics = run("WRITE " + "(" * depth + "1" + ")" * depth + ". WRITE 'after'.")
        assert output.endswith("after")
        assert len(diagnostics) <= 1

    def test_parentheses_beyond_stack_become_a_diagnostic(self):
        depth = 5000
        output, diagnostics = run("WRITE " + "(" * depth + "1" + ")" * depth + ". WRITE 'after'.")
        assert output == "after"
        assert diagnostics == ["Line 1: Expression is nested too deeply"]

    def test_packed_value_beyond_default_precision(self):
        output, diagnostics = run(
            "DATA p TYPE p DECIMALS 2 VALUE 1000000000000000000000000000000. WRITE p. WRITE 'after'."
        )
        assert output == "1e+30 after"
        assert diagnostics == []
