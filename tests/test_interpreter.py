import json

import numpy as np
import pytest
from lexer import RatioParseError
from interpreter import (
    MAX_CALL_DEPTH,
    Environment,
    Interpreter,
    RatioFatalError,
    TracebackFormatter,
    Value,
    copy_value,
    format_value,
    make_array,
    wrap_int,
)


class TestBase:
    @pytest.fixture(autouse=True)
    def set_sinks(self):
        self.output = []
        self.errors = []

    def execute(self, body, functions="", inputs=None):
        feed = iter(inputs or [])
        self.interp = Interpreter(
            source=functions + "start .main\n" + body,
            filename="test.ratio",
            output_sink=self.output.append,
            error_sink=self.errors.append,
            input_provider=lambda prompt: next(feed, None),
        )
        self.interp.run()
        return self.output

    @property
    def messages(self):
        return [diagnostic.message for diagnostic in self.interp.diagnostics]


class TestValues(TestBase):
    def test_format(self):
        assert format_value(Value("int", -4)) == "-4"
        assert format_value(Value("float", 2.5)) == "2.500000"
        assert format_value(Value("bool", False)) == "false"
        assert format_value(Value("null", None)) == "null"
        nested = make_array([Value("int", 1), make_array([Value("string", "a")])])
        assert format_value(nested) == "{1, {a}}"

    def test_wrap_int(self):
        assert wrap_int(2 ** 63) == -(2 ** 63)
        assert wrap_int(-(2 ** 63) - 1) == 2 ** 63 - 1
        assert wrap_int(5) == 5

    def test_copy_does_not_alias(self):
        original = make_array([Value("int", 1), Value("int", 2)])
        duplicate = copy_value(original)
        duplicate.value[0] = Value("int", 99)
        assert original.value[0].value == 1
        assert isinstance(original.value, np.ndarray)

    def test_environment_set_targets_activation_root(self):
        root = Environment()
        loop = Environment(parent=root)
        loop.define("i", Value("int", 1))
        loop.set("total", Value("int", 5))
        loop.set("i", Value("int", 2))
        assert "total" in root.values
        assert "total" not in loop.values
        assert loop.get("i").value == 2
        assert not root.has("i")


class TestStatements(TestBase):
    def test_set_and_echo(self):
        assert self.execute("set x, 10\necho x\n") == ["10"]

    def test_echo_joins_with_spaces(self):
        assert self.execute('echo "a", 1, true, 1.5\n') == ["a 1 true 1.500000"]

    def test_add_result_binding(self):
        assert self.execute("add 3, 4 eq y\necho y\n") == ["7"]

    def test_arithmetic(self):
        source = (
            "sub 2, 5 eq a\n"
            "mul 6, 7 eq b\n"
            "div -7, 2 eq c\n"
            "mod -7, 2 eq d\n"
            "add 1, 2.5 eq e\n"
            "div 7.0, 2 eq f\n"
            "echo a, b, c, d, e, f\n"
        )
        assert self.execute(source) == ["-3 42 -3 -1 3.500000 3.500000"]

    def test_int_wraparound(self):
        assert self.execute("set big, 9223372036854775807\nadd big, 1 eq w\necho w\n") == ["-9223372036854775808"]

    def test_division_by_zero_is_fail_soft(self):
        out = self.execute('div 5, 0 eq z\necho z\necho "after"\n')
        assert out == ["null", "after"]
        assert self.messages == ["Division by zero"]
        assert self.errors == ["Runtime Error [2:0]: Division by zero"]

    def test_mod_rejects_float(self):
        assert self.execute("mod 5.0, 2 eq r\necho r\n") == ["null"]
        assert "'mod' does not support float and int" in self.messages[0]

    def test_null_propagates_silently(self):
        out = self.execute("div 1, 0 eq z\nadd z, 1 eq w\necho w\n")
        assert out == ["null"]
        assert len(self.interp.diagnostics) == 1

    def test_concat(self):
        assert self.execute('concat "n=", 5 eq s\necho s\n') == ["n=5"]

    def test_undefined_variable(self):
        assert self.execute("echo missing\n") == ["null"]
        assert self.messages == ["Undefined variable 'missing'"]

    def test_inc_dec(self):
        assert self.execute("set n, 1\ninc n\ninc n, 5\ndec n, 2\necho n\n") == ["5"]

    def test_inc_on_string(self):
        assert self.execute('set s, "x"\ninc s\necho s\n') == ["x"]
        assert "'inc' expects numbers" in self.messages[0]

    def test_type_check(self):
        source = 'set x, 1\nset s, "a"\ntype x\ntype t eq s\necho t\nset a, {}\ntype a\n'
        assert self.execute(source) == ["int", "string", "array"]

    def test_halt(self):
        out = self.execute('echo "a"\nhalt "bye"\necho "b"\n')
        assert out == ["a", "bye"]
        assert self.interp.halted

    def test_input(self):
        out = self.execute('set name, $ "Name? "\necho name\nset more, $\necho more\n', inputs=["Ada\n"])
        assert out == ["Ada", "null"]
        assert "End of input" in self.messages[0]


class TestConditionals(TestBase):
    def test_elseif_chain(self):
        source = 'set x, 2\nif x eq 1\necho "one"\nelseif x eq 2\necho "two"\nelse\necho "other"\nendb\n'
        assert self.execute(source) == ["two"]

    def test_else_arm(self):
        assert self.execute('if 1 gt 2\necho "a"\nelse\necho "b"\nendb\n') == ["b"]

    def test_non_bool_condition_takes_false_arm(self):
        assert self.execute('if 1\necho "a"\nelse\necho "b"\nendb\n') == ["b"]
        assert "condition must be bool" in self.messages[0]

    def test_comparison_type_mismatch(self):
        assert self.execute('echo 1 eq "1"\n') == ["null"]
        assert "Cannot compare int with string" in self.messages[0]

    def test_string_and_array_comparison(self):
        source = 'echo "abc" lt "abd"\nset a, {1, 2}\nset b, {1, 2}\necho a eq b, a ne {2, 1}\n'
        assert self.execute(source) == ["true", "true true"]

    def test_logic(self):
        assert self.execute("echo true and false, true or false, not false\n") == ["false true true"]
        self.output.clear()
        assert self.execute("echo 1 and true\n") == ["null"]


class TestLoops(TestBase):
    def test_for_ascending(self):
        assert self.execute("for i (1...5)\necho i\nendl\n") == ["1", "2", "3", "4", "5"]

    def test_for_descending(self):
        assert self.execute("for i (5...1)\necho i\nendl\n") == ["5", "4", "3", "2", "1"]

    def test_for_step(self):
        assert self.execute("for i (0...10, 5)\necho i\nendl\n") == ["0", "5", "10"]
        self.output.clear()
        assert self.execute("for i (10...0, -5)\necho i\nendl\n") == ["10", "5", "0"]

    def test_for_zero_step(self):
        assert self.execute('for i (1...3, 0)\necho i\nendl\necho "done"\n') == ["done"]
        assert "step must not be zero" in self.messages[0]

    def test_loop_variable_scoped_to_loop(self):
        out = self.execute("for i (1...3)\nset last, i\nendl\necho last\necho i\n")
        assert out == ["3", "null"]
        assert self.messages == ["Undefined variable 'i'"]

    def test_body_cannot_steer_counter(self):
        assert self.execute("for i (1...3)\nset i, 10\necho i\nendl\n") == ["10", "10", "10"]

    def test_while_continue(self):
        source = "set i, 0\nwhile i lt 5\ninc i\nif i eq 3\ncontinue\nendb\necho i\nendl\n"
        assert self.execute(source) == ["1", "2", "4", "5"]

    def test_while_non_bool_ends_loop(self):
        assert self.execute('while 1\necho "x"\nendl\necho "done"\n') == ["done"]

    def test_break_outer(self):
        source = (
            "for i (1...3) _outer\n"
            "for j (1...3)\n"
            "if j eq 2\n"
            "break outer\n"
            "endb\n"
            "echo i, j\n"
            "endl\n"
            "endl\n"
            'echo "done"\n'
        )
        assert self.execute(source) == ["1 1", "done"]

    def test_continue_labeled(self):
        source = (
            "for i (1...2) _ rows\n"
            "for j (1...3)\n"
            "if j eq 2\n"
            "continue _rows\n"
            "endb\n"
            "echo i, j\n"
            "endl\n"
            "endl\n"
        )
        assert self.execute(source) == ["1 1", "2 1"]


class TestJumps(TestBase):
    def test_backward_jump(self):
        assert self.execute("set i, 0\n.top\ninc i\njlt i, 3 .top\necho i\n") == ["3"]

    def test_forward_jump(self):
        assert self.execute('jmp .skip\necho "no"\n.skip\necho "yes"\n') == ["yes"]

    def test_jump_out_of_loop(self):
        source = "set i, 0\nwhile true\ninc i\njge i, 3 .out\nendl\n.out\necho i\n"
        assert self.execute(source) == ["3"]

    def test_jump_comparison_error_does_not_jump(self):
        assert self.execute('jeq 1, "1" .end\necho "fell through"\n.end\n') == ["fell through"]
        assert len(self.interp.diagnostics) == 1


class TestArrays(TestBase):
    def test_negative_and_out_of_range_index(self):
        out = self.execute("set a, {10, 20, 30}\necho a[-1]\necho a[5]\n")
        assert out == ["30", "null"]
        assert "out of bounds" in self.messages[0]

    def test_length_properties(self):
        assert self.execute('set a, {1, 2, 3}\nset s, "hello"\necho a.len, s.length, s[1]\n') == ["3 5 e"]

    def test_nested_index(self):
        assert self.execute("set m, {{1, 2}, {3, 4}}\necho m[1][0], m\n") == ["3 {{1, 2}, {3, 4}}"]


class TestCasts(TestBase):
    def test_casts(self):
        source = (
            'int "42" eq a\n'
            "int -3.9 eq b\n"
            "str 2.5 eq c\n"
            'bool "TRUE" eq d\n'
            "float true eq e\n"
            "bool {} eq f\n"
            "int false eq g\n"
            "echo a, b, c, d, e, f, g\n"
        )
        assert self.execute(source) == ["42 -3 2.500000 true 1.000000 false 0"]

    def test_bad_cast(self):
        assert self.execute('int "abc" eq n\necho n\n') == ["null"]
        assert "Cannot convert string 'abc' to int" in self.messages[0]

    def test_cast_rejects_python_only_syntax(self):
        assert self.execute('int "1_000" eq n\nfloat "inf" eq f\necho n, f\n') == ["null null"]
        assert len(self.interp.diagnostics) == 2


class TestFunctions(TestBase):
    def test_call_and_return(self):
        functions = ".add2(a, b)\nadd a, b eq s\nret s\n"
        assert self.execute("call .add2(2, 3) eq r\necho r\n", functions) == ["5"]

    def test_multiple_results(self):
        functions = ".divmod(a, b)\ndiv a, b eq q\nmod a, b eq r\nret q, r\n"
        assert self.execute("call .divmod(17, 5) eq q, r\necho q, r\n", functions) == ["3 2"]

    def test_recursion(self):
        functions = (
            ".fact(n)\n"
            "if n le 1\n"
            "ret 1\n"
            "endb\n"
            "sub n, 1 eq m\n"
            "call .fact(m) eq r\n"
            "mul n, r eq out\n"
            "ret out\n"
        )
        assert self.execute("call .fact(10) eq f\necho f\n", functions) == ["3628800"]

    def test_activation_isolation(self):
        functions = ".peek()\necho x\nset x, 2\n"
        assert self.execute("set x, 1\ncall .peek()\necho x\n", functions) == ["null", "1"]

    def test_argument_count_mismatch(self):
        functions = ".f(a, b)\ntype t eq b\nret a, t\n"
        assert self.execute("call .f(1) eq r, t\necho r, t\n", functions) == ["1 null"]
        assert "expects 2 argument(s) but received 1" in self.messages[0]

    def test_result_count_mismatch(self):
        functions = ".one()\nret 1\n"
        assert self.execute("call .one() eq a, b\necho a, b\n", functions) == ["1 null"]
        assert "returned 1 value(s) but 2 were requested" in self.messages[0]

    def test_arrays_are_passed_by_value(self):
        functions = ".first(xs)\nret xs[0]\n"
        out = self.execute("set a, {7, 8}\ncall .first(a) eq v\necho v, a\n", functions)
        assert out == ["7 {7, 8}"]

    def test_labels_inside_function(self):
        functions = ".count(n)\nset i, 0\n.again\ninc i\njlt i, n .again\nret i\n"
        assert self.execute("call .count(4) eq c\necho c\n", functions) == ["4"]

    def test_call_depth_is_fatal(self):
        functions = ".spin(n)\ncall .spin(n)\n"
        with pytest.raises(RatioFatalError) as info:
            self.execute("call .spin(1)\n", functions)
        assert str(MAX_CALL_DEPTH) in info.value.message
        formatter = TracebackFormatter(self.interp)
        text = formatter.format_text(info.value, verbose=False)
        assert text.startswith("Traceback (most recent call last):")
        assert "in .spin at test.ratio:2:0" in text
        assert "[frame repeated" in text
        data = json.loads(formatter.to_json(info.value))
        assert data["error"]["type"] == "RatioFatalError"
        assert data["error"]["failing_step_index"] is not None
        assert data["traceback"][0]["function"] == "<main>"
        assert data["traceback"][1]["called_from"]["line"] == 4
        assert data["diagnostics"] == []


class TestStateLog(TestBase):
    def test_verbose_keeps_snapshots(self):
        self.interp = Interpreter(source="start .main\nset x, 1\necho x\n", verbose=True, output_sink=self.output.append)
        self.interp.run()
        entries = self.interp.logger.entries
        assert [entry.rule for entry in entries] == ["Assignment", "EchoStatement"]
        assert entries[1].env_snapshot == {"x": "int:1"}

    def test_quiet_run_keeps_no_history(self):
        self.execute("set x, 1\necho x\n")
        assert self.interp.logger.entries == []
        assert self.interp.logger.last_entry.rule == "EchoStatement"


class TestNesting(TestBase):
    def test_deeply_nested_program_runs(self):
        depth = 250
        source = "if true\n" * depth + "echo 1\n" + "endb\n" * depth
        assert self.execute(source) == ["1"]

    def test_nesting_past_the_limit_is_a_parse_error(self):
        source = "set x, " + "(" * 20000 + "1" + ")" * 20000 + "\n"
        with pytest.raises(RatioParseError) as info:
            self.execute(source)
        assert "nested too deeply" in info.value.message
        assert info.value.line == 2
