from __future__ import annotations
import json
import math
import re
import sys
import numpy as np
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional
from numpy.typing import NDArray

from lexer import RatioError, Lexer
from parser import (
    ArrayLiteral,
    Assignment,
    BinaryOperation,
    Block,
    BreakStatement,
    CallStatement,
    ContinueStatement,
    EchoStatement,
    Expression,
    ExpressionStatement,
    ForStatement,
    FunctionDef,
    HaltStatement,
    Identifier,
    IfStatement,
    IncDecStatement,
    IndexExpression,
    InputExpression,
    JumpStatement,
    LabelStatement,
    Literal,
    NotExpression,
    Parser,
    Program,
    PropertyAccess,
    ReturnStatement,
    SourceLocation,
    Statement,
    TypeCast,
    TypeCheck,
    WhileStatement,
)


TYPE_INT = "int"
TYPE_FLOAT = "float"
TYPE_STRING = "string"
TYPE_BOOL = "bool"
TYPE_ARRAY = "array"
TYPE_NULL = "null"

NUMERIC_TYPES = (TYPE_INT, TYPE_FLOAT)

MAX_CALL_DEPTH = 200
RECURSION_LIMIT = 10000

_UINT64_MASK = (1 << 64) - 1
_INT_TEXT = re.compile(r"[+-]?[0-9]+")
_FLOAT_TEXT = re.compile(r"[+-]?([0-9]+\.?[0-9]*|\.[0-9]+)([eE][+-]?[0-9]+)?")
_TRUE_TEXT = {"true", "1"}
_FALSE_TEXT = {"false", "0", ""}

JUMP_COMPARISONS = {
    "JEQ": "EQ",
    "JNE": "NE",
    "JGT": "GT",
    "JLT": "LT",
    "JGE": "GE",
    "JLE": "LE",
}


@dataclass
class Value:
    type: str
    value: Any


def null_value() -> Value:
    return Value(TYPE_NULL, None)


def wrap_int(value: int) -> int:
    """Reduce an unbounded Python int to signed 64-bit two's complement."""
    return int(np.uint64(value & _UINT64_MASK).astype(np.int64))


def make_array(items: List[Value]) -> Value:
    data: NDArray[Any] = np.empty(len(items), dtype=object)
    for position, item in enumerate(items):
        data[position] = copy_value(item)
    return Value(TYPE_ARRAY, data)


def copy_value(value: Value) -> Value:
    if value.type == TYPE_ARRAY:
        return make_array(list(value.value))
    return Value(value.type, value.value)


def format_value(value: Value) -> str:
    vtype = value.type
    if vtype == TYPE_INT:
        return str(value.value)
    if vtype == TYPE_FLOAT:
        return f"{value.value:f}"
    if vtype == TYPE_STRING:
        return value.value
    if vtype == TYPE_BOOL:
        return "true" if value.value else "false"
    if vtype == TYPE_ARRAY:
        return "{" + ", ".join(format_value(item) for item in value.value) + "}"
    return "null"


class RatioRuntimeError(RatioError):
    """Non-fatal runtime fault. Reported, then replaced by null."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.rule = rule


class RatioFatalError(RatioError):
    """Structural runtime fault. Aborts the run."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.rule = rule
        self.step_index: Optional[int] = None


class ReturnSignal(Exception):
    def __init__(self, values: List[Value]) -> None:
        super().__init__(values)
        self.values = values


class HaltSignal(Exception):
    pass


class BreakSignal(Exception):
    def __init__(self, label: Optional[str]) -> None:
        super().__init__(label)
        self.label = label


class ContinueSignal(Exception):
    def __init__(self, label: Optional[str]) -> None:
        super().__init__(label)
        self.label = label


class JumpSignal(Exception):
    def __init__(self, label: str) -> None:
        super().__init__(label)
        self.label = label


@dataclass
class Environment:
    parent: Optional["Environment"] = None
    values: Dict[str, Value] = field(default_factory=dict)

    def _find_env(self, name: str) -> Optional["Environment"]:
        env: Optional[Environment] = self
        while env is not None:
            if name in env.values:
                return env
            env = env.parent
        return None

    def _root(self) -> "Environment":
        env = self
        while env.parent is not None:
            env = env.parent
        return env

    def define(self, name: str, value: Value) -> None:
        self.values[name] = copy_value(value)

    def set(self, name: str, value: Value) -> None:
        # Rebind where the name already lives; new names belong to the
        # activation, not to the loop scope that happens to be innermost.
        env = self._find_env(name)
        if env is None:
            env = self._root()
        env.values[name] = copy_value(value)

    def get(self, name: str) -> Value:
        env = self._find_env(name)
        if env is not None:
            return env.values[name]
        raise RatioRuntimeError(f"Undefined variable '{name}'", rule="IDENT")

    def get_optional(self, name: str) -> Optional[Value]:
        env = self._find_env(name)
        if env is not None:
            return env.values[name]
        return None

    def has(self, name: str) -> bool:
        return self._find_env(name) is not None

    def snapshot(self) -> Dict[str, str]:
        def _render(val: Value) -> str:
            rendered = format_value(val)
            if len(rendered) > 80:
                rendered = rendered[:77] + "..."
            return f"{val.type}:{rendered}"

        out: Dict[str, str] = {}
        env: Optional[Environment] = self
        while env is not None:
            for key, val in env.values.items():
                out.setdefault(key, _render(val))
            env = env.parent
        return out


@dataclass
class Frame:
    name: str
    env: Environment
    frame_id: str
    call_location: Optional[SourceLocation]


@dataclass
class Diagnostic:
    message: str
    file: str
    line: int
    column: int
    rule: Optional[str]

    def format(self) -> str:
        return f"Runtime Error [{self.line}:{self.column}]: {self.message}"


@dataclass
class StateEntry:
    step_index: int
    frame_id: Optional[str]
    source_location: Optional[SourceLocation]
    statement: Optional[str]
    env_snapshot: Optional[Dict[str, str]]
    rule: str


class StateLogger:
    def __init__(self, verbose: bool) -> None:
        self.verbose = verbose
        self.entries: List[StateEntry] = []
        self.next_state_index = 0
        self.last_entry: Optional[StateEntry] = None
        self.frame_last_entry: Dict[str, StateEntry] = {}

    def record(
        self,
        *,
        frame: Optional[Frame],
        location: Optional[SourceLocation],
        rule: str,
        env_snapshot: Optional[Dict[str, str]] = None,
    ) -> StateEntry:
        entry = StateEntry(
            step_index=self.next_state_index,
            frame_id=frame.frame_id if frame else None,
            source_location=location,
            statement=location.statement if location else None,
            env_snapshot=env_snapshot,
            rule=rule,
        )
        # Only verbose runs keep the full history; tracebacks need just the
        # most recent step of each frame.
        if self.verbose:
            self.entries.append(entry)
        if frame:
            self.frame_last_entry[frame.frame_id] = entry
        self.last_entry = entry
        self.next_state_index += 1
        return entry

    def last_entry_for_frame(self, frame_id: str) -> Optional[StateEntry]:
        return self.frame_last_entry.get(frame_id)


def _read_line(prompt: str) -> Optional[str]:
    try:
        return input(prompt)
    except EOFError:
        return None


def _trunc_div(a: int, b: int) -> int:
    quotient = abs(a) // abs(b)
    return quotient if (a < 0) == (b < 0) else -quotient


class Interpreter:
    def __init__(
        self,
        *,
        source: str,
        filename: str = "<string>",
        verbose: bool = False,
        input_provider: Optional[Callable[[str], Optional[str]]] = None,
        output_sink: Optional[Callable[[str], None]] = None,
        error_sink: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.source = source
        self._source_lines = source.splitlines()
        self.filename = filename
        self.verbose = verbose
        self.input_provider = input_provider or _read_line
        self.output_sink = output_sink or (lambda text: print(text))
        self.error_sink = error_sink or (lambda text: print(text, file=sys.stderr))

        self.functions: Dict[str, FunctionDef] = {}
        self.diagnostics: List[Diagnostic] = []
        self.logger = StateLogger(verbose=verbose)
        self.call_stack: List[Frame] = []
        self.frame_counter = 0
        self.halted = False

    def parse(self) -> Program:
        lexer = Lexer(self.source, self.filename)
        tokens = lexer.tokenize()
        parser = Parser(tokens, self.filename, self._source_lines)
        return parser.parse()

    def run(self) -> None:
        previous_limit = sys.getrecursionlimit()
        if previous_limit < RECURSION_LIMIT:
            sys.setrecursionlimit(RECURSION_LIMIT)
        try:
            program = self.parse()
            self.functions = program.functions
            global_env = Environment()
            global_frame = self._new_frame("<main>", global_env, None)
            self.call_stack.append(global_frame)
            self._execute_block(program.main, global_env)
        except HaltSignal:
            self.halted = True
        except (BreakSignal, ContinueSignal) as signal:
            raise self._fatal(f"'{signal.__class__.__name__[:-6].lower()}' escaped enclosing loops", "control")
        except JumpSignal as signal:
            raise self._fatal(f"Jump to unreachable label '.{signal.label}'", "jump")
        except ReturnSignal:
            raise self._fatal("'ret' outside of function", "ret")
        except RatioFatalError as error:
            if self.logger.last_entry is not None:
                error.step_index = self.logger.last_entry.step_index
            raise
        except RecursionError:
            raise self._fatal("Interpreter recursion limit exceeded", "internal")
        finally:
            sys.setrecursionlimit(previous_limit)
        self.call_stack.clear()

    # ---- statements ----

    def _execute_block(self, block: Block, env: Environment) -> None:
        statements = block.statements
        labels = block.labels
        execute_stmt = self._execute_statement
        i = 0
        while i < len(statements):
            try:
                execute_stmt(statements[i], env)
            except JumpSignal as js:
                target = labels.get(js.label)
                if target is None:
                    raise
                i = target + 1
                continue
            i += 1

    def _execute_statement(self, statement: Statement, env: Environment) -> None:
        self._log_step(rule=statement.__class__.__name__, location=statement.location)
        try:
            if isinstance(statement, LabelStatement):
                return
            if isinstance(statement, Assignment):
                value = self._evaluate_expression(statement.expression, env)
                env.set(statement.target, value)
                return
            if isinstance(statement, ExpressionStatement):
                self._evaluate_expression(statement.expression, env)
                return
            if isinstance(statement, EchoStatement):
                eval_expr = self._evaluate_expression
                parts = [format_value(eval_expr(expr, env)) for expr in statement.expressions]
                self.output_sink(" ".join(parts))
                return
            if isinstance(statement, IfStatement):
                self._execute_if(statement, env)
                return
            if isinstance(statement, ForStatement):
                self._execute_for(statement, env)
                return
            if isinstance(statement, WhileStatement):
                self._execute_while(statement, env)
                return
            if isinstance(statement, BreakStatement):
                raise BreakSignal(statement.label)
            if isinstance(statement, ContinueStatement):
                raise ContinueSignal(statement.label)
            if isinstance(statement, IncDecStatement):
                self._execute_inc_dec(statement, env)
                return
            if isinstance(statement, CallStatement):
                self._execute_call(statement, env)
                return
            if isinstance(statement, ReturnStatement):
                values = [self._evaluate_expression(expr, env) for expr in statement.values]
                raise ReturnSignal(values)
            if isinstance(statement, JumpStatement):
                self._execute_jump(statement, env)
                return
            if isinstance(statement, HaltStatement):
                if statement.message is not None:
                    self.output_sink(format_value(self._evaluate_expression(statement.message, env)))
                raise HaltSignal()
            if isinstance(statement, TypeCheck):
                self._execute_type_check(statement, env)
                return
        except RatioRuntimeError as error:
            self._report(error, statement.location)
            return
        raise self._fatal("Unsupported statement", "internal", statement.location)

    def _execute_if(self, statement: IfStatement, env: Environment) -> None:
        condition = self._evaluate_expression(statement.condition, env)
        if self._condition_bool(condition, statement.condition.location, "if"):
            self._execute_block(statement.then_block, env)
        elif statement.else_block is not None:
            self._execute_block(statement.else_block, env)

    def _execute_while(self, statement: WhileStatement, env: Environment) -> None:
        eval_expr = self._evaluate_expression
        cond_bool = self._condition_bool
        location = statement.condition.location
        while cond_bool(eval_expr(statement.condition, env), location, "while"):
            try:
                self._execute_block(statement.body, env)
            except BreakSignal as bs:
                if bs.label is not None and bs.label != statement.label:
                    raise
                return
            except ContinueSignal as cs:
                if cs.label is not None and cs.label != statement.label:
                    raise

    def _execute_for(self, statement: ForStatement, env: Environment) -> None:
        eval_expr = self._evaluate_expression
        bounds = [eval_expr(statement.start, env), eval_expr(statement.end, env)]
        if statement.step is not None:
            bounds.append(eval_expr(statement.step, env))
        if any(bound.type == TYPE_NULL for bound in bounds):
            return
        for bound in bounds:
            if bound.type not in NUMERIC_TYPES:
                raise RatioRuntimeError(f"'for' range expects numbers but got {bound.type}", rule="for")
        counter_type = TYPE_FLOAT if any(bound.type == TYPE_FLOAT for bound in bounds) else TYPE_INT
        convert = float if counter_type == TYPE_FLOAT else int
        start = convert(bounds[0].value)
        end = convert(bounds[1].value)
        if statement.step is not None:
            step = convert(bounds[2].value)
        else:
            step = convert(1 if start <= end else -1)
        if step == 0:
            raise RatioRuntimeError("'for' step must not be zero", rule="for")

        loop_env = Environment(parent=env)
        current = start
        while (step > 0 and current <= end) or (step < 0 and current >= end):
            loop_env.define(statement.variable, Value(counter_type, current))
            try:
                self._execute_block(statement.body, loop_env)
            except BreakSignal as bs:
                if bs.label is not None and bs.label != statement.label:
                    raise
                return
            except ContinueSignal as cs:
                if cs.label is not None and cs.label != statement.label:
                    raise
            current = current + step

    def _execute_inc_dec(self, statement: IncDecStatement, env: Environment) -> None:
        word = statement.op.lower()
        current = env.get(statement.target)
        if statement.amount is not None:
            amount = self._evaluate_expression(statement.amount, env)
        else:
            amount = Value(TYPE_INT, 1)
        if current.type == TYPE_NULL or amount.type == TYPE_NULL:
            return
        if current.type not in NUMERIC_TYPES or amount.type not in NUMERIC_TYPES:
            raise RatioRuntimeError(
                f"'{word}' expects numbers but got {current.type} and {amount.type}",
                rule=word,
            )
        op = "ADD" if statement.op == "INC" else "SUB"
        env.set(statement.target, self._arithmetic(op, current, amount))

    def _execute_call(self, statement: CallStatement, env: Environment) -> None:
        function = self.functions[statement.name]
        args = [self._evaluate_expression(arg, env) for arg in statement.args]
        values = self._call_function(function, args, statement.location)
        if not statement.results:
            return
        if len(values) != len(statement.results):
            self._report(
                RatioRuntimeError(
                    f"'.{function.name}' returned {len(values)} value(s) but {len(statement.results)} were requested",
                    rule="call",
                ),
                statement.location,
            )
        for position, name in enumerate(statement.results):
            env.set(name, values[position] if position < len(values) else null_value())

    def _call_function(self, function: FunctionDef, args: List[Value], call_location: SourceLocation) -> List[Value]:
        if len(self.call_stack) >= MAX_CALL_DEPTH:
            raise self._fatal(
                f"Maximum call depth {MAX_CALL_DEPTH} exceeded calling '.{function.name}'",
                "call",
                call_location,
            )
        if len(args) != len(function.params):
            self._report(
                RatioRuntimeError(
                    f"'.{function.name}' expects {len(function.params)} argument(s) but received {len(args)}",
                    rule="call",
                ),
                call_location,
            )
        activation = Environment()
        for position, param in enumerate(function.params):
            activation.define(param, args[position] if position < len(args) else null_value())

        frame = self._new_frame(function.name, activation, call_location)
        self.call_stack.append(frame)
        try:
            self._execute_block(function.body, activation)
        except ReturnSignal as signal:
            self.call_stack.pop()
            return signal.values
        self.call_stack.pop()
        return []

    def _execute_jump(self, statement: JumpStatement, env: Environment) -> None:
        if statement.op == "JMP":
            raise JumpSignal(statement.target)
        assert statement.left is not None and statement.right is not None
        left = self._evaluate_expression(statement.left, env)
        right = self._evaluate_expression(statement.right, env)
        if left.type == TYPE_NULL or right.type == TYPE_NULL:
            return
        outcome = self._compare(JUMP_COMPARISONS[statement.op], left, right)
        if outcome.value:
            raise JumpSignal(statement.target)

    def _execute_type_check(self, statement: TypeCheck, env: Environment) -> None:
        found = env.get_optional(statement.variable)
        if found is None:
            self._report(
                RatioRuntimeError(f"Undefined variable '{statement.variable}'", rule="type"),
                statement.location,
            )
            found = null_value()
        name = Value(TYPE_STRING, found.type)
        if statement.result is None:
            self.output_sink(name.value)
            return
        env.set(statement.result, name)

    def _condition_bool(self, value: Value, location: Optional[SourceLocation], rule: str) -> bool:
        if value.type == TYPE_BOOL:
            return bool(value.value)
        if value.type == TYPE_NULL:
            return False
        # Non-bool conditions fail soft: reported, then treated as false.
        self._report(
            RatioRuntimeError(f"'{rule}' condition must be bool but got {value.type}", rule=rule),
            location,
        )
        return False

    # ---- expressions ----

    def _evaluate_expression(self, expression: Expression, env: Environment) -> Value:
        try:
            return self._evaluate(expression, env)
        except RatioRuntimeError as error:
            self._report(error, expression.location)
            return null_value()

    def _evaluate(self, expression: Expression, env: Environment) -> Value:
        if isinstance(expression, Literal):
            return Value(expression.literal_type, expression.value)
        if isinstance(expression, Identifier):
            return env.get(expression.name)
        if isinstance(expression, BinaryOperation):
            left = self._evaluate_expression(expression.left, env)
            right = self._evaluate_expression(expression.right, env)
            try:
                result = self._apply_binary(expression.op, left, right)
            except RatioRuntimeError as error:
                self._report(error, expression.location)
                result = null_value()
            if expression.result is not None:
                env.set(expression.result, result)
            return result
        if isinstance(expression, TypeCast):
            value = self._evaluate_expression(expression.value, env)
            try:
                result = self._cast(expression.target_type, value)
            except RatioRuntimeError as error:
                self._report(error, expression.location)
                result = null_value()
            if expression.result is not None:
                env.set(expression.result, result)
            return result
        if isinstance(expression, NotExpression):
            operand = self._evaluate_expression(expression.operand, env)
            if operand.type == TYPE_NULL:
                return operand
            if operand.type != TYPE_BOOL:
                raise RatioRuntimeError(f"'not' expects bool but got {operand.type}", rule="not")
            return Value(TYPE_BOOL, not operand.value)
        if isinstance(expression, ArrayLiteral):
            eval_expr = self._evaluate_expression
            return make_array([eval_expr(item, env) for item in expression.items])
        if isinstance(expression, IndexExpression):
            base = self._evaluate_expression(expression.base, env)
            index = self._evaluate_expression(expression.index, env)
            return self._index(base, index)
        if isinstance(expression, PropertyAccess):
            base = self._evaluate_expression(expression.base, env)
            return self._property(base, expression.property)
        if isinstance(expression, InputExpression):
            prompt = ""
            if expression.prompt is not None:
                prompt = format_value(self._evaluate_expression(expression.prompt, env))
            line = self.input_provider(prompt)
            if line is None:
                raise RatioRuntimeError("End of input while reading '$'", rule="input")
            return Value(TYPE_STRING, line.rstrip("\r\n"))
        raise self._fatal("Unsupported expression", "internal", expression.location)

    def _apply_binary(self, op: str, left: Value, right: Value) -> Value:
        # A null operand already had its fault reported where it was produced.
        if left.type == TYPE_NULL or right.type == TYPE_NULL:
            return null_value()
        if op in ("ADD", "SUB", "MUL", "DIV", "MOD"):
            return self._arithmetic(op, left, right)
        if op == "CONCAT":
            return Value(TYPE_STRING, format_value(left) + format_value(right))
        if op in ("AND", "OR"):
            if left.type != TYPE_BOOL or right.type != TYPE_BOOL:
                raise RatioRuntimeError(
                    f"'{op.lower()}' expects bool operands but got {left.type} and {right.type}",
                    rule=op.lower(),
                )
            if op == "AND":
                return Value(TYPE_BOOL, bool(left.value and right.value))
            return Value(TYPE_BOOL, bool(left.value or right.value))
        return self._compare(op, left, right)

    def _arithmetic(self, op: str, left: Value, right: Value) -> Value:
        rule = op.lower()
        if left.type == TYPE_INT and right.type == TYPE_INT:
            a, b = left.value, right.value
            if op == "ADD":
                return Value(TYPE_INT, wrap_int(a + b))
            if op == "SUB":
                return Value(TYPE_INT, wrap_int(a - b))
            if op == "MUL":
                return Value(TYPE_INT, wrap_int(a * b))
            if b == 0:
                raise RatioRuntimeError("Division by zero" if op == "DIV" else "Modulo by zero", rule=rule)
            if op == "DIV":
                return Value(TYPE_INT, wrap_int(_trunc_div(a, b)))
            return Value(TYPE_INT, wrap_int(a - b * _trunc_div(a, b)))
        if op != "MOD" and left.type in NUMERIC_TYPES and right.type in NUMERIC_TYPES:
            x, y = float(left.value), float(right.value)
            if op == "ADD":
                return Value(TYPE_FLOAT, x + y)
            if op == "SUB":
                return Value(TYPE_FLOAT, x - y)
            if op == "MUL":
                return Value(TYPE_FLOAT, x * y)
            if y == 0.0:
                raise RatioRuntimeError("Division by zero", rule=rule)
            return Value(TYPE_FLOAT, x / y)
        raise RatioRuntimeError(f"'{rule}' does not support {left.type} and {right.type}", rule=rule)

    def _compare(self, op: str, left: Value, right: Value) -> Value:
        rule = op.lower()
        if left.type != right.type:
            raise RatioRuntimeError(f"Cannot compare {left.type} with {right.type} using '{rule}'", rule=rule)
        if op == "EQ":
            return Value(TYPE_BOOL, self._values_equal(left, right))
        if op == "NE":
            return Value(TYPE_BOOL, not self._values_equal(left, right))
        if left.type not in (TYPE_INT, TYPE_FLOAT, TYPE_STRING):
            raise RatioRuntimeError(f"'{rule}' is not defined for {left.type} values", rule=rule)
        a, b = left.value, right.value
        if op == "GT":
            return Value(TYPE_BOOL, a > b)
        if op == "LT":
            return Value(TYPE_BOOL, a < b)
        if op == "GE":
            return Value(TYPE_BOOL, a >= b)
        if op == "LE":
            return Value(TYPE_BOOL, a <= b)
        raise RatioRuntimeError(f"Unknown operator '{rule}'", rule=rule)

    def _values_equal(self, left: Value, right: Value) -> bool:
        if left.type != right.type:
            return False
        if left.type == TYPE_ARRAY:
            if left.value.size != right.value.size:
                return False
            return all(self._values_equal(a, b) for a, b in zip(left.value, right.value))
        return bool(left.value == right.value)

    def _index(self, base: Value, index: Value) -> Value:
        if base.type == TYPE_NULL or index.type == TYPE_NULL:
            return null_value()
        if base.type not in (TYPE_ARRAY, TYPE_STRING):
            raise RatioRuntimeError(f"Cannot index into {base.type}", rule="index")
        if index.type != TYPE_INT:
            raise RatioRuntimeError(f"Array index must be int but got {index.type}", rule="index")
        length = base.value.size if base.type == TYPE_ARRAY else len(base.value)
        position = index.value
        if position < 0:
            position += length
        if position < 0 or position >= length:
            raise RatioRuntimeError(f"Index {index.value} out of bounds for length {length}", rule="index")
        if base.type == TYPE_STRING:
            return Value(TYPE_STRING, base.value[position])
        return copy_value(base.value[position])

    def _property(self, base: Value, name: str) -> Value:
        if base.type == TYPE_NULL:
            return null_value()
        if name in ("len", "length"):
            if base.type == TYPE_ARRAY:
                return Value(TYPE_INT, int(base.value.size))
            if base.type == TYPE_STRING:
                return Value(TYPE_INT, len(base.value))
        raise RatioRuntimeError(f"Unknown property '{name}' on {base.type}", rule="property")

    def _cast(self, target: str, value: Value) -> Value:
        vtype = value.type
        if target == TYPE_STRING:
            return Value(TYPE_STRING, format_value(value))
        if target == TYPE_BOOL:
            if vtype == TYPE_BOOL:
                return Value(TYPE_BOOL, value.value)
            if vtype in NUMERIC_TYPES:
                return Value(TYPE_BOOL, value.value != 0)
            if vtype == TYPE_ARRAY:
                return Value(TYPE_BOOL, value.value.size > 0)
            if vtype == TYPE_NULL:
                return Value(TYPE_BOOL, False)
            text = value.value.strip().lower()
            if text in _TRUE_TEXT:
                return Value(TYPE_BOOL, True)
            if text in _FALSE_TEXT:
                return Value(TYPE_BOOL, False)
            raise RatioRuntimeError(f"Cannot convert string '{value.value}' to bool", rule="bool")
        if vtype == TYPE_NULL:
            return null_value()
        if target == TYPE_INT:
            if vtype == TYPE_INT:
                return Value(TYPE_INT, value.value)
            if vtype == TYPE_FLOAT:
                if not math.isfinite(value.value):
                    raise RatioRuntimeError(f"Cannot convert {format_value(value)} to int", rule="int")
                return Value(TYPE_INT, wrap_int(int(value.value)))
            if vtype == TYPE_BOOL:
                return Value(TYPE_INT, 1 if value.value else 0)
            if vtype == TYPE_STRING:
                text = value.value.strip()
                if not _INT_TEXT.fullmatch(text):
                    raise RatioRuntimeError(f"Cannot convert string '{value.value}' to int", rule="int")
                parsed = int(text)
                if parsed != wrap_int(parsed):
                    raise RatioRuntimeError(f"Integer '{text}' out of range", rule="int")
                return Value(TYPE_INT, parsed)
        if target == TYPE_FLOAT:
            if vtype in NUMERIC_TYPES:
                return Value(TYPE_FLOAT, float(value.value))
            if vtype == TYPE_BOOL:
                return Value(TYPE_FLOAT, 1.0 if value.value else 0.0)
            if vtype == TYPE_STRING:
                text = value.value.strip()
                if not _FLOAT_TEXT.fullmatch(text):
                    raise RatioRuntimeError(f"Cannot convert string '{value.value}' to float", rule="float")
                return Value(TYPE_FLOAT, float(text))
        raise RatioRuntimeError(f"Cannot convert {vtype} to {target}", rule=target)

    # ---- bookkeeping ----

    def _report(self, error: RatioRuntimeError, location: Optional[SourceLocation]) -> None:
        where = error.location or location
        diagnostic = Diagnostic(
            message=error.message,
            file=where.file if where else self.filename,
            line=where.line if where else 0,
            column=where.column if where else 0,
            rule=error.rule,
        )
        self.diagnostics.append(diagnostic)
        self.error_sink(diagnostic.format())

    def _fatal(self, message: str, rule: str, location: Optional[SourceLocation] = None) -> RatioFatalError:
        if location is None and self.logger.last_entry is not None:
            location = self.logger.last_entry.source_location
        return RatioFatalError(message, location=location, rule=rule)

    def _new_frame(self, name: str, env: Environment, call_location: Optional[SourceLocation]) -> Frame:
        frame_id = f"f_{self.frame_counter:04d}"
        self.frame_counter += 1
        return Frame(name=name, env=env, frame_id=frame_id, call_location=call_location)

    def _log_step(self, *, rule: str, location: Optional[SourceLocation]) -> None:
        frame = self.call_stack[-1] if self.call_stack else None
        env_snapshot = frame.env.snapshot() if (self.verbose and frame) else None
        self.logger.record(frame=frame, location=location, rule=rule, env_snapshot=env_snapshot)


@dataclass
class TracebackFrame:
    name: str
    location: Optional[SourceLocation]
    called_from: Optional[SourceLocation]
    state_entry: Optional[StateEntry]

    @property
    def label(self) -> str:
        return self.name if self.name.startswith("<") else f".{self.name}"


def _location_json(location: Optional[SourceLocation]) -> Optional[Dict[str, Any]]:
    if location is None:
        return None
    return {
        "file": location.file,
        "line": location.line,
        "column": location.column,
        "statement": location.statement,
    }


class TracebackFormatter:
    """Renders a fatal error against the call stack left behind by the run.

    Runs of identical frames (deep recursion through one call site) are
    collapsed to a single frame plus a repeat count.
    """

    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self) -> List[TracebackFrame]:
        frames: List[TracebackFrame] = []
        for frame in self.interpreter.call_stack:
            entry = self.interpreter.logger.last_entry_for_frame(frame.frame_id)
            frames.append(
                TracebackFrame(
                    name=frame.name,
                    location=entry.source_location if entry else None,
                    called_from=frame.call_location,
                    state_entry=entry,
                )
            )
        return frames

    def format_text(self, error: RatioFatalError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        previous = None
        repeats = 0
        for frame in self.build_frames():
            key = (frame.label, frame.location.line if frame.location else None)
            if key == previous:
                repeats += 1
                continue
            if repeats:
                lines.append(f"  [frame repeated {repeats} more time(s)]")
                repeats = 0
            previous = key
            lines.extend(self._frame_lines(frame, verbose))
        if repeats:
            lines.append(f"  [frame repeated {repeats} more time(s)]")

        where = error.location
        position = f" at {where.file}:{where.line}:{where.column}" if where else ""
        lines.append(f"{error.__class__.__name__}: {error.message}{position} ({error.rule or 'runtime'})")
        reported = len(self.interpreter.diagnostics)
        if reported:
            lines.append(f"{reported} runtime error(s) were reported before the failure")
        return "\n".join(lines)

    def _frame_lines(self, frame: TracebackFrame, verbose: bool) -> List[str]:
        location = frame.location
        if location is None:
            out = [f"  in {frame.label} (no statement executed)"]
        else:
            out = [f"  in {frame.label} at {location.file}:{location.line}:{location.column}"]
            if location.statement:
                out.append(f"    {location.statement}")
        entry = frame.state_entry
        if verbose and entry and entry.env_snapshot is not None:
            names = ", ".join(f"{k}={v}" for k, v in entry.env_snapshot.items())
            out.append(f"    vars: {names or '(none)'}")
        return out

    def to_json(self, error: RatioFatalError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for index, frame in enumerate(self.build_frames()):
            entry: Dict[str, Any] = {
                "frame_index": index,
                "function": frame.label,
                "source_location": _location_json(frame.location),
                "called_from": _location_json(frame.called_from),
            }
            if frame.state_entry:
                entry["step_index"] = frame.state_entry.step_index
                entry["rule"] = frame.state_entry.rule
                if frame.state_entry.env_snapshot is not None:
                    entry["env_snapshot"] = frame.state_entry.env_snapshot
            frames_json.append(entry)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "rule": error.rule,
                "location": _location_json(error.location),
                "failing_step_index": error.step_index,
            },
            "traceback": frames_json,
            "diagnostics": [asdict(diagnostic) for diagnostic in self.interpreter.diagnostics],
        }
        return json.dumps(data, indent=2)
