from __future__ import annotations
from dataclasses import dataclass, field, fields
from typing import Dict, Iterable, List, Optional, Tuple, Union

from lexer import RatioParseError, Token


INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1

CAST_TOKENS = {
    "INT_CAST": "int",
    "FLOAT_CAST": "float",
    "STR_CAST": "string",
    "BOOL_CAST": "bool",
}
ARITHMETIC_TOKENS = {"ADD", "SUB", "MUL", "DIV", "MOD", "CONCAT"}
COMPARISON_TOKENS = {"EQ", "NE", "GT", "LT", "GE", "LE"}
LOGICAL_TOKENS = {"AND", "OR"}
JUMP_TOKENS = {"JMP", "JEQ", "JNE", "JGT", "JLT", "JGE", "JLE"}


@dataclass
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str


@dataclass
class Node:
    location: SourceLocation


class Statement(Node):
    pass


class Expression(Node):
    pass


@dataclass
class Block(Node):
    statements: List[Statement]
    # label name -> index of its LabelStatement in ``statements``
    labels: Dict[str, int] = field(default_factory=dict)


@dataclass
class FunctionDef(Node):
    name: str
    params: List[str]
    body: Block


@dataclass
class Program(Node):
    functions: Dict[str, FunctionDef]
    main: Block


@dataclass
class LabelStatement(Statement):
    name: str


@dataclass
class Assignment(Statement):
    target: str
    expression: Expression


@dataclass
class ExpressionStatement(Statement):
    expression: Expression


@dataclass
class EchoStatement(Statement):
    expressions: List[Expression]


@dataclass
class IfStatement(Statement):
    condition: Expression
    then_block: Block
    else_block: Optional[Block]


@dataclass
class ForStatement(Statement):
    variable: str
    start: Expression
    end: Expression
    step: Optional[Expression]
    body: Block
    label: Optional[str]


@dataclass
class WhileStatement(Statement):
    condition: Expression
    body: Block
    label: Optional[str]


@dataclass
class BreakStatement(Statement):
    label: Optional[str]


@dataclass
class ContinueStatement(Statement):
    label: Optional[str]


@dataclass
class IncDecStatement(Statement):
    op: str
    target: str
    amount: Optional[Expression]


@dataclass
class CallStatement(Statement):
    name: str
    args: List[Expression]
    results: List[str]


@dataclass
class ReturnStatement(Statement):
    values: List[Expression]


@dataclass
class JumpStatement(Statement):
    op: str
    left: Optional[Expression]
    right: Optional[Expression]
    target: str


@dataclass
class HaltStatement(Statement):
    message: Optional[Expression]


@dataclass
class TypeCheck(Statement):
    variable: str
    result: Optional[str]


@dataclass
class Literal(Expression):
    value: Union[int, float, str, bool]
    literal_type: str


@dataclass
class Identifier(Expression):
    name: str


@dataclass
class ArrayLiteral(Expression):
    items: List[Expression]


@dataclass
class IndexExpression(Expression):
    base: Expression
    index: Expression


@dataclass
class PropertyAccess(Expression):
    base: Expression
    property: str


@dataclass
class InputExpression(Expression):
    prompt: Optional[Expression]


@dataclass
class BinaryOperation(Expression):
    op: str
    left: Expression
    right: Expression
    result: Optional[str]


@dataclass
class NotExpression(Expression):
    operand: Expression


@dataclass
class TypeCast(Expression):
    target_type: str
    value: Expression
    result: Optional[str]


class Parser:
    def __init__(
        self,
        tokens: List[Token],
        filename: str = "<string>",
        source_lines: Optional[List[str]] = None,
    ):
        self.tokens = tokens
        self.filename = filename
        self.source_lines = source_lines if source_lines is not None else []
        self.index = 0
        self.functions: Dict[str, FunctionDef] = {}
        self._in_function = False
        self._loop_labels: List[Optional[str]] = []
        self._label_scopes: List[Dict[str, int]] = []
        self._pending_jumps: List[Tuple[JumpStatement, List[Dict[str, int]]]] = []
        self._pending_calls: List[CallStatement] = []

    def parse(self) -> Program:
        try:
            return self._parse_program()
        except RecursionError:
            raise self._error("Program is nested too deeply to parse", self._peek()) from None

    def _parse_program(self) -> Program:
        self._consume_newlines()
        while self._at_function_definition():
            function = self._parse_function()
            self.functions[function.name] = function
            self._consume_newlines()

        start = self._peek()
        if start.type != "START":
            raise self._unexpected(start, "Expected function definition or 'start .main'")
        self._advance()
        main_label = self._consume("LABEL", "Expected '.main' after 'start'")
        if main_label.value != ".main":
            raise self._error(f"Expected '.main' after 'start' but found '{main_label.value}'", main_label)
        self._expect_statement_end()

        self._in_function = False
        main = self._parse_body(start, stop_tokens={"EOF"}, stop_at_function=False)
        self._consume("EOF", "Expected end of input")

        for call in self._pending_calls:
            if call.name not in self.functions:
                raise self._error_at(f"Call to undefined function '.{call.name}'", call.location)
        return Program(location=self._location_from_token(start), functions=dict(self.functions), main=main)

    # ---- blocks ----

    def _parse_function(self) -> FunctionDef:
        name_token = self._consume("LABEL", "Expected function name")
        name = name_token.value[1:]
        if name in self.functions:
            raise self._error(f"Function '.{name}' is already defined", name_token)
        self._consume("LPAREN", "Expected '(' after function name")
        params: List[str] = []
        if self._peek().type != "RPAREN":
            while True:
                param = self._consume("IDENT", "Expected parameter name")
                if param.value in params:
                    raise self._error(f"Duplicate parameter '{param.value}' in '.{name}'", param)
                params.append(param.value)
                if not self._match("COMMA"):
                    break
        self._consume("RPAREN", "Expected ')' after parameters")
        self._expect_statement_end()

        self._in_function = True
        body = self._parse_body(name_token, stop_tokens={"START", "EOF"}, stop_at_function=True)
        self._in_function = False
        return FunctionDef(location=self._location_from_token(name_token), name=name, params=params, body=body)

    def _parse_body(self, opening: Token, stop_tokens: Iterable[str], stop_at_function: bool) -> Block:
        self._pending_jumps = []
        self._loop_labels = []
        body = self._parse_block(opening, stop_tokens, stop_at_function=stop_at_function)
        # Jump targets are checked once the whole body is known so forward
        # jumps resolve against labels defined later in the same list.
        for jump, scopes in self._pending_jumps:
            if not any(jump.target in scope for scope in scopes):
                raise self._error_at(f"Jump to undefined label '.{jump.target}'", jump.location)
        self._pending_jumps = []
        return body

    def _parse_block(self, opening: Token, stop_tokens: Iterable[str], *, stop_at_function: bool = False) -> Block:
        labels: Dict[str, int] = {}
        self._label_scopes.append(labels)
        statements = self._parse_statements(stop_tokens, stop_at_function=stop_at_function)
        self._label_scopes.pop()
        for position, statement in enumerate(statements):
            if isinstance(statement, LabelStatement):
                if statement.name in labels:
                    raise self._error_at(f"Duplicate label '.{statement.name}'", statement.location)
                labels[statement.name] = position
        return Block(location=self._location_from_token(opening), statements=statements, labels=labels)

    def _parse_statements(self, stop_tokens: Iterable[str], *, stop_at_function: bool = False) -> List[Statement]:
        stop = set(stop_tokens)
        statements: List[Statement] = []
        while self._peek().type not in stop:
            if self._match("NEWLINE"):
                continue
            if stop_at_function and self._at_function_definition():
                break
            if self._peek().type == "EOF":
                break
            statements.append(self._parse_statement())
            self._expect_statement_end()
        return statements

    # ---- statements ----

    def _parse_statement(self) -> Statement:
        token = self._peek()
        ttype = token.type
        if ttype == "SET":
            return self._parse_assignment()
        if ttype == "ECHO":
            return self._parse_echo()
        if ttype == "IF":
            return self._parse_if()
        if ttype == "FOR":
            return self._parse_for()
        if ttype == "WHILE":
            return self._parse_while()
        if ttype == "BREAK" or ttype == "CONTINUE":
            return self._parse_break_continue()
        if ttype == "INC" or ttype == "DEC":
            return self._parse_inc_dec()
        if ttype == "CALL":
            return self._parse_call()
        if ttype == "RET":
            return self._parse_return()
        if ttype in JUMP_TOKENS:
            return self._parse_jump()
        if ttype == "HALT":
            return self._parse_halt()
        if ttype == "TYPE":
            return self._parse_type_check()
        if ttype == "LABEL":
            if self._peek_next().type == "LPAREN":
                raise self._error(f"Function definition '{token.value}' is not allowed here", token)
            self._advance()
            return LabelStatement(location=self._location_from_token(token), name=token.value[1:])
        if ttype in ARITHMETIC_TOKENS or ttype in CAST_TOKENS or ttype == "NOT":
            expr = self._parse_expression()
            return ExpressionStatement(location=self._location_from_token(token), expression=expr)
        raise self._unexpected(token, "Unexpected token in statement")

    def _parse_assignment(self) -> Assignment:
        keyword = self._advance()
        target = self._consume("IDENT", "Expected variable name after 'set'")
        if not (self._match("COMMA") or self._match("EQ")):
            raise self._unexpected(self._peek(), "Expected ',' or 'eq' after variable name")
        expr = self._parse_expression()
        return Assignment(location=self._location_from_token(keyword), target=target.value, expression=expr)

    def _parse_echo(self) -> EchoStatement:
        keyword = self._advance()
        expressions: List[Expression] = []
        while not self._at_line_end():
            expressions.append(self._parse_expression())
            self._match("COMMA")
        return EchoStatement(location=self._location_from_token(keyword), expressions=expressions)

    def _parse_if(self) -> IfStatement:
        keyword = self._advance()
        statement = self._parse_if_arm(keyword)
        self._consume("ENDB", f"Expected 'endb' to close 'if' from line {keyword.line}")
        return statement

    def _parse_if_arm(self, keyword: Token) -> IfStatement:
        condition = self._parse_expression()
        self._expect_statement_end()
        then_block = self._parse_block(keyword, {"ELSEIF", "ELSE", "ENDB", "EOF"})
        else_block: Optional[Block] = None
        token = self._peek()
        if token.type == "ELSEIF":
            self._advance()
            # elseif becomes a nested if that is the whole else arm; the
            # outermost if owns the single closing endb.
            nested = self._parse_if_arm(token)
            else_block = Block(location=nested.location, statements=[nested])
        elif token.type == "ELSE":
            self._advance()
            self._expect_statement_end()
            else_block = self._parse_block(token, {"ENDB", "EOF"})
        return IfStatement(
            location=self._location_from_token(keyword),
            condition=condition,
            then_block=then_block,
            else_block=else_block,
        )

    def _parse_for(self) -> ForStatement:
        keyword = self._advance()
        variable = self._consume("IDENT", "Expected loop variable")
        self._consume("LPAREN", "Expected '(' after loop variable")
        start = self._parse_expression()
        self._consume("ELLIPSIS", "Expected '...' in for loop range")
        end = self._parse_expression()
        step: Optional[Expression] = None
        if self._match("COMMA"):
            step = self._parse_expression()
        self._consume("RPAREN", "Expected ')' after loop range")
        label = self._parse_loop_label()
        self._expect_statement_end()
        body = self._parse_loop_body(keyword, label, "for")
        return ForStatement(
            location=self._location_from_token(keyword),
            variable=variable.value,
            start=start,
            end=end,
            step=step,
            body=body,
            label=label,
        )

    def _parse_while(self) -> WhileStatement:
        keyword = self._advance()
        condition = self._parse_expression()
        label = self._parse_loop_label()
        self._expect_statement_end()
        body = self._parse_loop_body(keyword, label, "while")
        return WhileStatement(location=self._location_from_token(keyword), condition=condition, body=body, label=label)

    def _parse_loop_body(self, keyword: Token, label: Optional[str], kind: str) -> Block:
        self._loop_labels.append(label)
        body = self._parse_block(keyword, {"ENDL", "EOF"})
        self._loop_labels.pop()
        self._consume("ENDL", f"Expected 'endl' to close '{kind}' from line {keyword.line}")
        return body

    def _parse_loop_label(self) -> Optional[str]:
        token = self._peek()
        if token.type == "UNDERSCORE":
            self._advance()
            return self._consume("IDENT", "Expected label name after '_'").value
        if token.type == "IDENT" and token.value.startswith("_") and len(token.value) > 1:
            self._advance()
            return token.value[1:]
        return None

    def _parse_break_continue(self) -> Statement:
        keyword = self._advance()
        word = keyword.value.lower()
        label: Optional[str] = None
        token = self._peek()
        if token.type == "UNDERSCORE":
            self._advance()
            label = self._consume("IDENT", f"Expected label name after '{word} _'").value
        elif token.type == "IDENT":
            self._advance()
            label = token.value[1:] if token.value.startswith("_") and len(token.value) > 1 else token.value
        if not self._loop_labels:
            raise self._error(f"'{word}' outside of loop", keyword)
        if label is not None and label not in self._loop_labels:
            raise self._error(f"No enclosing loop labeled '{label}' for '{word}'", keyword)
        location = self._location_from_token(keyword)
        if keyword.type == "BREAK":
            return BreakStatement(location=location, label=label)
        return ContinueStatement(location=location, label=label)

    def _parse_inc_dec(self) -> IncDecStatement:
        keyword = self._advance()
        target = self._consume("IDENT", "Expected variable name")
        amount: Optional[Expression] = None
        if self._match("COMMA"):
            amount = self._parse_expression()
        return IncDecStatement(location=self._location_from_token(keyword), op=keyword.type, target=target.value, amount=amount)

    def _parse_call(self) -> CallStatement:
        keyword = self._advance()
        name = self._consume("LABEL", "Expected function name after 'call'")
        self._consume("LPAREN", "Expected '(' after function name")
        args: List[Expression] = []
        if self._peek().type != "RPAREN":
            while True:
                args.append(self._parse_expression())
                if not self._match("COMMA"):
                    break
        self._consume("RPAREN", "Expected ')' after arguments")
        results: List[str] = []
        if self._match("EQ"):
            while True:
                results.append(self._consume("IDENT", "Expected variable name after 'eq'").value)
                if not self._match("COMMA"):
                    break
        call = CallStatement(location=self._location_from_token(keyword), name=name.value[1:], args=args, results=results)
        self._pending_calls.append(call)
        return call

    def _parse_return(self) -> ReturnStatement:
        keyword = self._advance()
        if not self._in_function:
            raise self._error("'ret' outside of function", keyword)
        values: List[Expression] = []
        if not self._at_line_end():
            while True:
                values.append(self._parse_expression())
                if not self._match("COMMA"):
                    break
        return ReturnStatement(location=self._location_from_token(keyword), values=values)

    def _parse_jump(self) -> JumpStatement:
        keyword = self._advance()
        left: Optional[Expression] = None
        right: Optional[Expression] = None
        if keyword.type != "JMP":
            left = self._parse_operand()
            self._consume("COMMA", "Expected ',' after first operand")
            right = self._parse_operand()
        target = self._consume("LABEL", "Expected label for jump")
        jump = JumpStatement(
            location=self._location_from_token(keyword),
            op=keyword.type,
            left=left,
            right=right,
            target=target.value[1:],
        )
        self._pending_jumps.append((jump, list(self._label_scopes)))
        return jump

    def _parse_halt(self) -> HaltStatement:
        keyword = self._advance()
        message: Optional[Expression] = None
        if not self._at_line_end():
            message = self._parse_expression()
        return HaltStatement(location=self._location_from_token(keyword), message=message)

    def _parse_type_check(self) -> TypeCheck:
        keyword = self._advance()
        first = self._consume("IDENT", "Expected variable name after 'type'")
        if self._match("EQ"):
            variable = self._consume("IDENT", "Expected variable name after 'eq'")
            return TypeCheck(location=self._location_from_token(keyword), variable=variable.value, result=first.value)
        return TypeCheck(location=self._location_from_token(keyword), variable=first.value, result=None)

    # ---- expressions ----

    def _parse_expression(self) -> Expression:
        token = self._peek()
        if token.type in CAST_TOKENS or token.type in ARITHMETIC_TOKENS:
            return self._parse_prefix_form()
        if token.type == "NOT":
            self._advance()
            operand = self._parse_expression()
            return NotExpression(location=self._location_from_token(token), operand=operand)
        left = self._parse_primary()
        op = self._peek()
        if op.type in COMPARISON_TOKENS or op.type in LOGICAL_TOKENS:
            self._advance()
            right = self._parse_expression()
            return BinaryOperation(location=self._location_from_token(op), op=op.type, left=left, right=right, result=None)
        return left

    def _parse_operand(self) -> Expression:
        # Operands of prefix forms stop before comparisons so that a
        # trailing ``eq NAME`` binds the result instead of comparing.
        token = self._peek()
        if token.type in CAST_TOKENS or token.type in ARITHMETIC_TOKENS:
            return self._parse_prefix_form()
        if token.type == "NOT":
            self._advance()
            return NotExpression(location=self._location_from_token(token), operand=self._parse_operand())
        return self._parse_primary()

    def _parse_prefix_form(self) -> Expression:
        keyword = self._advance()
        location = self._location_from_token(keyword)
        if keyword.type in CAST_TOKENS:
            value = self._parse_operand()
            return TypeCast(location=location, target_type=CAST_TOKENS[keyword.type], value=value, result=self._parse_result_binding())
        left = self._parse_operand()
        self._consume("COMMA", "Expected ',' after first operand")
        right = self._parse_operand()
        return BinaryOperation(location=location, op=keyword.type, left=left, right=right, result=self._parse_result_binding())

    def _parse_result_binding(self) -> Optional[str]:
        if self._match("EQ"):
            return self._consume("IDENT", "Expected variable name after 'eq'").value
        return None

    def _parse_primary(self) -> Expression:
        token = self._peek()
        ttype = token.type
        if ttype == "INT":
            self._advance()
            value = int(token.value)
            if value < INT64_MIN or value > INT64_MAX:
                raise self._error(f"Integer literal {token.value} out of range", token)
            return Literal(location=self._location_from_token(token), value=value, literal_type="int")
        if ttype == "FLOAT":
            self._advance()
            return Literal(location=self._location_from_token(token), value=float(token.value), literal_type="float")
        if ttype == "STRING":
            self._advance()
            return Literal(location=self._location_from_token(token), value=token.value, literal_type="string")
        if ttype == "TRUE" or ttype == "FALSE":
            self._advance()
            return Literal(location=self._location_from_token(token), value=ttype == "TRUE", literal_type="bool")
        if ttype == "DOLLAR":
            self._advance()
            prompt: Optional[Expression] = None
            if self._peek().type == "STRING":
                prompt = self._parse_primary()
            return InputExpression(location=self._location_from_token(token), prompt=prompt)
        if ttype == "LBRACE":
            return self._parse_array_literal()
        if ttype == "LPAREN":
            self._advance()
            expr = self._parse_expression()
            self._consume("RPAREN", "Expected ')' after expression")
            return expr
        if ttype == "IDENT":
            self._advance()
            return self._parse_postfix(Identifier(location=self._location_from_token(token), name=token.value))
        raise self._unexpected(token, "Unexpected token in expression")

    def _parse_postfix(self, expr: Expression) -> Expression:
        while True:
            token = self._peek()
            if token.type == "LBRACKET":
                self._advance()
                index = self._parse_expression()
                self._consume("RBRACKET", "Expected ']' after array index")
                expr = IndexExpression(location=self._location_from_token(token), base=expr, index=index)
                continue
            # ``arr.len`` scans as IDENT + LABEL; only a label written flush
            # against the receiver is a property, so ``jeq a,b .end`` is not.
            if token.type == "LABEL" and self._touches_previous(token):
                self._advance()
                expr = PropertyAccess(location=self._location_from_token(token), base=expr, property=token.value[1:])
                continue
            if token.type == "DOT":
                self._advance()
                prop = self._consume("IDENT", "Expected property name after '.'")
                expr = PropertyAccess(location=self._location_from_token(token), base=expr, property=prop.value)
                continue
            return expr

    def _parse_array_literal(self) -> ArrayLiteral:
        lbrace = self._advance()
        items: List[Expression] = []
        if self._peek().type != "RBRACE":
            while True:
                items.append(self._parse_expression())
                if not self._match("COMMA"):
                    break
        self._consume("RBRACE", "Expected '}' after array elements")
        return ArrayLiteral(location=self._location_from_token(lbrace), items=items)

    # ---- token helpers ----

    def _consume(self, token_type: str, message: Optional[str] = None) -> Token:
        token = self._peek()
        if token.type != token_type:
            raise self._unexpected(token, message or f"Expected {token_type}", expected=token_type)
        return self._advance()

    def _match(self, token_type: str) -> bool:
        if self._peek().type == token_type:
            self._advance()
            return True
        return False

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        if token.type != "EOF":
            self.index += 1
        return token

    def _consume_newlines(self) -> None:
        while self._match("NEWLINE"):
            continue

    def _expect_statement_end(self) -> None:
        token = self._peek()
        if token.type == "NEWLINE":
            self._advance()
            return
        if token.type == "EOF":
            return
        raise self._unexpected(token, "Expected end of line after statement", expected="NEWLINE")

    def _at_line_end(self) -> bool:
        return self._peek().type in ("NEWLINE", "EOF")

    def _at_function_definition(self) -> bool:
        return self._peek().type == "LABEL" and self._peek_next().type == "LPAREN"

    def _touches_previous(self, token: Token) -> bool:
        if self.index == 0:
            return False
        previous = self.tokens[self.index - 1]
        return previous.line == token.line and previous.column + len(previous.value) == token.column

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _peek_next(self) -> Token:
        if self.index + 1 >= len(self.tokens):
            return self.tokens[-1]
        return self.tokens[self.index + 1]

    # ---- diagnostics ----

    def _location_from_token(self, token: Token) -> SourceLocation:
        line_index = token.line - 1
        statement = ""
        if 0 <= line_index < len(self.source_lines):
            statement = self.source_lines[line_index].strip()
        return SourceLocation(file=self.filename, line=token.line, column=token.column, statement=statement)

    def _error(self, message: str, token: Token) -> RatioParseError:
        return RatioParseError(message, filename=self.filename, line=token.line, column=token.column)

    def _error_at(self, message: str, location: SourceLocation) -> RatioParseError:
        return RatioParseError(message, filename=self.filename, line=location.line, column=location.column)

    def _unexpected(self, token: Token, message: str, *, expected: Optional[str] = None) -> RatioParseError:
        if token.type == "ERROR":
            if token.value.startswith('"'):
                return self._error("Unterminated string literal", token)
            return self._error(f"Unrecognized character '{token.value}'", token)
        if expected is not None:
            return self._error(f"{message} (expected {expected}, got {token.type})", token)
        return self._error(f"{message} (got {token.type})", token)


def parse(tokens: List[Token], filename: str = "<string>", source_lines: Optional[List[str]] = None) -> Program:
    return Parser(tokens, filename, source_lines).parse()


def format_ast(node: Node) -> str:
    """Render a node and its children as an indented tree, one node per line."""
    lines: List[str] = []
    _format_node(node, 0, "", lines)
    return "\n".join(lines)


def _format_node(node: Node, depth: int, prefix: str, lines: List[str]) -> None:
    attributes: List[str] = []
    children: List[Tuple[str, List[Node]]] = []
    for item in fields(node):
        if item.name in ("location", "labels"):
            continue
        value = getattr(node, item.name)
        if isinstance(value, Node):
            children.append((item.name, [value]))
        elif isinstance(value, dict):
            children.append((item.name, list(value.values())))
        elif isinstance(value, list) and value and isinstance(value[0], Node):
            children.append((item.name, value))
        elif value is not None and value != []:
            attributes.append(f"{item.name}={value!r}")
    header = f"{'  ' * depth}{prefix}{node.__class__.__name__}"
    if attributes:
        header += " " + " ".join(attributes)
    lines.append(f"{header} [{node.location.line}:{node.location.column}]")
    for name, nodes in children:
        for child in nodes:
            _format_node(child, depth + 1, f"{name}: ", lines)
