from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional


class RatioError(Exception):
    """Base class for interpreter errors."""


class RatioParseError(RatioError):
    """Raised when parsing fails. Always fatal."""

    def __init__(self, message: str, *, filename: str = "<string>", line: int = 0, column: int = 0) -> None:
        super().__init__(f"{message} at {filename}:{line}:{column}")
        self.message = message
        self.filename = filename
        self.line = line
        self.column = column


@dataclass(frozen=True)
class Token:
    type: str
    value: str
    line: int
    column: int


KEYWORDS = {
    "start": "START",
    "set": "SET",
    "echo": "ECHO",
    "if": "IF",
    "elseif": "ELSEIF",
    "else": "ELSE",
    "endb": "ENDB",
    "for": "FOR",
    "while": "WHILE",
    "endl": "ENDL",
    "break": "BREAK",
    "continue": "CONTINUE",
    "call": "CALL",
    "ret": "RET",
    "jmp": "JMP",
    "jeq": "JEQ",
    "jne": "JNE",
    "jgt": "JGT",
    "jlt": "JLT",
    "jge": "JGE",
    "jle": "JLE",
    "halt": "HALT",
    "type": "TYPE",
    "int": "INT_CAST",
    "float": "FLOAT_CAST",
    "str": "STR_CAST",
    "bool": "BOOL_CAST",
    "in": "IN",
    "add": "ADD",
    "sub": "SUB",
    "mul": "MUL",
    "div": "DIV",
    "mod": "MOD",
    "inc": "INC",
    "dec": "DEC",
    "concat": "CONCAT",
    "eq": "EQ",
    "ne": "NE",
    "gt": "GT",
    "lt": "LT",
    "ge": "GE",
    "le": "LE",
    "and": "AND",
    "or": "OR",
    "not": "NOT",
    "true": "TRUE",
    "false": "FALSE",
}

SYMBOLS = {
    ",": "COMMA",
    "(": "LPAREN",
    ")": "RPAREN",
    "{": "LBRACE",
    "}": "RBRACE",
    "[": "LBRACKET",
    "]": "RBRACKET",
    ":": "COLON",
    "$": "DOLLAR",
}


def _is_digit(ch: str) -> bool:
    return ch != "" and "0" <= ch <= "9"


class Lexer:
    def __init__(self, text: str, filename: str = "<string>") -> None:
        self.text = text
        self.filename = filename
        self.index = 0
        self.line = 1
        self.column = 0

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        _advance = self._advance
        symbols = SYMBOLS
        text = self.text
        n = len(text)

        while self.index < n:
            ch: str = text[self.index]
            if ch == " " or ch == "\t" or ch == "\r":
                _advance()
                continue
            if ch == "\n":
                tokens_append(Token("NEWLINE", "\n", self.line, self.column))
                _advance()
                continue
            if ch == "/" and self._peek(1) == "/":
                self._consume_line_comment()
                continue
            if ch == "/" and self._peek(1) == "*":
                self._consume_block_comment()
                continue
            if _is_digit(ch):
                tokens_append(self._consume_number())
                continue
            if ch == "-" and _is_digit(self._peek(1)):
                tokens_append(self._consume_number())
                continue
            if ch == '"':
                tokens_append(self._consume_string())
                continue
            if ch == ".":
                tokens_append(self._consume_dot())
                continue
            if ch in symbols:
                tokens_append(Token(symbols[ch], ch, self.line, self.column))
                _advance()
                continue
            if ch == "_" and not self._is_identifier_part(self._peek(1)):
                tokens_append(Token("UNDERSCORE", ch, self.line, self.column))
                _advance()
                continue
            if ch.isalpha() or ch == "_":
                tokens_append(self._consume_identifier())
                continue
            # Unknown characters become ERROR tokens so the parser can
            # report them with a position instead of the scan aborting.
            tokens_append(Token("ERROR", ch, self.line, self.column))
            _advance()
        tokens_append(Token("EOF", "", self.line, self.column))
        return tokens

    def _consume_line_comment(self) -> None:
        text = self.text
        n = len(text)
        _advance = self._advance
        while self.index < n and text[self.index] != "\n":
            _advance()

    def _consume_block_comment(self) -> None:
        self._advance()
        self._advance()
        while not self._eof:
            if self._peek() == "*" and self._peek(1) == "/":
                self._advance()
                self._advance()
                return
            self._advance()

    def _consume_number(self) -> Token:
        line, col = self.line, self.column
        chars: List[str] = []
        if self._peek() == "-":
            chars.append("-")
            self._advance()
        is_float = False
        text = self.text
        n = len(text)
        while self.index < n:
            ch = text[self.index]
            if _is_digit(ch):
                chars.append(ch)
                self._advance()
                continue
            if ch == ".":
                # A second point, or the start of an ellipsis, ends the number.
                if is_float or self._peek(1) == ".":
                    break
                is_float = True
                chars.append(ch)
                self._advance()
                continue
            break
        return Token("FLOAT" if is_float else "INT", "".join(chars), line, col)

    def _consume_string(self) -> Token:
        line, col = self.line, self.column
        self._advance()  # consume opening quote
        chars: List[str] = []
        while not self._eof:
            ch = self._peek()
            if ch == "\\" and self._peek(1) == '"':
                chars.append('"')
                self._advance()
                self._advance()
                continue
            if ch == '"':
                self._advance()
                return Token("STRING", "".join(chars), line, col)
            chars.append(ch)
            self._advance()
        return Token("ERROR", '"' + "".join(chars), line, col)

    def _consume_dot(self) -> Token:
        line, col = self.line, self.column
        if self._peek(1) == "." and self._peek(2) == ".":
            self._advance()
            self._advance()
            self._advance()
            return Token("ELLIPSIS", "...", line, col)
        if self._peek(1).isalpha():
            chars: List[str] = ["."]
            self._advance()
            while not self._eof and self._is_identifier_part(self._peek()):
                chars.append(self._peek())
                self._advance()
            return Token("LABEL", "".join(chars), line, col)
        self._advance()
        return Token("DOT", ".", line, col)

    def _consume_identifier(self) -> Token:
        line, col = self.line, self.column
        chars: List[str] = []
        text = self.text
        n = len(text)
        _advance = self._advance
        while self.index < n:
            ch = text[self.index]
            if self._is_identifier_part(ch):
                chars.append(ch)
                _advance()
                continue
            break
        value = "".join(chars)
        token_type: str = KEYWORDS.get(value.lower(), "IDENT")
        return Token(token_type, value, line, col)

    def _is_identifier_part(self, ch: str) -> bool:
        return ch != "" and (ch.isalnum() or ch == "_")

    @property
    def _eof(self) -> bool:
        return self.index >= len(self.text)

    def _peek(self, offset: int = 0) -> str:
        pos = self.index + offset
        if pos >= len(self.text):
            return ""
        return self.text[pos]

    def _advance(self) -> None:
        if self.text[self.index] == "\n":
            self.line += 1
            self.column = 0
        else:
            self.column += 1
        self.index += 1


def scan(source: str, filename: str = "<string>") -> List[Token]:
    return Lexer(source, filename).tokenize()


def describe_token(token: Token, filename: Optional[str] = None) -> str:
    prefix = f"{filename}:" if filename else ""
    if token.value and token.type != "NEWLINE":
        return f"[{prefix}{token.line}:{token.column}] {token.type} '{token.value}'"
    return f"[{prefix}{token.line}:{token.column}] {token.type}"
