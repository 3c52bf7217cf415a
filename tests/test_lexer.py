import pytest
from lexer import Lexer, Token, describe_token, scan


def kinds(source):
    return [token.type for token in scan(source)]


class TestBase:
    @pytest.fixture(autouse=True)
    def set_lexer(self):
        self.lex = lambda text: Lexer(text, "test.ratio").tokenize()


class TestScan(TestBase):
    def test_start_main(self):
        tokens = self.lex("start .main")
        assert [t.type for t in tokens] == ["START", "LABEL", "EOF"]
        assert tokens[1].value == ".main"

    def test_keywords_case_insensitive(self):
        assert kinds("SET Echo iF EndB") == ["SET", "ECHO", "IF", "ENDB", "EOF"]
        assert kinds("TRUE false") == ["TRUE", "FALSE", "EOF"]

    def test_identifiers_keep_case(self):
        tokens = self.lex("Total total")
        assert [(t.type, t.value) for t in tokens[:2]] == [("IDENT", "Total"), ("IDENT", "total")]

    def test_numbers(self):
        tokens = self.lex("42 3.14 -7 -0.5")
        assert [(t.type, t.value) for t in tokens[:-1]] == [
            ("INT", "42"),
            ("FLOAT", "3.14"),
            ("INT", "-7"),
            ("FLOAT", "-0.5"),
        ]

    def test_range_splits_at_ellipsis(self):
        tokens = self.lex("(1...10)")
        assert [t.type for t in tokens] == ["LPAREN", "INT", "ELLIPSIS", "INT", "RPAREN", "EOF"]
        assert tokens[1].value == "1"
        assert tokens[3].value == "10"

    def test_second_point_ends_number(self):
        tokens = self.lex("1.5.2")
        assert tokens[0] == Token("FLOAT", "1.5", 1, 0)
        assert tokens[1].type == "DOT"

    def test_string_with_escaped_quote(self):
        tokens = self.lex('"say \\"hi\\""')
        assert tokens[0].type == "STRING"
        assert tokens[0].value == 'say "hi"'

    def test_unterminated_string(self):
        tokens = self.lex('set s, "abc')
        error = tokens[3]
        assert error.type == "ERROR"
        assert error.value.startswith('"')
        assert error.column == 7
        assert tokens[-1].type == "EOF"

    def test_unknown_character(self):
        tokens = self.lex("set x, @")
        assert tokens[3] == Token("ERROR", "@", 1, 7)

    def test_comments_elided(self):
        source = "echo 1 // trailing\n/* block\ncomment */ echo 2"
        assert kinds(source) == ["ECHO", "INT", "NEWLINE", "ECHO", "INT", "EOF"]

    def test_unterminated_block_comment_runs_to_end(self):
        assert kinds("echo 1 /* never closed\necho 2") == ["ECHO", "INT", "EOF"]

    def test_underscore_and_loop_label(self):
        tokens = self.lex("_ outer _inner")
        assert [(t.type, t.value) for t in tokens[:-1]] == [
            ("UNDERSCORE", "_"),
            ("IDENT", "outer"),
            ("IDENT", "_inner"),
        ]

    def test_dot_forms(self):
        assert kinds("... .loop .") == ["ELLIPSIS", "LABEL", "DOT", "EOF"]

    def test_symbols(self):
        assert kinds(", ( ) { } [ ] : $") == [
            "COMMA", "LPAREN", "RPAREN", "LBRACE", "RBRACE",
            "LBRACKET", "RBRACKET", "COLON", "DOLLAR", "EOF",
        ]

    def test_positions(self):
        tokens = self.lex("start .main\n  echo x")
        echo = tokens[3]
        assert (echo.type, echo.line, echo.column) == ("ECHO", 2, 2)
        assert (tokens[4].line, tokens[4].column) == (2, 7)

    def test_deterministic(self):
        source = "start .main\nfor i (1...3)\necho i\nendl\n"
        assert scan(source) == scan(source)


class TestDescribe(TestBase):
    def test_describe_token(self):
        assert describe_token(Token("IDENT", "x", 3, 4)) == "[3:4] IDENT 'x'"
        assert describe_token(Token("NEWLINE", "\n", 1, 9)) == "[1:9] NEWLINE"
        assert describe_token(Token("EOF", "", 2, 0), "a.ratio") == "[a.ratio:2:0] EOF"
