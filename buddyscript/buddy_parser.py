"""
Parses Buddy Script source text into AST nodes.

The grammar lives in ``grammar/buddy_grammar.lark`` and is compiled once per
process into an LALR parser. ``BraceDisambiguator`` decides whether a ``{``
opens a block or a dict literal, and ``BuddyTransformer`` turns the parse tree
into the node classes of :mod:`buddyscript.buddy_datatypes`.
"""
import logging
from pathlib import Path
from typing import Iterator, List, Optional

from lark import Lark, Token
from lark.exceptions import LarkError, UnexpectedCharacters, UnexpectedEOF, UnexpectedInput, UnexpectedToken, VisitError
from lark.lark import PostLex

from buddyscript.buddy_datatypes import BuddySyntaxError, Program
from buddyscript.buddy_transformer import BuddyTransformer

logger = logging.getLogger(__name__)

GRAMMAR_PATH = Path(__file__).parent / "grammar" / "buddy_grammar.lark"

# Token texts after which a "{" starts a dict literal rather than a block.
EXPRESSION_PRECEDERS = frozenset({
    "=", "+=", "-=", "*=", "/=", "%=",
    "(", "[", ",", ":", "?",
    "+", "-", "*", "/", "%", "**",
    "==", "!=", "===", "!==", "<", "<=", ">", ">=",
    "&&", "||", "!",
    "return", "throw", "await", "new", "in", "of", "assert",
})

_LITERAL_TOKENS = ("STRING", "TEMPLATE", "NUMBER", "NAME")


class BraceDisambiguator(PostLex):
    """Retypes ``{`` to ``_DICT_LBRACE`` when it appears in expression position."""

    always_accept = ()

    def process(self, stream: Iterator[Token]) -> Iterator[Token]:
        prev = None
        for tok in stream:
            if tok.type == "_LBRACE" and prev is not None and self._opens_expression(prev):
                tok = Token.new_borrow_pos("_DICT_LBRACE", tok.value, tok)
            prev = tok
            yield tok

    @staticmethod
    def _opens_expression(prev: Token) -> bool:
        if prev.type in _LITERAL_TOKENS:
            return False
        return str(prev) in EXPRESSION_PRECEDERS


class BuddyParser:
    """Source text -> :class:`Program` (or a single expression node)."""

    _lark: Optional[Lark] = None

    def __init__(self):
        if BuddyParser._lark is None:
            logger.debug("compiling grammar %s", GRAMMAR_PATH)
            BuddyParser._lark = Lark(
                GRAMMAR_PATH.read_text(encoding="utf-8"),
                start=["start", "expr_start"],
                parser="lalr",
                lexer="basic",
                postlex=BraceDisambiguator(),
                propagate_positions=True,
            )
        self.lark = BuddyParser._lark
        self.transformer = BuddyTransformer(self.parse_expression)

    def parse(self, source: str) -> Program:
        """Parses a whole script."""
        text = _strip_shebang(source)
        tree = self._parse_tree(text, "start")
        return self._transform(tree)

    def parse_expression(self, text: str):
        """Parses a single expression (used for ``${...}`` interpolation)."""
        # Parenthesised so a leading "{" reads as a dict literal.
        tree = self._parse_tree(f"({text})", "expr_start")
        return self._transform(tree)

    def tokenize(self, source: str) -> List[dict]:
        """Lexes source into ``{type, value, line, column}`` records."""
        text = _strip_shebang(source)
        try:
            return [
                {"type": tok.type, "value": str(tok), "line": tok.line, "column": tok.column}
                for tok in self.lark.lex(text)
            ]
        except UnexpectedInput as e:
            raise _syntax_error(e) from e

    def _parse_tree(self, text: str, start: str):
        try:
            return self.lark.parse(text, start=start)
        except UnexpectedInput as e:
            raise _syntax_error(e) from e
        except LarkError as e:
            raise BuddySyntaxError(str(e)) from e

    def _transform(self, tree):
        try:
            return self.transformer.transform(tree)
        except VisitError as e:
            if isinstance(e.orig_exc, BuddySyntaxError):
                raise e.orig_exc from None
            meta = getattr(e.obj, "meta", None)
            line = getattr(meta, "line", None) if meta is not None and not meta.empty else None
            raise BuddySyntaxError(str(e.orig_exc), line) from e.orig_exc


def _strip_shebang(source: str) -> str:
    if source.startswith("#!"):
        # Keep the newline so line numbers stay aligned.
        newline = source.find("\n")
        return "" if newline < 0 else source[newline:]
    return source


def _syntax_error(e: UnexpectedInput) -> BuddySyntaxError:
    line = getattr(e, "line", None)
    column = getattr(e, "column", None)
    if line is not None and line < 0:
        line = column = None
    match e:
        case UnexpectedToken(token=tok) if tok.type == "$END":
            msg = "Unexpected end of input"
        case UnexpectedToken(token=tok):
            msg = f"Unexpected token {str(tok)!r}"
        case UnexpectedCharacters(char=ch):
            msg = f"Unexpected character {ch!r}"
        case UnexpectedEOF():
            msg = "Unexpected end of input"
        case _:
            msg = str(e)
    return BuddySyntaxError(msg, line, column)
