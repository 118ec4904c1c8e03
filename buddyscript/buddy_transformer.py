"""
Transforms the lark parse tree into the Buddy Script AST (buddy_datatypes).
"""
import re
from typing import Any, Callable, List, Optional

from lark import Token, Transformer, v_args

from buddyscript.buddy_datatypes import (
    Node, Param, Literal, Identifier, This, Binary, Logical, Unary, Update, Assignment,
    Call, Member, Index, ArrayLiteral, DictLiteral, Lambda, FunctionExpression,
    Interpolation, Ternary, Await,
    Program, Block, ExpressionStatement, VarDeclaration, FunctionDeclaration,
    ClassDeclaration, If, While, For, ForCStyle, Return, Break, Continue,
    CatchClause, Try, Throw, Import, Export, Assert, TestDeclaration,
    BuddySyntaxError,
)

_ESCAPE_RE = re.compile(r"\\(u\{[0-9a-fA-F]+\}|u[0-9a-fA-F]{4}|x[0-9a-fA-F]{2}|.)", re.DOTALL)
_SIMPLE_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "0": "\0", "b": "\b", "f": "\f", "v": "\v"}


def unescape(text: str) -> str:
    def repl(m):
        esc = m.group(1)
        if len(esc) > 1 and esc[0] in "ux":
            try:
                return chr(int(esc.strip("ux{}"), 16))
            except (ValueError, OverflowError):
                raise BuddySyntaxError(f"Invalid escape sequence: \\{esc}") from None
        return _SIMPLE_ESCAPES.get(esc, esc)
    return _ESCAPE_RE.sub(repl, text)


def _unescape_at(text: str, tok: Token) -> str:
    try:
        return unescape(text)
    except BuddySyntaxError as e:
        raise BuddySyntaxError(e.message, tok.line, tok.column) from None


def _matching_brace(text: str, start: int) -> int:
    """Index of the ``}`` closing an interpolation whose body starts at ``start``."""
    depth = 1
    i = start
    while i < len(text):
        ch = text[i]
        if ch in "\"'`":
            i += 1
            while i < len(text) and text[i] != ch:
                i += 2 if text[i] == "\\" else 1
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    return -1


def _line(meta) -> int:
    return getattr(meta, "line", 0) or 0


class _Named:
    """A ``name: value`` call argument, folded into Call.named_arguments."""
    def __init__(self, name: str, value: Node):
        self.name = name
        self.value = value


_ASSIGNABLE = (Identifier, Member, Index)


@v_args(meta=True)
class BuddyTransformer(Transformer):
    def __init__(self, parse_expression: Callable[[str], Node]):
        super().__init__()
        self._parse_expression = parse_expression

    # --- Program structure -------------------------------------------

    def start(self, meta, children):
        return Program(tuple(children), line=1)

    def expr_start(self, meta, children):
        return children[0]

    def block(self, meta, children):
        return Block(tuple(children), line=_line(meta))

    def expr_stmt(self, meta, children):
        return ExpressionStatement(children[0], line=_line(meta))

    # --- Declarations --------------------------------------------------

    def var_stmt(self, meta, children):
        return children[0]

    def var_decl(self, meta, children):
        init = children[1] if len(children) > 1 else None
        return VarDeclaration(str(children[0]), init, line=_line(meta))

    def params(self, meta, children):
        return tuple(children)

    def param(self, meta, children):
        default = children[1] if len(children) > 1 else None
        return Param(str(children[0]), default, line=_line(meta))

    def func_decl(self, meta, children):
        is_async, rest = self._split_async(children)
        name, params, body = rest
        return FunctionDeclaration(str(name), params or (), body, is_async, line=_line(meta))

    method_def = func_decl

    def field_def(self, meta, children):
        init = children[1] if len(children) > 1 else None
        return VarDeclaration(str(children[0]), init, line=_line(meta))

    def class_decl(self, meta, children):
        name, *members = children
        fields, methods = [], []
        for m in members:
            if isinstance(m, FunctionDeclaration):
                methods.append(m)
            else:
                fields.append((m.name, m.init))
        return ClassDeclaration(str(name), tuple(fields), tuple(methods), line=_line(meta))

    def test_decl(self, meta, children):
        name_tok, body = children
        return TestDeclaration(self._plain_string(name_tok), body, line=_line(meta))

    # --- Control flow ----------------------------------------------------

    def if_stmt(self, meta, children):
        alternate = children[2] if len(children) > 2 else None
        return If(children[0], children[1], alternate, line=_line(meta))

    def while_stmt(self, meta, children):
        return While(children[0], children[1], line=_line(meta))

    def for_in_stmt(self, meta, children):
        name, iterable, body = children
        return For(str(name), iterable, body, line=_line(meta))

    def for_c_stmt(self, meta, children):
        init, test, update, body = children
        if init is not None and not isinstance(init, VarDeclaration):
            init = ExpressionStatement(init, line=init.line)
        return ForCStyle(init, test, update, body, line=_line(meta))

    def return_stmt(self, meta, children):
        return Return(children[0] if children else None, line=_line(meta))

    def break_stmt(self, meta, children):
        return Break(line=_line(meta))

    def continue_stmt(self, meta, children):
        return Continue(line=_line(meta))

    def try_stmt(self, meta, children):
        block, *rest = children
        finalizer = rest.pop() if rest and not isinstance(rest[-1], CatchClause) else None
        handlers = tuple(rest)
        if not handlers and finalizer is None:
            raise BuddySyntaxError("try requires a catch or finally block", _line(meta))
        return Try(block, handlers, finalizer, line=_line(meta))

    def catch_clause(self, meta, children):
        name, body = children
        return CatchClause(str(name) if name is not None else None, body, line=_line(meta))

    def throw_stmt(self, meta, children):
        return Throw(children[0], line=_line(meta))

    def import_stmt(self, meta, children):
        name, source = children
        return Import(str(name), self._plain_string(source) if source is not None else None, line=_line(meta))

    def import_source(self, meta, children):
        return Import(None, self._plain_string(children[0]), line=_line(meta))

    def export_stmt(self, meta, children):
        return Export(children[0], line=_line(meta))

    def assert_stmt(self, meta, children):
        message = children[1] if len(children) > 1 else None
        return Assert(children[0], message, line=_line(meta))

    # --- Expressions -----------------------------------------------------

    def assign(self, meta, children):
        target, op, value = children
        self._check_target(target, meta)
        return Assignment(op, target, value, line=_line(meta))

    def ternary_expr(self, meta, children):
        return Ternary(*children, line=_line(meta))

    def or_expr(self, meta, children):
        return Logical("||", children[0], children[1], line=_line(meta))

    def and_expr(self, meta, children):
        return Logical("&&", children[0], children[1], line=_line(meta))

    def binary(self, meta, children):
        left, op, right = children
        return Binary(op, left, right, line=_line(meta))

    def power_expr(self, meta, children):
        return Binary("**", children[0], children[1], line=_line(meta))

    def unary(self, meta, children):
        op, operand = children
        return Unary(op, operand, line=_line(meta))

    def prefix_update(self, meta, children):
        op, target = children
        self._check_target(target, meta)
        return Update(op, target, True, line=_line(meta))

    def postfix_update(self, meta, children):
        target, op = children
        self._check_target(target, meta)
        return Update(op, target, False, line=_line(meta))

    def await_expr(self, meta, children):
        return Await(children[0], line=_line(meta))

    def new_expr(self, meta, children):
        target = children[0]
        if isinstance(target, Call):
            return target
        return Call(target, line=_line(meta))

    def member(self, meta, children):
        return Member(children[0], children[1], line=_line(meta))

    def index(self, meta, children):
        return Index(children[0], children[1], line=_line(meta))

    def call(self, meta, children):
        callee, args = children
        positional, named = [], []
        for arg in args or ():
            if isinstance(arg, _Named):
                named.append((arg.name, arg.value))
            else:
                positional.append(arg)
        return Call(callee, tuple(positional), tuple(named), line=_line(meta))

    def args(self, meta, children):
        return children

    def named_arg(self, meta, children):
        return _Named(str(children[0]), children[1])

    # Operator rules declared with "!" keep their token; hand back the text.
    def _op(self, meta, children):
        return str(children[0])

    assign_op = eq_op = cmp_op = add_op = mul_op = unary_op = update_op = member_name = _op

    # --- Atoms -----------------------------------------------------------

    def number(self, meta, children):
        return Literal(self._number_value(str(children[0])), line=_line(meta))

    def string(self, meta, children):
        tok = children[0]
        raw = str(tok)
        quote, body = raw[0], raw[1:-1]
        if quote == "'" or "${" not in body:
            return Literal(self._plain_string(tok), line=tok.line)
        try:
            parts = self._interpolation_parts(body)
        except BuddySyntaxError as e:
            raise BuddySyntaxError(f"Invalid interpolation: {e.message}", tok.line, tok.column) from e
        return Interpolation(
            tuple(Literal(_unescape_at(p, tok)) if isinstance(p, str) else p for p in parts),
            line=tok.line,
        )

    def true(self, meta, children):
        return Literal(True, line=_line(meta))

    def false(self, meta, children):
        return Literal(False, line=_line(meta))

    def null(self, meta, children):
        return Literal(None, line=_line(meta))

    def this(self, meta, children):
        return This(line=_line(meta))

    def identifier(self, meta, children):
        return Identifier(str(children[0]), line=_line(meta))

    def exprs(self, meta, children):
        return children

    def array(self, meta, children):
        return ArrayLiteral(tuple(children[0] or ()), line=_line(meta))

    def dict(self, meta, children):
        return DictLiteral(tuple(children[0] or ()), line=_line(meta))

    def dict_items(self, meta, children):
        return children

    def pair(self, meta, children):
        key, value = children
        if isinstance(key, Token) and key.type == "STRING":
            key = self._plain_string(key)
        elif isinstance(key, Token) and key.type == "NUMBER":
            key = str(self._number_value(str(key)))
        return (str(key), value)

    def shorthand(self, meta, children):
        name = str(children[0])
        return (name, Identifier(name, line=_line(meta)))

    def paren(self, meta, children):
        items = children[0]
        if not items:
            raise BuddySyntaxError("Empty parentheses", _line(meta))
        if len(items) > 1:
            raise BuddySyntaxError("Unexpected ',' in parenthesized expression", _line(meta))
        return items[0]

    def paren_lambda(self, meta, children):
        is_async, rest = self._split_async(children)
        items, body = rest
        params = tuple(self._to_param(item, meta) for item in items or ())
        return Lambda(params, body, is_async, line=_line(meta))

    def name_lambda(self, meta, children):
        is_async, rest = self._split_async(children)
        name, body = rest
        return Lambda((Param(str(name), line=_line(meta)),), body, is_async, line=_line(meta))

    def func_expr(self, meta, children):
        params, body = children
        return FunctionExpression(params or (), body, line=_line(meta))

    # --- Helpers -----------------------------------------------------------

    @staticmethod
    def _split_async(children: List[Any]):
        if children and isinstance(children[0], Token) and children[0].type == "ASYNC":
            return True, children[1:]
        return False, children

    @staticmethod
    def _check_target(target, meta):
        if not isinstance(target, _ASSIGNABLE):
            raise BuddySyntaxError("Invalid assignment target", _line(meta))

    @staticmethod
    def _to_param(node, meta) -> Param:
        match node:
            case Identifier(name=name):
                return Param(name, line=node.line)
            case Assignment(operator="=", target=Identifier(name=name), value=default):
                return Param(name, default, line=node.line)
            case _:
                raise BuddySyntaxError("Invalid lambda parameter", _line(meta))

    @staticmethod
    def _number_value(text: str):
        lowered = text.lower()
        if lowered.startswith("0x"):
            return int(text[2:], 16)
        if lowered.startswith("0b"):
            return int(text[2:], 2)
        if "." in text or "e" in lowered:
            value = float(text)
            return int(value) if value.is_integer() and "." not in text and abs(value) < 2 ** 53 else value
        return int(text)

    @staticmethod
    def _plain_string(tok) -> str:
        return _unescape_at(str(tok)[1:-1], tok)

    def _interpolation_parts(self, body: str) -> List[Any]:
        """Splits an interpolated body into raw text chunks and expression nodes."""
        parts: List[Any] = []
        buf: List[str] = []
        i = 0
        while i < len(body):
            ch = body[i]
            if ch == "\\" and i + 1 < len(body):
                buf.append(body[i:i + 2])
                i += 2
                continue
            if ch == "$" and body.startswith("{", i + 1):
                end = _matching_brace(body, i + 2)
                if end < 0:
                    raise BuddySyntaxError("unterminated ${")
                source = body[i + 2:end]
                if not source.strip():
                    raise BuddySyntaxError("empty ${}")
                if buf:
                    parts.append("".join(buf))
                    buf = []
                parts.append(self._parse_expression(source))
                i = end + 1
                continue
            buf.append(ch)
            i += 1
        if buf:
            parts.append("".join(buf))
        return parts
