"""
Defines the core data types for the Buddy Script runtime.

This module provides the AST node classes produced by the parser, the runtime
types the interpreter works with (scopes, closures, classes, control-flow
signals) and the exception hierarchy shared by every layer.
"""

from dataclasses import dataclass, field, fields
from typing import Any, ClassVar, Dict, Optional, Tuple


# =================================================================
# Errors
# =================================================================

class BuddyError(Exception):
    """Base class for every error raised by Buddy Script."""


class BuddySyntaxError(BuddyError):
    """Malformed source text."""
    def __init__(self, message: str, line: Optional[int] = None, column: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.line = line
        self.column = column

    def __str__(self) -> str:
        if self.line is not None:
            col = f", col {self.column}" if self.column is not None else ""
            return f"{self.message} (line {self.line}{col})"
        return self.message


class ScriptError(BuddyError):
    """A runtime error raised while evaluating a script."""
    def __init__(self, message: str, line: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.line = line


class ThrownValue(ScriptError):
    """Carries a non-string value thrown by a script's ``throw`` statement."""
    def __init__(self, value: Any, message: str):
        super().__init__(message)
        self.value = value


class ScriptTimeoutError(ScriptError):
    pass


class ScriptExit(BuddyError):
    """Raised by the ``exit`` builtin to stop the script."""
    def __init__(self, code: int = 0):
        super().__init__(f"Script exited with code {code}")
        self.code = code


# =================================================================
# AST nodes
# =================================================================

def _plain(value: Any) -> Any:
    if isinstance(value, Node):
        return value.to_dict()
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    return value


@dataclass(frozen=True)
class Node:
    """Base class of every syntax node. ``type`` is the node kind discriminator."""
    type: ClassVar[str] = "Node"
    line: int = field(default=0, compare=False, repr=False, kw_only=True)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.type}
        for f in fields(self):
            if f.name != "line":
                out[f.name] = _plain(getattr(self, f.name))
        return out


@dataclass(frozen=True)
class Param(Node):
    type: ClassVar[str] = "Param"
    name: str
    default: Optional[Node] = None


# --- Expressions -------------------------------------------------

@dataclass(frozen=True)
class Literal(Node):
    type: ClassVar[str] = "Literal"
    value: Any


@dataclass(frozen=True)
class Identifier(Node):
    type: ClassVar[str] = "Identifier"
    name: str


@dataclass(frozen=True)
class This(Node):
    type: ClassVar[str] = "This"


@dataclass(frozen=True)
class Binary(Node):
    type: ClassVar[str] = "Binary"
    operator: str
    left: Node
    right: Node


@dataclass(frozen=True)
class Logical(Node):
    type: ClassVar[str] = "Logical"
    operator: str
    left: Node
    right: Node


@dataclass(frozen=True)
class Unary(Node):
    type: ClassVar[str] = "Unary"
    operator: str
    operand: Node


@dataclass(frozen=True)
class Update(Node):
    type: ClassVar[str] = "Update"
    operator: str
    target: Node
    prefix: bool


@dataclass(frozen=True)
class Assignment(Node):
    type: ClassVar[str] = "Assignment"
    operator: str
    target: Node
    value: Node


@dataclass(frozen=True)
class Call(Node):
    type: ClassVar[str] = "Call"
    callee: Node
    arguments: Tuple[Node, ...] = ()
    named_arguments: Tuple[Tuple[str, Node], ...] = ()


@dataclass(frozen=True)
class Member(Node):
    type: ClassVar[str] = "Member"
    object: Node
    member: str


@dataclass(frozen=True)
class Index(Node):
    type: ClassVar[str] = "Index"
    object: Node
    index: Node


@dataclass(frozen=True)
class ArrayLiteral(Node):
    type: ClassVar[str] = "Array"
    elements: Tuple[Node, ...] = ()


@dataclass(frozen=True)
class DictLiteral(Node):
    type: ClassVar[str] = "Dict"
    entries: Tuple[Tuple[str, Node], ...] = ()


@dataclass(frozen=True)
class Lambda(Node):
    type: ClassVar[str] = "Lambda"
    params: Tuple[Param, ...]
    body: Node
    is_async: bool = False


@dataclass(frozen=True)
class FunctionExpression(Node):
    type: ClassVar[str] = "FunctionExpression"
    params: Tuple[Param, ...]
    body: Node


@dataclass(frozen=True)
class Interpolation(Node):
    type: ClassVar[str] = "Interpolation"
    parts: Tuple[Node, ...]


@dataclass(frozen=True)
class Ternary(Node):
    type: ClassVar[str] = "Ternary"
    condition: Node
    consequent: Node
    alternate: Node


@dataclass(frozen=True)
class Await(Node):
    type: ClassVar[str] = "Await"
    argument: Node


# --- Statements --------------------------------------------------

@dataclass(frozen=True)
class Program(Node):
    type: ClassVar[str] = "Program"
    statements: Tuple[Node, ...] = ()


@dataclass(frozen=True)
class Block(Node):
    type: ClassVar[str] = "Block"
    statements: Tuple[Node, ...] = ()


@dataclass(frozen=True)
class ExpressionStatement(Node):
    type: ClassVar[str] = "ExpressionStatement"
    expression: Node


@dataclass(frozen=True)
class VarDeclaration(Node):
    type: ClassVar[str] = "VarDeclaration"
    name: str
    init: Optional[Node] = None


@dataclass(frozen=True)
class FunctionDeclaration(Node):
    type: ClassVar[str] = "FunctionDeclaration"
    name: str
    params: Tuple[Param, ...]
    body: Block
    is_async: bool = False


@dataclass(frozen=True)
class ClassDeclaration(Node):
    type: ClassVar[str] = "ClassDeclaration"
    name: str
    fields: Tuple[Tuple[str, Optional[Node]], ...] = ()
    methods: Tuple[FunctionDeclaration, ...] = ()


@dataclass(frozen=True)
class If(Node):
    type: ClassVar[str] = "If"
    condition: Node
    consequent: Node
    alternate: Optional[Node] = None


@dataclass(frozen=True)
class While(Node):
    type: ClassVar[str] = "While"
    condition: Node
    body: Node


@dataclass(frozen=True)
class For(Node):
    type: ClassVar[str] = "For"
    variable: str
    iterable: Node
    body: Node


@dataclass(frozen=True)
class ForCStyle(Node):
    type: ClassVar[str] = "ForCStyle"
    init: Optional[Node]
    test: Optional[Node]
    update: Optional[Node]
    body: Node


@dataclass(frozen=True)
class Return(Node):
    type: ClassVar[str] = "Return"
    argument: Optional[Node] = None


@dataclass(frozen=True)
class Break(Node):
    type: ClassVar[str] = "Break"


@dataclass(frozen=True)
class Continue(Node):
    type: ClassVar[str] = "Continue"


@dataclass(frozen=True)
class CatchClause(Node):
    type: ClassVar[str] = "CatchClause"
    param: Optional[str]
    body: Block


@dataclass(frozen=True)
class Try(Node):
    type: ClassVar[str] = "Try"
    block: Block
    handlers: Tuple[CatchClause, ...] = ()
    finalizer: Optional[Block] = None


@dataclass(frozen=True)
class Throw(Node):
    type: ClassVar[str] = "Throw"
    argument: Node


@dataclass(frozen=True)
class Import(Node):
    type: ClassVar[str] = "Import"
    module: Optional[str]
    source: Optional[str] = None


@dataclass(frozen=True)
class Export(Node):
    type: ClassVar[str] = "Export"
    declaration: Node


@dataclass(frozen=True)
class Assert(Node):
    type: ClassVar[str] = "Assert"
    condition: Node
    message: Optional[Node] = None


@dataclass(frozen=True)
class TestDeclaration(Node):
    type: ClassVar[str] = "TestDeclaration"
    __test__ = False  # not a pytest class
    name: str
    body: Block


# =================================================================
# Runtime types
# =================================================================

class Scope:
    """A variable/function binding table with an optional parent link.

    Lookup and assignment walk outward through ``parent``; declarations always
    write into this scope. ``functions`` mirrors the callable entries of
    ``variables``.
    """
    def __init__(self, parent: Optional['Scope'] = None):
        self.variables: Dict[str, Any] = {}
        self.functions: Dict[str, Any] = {}
        self.parent = parent

    def find_owner(self, name: str) -> Optional['Scope']:
        scope = self
        while scope is not None:
            if name in scope.variables:
                return scope
            scope = scope.parent
        return None

    def __contains__(self, name: str) -> bool:
        return self.find_owner(name) is not None

    def lookup(self, name: str) -> Any:
        owner = self.find_owner(name)
        if owner is None:
            raise ScriptError(f"Undefined variable: {name}")
        return owner.variables[name]

    def declare(self, name: str, value: Any):
        self.variables[name] = value
        if is_callable(value):
            self.functions[name] = value
        else:
            self.functions.pop(name, None)

    def assign(self, name: str, value: Any):
        """Rebinds ``name`` where it is defined, or declares it here."""
        owner = self.find_owner(name)
        (owner or self).declare(name, value)

    def __repr__(self) -> str:
        return f"<Scope vars={list(self.variables)} parent={'yes' if self.parent else 'no'}>"


_UNBOUND = object()


class BuddyFunction:
    """A closure: parameters, body and the scope it was defined in.

    ``bound_this`` is set for class methods and for functions read off a dict,
    and is visible as ``this`` inside the body.
    """
    def __init__(self, params: Tuple[Param, ...], body: Node, closure: Scope,
                 name: Optional[str] = None, is_lambda: bool = False, bound_this: Any = _UNBOUND):
        self.params = params
        self.body = body
        self.closure = closure
        self.name = name
        self.is_lambda = is_lambda
        self.bound_this = bound_this

    @property
    def is_bound(self) -> bool:
        return self.bound_this is not _UNBOUND

    def bind(self, owner: Any) -> 'BuddyFunction':
        """Returns a copy with ``this`` bound to ``owner``; lambdas and bound functions are returned as is."""
        if self.is_lambda or self.is_bound:
            return self
        return BuddyFunction(self.params, self.body, self.closure, self.name, self.is_lambda, owner)

    def __repr__(self) -> str:
        return f"<function {self.name or '<anonymous>'}({', '.join(p.name for p in self.params)})>"


class BuddyClass:
    """A class declaration evaluated in its defining scope; calling it instantiates."""
    def __init__(self, node: ClassDeclaration, closure: Scope):
        self.node = node
        self.closure = closure
        self.name = node.name

    def __repr__(self) -> str:
        return f"<class {self.name}>"


class NamedArgs(dict):
    """Trailing argument bundle carrying ``name: value`` call-site arguments."""


class ReturnSignal:
    __slots__ = ("value",)

    def __init__(self, value: Any = None):
        self.value = value

    def __repr__(self) -> str:
        return f"ReturnSignal({self.value!r})"


class BreakSignal:
    __slots__ = ()

    def __repr__(self) -> str:
        return "BREAK"


class ContinueSignal:
    __slots__ = ()

    def __repr__(self) -> str:
        return "CONTINUE"


BREAK = BreakSignal()
CONTINUE = ContinueSignal()

Signal = (ReturnSignal, BreakSignal, ContinueSignal)


# =================================================================
# Value helpers
# =================================================================

def is_callable(value: Any) -> bool:
    if isinstance(value, (BuddyFunction, BuddyClass)):
        return True
    return callable(value) and not isinstance(value, type)


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_truthy(value: Any) -> bool:
    if value is None or value is False:
        return False
    if is_number(value):
        return value != 0 and value == value
    if isinstance(value, str):
        return value != ""
    return True


def type_of(value: Any) -> str:
    """The script-visible type name of a value."""
    match value:
        case None:
            return "null"
        case bool():
            return "boolean"
        case int() | float():
            return "number"
        case str():
            return "string"
        case list():
            return "array"
        case dict():
            return "object"
        case _ if is_callable(value):
            return "function"
        case _:
            return "object"
