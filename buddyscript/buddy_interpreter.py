"""
The Buddy Script interpreter: an async tree-walking Evaluator.

Statements return either a plain value or one of the control-flow signals
(``ReturnSignal``, ``BREAK``, ``CONTINUE``); errors unwind as exceptions
derived from ``ScriptError``.
"""
import asyncio
import functools
import inspect
import logging
import math
import time
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from buddyscript.buddy_datatypes import (
    Node, Literal, Identifier, This, Binary, Logical, Unary, Update, Assignment,
    Call, Member, Index, ArrayLiteral, DictLiteral, Lambda, FunctionExpression,
    Interpolation, Ternary, Await,
    Program, Block, ExpressionStatement, VarDeclaration, FunctionDeclaration,
    ClassDeclaration, If, While, For, ForCStyle, Return, Break, Continue,
    Try, Throw, Import, Export, Assert, TestDeclaration,
    Scope, BuddyFunction, BuddyClass, NamedArgs,
    ReturnSignal, BREAK, CONTINUE, Signal,
    BuddyError, ScriptError, ThrownValue, ScriptTimeoutError, ScriptExit,
    is_callable, is_number, is_truthy, type_of,
)
from buddyscript.buddy_printer import stringify, format_number, to_json

logger = logging.getLogger(__name__)

# Yield to the event loop once every this many evaluated nodes.
YIELD_EVERY = 256

# Longest run allowed for finally blocks while a timeout unwinds (seconds).
FINALLY_GRACE = 1.0


# ===================================================================
# Value helpers
# ===================================================================

def error_message(exc: BaseException) -> str:
    """The script-visible message of an exception."""
    if isinstance(exc, ScriptError):
        return exc.message
    if isinstance(exc, RecursionError):
        return "Maximum call stack size exceeded"
    if isinstance(exc, BuddyError):
        return getattr(exc, "message", None) or str(exc)
    return str(exc) or type(exc).__name__


def to_number(value: Any):
    """Numeric conversion used by ``num()`` and unary ``+``; unconvertible values give NaN."""
    match value:
        case bool():
            return int(value)
        case None:
            return 0
        case int() | float():
            return value
        case str():
            text = value.strip()
            if not text:
                return 0
            lowered = text.lower()
            try:
                if lowered.startswith(("0x", "-0x")):
                    return int(text, 16)
                if lowered.startswith(("0b", "-0b")):
                    return int(text, 2)
                if lowered in ("infinity", "+infinity", "-infinity"):
                    return -math.inf if lowered.startswith("-") else math.inf
                if any(c in lowered for c in ".en"):
                    return float(text)
                return int(text)
            except ValueError:
                return math.nan
        case _:
            return math.nan


def to_int(value: Any, default: int = 0) -> int:
    if value is None:
        return default
    n = to_number(value)
    if isinstance(n, float):
        if math.isnan(n):
            return default
        if math.isinf(n):
            return default
        return int(n)
    return n


def strict_equals(a: Any, b: Any) -> bool:
    if is_number(a) and is_number(b):
        return a == b
    if isinstance(a, bool) or isinstance(b, bool):
        return a is b
    if isinstance(a, str) and isinstance(b, str):
        return a == b
    return a is b


def property_key(key: Any) -> str:
    if isinstance(key, str):
        return key
    return stringify(key)


def _require_numbers(op: str, left: Any, right: Any):
    if not (is_number(left) and is_number(right)):
        raise ScriptError(f"Cannot apply '{op}' to {type_of(left)} and {type_of(right)}")


def _divide(left, right):
    if right == 0:
        if left == 0 or math.isnan(left):
            return math.nan
        return math.copysign(math.inf, left) * math.copysign(1, right)
    if isinstance(left, int) and isinstance(right, int) and left % right == 0:
        return left // right
    return left / right


def _remainder(left, right):
    if right == 0 or (isinstance(left, float) and math.isinf(left)):
        return math.nan
    if isinstance(left, int) and isinstance(right, int):
        r = abs(left) % abs(right)
        return -r if left < 0 else r
    return math.fmod(left, right)


def _power(left, right):
    if isinstance(left, int) and isinstance(right, int) and right >= 0:
        if abs(left) <= 1 or right * math.log2(abs(left)) < 1024:
            return left ** right
    if left < 0 and not float(right).is_integer():
        return math.nan
    try:
        return float(left) ** right
    except ZeroDivisionError:
        return math.inf
    except OverflowError:
        return math.inf if left > 0 or float(right) % 2 == 0 else -math.inf


def binary_op(op: str, left: Any, right: Any) -> Any:
    """Applies an arithmetic, comparison or equality operator to two values."""
    match op:
        case "+":
            if isinstance(left, str) or isinstance(right, str):
                return stringify(left) + stringify(right)
            _require_numbers(op, left, right)
            return left + right
        case "*" if isinstance(left, str) and is_number(right):
            return left * max(to_int(right), 0)
        case "-" | "*" | "/" | "%" | "**":
            _require_numbers(op, left, right)
            match op:
                case "-":
                    return left - right
                case "*":
                    return left * right
                case "/":
                    return _divide(left, right)
                case "%":
                    return _remainder(left, right)
                case _:
                    return _power(left, right)
        case "==" | "===":
            return strict_equals(left, right)
        case "!=" | "!==":
            return not strict_equals(left, right)
        case "<" | "<=" | ">" | ">=":
            if not ((is_number(left) and is_number(right)) or (isinstance(left, str) and isinstance(right, str))):
                raise ScriptError(f"Cannot compare {type_of(left)} and {type_of(right)}")
            match op:
                case "<":
                    return left < right
                case "<=":
                    return left <= right
                case ">":
                    return left > right
                case _:
                    return left >= right
        case _:
            raise ScriptError(f"Unknown binary operator: {op}")


def pad_string(text: str, length: Any, fill: Any = " ", at_start: bool = True) -> str:
    length = to_int(length)
    fill = " " if fill is None else stringify(fill)
    if length <= len(text) or not fill:
        return text
    pad = (fill * (length - len(text)))[:length - len(text)]
    return pad + text if at_start else text + pad


# --- Native methods of strings, arrays and numbers ------------------

def split_string(s, sep=None, limit=None):
    if sep is None:
        parts = [s]
    elif sep == "":
        parts = list(s)
    else:
        parts = s.split(stringify(sep))
    return parts if limit is None else parts[:to_int(limit)]


def _str_slice(s, start=0, end=None):
    return s[to_int(start):None if end is None else to_int(end)]


def substring(s, start=0, end=None):
    a = max(to_int(start), 0)
    b = len(s) if end is None else max(to_int(end), 0)
    if a > b:
        a, b = b, a
    return s[a:b]


def _char_at(s, i=0):
    i = to_int(i)
    return s[i] if 0 <= i < len(s) else ""


def _at(seq, i=0):
    i = to_int(i)
    return seq[i] if -len(seq) <= i < len(seq) else None


STRING_METHODS = {
    "toUpperCase": lambda s: s.upper(),
    "toLowerCase": lambda s: s.lower(),
    "trim": lambda s: s.strip(),
    "trimStart": lambda s: s.lstrip(),
    "trimEnd": lambda s: s.rstrip(),
    "split": split_string,
    "includes": lambda s, sub: stringify(sub) in s,
    "startsWith": lambda s, prefix: s.startswith(stringify(prefix)),
    "endsWith": lambda s, suffix: s.endswith(stringify(suffix)),
    "indexOf": lambda s, sub, start=0: s.find(stringify(sub), to_int(start)),
    "lastIndexOf": lambda s, sub: s.rfind(stringify(sub)),
    "slice": _str_slice,
    "substring": substring,
    "charAt": _char_at,
    "charCodeAt": lambda s, i=0: ord(s[to_int(i)]) if 0 <= to_int(i) < len(s) else math.nan,
    "at": _at,
    "replace": lambda s, old, new: s.replace(stringify(old), stringify(new), 1),
    "replaceAll": lambda s, old, new: s.replace(stringify(old), stringify(new)),
    "repeat": lambda s, n: s * max(to_int(n), 0),
    "padStart": lambda s, n, fill=" ": pad_string(s, n, fill, True),
    "padEnd": lambda s, n, fill=" ": pad_string(s, n, fill, False),
    "concat": lambda s, *more: s + "".join(stringify(m) for m in more),
    "toString": lambda s: s,
}


def _push(arr, *items):
    arr.extend(items)
    return len(arr)


def _unshift(arr, *items):
    arr[0:0] = items
    return len(arr)


def _concat(arr, *others):
    out = list(arr)
    for other in others:
        if isinstance(other, list):
            out.extend(other)
        else:
            out.append(other)
    return out


def _join(arr, sep=","):
    return stringify(sep).join("" if v is None else stringify(v) for v in arr)


def index_of(arr, value) -> int:
    for i, item in enumerate(arr):
        if strict_equals(item, value):
            return i
    return -1


def _reverse(arr):
    arr.reverse()
    return arr


def _splice(arr, start=0, delete_count=None, *items):
    start = to_int(start)
    if start < 0:
        start = max(len(arr) + start, 0)
    end = len(arr) if delete_count is None else start + max(to_int(delete_count), 0)
    removed = arr[start:end]
    arr[start:end] = items
    return removed


def _flat(arr):
    out = []
    for item in arr:
        if isinstance(item, list):
            out.extend(item)
        else:
            out.append(item)
    return out


ARRAY_METHODS = {
    "push": _push,
    "pop": lambda arr: arr.pop() if arr else None,
    "shift": lambda arr: arr.pop(0) if arr else None,
    "unshift": _unshift,
    "slice": lambda arr, start=0, end=None: arr[to_int(start):None if end is None else to_int(end)],
    "splice": _splice,
    "concat": _concat,
    "join": _join,
    "indexOf": index_of,
    "includes": lambda arr, value: index_of(arr, value) >= 0,
    "reverse": _reverse,
    "at": _at,
    "flat": _flat,
    "toString": lambda arr: _join(arr),
}


def _to_fixed(n, digits=0):
    return f"{n:.{max(to_int(digits), 0)}f}"


def _number_to_string(n, radix=10):
    radix = to_int(radix, 10)
    if radix == 10 or not float(n).is_integer():
        return format_number(n)
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    value, out = abs(int(n)), ""
    while True:
        value, rem = divmod(value, radix)
        out = digits[rem] + out
        if value == 0:
            break
    return "-" + out if n < 0 else out


NUMBER_METHODS = {
    "toFixed": _to_fixed,
    "toString": _number_to_string,
}


def _positional_limit(func) -> Optional[int]:
    """How many positional arguments ``func`` accepts; None when unlimited or unknown."""
    try:
        sig = inspect.signature(func)
    except (TypeError, ValueError):
        return None
    count = 0
    for p in sig.parameters.values():
        if p.kind == inspect.Parameter.VAR_POSITIONAL:
            return None
        if p.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD):
            count += 1
    return count


# ===================================================================
# Evaluator
# ===================================================================

class Evaluator:
    """The Buddy Script execution engine."""

    def __init__(self, globals_scope: Optional[Scope] = None, *, verbose: bool = False):
        self.globals = globals_scope if globals_scope is not None else Scope()
        self.verbose = verbose
        self.output: List[str] = []
        self.test_results: List[Dict[str, Any]] = []
        self.timeout_ms: Optional[int] = None
        self.deadline: Optional[float] = None
        self._ticks = 0
        self._arity_cache: Dict[Any, Optional[int]] = {}
        self._array_callbacks = {
            "map": self.map_items,
            "filter": self.filter_items,
            "forEach": self.each_item,
            "find": self.find_item,
            "findIndex": self.find_index,
            "some": self.some_items,
            "every": self.every_item,
            "reduce": self.reduce_items,
            "sort": self._sort_in_place,
        }

    # --- Run bookkeeping ---------------------------------------------

    def reset(self, timeout_ms: Optional[int] = None):
        """Clears per-run output and test results, and starts the deadline clock."""
        self.output = []
        self.test_results = []
        self.timeout_ms = timeout_ms
        self.deadline = time.monotonic() + timeout_ms / 1000 if timeout_ms else None

    def emit(self, text: str):
        self.output.append(text)

    def remaining_time(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(self.deadline - time.monotonic(), 0.0)

    def timeout_error(self) -> ScriptTimeoutError:
        return ScriptTimeoutError(f"Script timeout after {self.timeout_ms}ms")

    def check_deadline(self):
        if self.deadline is not None and time.monotonic() > self.deadline:
            raise self.timeout_error()

    async def _tick(self):
        self.check_deadline()
        self._ticks += 1
        if self._ticks % YIELD_EVERY == 0:
            await asyncio.sleep(0)

    @contextmanager
    def _grace_period(self):
        saved = self.deadline
        if saved is not None:
            self.deadline = time.monotonic() + min(self.timeout_ms / 1000, FINALLY_GRACE)
        try:
            yield
        finally:
            self.deadline = saved

    # --- Statements ----------------------------------------------------

    async def run(self, program: Program, scope: Optional[Scope] = None) -> Any:
        """Executes top-level statements in order; returns the value of a top-level ``return``."""
        scope = scope if scope is not None else self.globals
        for statement in program.statements:
            result = await self.execute(statement, scope)
            if isinstance(result, ReturnSignal):
                return result.value
        return None

    async def execute(self, node: Node, scope: Scope) -> Any:
        """Executes one statement, returning its value or a control-flow signal."""
        await self._tick()
        try:
            return await self._exec(node, scope)
        except ScriptError as e:
            if e.line is None and node.line:
                e.line = node.line
            raise

    async def _exec(self, node: Node, scope: Scope) -> Any:
        match node:
            case ExpressionStatement(expression=expr):
                return await self.evaluate(expr, scope)

            case VarDeclaration(name=name, init=init):
                value = await self.evaluate(init, scope) if init is not None else None
                scope.declare(name, value)
                return None

            case FunctionDeclaration(name=name, params=params, body=body):
                scope.declare(name, BuddyFunction(params, body, scope, name))
                return None

            case ClassDeclaration(name=name):
                scope.declare(name, BuddyClass(node, scope))
                return None

            case TestDeclaration():
                return await self._exec_test(node, scope)

            case Block():
                return await self.exec_block(node, scope)

            case If(condition=cond, consequent=then, alternate=other):
                if is_truthy(await self.evaluate(cond, scope)):
                    return await self.execute(then, scope)
                if other is not None:
                    return await self.execute(other, scope)
                return None

            case While(condition=cond, body=body):
                while is_truthy(await self.evaluate(cond, scope)):
                    result = await self.execute(body, scope)
                    if isinstance(result, ReturnSignal):
                        return result
                    if result is BREAK:
                        break
                return None

            case For():
                return await self._exec_for(node, scope)

            case ForCStyle():
                return await self._exec_for_c(node, scope)

            case Return(argument=arg):
                return ReturnSignal(await self.evaluate(arg, scope) if arg is not None else None)

            case Break():
                return BREAK

            case Continue():
                return CONTINUE

            case Try():
                return await self._exec_try(node, scope)

            case Throw(argument=arg):
                value = await self.evaluate(arg, scope)
                if isinstance(value, str):
                    raise ScriptError(value, node.line or None)
                if isinstance(value, dict) and "message" in value:
                    message = stringify(value["message"])
                else:
                    message = stringify(value)
                raise ThrownValue(value, message)

            case Import(module=module, source=source):
                logger.debug("import %s (from %s) ignored", module, source)
                return None

            case Export(declaration=decl):
                return await self.execute(decl, scope)

            case Assert(condition=cond, message=msg):
                if not is_truthy(await self.evaluate(cond, scope)):
                    text = stringify(await self.evaluate(msg, scope)) if msg is not None else "Assertion failed"
                    raise ScriptError(text, node.line or None)
                return None

            case Program():
                return await self.run(node, scope)

            case _:
                return await self.evaluate(node, scope)

    async def exec_block(self, block: Block, scope: Scope) -> Any:
        for statement in block.statements:
            result = await self.execute(statement, scope)
            if isinstance(result, Signal):
                return result
        return None

    async def _exec_test(self, node: TestDeclaration, scope: Scope):
        if not self.verbose:
            return None
        try:
            await self.exec_block(node.body, scope)
        except (ScriptTimeoutError, ScriptExit):
            raise
        except Exception as e:
            message = error_message(e)
            self.test_results.append({"name": node.name, "passed": False, "error": message})
            self.emit(f"✗ {node.name}: {message}")
        else:
            self.test_results.append({"name": node.name, "passed": True})
            self.emit(f"✓ {node.name}")
        return None

    async def _exec_for(self, node: For, scope: Scope):
        iterable = await self.evaluate(node.iterable, scope)
        if isinstance(iterable, list):
            items = list(iterable)
        elif isinstance(iterable, dict):
            items = [[k, v] for k, v in iterable.items()]
        else:
            raise ScriptError("for-in requires an iterable (array or object)")
        loop_scope = Scope(scope)
        for item in items:
            loop_scope.declare(node.variable, item)
            result = await self.execute(node.body, Scope(loop_scope))
            if isinstance(result, ReturnSignal):
                return result
            if result is BREAK:
                break
        return None

    async def _exec_for_c(self, node: ForCStyle, scope: Scope):
        loop_scope = Scope(scope)
        if node.init is not None:
            await self.execute(node.init, loop_scope)
        while node.test is None or is_truthy(await self.evaluate(node.test, loop_scope)):
            result = await self.execute(node.body, Scope(loop_scope))
            if isinstance(result, ReturnSignal):
                return result
            if result is BREAK:
                break
            # continue falls through to the update
            if node.update is not None:
                await self.evaluate(node.update, loop_scope)
        return None

    async def _exec_try(self, node: Try, scope: Scope):
        timed_out = False
        try:
            return await self._exec_guarded(node, scope)
        except ScriptTimeoutError:
            timed_out = True
            raise
        finally:
            if node.finalizer is not None:
                if timed_out:
                    with self._grace_period():
                        await self.exec_block(node.finalizer, scope)
                else:
                    await self.exec_block(node.finalizer, scope)

    async def _exec_guarded(self, node: Try, scope: Scope):
        try:
            return await self.exec_block(node.block, scope)
        except (ScriptTimeoutError, ScriptExit):
            raise
        except Exception as e:
            if not node.handlers:
                raise
            handler = node.handlers[0]
            catch_scope = Scope(scope)
            if handler.param:
                catch_scope.declare(handler.param, self.error_value(e))
            return await self.exec_block(handler.body, catch_scope)

    @staticmethod
    def error_value(exc: BaseException) -> Any:
        """The value a ``catch (e)`` clause sees for an exception."""
        if isinstance(exc, ThrownValue):
            return exc.value
        message = error_message(exc)
        line = getattr(exc, "line", None)
        stack = f"Error: {message}" + (f"\n    at line {line}" if line else "")
        return {"message": message, "stack": stack}

    # --- Expressions -----------------------------------------------------

    async def evaluate(self, node: Node, scope: Scope) -> Any:
        """Evaluates an expression node to a value."""
        await self._tick()
        match node:
            case Literal(value=value):
                return value

            case Identifier(name=name):
                return scope.lookup(name)

            case This():
                return scope.lookup("this") if "this" in scope else None

            case Binary(operator=op, left=left, right=right):
                lhs = await self.evaluate(left, scope)
                rhs = await self.evaluate(right, scope)
                return binary_op(op, lhs, rhs)

            case Logical(operator=op, left=left, right=right):
                # Both operands are always evaluated.
                lhs = is_truthy(await self.evaluate(left, scope))
                rhs = is_truthy(await self.evaluate(right, scope))
                return (lhs and rhs) if op == "&&" else (lhs or rhs)

            case Unary(operator=op, operand=operand):
                value = await self.evaluate(operand, scope)
                match op:
                    case "!":
                        return not is_truthy(value)
                    case "-":
                        if not is_number(value):
                            raise ScriptError(f"Cannot negate {type_of(value)}")
                        return -value
                    case _:
                        return to_number(value)

            case Assignment():
                return await self._eval_assignment(node, scope)

            case Update():
                return await self._eval_update(node, scope)

            case Call():
                return await self._eval_call(node, scope)

            case Member(object=obj_node, member=name):
                obj = await self.evaluate(obj_node, scope)
                if obj is None:
                    raise ScriptError("Cannot read property of null or undefined")
                return self.get_member(obj, name)

            case Index(object=obj_node, index=index_node):
                obj = await self.evaluate(obj_node, scope)
                key = await self.evaluate(index_node, scope)
                if obj is None:
                    raise ScriptError("Cannot index null or undefined")
                return self.get_index(obj, key)

            case ArrayLiteral(elements=elements):
                return [await self.evaluate(e, scope) for e in elements]

            case DictLiteral(entries=entries):
                return {key: await self.evaluate(value, scope) for key, value in entries}

            case Lambda(params=params, body=body):
                return BuddyFunction(params, body, scope, is_lambda=True)

            case FunctionExpression(params=params, body=body):
                return BuddyFunction(params, body, scope)

            case Interpolation(parts=parts):
                return "".join([stringify(await self.evaluate(p, scope)) for p in parts])

            case Ternary(condition=cond, consequent=then, alternate=other):
                if is_truthy(await self.evaluate(cond, scope)):
                    return await self.evaluate(then, scope)
                return await self.evaluate(other, scope)

            case Await(argument=arg):
                value = await self.evaluate(arg, scope)
                if inspect.isawaitable(value):
                    value = await value
                return value

            case _:
                raise ScriptError(f"Unknown expression type: {getattr(node, 'type', type(node).__name__)}")

    # --- Property access ---------------------------------------------------

    def get_member(self, obj: Any, name: str) -> Any:
        match obj:
            case dict():
                value = obj.get(name)
                if isinstance(value, BuddyFunction):
                    return value.bind(obj)
                return value
            case str():
                if name == "length":
                    return len(obj)
                impl = STRING_METHODS.get(name)
                return functools.partial(impl, obj) if impl else None
            case list():
                if name == "length":
                    return len(obj)
                impl = ARRAY_METHODS.get(name) or self._array_callbacks.get(name)
                return functools.partial(impl, obj) if impl else None
            case _ if is_number(obj):
                impl = NUMBER_METHODS.get(name)
                return functools.partial(impl, obj) if impl else None
            case _:
                return None

    def get_index(self, obj: Any, key: Any) -> Any:
        match obj:
            case dict():
                value = obj.get(property_key(key))
                if isinstance(value, BuddyFunction):
                    return value.bind(obj)
                return value
            case list() | str():
                if isinstance(key, str):
                    if not key.isdigit():
                        return self.get_member(obj, key)
                    key = int(key)
                if not is_number(key) or not float(key).is_integer():
                    return None
                i = int(key)
                return obj[i] if 0 <= i < len(obj) else None
            case _:
                return None

    def set_member(self, obj: Any, name: str, value: Any):
        match obj:
            case None:
                raise ScriptError("Cannot set property of null or undefined")
            case dict():
                obj[name] = value
            case list() if name == "length":
                n = to_int(value)
                if n < len(obj):
                    del obj[n:]
                else:
                    obj.extend([None] * (n - len(obj)))
            case _:
                raise ScriptError(f"Cannot set property '{name}' on {type_of(obj)}")

    def set_index(self, obj: Any, key: Any, value: Any):
        match obj:
            case None:
                raise ScriptError("Cannot index null or undefined")
            case dict():
                obj[property_key(key)] = value
            case list():
                if isinstance(key, str) and key.isdigit():
                    key = int(key)
                if not is_number(key) or not float(key).is_integer() or key < 0:
                    raise ScriptError(f"Invalid array index: {stringify(key)}")
                i = int(key)
                if i >= len(obj):
                    obj.extend([None] * (i + 1 - len(obj)))
                obj[i] = value
            case _:
                raise ScriptError(f"Cannot assign index on {type_of(obj)}")

    # --- Assignment ----------------------------------------------------------

    async def _resolve_target(self, target: Node, scope: Scope):
        """Evaluates the container (and key) of an assignment target once."""
        match target:
            case Member(object=obj_node, member=name):
                return await self.evaluate(obj_node, scope), name
            case Index(object=obj_node, index=index_node):
                obj = await self.evaluate(obj_node, scope)
                return obj, await self.evaluate(index_node, scope)
            case _:
                return None, None

    def _read_target(self, target: Node, scope: Scope, obj: Any, key: Any) -> Any:
        match target:
            case Identifier(name=name):
                return scope.lookup(name)
            case Member():
                if obj is None:
                    raise ScriptError("Cannot read property of null or undefined")
                return self.get_member(obj, key)
            case _:
                if obj is None:
                    raise ScriptError("Cannot index null or undefined")
                return self.get_index(obj, key)

    def _write_target(self, target: Node, scope: Scope, obj: Any, key: Any, value: Any):
        match target:
            case Identifier(name=name):
                scope.assign(name, value)
            case Member():
                self.set_member(obj, key, value)
            case _:
                self.set_index(obj, key, value)

    async def _eval_assignment(self, node: Assignment, scope: Scope) -> Any:
        obj, key = await self._resolve_target(node.target, scope)
        if node.operator == "=":
            value = await self.evaluate(node.value, scope)
        else:
            current = self._read_target(node.target, scope, obj, key)
            value = binary_op(node.operator[:-1], current, await self.evaluate(node.value, scope))
        self._write_target(node.target, scope, obj, key, value)
        return value

    async def _eval_update(self, node: Update, scope: Scope) -> Any:
        obj, key = await self._resolve_target(node.target, scope)
        current = self._read_target(node.target, scope, obj, key)
        if not is_number(current):
            raise ScriptError(f"Cannot apply '{node.operator}' to {type_of(current)}")
        new = current + 1 if node.operator == "++" else current - 1
        self._write_target(node.target, scope, obj, key, new)
        return new if node.prefix else current

    # --- Calls -------------------------------------------------------------------

    async def _eval_call(self, node: Call, scope: Scope) -> Any:
        callee = await self.evaluate(node.callee, scope)
        if not is_callable(callee):
            raise ScriptError(f"{to_json(callee)} is not a function")
        args = [await self.evaluate(a, scope) for a in node.arguments]
        named = {name: await self.evaluate(value, scope) for name, value in node.named_arguments}
        return await self.call(callee, args, named or None)

    async def call(self, func: Any, args: List[Any], named: Optional[Dict[str, Any]] = None) -> Any:
        """Calls a user function, class or host callable with already-evaluated arguments."""
        match func:
            case BuddyFunction():
                if named:
                    args = [*args, NamedArgs(named)]
                return await self._call_function(func, args)
            case BuddyClass():
                if named:
                    args = [*args, NamedArgs(named)]
                return await self._instantiate(func, args)
            case _ if callable(func):
                return await self._call_host(func, args, named or {})
            case _:
                raise ScriptError(f"{to_json(func)} is not a function")

    async def _call_function(self, fn: BuddyFunction, args: List[Any]) -> Any:
        local = Scope(fn.closure)
        if fn.is_bound:
            local.declare("this", fn.bound_this)
        named: Dict[str, Any] = {}
        if args and isinstance(args[-1], NamedArgs):
            named = args[-1]
            args = args[:-1]
        for i, param in enumerate(fn.params):
            if param.name in named:
                value = named[param.name]
            elif i < len(args):
                value = args[i]
            elif param.default is not None:
                value = await self.evaluate(param.default, local)
            else:
                value = None
            local.declare(param.name, value)
        if isinstance(fn.body, Block):
            result = await self.exec_block(fn.body, local)
            return result.value if isinstance(result, ReturnSignal) else None
        return await self.evaluate(fn.body, local)

    async def _instantiate(self, cls: BuddyClass, args: List[Any]) -> Dict[str, Any]:
        instance: Dict[str, Any] = {}
        for name, init in cls.node.fields:
            instance[name] = await self.evaluate(init, cls.closure) if init is not None else None
        for method in cls.node.methods:
            instance[method.name] = BuddyFunction(method.params, method.body, cls.closure,
                                                  method.name, bound_this=instance)
        constructor = instance.get("constructor")
        if isinstance(constructor, BuddyFunction):
            await self._call_function(constructor, args)
        return instance

    def _max_positional(self, func) -> Optional[int]:
        key = func.func if isinstance(func, functools.partial) else func
        try:
            limit = self._arity_cache[key]
        except KeyError:
            limit = self._arity_cache[key] = _positional_limit(key)
        except TypeError:
            limit = _positional_limit(key)
        if limit is not None and isinstance(func, functools.partial):
            limit -= len(func.args)
        return limit

    async def _call_host(self, func, args: List[Any], kwargs: Dict[str, Any]) -> Any:
        limit = self._max_positional(func)
        if limit is not None and len(args) > limit:
            args = args[:max(limit, 0)]
        try:
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except (BuddyError, RecursionError):
            raise
        except Exception as e:
            raise ScriptError(error_message(e)) from e
        return result

    # --- Higher-order helpers shared by builtins and native methods -----

    async def map_items(self, items, fn):
        return [await self.call(fn, [item, i]) for i, item in enumerate(list(items))]

    async def filter_items(self, items, fn):
        return [item for i, item in enumerate(list(items)) if is_truthy(await self.call(fn, [item, i]))]

    async def each_item(self, items, fn):
        for i, item in enumerate(list(items)):
            await self.call(fn, [item, i])
        return None

    async def find_item(self, items, fn):
        for i, item in enumerate(list(items)):
            if is_truthy(await self.call(fn, [item, i])):
                return item
        return None

    async def find_index(self, items, fn):
        for i, item in enumerate(list(items)):
            if is_truthy(await self.call(fn, [item, i])):
                return i
        return -1

    async def some_items(self, items, fn):
        for i, item in enumerate(list(items)):
            if is_truthy(await self.call(fn, [item, i])):
                return True
        return False

    async def every_item(self, items, fn):
        for i, item in enumerate(list(items)):
            if not is_truthy(await self.call(fn, [item, i])):
                return False
        return True

    async def reduce_items(self, items, fn, *initial):
        items = list(items)
        if initial:
            acc, start = initial[0], 0
        elif items:
            acc, start = items[0], 1
        else:
            return None
        for i in range(start, len(items)):
            acc = await self.call(fn, [acc, items[i], i])
        return acc

    async def sort_items(self, items, comparator=None) -> List[Any]:
        """Sorted copy: numeric order for all-number input, else string order, or by comparator."""
        items = list(items)
        if comparator is None:
            if all(is_number(x) for x in items):
                return sorted(items)
            return sorted(items, key=stringify)
        return await self._merge_sort(items, comparator)

    async def _merge_sort(self, items, comparator):
        if len(items) <= 1:
            return items
        mid = len(items) // 2
        left = await self._merge_sort(items[:mid], comparator)
        right = await self._merge_sort(items[mid:], comparator)
        merged = []
        i = j = 0
        while i < len(left) and j < len(right):
            order = await self.call(comparator, [left[i], right[j]])
            if isinstance(order, (int, float)) and order > 0:
                merged.append(right[j])
                j += 1
            else:
                merged.append(left[i])
                i += 1
        merged.extend(left[i:])
        merged.extend(right[j:])
        return merged

    async def _sort_in_place(self, items, comparator=None):
        items[:] = await self.sort_items(items, comparator)
        return items
