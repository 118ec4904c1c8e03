"""
Script execution: the core builtin library, the ScriptRunner and the
module-level façade (``execute_script``, ``execute_script_file``,
``validate_script``, ``parse_script``).
"""
import asyncio
import datetime as _dt
import inspect
import logging
import math
import os
import random
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from buddyscript.buddy_config import ScriptConfig
from buddyscript.buddy_datatypes import (
    Program, Scope, BuddySyntaxError, ScriptError, ScriptExit,
    is_callable, is_number, is_truthy, type_of,
)
from buddyscript.buddy_interpreter import (
    Evaluator, FINALLY_GRACE, binary_op, error_message, index_of, pad_string,
    split_string, strict_equals, substring, to_int, to_number,
)
from buddyscript.buddy_parser import BuddyParser
from buddyscript.buddy_printer import stringify
from buddyscript.buddy_serialize import deserialize, serialize

logger = logging.getLogger(__name__)


# ===================================================================
# 1. Builtin library plumbing
# ===================================================================

def script_name(attr: str) -> str:
    """Maps a library method name to its script name: ``_starts_with`` -> ``startsWith``."""
    head, *rest = attr.lstrip("_").split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


class BuiltinLibrary:
    """Base class of builtin collections.

    Every method named ``_snake_name`` is exposed to scripts as ``snakeName``;
    ``namespaces()`` adds dict-valued objects and constants.
    """

    def __init__(self, runner: 'ScriptRunner'):
        self.runner = runner
        self.evaluator = runner.evaluator
        self.config = runner.config

    def emit(self, text: str):
        self.runner.emit(text)

    def namespaces(self) -> Dict[str, Any]:
        return {}

    def bindings(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for name, member in inspect.getmembers(self):
            if name.startswith('_') and not name.startswith('__') and callable(member):
                out[script_name(name)] = member
        out.update(self.namespaces())
        return out


def check_callback(name: str, items: Any, fn: Any):
    if not isinstance(items, list):
        raise ScriptError(f"{name}() requires an array as first argument")
    if not is_callable(fn):
        raise ScriptError(f"{name}() requires a function as second argument")


_LEADING_INT = re.compile(r"[+-]?\d+")
_LEADING_FLOAT = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


def parse_int(text: str):
    """Reads the leading integer of ``text``; NaN when there is none."""
    s = text.strip()
    lowered = s.lower()
    if lowered.startswith("0x"):
        m = re.match(r"[0-9a-f]+", lowered[2:])
        return int(m.group(), 16) if m else math.nan
    if lowered.startswith("0b"):
        m = re.match(r"[01]+", s[2:])
        return int(m.group(), 2) if m else math.nan
    m = _LEADING_INT.match(s)
    return int(m.group()) if m else math.nan


def parse_float(text: str):
    s = text.strip()
    if s.startswith(("Infinity", "+Infinity")):
        return math.inf
    if s.startswith("-Infinity"):
        return -math.inf
    m = _LEADING_FLOAT.match(s)
    return float(m.group()) if m else math.nan


def rounded(n, fn):
    if isinstance(n, float) and not math.isfinite(n):
        return n
    return fn(n)


def flatten_numbers(args) -> List[Any]:
    out = []
    for a in args:
        items = a if isinstance(a, list) else [a]
        out.extend(to_number(x) for x in items)
    return out


def _iso(moment: _dt.datetime) -> str:
    """ISO-8601 UTC text with millisecond precision and a ``Z`` suffix."""
    return moment.astimezone(_dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.") + \
        f"{moment.microsecond // 1000:03d}Z"


def _utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


def iso_from_ms(ms) -> str:
    return _iso(_dt.datetime.fromtimestamp(to_number(ms) / 1000, _dt.timezone.utc))


# ===================================================================
# 2. Core builtins
# ===================================================================

class StdLib(BuiltinLibrary):
    """Builtins available to every script."""

    # --- I/O ---
    def _print(self, *args):
        self.emit(" ".join(stringify(a) for a in args))
        return None

    _println = _print

    async def _input(self, prompt=None):
        if prompt:
            self.emit(stringify(prompt))
        return ""

    # --- Type conversion ---
    def _int(self, value=None):
        if isinstance(value, str):
            return parse_int(value)
        n = to_number(value)
        if isinstance(n, float) and not math.isfinite(n):
            return n
        return math.floor(n)

    def _float(self, value=None):
        return parse_float(stringify(value))

    def _num(self, value=None):
        return to_number(value)

    def _str(self, value=None):
        return stringify(value)

    def _bool(self, value=None):
        return is_truthy(value)

    def _array(self, value=None):
        match value:
            case list():
                return value
            case str():
                return list(value)
            case dict():
                return list(value.values())
            case _:
                return [value]

    # --- Collections ---
    def _len(self, value=None):
        if isinstance(value, (str, list, dict)):
            return len(value)
        return 0

    def _range(self, *args):
        start, end, step = 0, 0, 1
        if len(args) == 1:
            end = args[0]
        elif len(args) == 2:
            start, end = args
        elif len(args) >= 3:
            start, end, step = args[:3]
        for v in (start, end, step):
            if not is_number(v):
                raise ScriptError(f"range() expects numbers, got {type_of(v)}")
        out = []
        i = start
        if step > 0:
            while i < end:
                out.append(i)
                i += step
        elif step < 0:
            while i > end:
                out.append(i)
                i += step
        return out

    def _enumerate(self, items):
        return [[i, item] for i, item in enumerate(items)]

    def _zip(self, *arrays):
        if not arrays:
            return []
        n = min(len(a) for a in arrays)
        return [[a[i] for a in arrays] for i in range(n)]

    async def _map(self, items, fn=None):
        check_callback("map", items, fn)
        return await self.evaluator.map_items(items, fn)

    async def _filter(self, items, fn=None):
        check_callback("filter", items, fn)
        return await self.evaluator.filter_items(items, fn)

    async def _find(self, items, fn=None):
        check_callback("find", items, fn)
        return await self.evaluator.find_item(items, fn)

    async def _reduce(self, items, fn=None, *initial):
        check_callback("reduce", items, fn)
        return await self.evaluator.reduce_items(items, fn, *initial[:1])

    async def _every(self, items, fn=None):
        check_callback("every", items, fn)
        return await self.evaluator.every_item(items, fn)

    async def _some(self, items, fn=None):
        check_callback("some", items, fn)
        return await self.evaluator.some_items(items, fn)

    async def _sort(self, items, comparator=None):
        return await self.evaluator.sort_items(items, comparator)

    def _reverse(self, items):
        return list(reversed(items))

    def _slice(self, items, start=0, end=None):
        return items[to_int(start):None if end is None else to_int(end)]

    def _concat(self, *arrays):
        out = []
        for a in arrays:
            if isinstance(a, list):
                out.extend(a)
            else:
                out.append(a)
        return out

    def _push(self, items, *values):
        if not isinstance(items, list):
            raise ScriptError("push() requires an array as first argument")
        items.extend(values)
        return items

    def _pop(self, items):
        if not isinstance(items, list):
            raise ScriptError("pop() requires an array as first argument")
        return items.pop() if items else None

    def _shift(self, items):
        return items.pop(0) if items else None

    def _unshift(self, items, *values):
        items[0:0] = values
        return items

    def _includes(self, coll, value=None):
        if isinstance(coll, list):
            return index_of(coll, value) >= 0
        if isinstance(coll, str):
            return stringify(value) in coll
        return False

    def _index_of(self, coll, value=None):
        if isinstance(coll, str):
            return coll.find(stringify(value))
        return index_of(coll, value)

    def _join(self, items, sep=","):
        if not isinstance(items, list):
            raise ScriptError("join() requires an array as first argument")
        return stringify(sep).join(stringify(v) for v in items)

    def _split(self, text, sep=None):
        return split_string(stringify(text), sep)

    def _keys(self, obj=None):
        return list(obj.keys()) if isinstance(obj, dict) else []

    def _values(self, obj=None):
        return list(obj.values()) if isinstance(obj, dict) else []

    def _entries(self, obj=None):
        return [[k, v] for k, v in obj.items()] if isinstance(obj, dict) else []

    # --- Strings ---
    def _upper(self, text): return stringify(text).upper()
    def _lower(self, text): return stringify(text).lower()
    def _trim(self, text): return stringify(text).strip()
    def _ltrim(self, text): return stringify(text).lstrip()
    def _rtrim(self, text): return stringify(text).rstrip()

    def _starts_with(self, text, prefix): return stringify(text).startswith(stringify(prefix))
    def _ends_with(self, text, suffix): return stringify(text).endswith(stringify(suffix))
    def _contains(self, text, sub): return stringify(sub) in stringify(text)

    def _replace(self, text, search, replacement):
        return stringify(text).replace(stringify(search), stringify(replacement))

    _replace_all = _replace

    def _substr(self, text, start=0, length=None):
        s = stringify(text)
        if length is None:
            return substring(s, start)
        return substring(s, start, to_int(start) + to_int(length))

    def _char_at(self, text, index=0):
        s = stringify(text)
        i = to_int(index)
        return s[i] if 0 <= i < len(s) else ""

    def _repeat(self, text, count=0):
        n = to_int(count)
        if n < 0:
            raise ScriptError("Invalid count value: " + stringify(count))
        return stringify(text) * n

    def _pad_start(self, text, length, fill=" "):
        return pad_string(stringify(text), length, fill, True)

    def _pad_end(self, text, length, fill=" "):
        return pad_string(stringify(text), length, fill, False)

    def _format(self, template, *args):
        result = stringify(template)
        for i, arg in enumerate(args):
            result = result.replace("{%d}" % i, stringify(arg), 1)
            result = result.replace("{}", stringify(arg), 1)
        return result

    def _match(self, text, pattern):
        try:
            m = re.search(stringify(pattern), stringify(text))
        except re.error as e:
            raise ScriptError(f"Invalid regular expression: {e}") from e
        if m is None:
            return None
        return [m.group(0), *m.groups()]

    # --- Math ---
    def _abs(self, x): return abs(to_number(x))
    def _ceil(self, x): return rounded(to_number(x), math.ceil)
    def _floor(self, x): return rounded(to_number(x), math.floor)

    def _round(self, x):
        return rounded(to_number(x), lambda n: math.floor(n + 0.5))

    def _sqrt(self, x):
        n = to_number(x)
        return math.sqrt(n) if n >= 0 else math.nan

    def _pow(self, base, exp):
        return binary_op("**", to_number(base), to_number(exp))

    def _min(self, *args):
        nums = flatten_numbers(args)
        if any(isinstance(n, float) and math.isnan(n) for n in nums):
            return math.nan
        return min(nums) if nums else math.inf

    def _max(self, *args):
        nums = flatten_numbers(args)
        if any(isinstance(n, float) and math.isnan(n) for n in nums):
            return math.nan
        return max(nums) if nums else -math.inf

    def _sin(self, x): return math.sin(to_number(x))
    def _cos(self, x): return math.cos(to_number(x))
    def _tan(self, x): return math.tan(to_number(x))

    def _log(self, x):
        n = to_number(x)
        if n == 0:
            return -math.inf
        return math.log(n) if n > 0 else math.nan

    def _log10(self, x):
        n = to_number(x)
        if n == 0:
            return -math.inf
        return math.log10(n) if n > 0 else math.nan

    def _exp(self, x):
        try:
            return math.exp(to_number(x))
        except OverflowError:
            return math.inf

    def _random(self, maximum=None):
        if maximum is not None:
            return math.floor(random.random() * to_number(maximum))
        return random.random()

    def _random_int(self, low, high):
        return math.floor(random.random() * (to_number(high) - to_number(low) + 1)) + to_number(low)

    def _sum(self, items):
        total = 0
        for x in items:
            total = binary_op("+", total, x)
        return total

    def _avg(self, items):
        if not items:
            return 0
        return binary_op("/", self._sum(items), len(items))

    # --- Date / time ---
    def _now(self):
        return int(time.time() * 1000)

    def _date(self):
        return _iso(_utcnow()).split("T")[0]

    def _time(self):
        return _iso(_utcnow()).split("T")[1].split(".")[0]

    def _datetime(self):
        return _iso(_utcnow())

    def _timestamp(self):
        return int(time.time())

    def _format_date(self, ms, fmt=None):
        if not fmt:
            return iso_from_ms(ms)
        d = _dt.datetime.fromtimestamp(to_number(ms) / 1000)
        return (stringify(fmt)
                .replace("YYYY", str(d.year), 1)
                .replace("MM", f"{d.month:02d}", 1)
                .replace("DD", f"{d.day:02d}", 1)
                .replace("HH", f"{d.hour:02d}", 1)
                .replace("mm", f"{d.minute:02d}", 1)
                .replace("ss", f"{d.second:02d}", 1))

    # --- JSON ---
    def _json_encode(self, value=None):
        return serialize(value, fmt="json", indent=2)

    def _json_decode(self, text):
        return deserialize(stringify(text), fmt="json")

    # --- Environment ---
    def _cwd(self):
        return self.config.workdir

    def env_get(self, name):
        key = stringify(name)
        if key in self.runner.env_overlay:
            return self.runner.env_overlay[key]
        return self.config.environ.get(key) or None

    def env_set(self, name, value):
        self.runner.env_overlay[stringify(name)] = stringify(value)
        return True

    def env_all(self):
        return {**dict(self.config.environ), **self.runner.env_overlay}

    # --- Utility ---
    def _typeof(self, value=None):
        return type_of(value)

    def _is_null(self, value=None): return value is None
    def _is_number(self, value=None): return is_number(value)
    def _is_string(self, value=None): return isinstance(value, str)
    def _is_bool(self, value=None): return isinstance(value, bool)
    def _is_array(self, value=None): return isinstance(value, list)
    def _is_dict(self, value=None): return isinstance(value, dict)
    def _is_function(self, value=None): return is_callable(value)

    async def _sleep(self, ms=0):
        seconds = max(to_number(ms), 0) / 1000
        remaining = self.evaluator.remaining_time()
        if remaining is not None and seconds > remaining:
            await asyncio.sleep(remaining)
            raise self.evaluator.timeout_error()
        await asyncio.sleep(seconds)
        return None

    def _exit(self, code=0):
        raise ScriptExit(to_int(code))

    def _expect(self, actual=None, expected=None, message=None):
        if not strict_equals(actual, expected):
            raise ScriptError(message or f"Expected {stringify(expected)}, got {stringify(actual)}")
        return None

    # --- Namespaces ---
    def console_warn(self, *args):
        self.emit("[WARN] " + " ".join(stringify(a) for a in args))
        return None

    def console_error(self, *args):
        self.emit("[ERROR] " + " ".join(stringify(a) for a in args))
        return None

    def json_stringify(self, value=None, indent=None):
        width = to_int(indent) if indent else None
        return serialize(value, fmt="json", indent=width or None)

    def yaml_parse(self, text):
        return deserialize(stringify(text), fmt="yaml")

    def yaml_stringify(self, value=None):
        return serialize(value, fmt="yaml")

    def date_parse(self, text):
        s = stringify(text).strip()
        try:
            moment = _dt.datetime.fromisoformat(s.replace("Z", "+00:00"))
        except ValueError:
            return math.nan
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=_dt.timezone.utc)
        return int(moment.timestamp() * 1000)

    def namespaces(self) -> Dict[str, Any]:
        json_ns = {"parse": self._json_decode, "stringify": self.json_stringify}
        return {
            "PI": math.pi,
            "E": math.e,
            "console": {
                "log": self._print,
                "info": self._print,
                "warn": self.console_warn,
                "error": self.console_error,
            },
            "Math": {
                "min": self._min, "max": self._max, "abs": self._abs,
                "floor": self._floor, "ceil": self._ceil, "round": self._round,
                "sqrt": self._sqrt, "pow": self._pow,
                "random": lambda: random.random(),
                "PI": math.pi, "E": math.e,
            },
            "json": json_ns,
            "JSON": json_ns,
            "yaml": {"parse": self.yaml_parse, "stringify": self.yaml_stringify},
            "Date": {"now": self._now, "parse": self.date_parse},
            "env": {"get": self.env_get, "set": self.env_set, "all": self.env_all},
        }


# ===================================================================
# 3. Script Execution
# ===================================================================

@dataclass
class ScriptResult:
    """The structured result of a script execution."""
    success: bool
    output: List[str] = field(default_factory=list)
    error: Optional[str] = None
    return_value: Any = None
    duration: float = 0
    test_results: Optional[List[Dict[str, Any]]] = None
    error_line: Optional[int] = None
    error_column: Optional[int] = None

    def format_error(self, source: Optional[str] = None) -> str:
        """Formats the error with its line and column, and a source excerpt when ``source`` is given."""
        if self.success:
            return ""
        msg = str(self.error or "Unknown error")
        if self.error_line is None:
            return msg
        col_info = f", col {self.error_column}" if self.error_column is not None else ""
        text = f"Error on line {self.error_line}{col_info}: {msg}"
        if source:
            context = source_context(source, self.error_line, self.error_column)
            if context:
                text = f"{text}\n{context}"
        return text


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


def source_context(source: str, line: int, col: Optional[int], radius: int = 2) -> str:
    lines = source.splitlines()
    if not line or line < 1 or line > len(lines):
        return ""
    start = max(1, line - radius)
    end = min(len(lines), line + radius)
    width = len(str(end))
    out = []
    for i in range(start, end + 1):
        prefix = ">" if i == line else " "
        ln = str(i).rjust(width)
        out.append(f"{prefix} {ln} | {lines[i - 1]}")
        if i == line and col is not None:
            caret = " " * max(col - 1, 0)
            out.append(f"  {' ' * width} | {caret}^")
    return "\n".join(out)


class ScriptRunner:
    """Parses and executes Buddy Script source against one persistent global scope."""

    def __init__(self, config: Optional[ScriptConfig] = None, **options):
        base = config if config is not None else ScriptConfig()
        self.config = base.merged(**options) if options else base
        self.parser = BuddyParser()
        self.root_scope = Scope()
        self.evaluator = Evaluator(self.root_scope, verbose=self.config.verbose)
        self.env_overlay: Dict[str, str] = {}
        self._load_builtins()

    def _load_builtins(self):
        libraries: List[BuiltinLibrary] = [StdLib(self)]
        # Imported here to avoid circular imports (the libraries subclass BuiltinLibrary).
        if self.config.enable_file_ops:
            from buddyscript.buddy_file import FileLib
            libraries.append(FileLib(self))
        if self.config.enable_bash:
            from buddyscript.buddy_shell import ShellLib
            libraries.append(ShellLib(self))
        if self.config.enable_ai:
            from buddyscript.buddy_ai import AILib
            libraries.append(AILib(self))
        for library in libraries:
            bindings = library.bindings()
            for name, value in bindings.items():
                self.root_scope.declare(name, value)
            logger.debug("registered %d builtins from %s", len(bindings), type(library).__name__)
        for name, value in self.config.variables.items():
            self.root_scope.declare(name, value)

    def emit(self, text: str):
        self.evaluator.emit(text)

    async def execute(self, source: str) -> ScriptResult:
        """Parses and runs ``source``. Never raises; failures come back as an unsuccessful result."""
        start = time.monotonic()
        try:
            program = self.parser.parse(source)
        except BuddySyntaxError as e:
            return ScriptResult(
                success=False,
                error=e.message,
                duration=_elapsed_ms(start),
                error_line=e.line,
                error_column=e.column,
            )
        return await self.execute_program(program, started=start)

    async def execute_program(self, program: Program, started: Optional[float] = None) -> ScriptResult:
        start = started if started is not None else time.monotonic()
        ev = self.evaluator
        ev.reset(self.config.timeout)
        logger.debug("executing %d top-level statements", len(program.statements))
        error: Optional[str] = None
        error_line: Optional[int] = None
        return_value = None
        try:
            return_value = await self._run(program)
        except ScriptExit as e:
            if e.code != 0:
                error = str(e)
            else:
                return_value = 0
        except asyncio.TimeoutError:
            error = ev.timeout_error().message
        except Exception as e:
            error = error_message(e)
            error_line = getattr(e, "line", None)
            logger.debug("script failed: %s", error)
        return ScriptResult(
            success=error is None,
            output=list(ev.output),
            error=error,
            return_value=return_value,
            duration=_elapsed_ms(start),
            test_results=list(ev.test_results) or None,
            error_line=error_line,
        )

    async def _run(self, program: Program):
        timeout = self.config.timeout
        if not timeout:
            return await self.evaluator.run(program, self.root_scope)
        # Backstop for host awaits that never reach a deadline check.
        return await asyncio.wait_for(self.evaluator.run(program, self.root_scope),
                                      timeout / 1000 + FINALLY_GRACE)

    async def execute_file(self, path) -> ScriptResult:
        p = Path(path)
        if not p.is_absolute():
            p = Path(self.config.workdir) / p
        p = p.resolve()
        source, failure = _read_source(p)
        if failure is not None:
            return failure
        return await self.execute(source)


def _elapsed_ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 3)


def _read_source(path: Path) -> Tuple[Optional[str], Optional[ScriptResult]]:
    if not path.exists():
        return None, ScriptResult(success=False, error=f"Script file not found: {path}", duration=0)
    try:
        return path.read_text(encoding="utf-8"), None
    except (OSError, UnicodeDecodeError) as e:
        return None, ScriptResult(success=False, error=f"Cannot read script file {path}: {e}", duration=0)


# ===================================================================
# 4. Façade
# ===================================================================

def _config(config: Optional[ScriptConfig], options: Dict[str, Any]) -> ScriptConfig:
    if config is None:
        return ScriptConfig.from_mapping(options)
    if isinstance(config, ScriptConfig):
        return config.merged(**options) if options else config
    return ScriptConfig.from_mapping(config, **options)


async def execute_script(source: str, config: Optional[ScriptConfig] = None, **options) -> ScriptResult:
    """Runs ``source`` on a fresh runner. ``config`` may be a ScriptConfig or a mapping of options."""
    runner = ScriptRunner(_config(config, options))
    return await runner.execute(source)


async def execute_script_file(path, config: Optional[ScriptConfig] = None, **options) -> ScriptResult:
    """
    Runs a script file. Relative paths resolve against the configured
    workdir (or the current directory); the script's own directory becomes
    the workdir unless one was given explicitly.
    """
    explicit = dict(config) if isinstance(config, dict) else {}
    explicit.update(options)
    base = config if isinstance(config, ScriptConfig) else None
    root = explicit.get("workdir") or (base.workdir if base else None) or os.getcwd()
    full = Path(path)
    if not full.is_absolute():
        full = Path(root) / full
    full = full.resolve()
    source, failure = _read_source(full)
    if failure is not None:
        return failure
    if base is None and not explicit.get("workdir"):
        explicit["workdir"] = str(full.parent)
    cfg = base.merged(**options) if base is not None else ScriptConfig.from_mapping(explicit)
    return await execute_script(source, cfg)


def validate_script(source: str) -> ValidationResult:
    try:
        BuddyParser().parse(source)
    except BuddySyntaxError as e:
        return ValidationResult(valid=False, errors=[str(e)])
    return ValidationResult(valid=True, errors=[])


def parse_script(source: str) -> Dict[str, Any]:
    """Returns ``{"tokens": [...], "ast": Program}``; syntax errors propagate."""
    parser = BuddyParser()
    return {"tokens": parser.tokenize(source), "ast": parser.parse(source)}
