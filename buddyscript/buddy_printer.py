"""
Formats Buddy Script values as text: the form ``print``, ``str()``, string
concatenation and interpolation all share.
"""
import collections.abc
import math
import re

from buddyscript.buddy_datatypes import BuddyFunction, BuddyClass, Node, is_callable
from buddyscript.buddy_serialize import serialize

_EXPONENT_RE = re.compile(r"e([+-])0*(\d)")


def format_number(n) -> str:
    if isinstance(n, float):
        if math.isnan(n):
            return "NaN"
        if math.isinf(n):
            return "Infinity" if n > 0 else "-Infinity"
        if n.is_integer() and abs(n) < 1e21:
            return str(int(n))
        return _EXPONENT_RE.sub(r"e\1\2", repr(n))
    return str(n)


class Printer:
    """Turns runtime values into display strings."""

    def __init__(self):
        self._handlers = self._create_handlers()

    def stringify(self, obj) -> str:
        """Public entry point to format a value."""
        handler = self._get_handler(obj)
        return handler(obj)

    def _get_handler(self, obj):
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, collections.abc.Mapping):
            return self._format_dict
        if isinstance(obj, (list, tuple)):
            return self._format_list
        if is_callable(obj):
            return self._format_function
        return str

    def _create_handlers(self):
        return {
            str: self._format_str,
            bool: self._format_bool,
            int: format_number,
            float: format_number,
            type(None): self._format_none,
            list: self._format_list,
            dict: self._format_dict,
            BuddyFunction: self._format_function,
            BuddyClass: self._format_function,
        }

    def _format_str(self, obj):
        return obj

    def _format_bool(self, obj):
        return 'true' if obj else 'false'

    def _format_none(self, obj):
        return 'null'

    def _format_function(self, obj):
        return '[Function]'

    def _format_list(self, obj):
        return '[' + ', '.join(self.stringify(v) for v in obj) + ']'

    def _format_dict(self, obj):
        try:
            return serialize(obj, fmt='json', indent=None)
        except (ValueError, RecursionError):
            return '[Object]'


_printer = Printer()


def stringify(value) -> str:
    return _printer.stringify(value)


def to_json(value) -> str:
    """Compact JSON text of a value, as used in error messages."""
    try:
        return serialize(value, fmt='json', indent=None)
    except (ValueError, RecursionError):
        return stringify(value)


def format_ast(program: Node) -> str:
    """Renders a syntax tree as indented JSON."""
    return serialize(program.to_dict(), fmt='json', indent=2)
