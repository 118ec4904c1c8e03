import logging

from buddyscript.buddy_config import ScriptConfig
from buddyscript.buddy_datatypes import (
    BuddyError, BuddySyntaxError, ScriptError, ScriptExit, ScriptTimeoutError, ThrownValue, Program,
)
from buddyscript.buddy_printer import format_ast, stringify
from buddyscript.buddy_runtime import (
    ScriptResult, ScriptRunner, ValidationResult,
    execute_script, execute_script_file, parse_script, validate_script,
)
from buddyscript.buddy_registry import (
    ScriptManager, ScriptRegistry, create_script_template, get_script_extension, is_buddy_script,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "ScriptConfig",
    "BuddyError", "BuddySyntaxError", "ScriptError", "ScriptExit", "ScriptTimeoutError", "ThrownValue",
    "Program",
    "format_ast", "stringify",
    "ScriptResult", "ScriptRunner", "ValidationResult",
    "execute_script", "execute_script_file", "parse_script", "validate_script",
    "ScriptManager", "ScriptRegistry", "create_script_template", "get_script_extension", "is_buddy_script",
]
