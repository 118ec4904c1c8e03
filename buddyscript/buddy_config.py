"""
Runtime configuration for script execution.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from buddyscript.buddy_serialize import deserialize

DEFAULT_TIMEOUT_MS = 30000

# Product spelling -> field name
_CAMEL_KEYS = {
    "dryRun": "dry_run",
    "enableFileOps": "enable_file_ops",
    "enableBash": "enable_bash",
    "enableAI": "enable_ai",
    "enableAi": "enable_ai",
}


@dataclass
class ScriptConfig:
    workdir: str = field(default_factory=os.getcwd)
    dry_run: bool = False
    timeout: int = DEFAULT_TIMEOUT_MS
    enable_file_ops: bool = True
    enable_bash: bool = True
    enable_ai: bool = True
    variables: Dict[str, Any] = field(default_factory=dict)
    verbose: bool = False
    # Object with process_user_input(text, options=None); None builds a ChatAgent on demand.
    agent: Any = None
    environ: Mapping[str, str] = field(default_factory=lambda: os.environ)

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]] = None, **options) -> 'ScriptConfig':
        """Builds a config from snake_case or camelCase keys. Unknown keys raise ValueError."""
        return cls().merged(**{**dict(data or {}), **options})

    @classmethod
    def from_file(cls, path: str | os.PathLike) -> 'ScriptConfig':
        """Loads a YAML or JSON mapping from disk."""
        p = Path(path)
        fmt = "json" if p.suffix.lower() == ".json" else "yaml"
        data = deserialize(p.read_text(encoding="utf-8"), fmt=fmt)
        if data is None:
            data = {}
        if not isinstance(data, Mapping):
            raise ValueError(f"Config file {p} must contain a mapping")
        return cls.from_mapping(data)

    def merged(self, **options) -> 'ScriptConfig':
        """Returns a copy with the given options applied. ``None`` values are ignored."""
        known = {f.name for f in fields(self)}
        updates = {}
        for key, value in options.items():
            name = _CAMEL_KEYS.get(key, key)
            if name not in known:
                raise ValueError(f"Unknown script option: {key}")
            if value is not None:
                updates[name] = value
        if "workdir" in updates:
            updates["workdir"] = os.fspath(updates["workdir"])
        if "variables" in updates:
            updates["variables"] = dict(updates["variables"])
        return replace(self, **updates)
