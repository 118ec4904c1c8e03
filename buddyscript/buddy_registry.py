"""
Script discovery and bookkeeping: the template registry, the script
manager (parse cache and run history) and the new-script template.
"""
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from buddyscript.buddy_config import ScriptConfig
from buddyscript.buddy_datatypes import BuddyError, Program
from buddyscript.buddy_parser import BuddyParser
from buddyscript.buddy_runtime import ScriptResult, execute_script_file

logger = logging.getLogger(__name__)

# Extensions the template registry scans for.
SCRIPT_EXTENSIONS = ('.bs', '.fcs', '.codebuddy')

# Extensions recognised as Buddy Script files anywhere else.
BUDDY_SCRIPT_EXTENSIONS = ('.bs', '.fcs', '.codebuddy', '.codebuddyscript')

MAX_HISTORY = 100

CATEGORY_DESCRIPTIONS = {
    'refactoring': 'Scripts for code refactoring operations',
    'testing': 'Scripts for test generation and execution',
    'documentation': 'Scripts for documentation generation',
    'utilities': 'General utility scripts',
}

_ENV_RE = re.compile(r'env\("([A-Z_]+)"')
_SCRIPT_NAME_RE = re.compile(r'\.(bs|fcs|codebuddy)')

_TEMPLATE = """#!/usr/bin/env buddy-script
// ============================================
// %(name)s
// %(description)s
// ============================================

// Import code-buddy bindings
import grok

// Script configuration
let config = {
    verbose: false,
    dryRun: false
}

// Main function
function main() {
    print("=" * 50)
    print(" %(name)s")
    print("=" * 50)
    print("")

    // Your code here
    print("Hello from Code Buddy Script!")

    // Example: File operations
    // let content = file.read("README.md")
    // print("File content: " + content)

    // Example: Bash commands
    // let result = bash.exec("ls -la")
    // print("Directory listing:\\n" + result)

    // Example: AI operations
    // let response = await ai.ask("Explain this code")
    // print("AI says: " + response)

    return 0
}

// Run main
try {
    let exitCode = main()
    print("\\nScript completed with code: " + exitCode)
} catch (error) {
    print("\\nError: " + error.message)
}
"""


def create_script_template(name: str, description: str = '') -> str:
    """Source text of a new script skeleton."""
    return _TEMPLATE % {"name": name, "description": description or 'Code Buddy Script'}


def get_script_extension() -> str:
    return '.bs'


def is_buddy_script(path) -> bool:
    return os.path.splitext(os.fspath(path))[1].lower() in BUDDY_SCRIPT_EXTENSIONS


# ===================================================================
# Script manager
# ===================================================================

@dataclass
class HistoryEntry:
    script: str
    result: ScriptResult
    timestamp: datetime


class ScriptManager:
    """Caches parsed scripts by path and records the results of executed scripts."""

    def __init__(self):
        self.parser = BuddyParser()
        self.scripts: Dict[str, Program] = {}
        self.history: List[HistoryEntry] = []

    def load(self, path) -> Program:
        full = str(Path(path).resolve())
        cached = self.scripts.get(full)
        if cached is not None:
            return cached
        try:
            source = Path(full).read_text(encoding='utf-8')
        except (OSError, UnicodeDecodeError) as e:
            raise BuddyError(f"Cannot read script file {full}: {e}") from e
        program = self.parser.parse(source)
        self.scripts[full] = program
        return program

    async def execute(self, path, config: Optional[ScriptConfig] = None, **options) -> ScriptResult:
        result = await execute_script_file(path, config, **options)
        self.history.append(HistoryEntry(script=os.fspath(path), result=result, timestamp=datetime.now()))
        if len(self.history) > MAX_HISTORY:
            self.history = self.history[-MAX_HISTORY:]
        return result

    def clear_cache(self):
        self.scripts.clear()

    def get_history(self) -> List[HistoryEntry]:
        return list(self.history)

    def list_scripts(self, directory=None) -> List[str]:
        directory = os.fspath(directory) if directory is not None else os.getcwd()
        if not os.path.isdir(directory):
            return []
        return [os.path.join(directory, f) for f in sorted(os.listdir(directory)) if is_buddy_script(f)]


# ===================================================================
# Template registry
# ===================================================================

@dataclass
class ScriptTemplate:
    name: str
    path: str
    category: str
    description: str
    usage: Optional[str] = None
    env_vars: Optional[List[str]] = None


@dataclass
class ScriptCategory:
    name: str
    description: str
    scripts: List[ScriptTemplate] = field(default_factory=list)


def parse_template_header(content: str) -> Dict[str, Any]:
    """
    Extracts ``description``, ``usage`` and ``env_vars`` from a script.

    The header is the leading run of ``//`` comment lines. The first
    non-empty header comment gives the description (the text after
    `` - `` when present; a bare file name is skipped), and a ``Usage:``
    comment gives the usage line. ``env("NAME")`` references are collected
    from the whole file.
    """
    description = ''
    usage = ''
    env_vars: List[str] = []
    in_header = True
    for line in content.split('\n'):
        trimmed = line.strip()
        for var in _ENV_RE.findall(line):
            if var not in env_vars:
                env_vars.append(var)
        if not trimmed.startswith('//'):
            in_header = False
            continue
        if not in_header:
            continue
        comment = trimmed[2:].strip()
        if comment.startswith('Usage:'):
            usage = comment[6:].strip()
        elif description == '' and comment:
            if ' - ' in comment:
                description = ' - '.join(comment.split(' - ')[1:]).strip()
            elif not _SCRIPT_NAME_RE.search(comment):
                description = comment
    return {"description": description, "usage": usage, "env_vars": env_vars}


class ScriptRegistry:
    """Discovers script templates in a directory tree; sub-directories are categories."""

    def __init__(self, templates_dir=None):
        self.templates_dir = os.fspath(templates_dir) if templates_dir is not None \
            else os.path.join(os.getcwd(), 'scripts', 'templates')
        self.templates: Dict[str, ScriptTemplate] = {}
        self.categories: Dict[str, ScriptCategory] = {}

    @staticmethod
    def is_script_file(filename: str) -> bool:
        return os.path.splitext(filename)[1].lower() in SCRIPT_EXTENSIONS

    def load_templates(self):
        self.templates.clear()
        self.categories.clear()
        if not os.path.isdir(self.templates_dir):
            logger.debug("templates directory %s does not exist", self.templates_dir)
            return
        for entry in sorted(os.scandir(self.templates_dir), key=lambda e: e.name):
            if entry.is_dir():
                scripts = self._load_category(entry.name, entry.path)
                if scripts:
                    self.categories[entry.name] = ScriptCategory(
                        name=entry.name,
                        description=CATEGORY_DESCRIPTIONS.get(entry.name, f"{entry.name} scripts"),
                        scripts=scripts,
                    )
            elif self.is_script_file(entry.name):
                template = self._parse_template(entry.name, self.templates_dir, 'general')
                if template is not None:
                    self.templates[template.name] = template
        logger.debug("loaded %d templates in %d categories", len(self.templates), len(self.categories))

    def _load_category(self, category: str, path: str) -> List[ScriptTemplate]:
        scripts = []
        for filename in sorted(os.listdir(path)):
            if not self.is_script_file(filename):
                continue
            template = self._parse_template(filename, path, category)
            if template is not None:
                scripts.append(template)
                self.templates[template.name] = template
        return scripts

    def _parse_template(self, filename: str, directory: str, category: str) -> Optional[ScriptTemplate]:
        path = os.path.join(directory, filename)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                content = f.read()
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("skipping unreadable template %s: %s", path, e)
            return None
        header = parse_template_header(content)
        return ScriptTemplate(
            name=os.path.splitext(filename)[0],
            path=path,
            category=category,
            description=header["description"] or f"{filename} script",
            usage=header["usage"] or None,
            env_vars=header["env_vars"] or None,
        )

    def get_templates(self) -> List[ScriptTemplate]:
        return list(self.templates.values())

    def get_templates_by_category(self, category: str) -> List[ScriptTemplate]:
        return [t for t in self.get_templates() if t.category == category]

    def get_categories(self) -> List[ScriptCategory]:
        return list(self.categories.values())

    def get_template(self, name: str) -> Optional[ScriptTemplate]:
        return self.templates.get(name)

    def search_templates(self, keyword: str) -> List[ScriptTemplate]:
        needle = keyword.lower()
        return [
            t for t in self.get_templates()
            if needle in t.name.lower() or needle in t.description.lower() or needle in t.category.lower()
        ]

    def format_template_list(self) -> str:
        lines = ['Script Templates', '=' * 50, '']
        for category in self.get_categories():
            lines.append(f"## {category.name[:1].upper() + category.name[1:]}")
            lines.append(category.description)
            lines.append('')
            for script in category.scripts:
                lines.append(f"  {script.name}")
                lines.append(f"    {script.description}")
                if script.usage:
                    lines.append(f"    Usage: {script.usage}")
                lines.append('')
        lines.append('-' * 50)
        lines.append(f"Total: {len(self.templates)} templates in {len(self.categories)} categories")
        return '\n'.join(lines)
