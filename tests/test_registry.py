import pytest

from buddyscript.buddy_datatypes import BuddyError, BuddySyntaxError
from buddyscript.buddy_registry import (
    MAX_HISTORY, ScriptManager, ScriptRegistry, create_script_template, get_script_extension,
    is_buddy_script, parse_template_header,
)


HEADER_SCRIPT = """// refactor.bs - Rename symbols across a project
// Usage: buddy-script refactor.bs <old> <new>
// Extra notes
let key = env("GROK_API_KEY")
let other = env("PROJECT_ROOT")
// not part of the header
"""


def test_script_extensions():
    assert get_script_extension() == ".bs"
    assert is_buddy_script("a.bs")
    assert is_buddy_script("b.FCS")
    assert is_buddy_script("c.codebuddyscript")
    assert not is_buddy_script("d.py")


def test_template_header_parsing():
    header = parse_template_header(HEADER_SCRIPT)
    assert header["description"] == "Rename symbols across a project"
    assert header["usage"] == "buddy-script refactor.bs <old> <new>"
    assert header["env_vars"] == ["GROK_API_KEY", "PROJECT_ROOT"]


def test_header_skips_bare_file_names():
    header = parse_template_header("// cleanup.bs\n// Removes stale files\nprint(1)\n")
    assert header["description"] == "Removes stale files"
    assert header["usage"] == ""


def test_create_script_template():
    text = create_script_template("tidy", "Tidy the workspace")
    assert text.startswith("#!/usr/bin/env buddy-script\n")
    assert "// tidy\n// Tidy the workspace\n" in text
    assert "Code Buddy Script" in create_script_template("x")


@pytest.fixture
def templates(tmp_path):
    root = tmp_path / "templates"
    (root / "refactoring").mkdir(parents=True)
    (root / "testing").mkdir()
    (root / "empty").mkdir()
    (root / "refactoring" / "rename.bs").write_text(HEADER_SCRIPT)
    (root / "refactoring" / "notes.txt").write_text("ignored")
    (root / "testing" / "gen_tests.fcs").write_text("// Generate unit tests\nprint(1)\n")
    (root / "loose.codebuddy").write_text("print(1)\n")
    return root


def test_registry_loads_categories(templates):
    registry = ScriptRegistry(templates)
    registry.load_templates()
    assert [c.name for c in registry.get_categories()] == ["refactoring", "testing"]
    assert sorted(t.name for t in registry.get_templates()) == ["gen_tests", "loose", "rename"]

    rename = registry.get_template("rename")
    assert rename.category == "refactoring"
    assert rename.description == "Rename symbols across a project"
    assert rename.env_vars == ["GROK_API_KEY", "PROJECT_ROOT"]

    loose = registry.get_template("loose")
    assert loose.category == "general"
    assert loose.description == "loose.codebuddy script"
    assert loose.usage is None

    assert [t.name for t in registry.get_templates_by_category("testing")] == ["gen_tests"]
    assert registry.get_template("missing") is None


def test_registry_search(templates):
    registry = ScriptRegistry(templates)
    registry.load_templates()
    assert [t.name for t in registry.search_templates("UNIT")] == ["gen_tests"]
    assert [t.name for t in registry.search_templates("refactor")] == ["rename"]
    assert registry.search_templates("zzz") == []


def test_registry_format_list(templates):
    registry = ScriptRegistry(templates)
    registry.load_templates()
    text = registry.format_template_list()
    lines = text.split("\n")
    assert lines[:3] == ["Script Templates", "=" * 50, ""]
    assert "## Refactoring" in lines
    assert "Scripts for code refactoring operations" in lines
    assert "  rename" in lines
    assert "    Usage: buddy-script refactor.bs <old> <new>" in lines
    assert lines[-1] == "Total: 3 templates in 2 categories"


def test_registry_missing_directory(tmp_path):
    registry = ScriptRegistry(tmp_path / "none")
    registry.load_templates()
    assert registry.get_templates() == []
    assert registry.format_template_list().endswith("Total: 0 templates in 0 categories")


def test_manager_caches_parsed_scripts(tmp_path):
    path = tmp_path / "a.bs"
    path.write_text("let x = 1")
    manager = ScriptManager()
    first = manager.load(path)
    path.write_text("let y = 2")
    assert manager.load(path) is first
    manager.clear_cache()
    assert manager.load(path) is not first


def test_manager_load_reports_syntax_errors(tmp_path):
    path = tmp_path / "bad.bs"
    path.write_text("let = 1")
    with pytest.raises(BuddySyntaxError):
        ScriptManager().load(path)


def test_manager_load_reports_unreadable_files(tmp_path):
    (tmp_path / "dir.bs").mkdir()
    (tmp_path / "bin.bs").write_bytes(b"\xff\xfe")
    manager = ScriptManager()
    for name in ("dir.bs", "bin.bs"):
        with pytest.raises(BuddyError, match="Cannot read script file"):
            manager.load(tmp_path / name)
    assert manager.scripts == {}


@pytest.mark.asyncio
async def test_manager_history_is_capped(tmp_path):
    path = tmp_path / "a.bs"
    path.write_text("return 1")
    manager = ScriptManager()
    for _ in range(MAX_HISTORY + 5):
        await manager.execute(path)
    history = manager.get_history()
    assert len(history) == MAX_HISTORY
    assert history[-1].result.return_value == 1
    assert history[-1].script == str(path)


def test_manager_list_scripts(tmp_path):
    for name in ("b.bs", "a.fcs", "notes.md"):
        (tmp_path / name).write_text("")
    manager = ScriptManager()
    assert manager.list_scripts(tmp_path) == [str(tmp_path / "a.fcs"), str(tmp_path / "b.bs")]
    assert manager.list_scripts(tmp_path / "missing") == []
