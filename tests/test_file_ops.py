import json

import pytest

from buddyscript.buddy_file import resolve_path
from buddyscript.buddy_runtime import execute_script


async def run_in(tmp_path, src: str, **options):
    return await execute_script(src, workdir=str(tmp_path), **options)


def assert_ok(res, expected=None):
    assert res.success, f"expected success, got error: {res.error}"
    if expected is not None:
        assert res.return_value == expected


def test_resolve_path(tmp_path):
    base = str(tmp_path)
    assert resolve_path("a/../b.txt", base) == str(tmp_path / "b.txt")
    assert resolve_path("/etc/hosts", base) == "/etc/hosts"


@pytest.mark.asyncio
async def test_write_read_and_append(tmp_path):
    src = """
    writeFile("notes/todo.txt", "one")
    appendFile("notes/todo.txt", "\\ntwo")
    return [readFile("notes/todo.txt"), fileExists("notes/todo.txt"), isFile("notes/todo.txt"), isDir("notes")]
    """
    res = await run_in(tmp_path, src)
    assert_ok(res, ["one\ntwo", True, True, True])
    assert (tmp_path / "notes" / "todo.txt").read_text() == "one\ntwo"


@pytest.mark.asyncio
async def test_write_serializes_structured_values(tmp_path):
    res = await run_in(tmp_path, 'writeFile("data.json", {name: "x", tags: [1, 2]})\nreturn file.readData("data.json")')
    assert_ok(res, {"name": "x", "tags": [1, 2]})
    text = (tmp_path / "data.json").read_text()
    assert text.endswith("\n")
    assert json.loads(text) == {"name": "x", "tags": [1, 2]}


@pytest.mark.asyncio
async def test_listing_and_glob(tmp_path):
    for name in ("b.txt", "a.txt", "c.md"):
        (tmp_path / name).write_text(name)
    (tmp_path / "sub").mkdir()
    (tmp_path / "sub" / "d.txt").write_text("d")
    src = 'return [listDir("."), glob("*.txt"), glob("sub/*.txt"), glob("missing/*")]'
    res = await run_in(tmp_path, src)
    assert_ok(res, [["a.txt", "b.txt", "c.md", "sub"], ["a.txt", "b.txt"], ["sub/d.txt"], []])


@pytest.mark.asyncio
async def test_glob_wildcards(tmp_path):
    for name in ("notes.txt", "notes.text", "a+b.md", "A.TXT"):
        (tmp_path / name).write_text(name)
    res = await run_in(tmp_path, 'return [glob("*.t?t"), glob("a+b.*"), glob("*.txt")]')
    assert_ok(res, [["notes.txt"], ["a+b.md"], ["notes.txt"]])


@pytest.mark.asyncio
async def test_directory_operations(tmp_path):
    src = """
    mkdir("a/b")
    writeFile("a/b/f.txt", "x")
    copy("a/b/f.txt", "g.txt")
    rename("g.txt", "h.txt")
    let size = fileSize("h.txt")
    remove("h.txt")
    rmdir("a")
    return [size, fileExists("h.txt"), fileExists("a")]
    """
    assert_ok(await run_in(tmp_path, src), [1, False, False])
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_remove_refuses_directories(tmp_path):
    (tmp_path / "d").mkdir()
    res = await run_in(tmp_path, 'remove("d")')
    assert not res.success
    assert "Cannot remove a directory" in res.error


@pytest.mark.asyncio
async def test_reading_a_missing_file_fails(tmp_path):
    res = await run_in(tmp_path, 'readFile("nope.txt")')
    assert not res.success
    assert "No such file" in res.error


@pytest.mark.asyncio
async def test_path_helpers(tmp_path):
    src = """
    return [basename("/x/y/file.txt"), basename("/x/y/file.txt", ".txt"), dirname("/x/y/file.txt"),
            extname("archive.tar.gz"), joinPath("a", "b", "../c"), resolvePath("sub")]
    """
    res = await run_in(tmp_path, src)
    assert_ok(res, ["file.txt", "file", "/x/y", ".gz", "a/c", str(tmp_path / "sub")])


@pytest.mark.asyncio
async def test_file_namespace(tmp_path):
    src = """
    file.write("a.txt", "hello")
    file.copy("a.txt", "b.txt")
    file.move("b.txt", "c.txt")
    let info = file.stat("c.txt")
    file.delete("a.txt")
    return [file.read("c.txt"), file.exists("a.txt"), file.list("."), info.size, info.isFile, info.isDirectory]
    """
    assert_ok(await run_in(tmp_path, src), ["hello", False, ["c.txt"], 5, True, False])


@pytest.mark.asyncio
async def test_dry_run_reports_instead_of_writing(tmp_path):
    src = """
    writeFile("out.txt", "data")
    mkdir("newdir")
    remove("whatever.txt")
    return fileExists("out.txt")
    """
    res = await run_in(tmp_path, src, dry_run=True)
    assert_ok(res, False)
    assert res.output == [
        "[DRY RUN] Would write to: out.txt",
        "[DRY RUN] Would create directory: newdir",
        "[DRY RUN] Would remove: whatever.txt",
    ]
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_file_builtins_can_be_disabled(tmp_path):
    res = await run_in(tmp_path, 'readFile("x")', enable_file_ops=False)
    assert not res.success
    assert res.error == "Undefined variable: readFile"
    res = await run_in(tmp_path, 'file.read("x")', enable_file_ops=False)
    assert res.error == "Undefined variable: file"
