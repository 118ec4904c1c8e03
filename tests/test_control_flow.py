import pytest

from buddyscript.buddy_runtime import execute_script


async def run_script(src: str, **options):
    return await execute_script(src, **options)


def assert_ok(res, expected=None):
    assert res.success, f"expected success, got error: {res.error}"
    if expected is not None:
        assert res.return_value == expected


# Loops
@pytest.mark.asyncio
async def test_while_with_break_and_continue():
    src = """
    let i = 0
    let seen = []
    while (true) {
        i++
        if (i % 2 == 0) continue
        if (i > 7) break
        seen.push(i)
    }
    return seen
    """
    assert_ok(await run_script(src), [1, 3, 5, 7])


@pytest.mark.asyncio
async def test_c_style_for_runs_update_after_continue():
    src = """
    let sum = 0
    for (let i = 0; i < 5; i++) {
        if (i == 2) continue
        sum += i
    }
    return sum
    """
    assert_ok(await run_script(src), 8)


@pytest.mark.asyncio
async def test_for_in_over_arrays_and_dicts():
    src = """
    let out = []
    for (let x in [1, 2, 3]) { out.push(x * 10) }
    for (let pair of {a: 1, b: 2}) { out.push(pair[0] + "=" + pair[1]) }
    return out
    """
    assert_ok(await run_script(src), [10, 20, 30, "a=1", "b=2"])


@pytest.mark.asyncio
async def test_loop_bodies_get_a_fresh_scope_each_iteration():
    src = """
    let fns = []
    for (let i = 0; i < 3; i++) {
        let k = i * 10
        fns.push(() => k)
    }
    for (let x in [1, 2]) {
        let k = x
        fns.push(() => k)
    }
    return map(fns, f => f())
    """
    assert_ok(await run_script(src), [0, 10, 20, 1, 2])

    res = await run_script("for (let x in [1]) { let inner = x }\nreturn inner")
    assert not res.success
    assert res.error == "Undefined variable: inner"


@pytest.mark.asyncio
async def test_for_in_over_a_string_fails():
    res = await run_script('for (let c in "abc") {}')
    assert not res.success
    assert res.error == "for-in requires an iterable (array or object)"


@pytest.mark.asyncio
async def test_return_from_inside_a_loop():
    src = """
    function firstBig(xs) {
        for (let x in xs) { if (x > 10) return x }
        return -1
    }
    return [firstBig([1, 20, 30]), firstBig([])]
    """
    assert_ok(await run_script(src), [20, -1])


@pytest.mark.asyncio
async def test_if_else_chain():
    src = """
    function grade(n) {
        if (n >= 90) { return "A" } else if (n >= 80) { return "B" } else { return "C" }
    }
    return [grade(95), grade(85), grade(10)]
    """
    assert_ok(await run_script(src), ["A", "B", "C"])


# Exceptions
@pytest.mark.asyncio
async def test_try_catch_finally_order():
    src = """
    let log = []
    try {
        log.push("try")
        throw "boom"
    } catch (e) {
        log.push(e.message)
    } finally {
        log.push("finally")
    }
    return log
    """
    assert_ok(await run_script(src), ["try", "boom", "finally"])


@pytest.mark.asyncio
async def test_thrown_dict_is_caught_as_is():
    res = await run_script('try { throw {code: 42, message: "bad"} } catch (e) { return [e.code, e.message] }')
    assert_ok(res, [42, "bad"])


@pytest.mark.asyncio
async def test_uncaught_throws():
    res = await run_script('throw {message: "nope"}')
    assert not res.success and res.error == "nope"
    res = await run_script("throw 42")
    assert not res.success and res.error == "42"


@pytest.mark.asyncio
async def test_runtime_errors_are_catchable():
    src = """
    try {
        let x = null
        x.y
    } catch (e) {
        return [e.message, e.stack]
    }
    """
    res = await run_script(src)
    assert_ok(res)
    message, stack = res.return_value
    assert message == "Cannot read property of null or undefined"
    assert stack.startswith("Error: Cannot read property")
    assert "at line 4" in stack


@pytest.mark.asyncio
async def test_catch_without_binding():
    assert_ok(await run_script('try { throw "x" } catch { return "handled" }'), "handled")


@pytest.mark.asyncio
async def test_finally_runs_when_try_returns():
    src = """
    let log = []
    function f() {
        try { return 1 } finally { log.push("cleanup") }
    }
    let v = f()
    return [v, log]
    """
    assert_ok(await run_script(src), [1, ["cleanup"]])


@pytest.mark.asyncio
async def test_finally_without_catch_rethrows():
    src = """
    try { throw "inner" } finally { print("cleanup") }
    """
    res = await run_script(src)
    assert not res.success
    assert res.error == "inner"
    assert res.output == ["cleanup"]


# Assertions and tests
@pytest.mark.asyncio
async def test_assert_statement():
    res = await run_script('let a = 1\nassert a + 1 == 3, "math is broken"')
    assert not res.success
    assert res.error == "math is broken"
    assert res.error_line == 2

    res = await run_script("assert false")
    assert res.error == "Assertion failed"

    assert_ok(await run_script('assert(1 == 1, "fine")'))


@pytest.mark.asyncio
async def test_test_blocks_are_skipped_unless_verbose():
    src = """
    test "passes" { assert 1 == 1 }
    test "fails" { assert 1 == 2, "nope" }
    print("after")
    """
    res = await run_script(src)
    assert_ok(res)
    assert res.output == ["after"]
    assert res.test_results is None

    res = await run_script(src, verbose=True)
    assert_ok(res)
    assert res.output == ["✓ passes", "✗ fails: nope", "after"]
    assert res.test_results == [
        {"name": "passes", "passed": True},
        {"name": "fails", "passed": False, "error": "nope"},
    ]


# exit()
@pytest.mark.asyncio
async def test_exit_zero_is_success():
    res = await run_script('print("a")\nexit(0)\nprint("b")')
    assert_ok(res, 0)
    assert res.output == ["a"]


@pytest.mark.asyncio
async def test_exit_with_code_fails():
    res = await run_script("exit(3)")
    assert not res.success
    assert res.error == "Script exited with code 3"


@pytest.mark.asyncio
async def test_exit_is_not_catchable():
    res = await run_script('try { exit(2) } catch (e) { print("caught") }')
    assert res.error == "Script exited with code 2"
    assert res.output == []


@pytest.mark.asyncio
async def test_output_is_kept_on_error():
    res = await run_script('print("one")\nundefinedThing()')
    assert not res.success
    assert res.output == ["one"]
    assert res.error == "Undefined variable: undefinedThing"
    assert res.error_line == 2


@pytest.mark.asyncio
async def test_imports_are_accepted():
    assert_ok(await run_script('import grok\nimport fs from "fs"\nreturn 1'), 1)
