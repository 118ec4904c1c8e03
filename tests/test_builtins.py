import pytest

from buddyscript.buddy_runtime import execute_script, script_name, parse_int, parse_float, iso_from_ms


async def run_script(src: str, **options):
    return await execute_script(src, **options)


def assert_ok(res, expected=None):
    assert res.success, f"expected success, got error: {res.error}"
    if expected is not None:
        assert res.return_value == expected


def assert_error(res, fragment):
    assert not res.success, f"expected failure, got {res.return_value!r}"
    assert fragment in res.error


def test_script_names_are_camel_case():
    assert script_name("_print") == "print"
    assert script_name("_starts_with") == "startsWith"
    assert script_name("_json_encode") == "jsonEncode"


def test_leading_number_parsers():
    assert parse_int("42px") == 42
    assert parse_int(" -7 ") == -7
    assert parse_int("0x1f") == 31
    assert parse_float("2.5kg") == 2.5
    assert parse_float("-Infinity") == float("-inf")
    assert parse_int("abc") != parse_int("abc")  # NaN


def test_iso_from_ms():
    assert iso_from_ms(0) == "1970-01-01T00:00:00.000Z"
    assert iso_from_ms(1500) == "1970-01-01T00:00:01.500Z"


# Conversion
@pytest.mark.asyncio
async def test_conversions():
    res = await run_script('return [int("42px"), int(3.9), float("2.5kg"), num("0x10"), str(12), bool(""), array("ab")]')
    assert_ok(res, [42, 3, 2.5, 16, "12", False, ["a", "b"]])


@pytest.mark.asyncio
async def test_len():
    assert_ok(await run_script('return [len("abc"), len([1, 2]), len({a: 1}), len(5)]'), [3, 2, 1, 0])


# Collections
@pytest.mark.asyncio
async def test_range():
    res = await run_script("return [range(3), range(1, 4), range(10, 0, -3), range(0, 5, 0)]")
    assert_ok(res, [[0, 1, 2], [1, 2, 3], [10, 7, 4, 1], []])


@pytest.mark.asyncio
async def test_range_rejects_non_numbers():
    assert_error(await run_script('range("a")'), "range() expects numbers, got string")


@pytest.mark.asyncio
async def test_higher_order_functions():
    src = """
    return [
        map([1, 2, 3], x => x * x),
        filter([1, 2, 3, 4], x => x % 2 == 0),
        find([5, 8, 12], x => x > 6),
        reduce([1, 2, 3], (a, b) => a + b),
        reduce([1, 2, 3], (a, b) => a + b, 10),
        reduce([], (a, b) => a + b),
        every([2, 4], x => x % 2 == 0),
        some([1, 3], x => x > 2)
    ]
    """
    assert_ok(await run_script(src), [[1, 4, 9], [2, 4], 8, 6, 16, None, True, True])


@pytest.mark.asyncio
async def test_callbacks_run_one_at_a_time_in_index_order():
    src = """
    let log = []
    let doubled = map([10, 20, 30, 40], async (x, i) => {
        sleep(40 - i * 10)
        log.push(i)
        return x * 2
    })
    let kept = filter([1, 2, 3], async (x, i) => {
        sleep(10 - i * 5)
        log.push("f" + i)
        return x != 2
    })
    return [doubled, kept, log]
    """
    assert_ok(await run_script(src), [[20, 40, 60, 80], [1, 3], [0, 1, 2, 3, "f0", "f1", "f2"]])


@pytest.mark.asyncio
async def test_callback_argument_checks():
    assert_error(await run_script("map(5, x => x)"), "map() requires an array as first argument")
    assert_error(await run_script("filter([1], 5)"), "filter() requires a function as second argument")


@pytest.mark.asyncio
async def test_sort_returns_sorted_copy():
    src = """
    let xs = [3, 1, 10, 2]
    let sorted = sort(xs)
    return [sorted, xs, sort(["b", "a", "c"]), sort([3, 1, 2], (a, b) => b - a)]
    """
    assert_ok(await run_script(src), [[1, 2, 3, 10], [3, 1, 10, 2], ["a", "b", "c"], [3, 2, 1]])


@pytest.mark.asyncio
async def test_zip_and_enumerate():
    res = await run_script('return [zip([1, 2, 3], ["a", "b"]), zip(), enumerate(["x", "y"])]')
    assert_ok(res, [[[1, "a"], [2, "b"]], [], [[0, "x"], [1, "y"]]])


@pytest.mark.asyncio
async def test_array_functions():
    src = """
    let xs = [1, 2]
    let same = push(xs, 3)
    let popped = pop(xs)
    let shifted = shift(xs)
    unshift(xs, 0)
    return [same == xs, popped, shifted, xs, reverse([1, 2, 3]), slice([1, 2, 3, 4], 1, 3),
            concat([1], [2, 3], 4), includes([1, 2], 2), indexOf([1, 2], 5), join([1, "a", true], "|")]
    """
    assert_ok(await run_script(src), [True, 3, 1, [0, 2], [3, 2, 1], [2, 3], [1, 2, 3, 4], True, -1, "1|a|true"])


@pytest.mark.asyncio
async def test_push_requires_an_array():
    assert_error(await run_script('push("x", 1)'), "push() requires an array as first argument")


@pytest.mark.asyncio
async def test_dict_functions():
    res = await run_script("let d = {a: 1, b: 2}\nreturn [keys(d), values(d), entries(d), keys(5)]")
    assert_ok(res, [["a", "b"], [1, 2], [["a", 1], ["b", 2]], []])


# Strings
@pytest.mark.asyncio
async def test_string_functions():
    src = """
    return [upper("ab"), lower("AB"), trim("  x  "), ltrim("  x "), rtrim(" x  "),
            startsWith("hello", "he"), endsWith("hello", "lo"), contains("hello", "ell"),
            replace("a-b-c", "-", "+"), substr("hello", 1, 3), charAt("abc", 5), repeat("ab", 2),
            padStart("5", 3, "0"), padEnd("5", 3), split("a b", " ")]
    """
    expected = ["AB", "ab", "x", "x ", " x", True, True, True, "a+b+c", "ell", "", "abab", "005", "5  ", ["a", "b"]]
    assert_ok(await run_script(src), expected)


@pytest.mark.asyncio
async def test_format_and_match():
    src = r'''
    return [format("{} + {}", 1, 2), format("{0}!", "hi"),
            match("order-123", "(\\w+)-(\\d+)"), match("abc", "\\d")]
    '''
    assert_ok(await run_script(src), ["1 + 2", "hi!", ["order-123", "order", "123"], None])


@pytest.mark.asyncio
async def test_repeat_with_negative_count_fails():
    assert_error(await run_script('repeat("a", -1)'), "Invalid count value: -1")


# Math
@pytest.mark.asyncio
async def test_math_functions():
    src = """
    return [abs(-3), ceil(1.2), floor(1.8), round(2.5), round(-2.5), sqrt(16), pow(2, 8),
            min(3, 1, 2), max([4, 9, 2]), sum([1, 2, 3]), avg([2, 4]), avg([])]
    """
    assert_ok(await run_script(src), [3, 2, 1, 3, -2, 4, 256, 1, 9, 6, 3, 0])


@pytest.mark.asyncio
async def test_random_values_are_in_range():
    src = """
    let r = random()
    let n = randomInt(1, 3)
    return [r >= 0 && r < 1, n >= 1 && n <= 3]
    """
    assert_ok(await run_script(src), [True, True])


@pytest.mark.asyncio
async def test_math_namespace_and_constants():
    assert_ok(await run_script("return [Math.max(1, 5), Math.floor(2.7), PI > 3, Math.PI == PI]"), [5, 2, True, True])


# Dates
@pytest.mark.asyncio
async def test_date_functions():
    src = """
    return [formatDate(0), typeof(now()), len(date()), len(time()), formatDate(86400000 * 200, "YYYY"),
            Date.parse("1970-01-01T00:00:01.000Z")]
    """
    assert_ok(await run_script(src), ["1970-01-01T00:00:00.000Z", "number", 10, 8, "1970", 1000])


# JSON / YAML
@pytest.mark.asyncio
async def test_json_functions():
    src = """
    let text = jsonEncode({a: [1, 2]})
    let back = jsonDecode(text)
    return [text, back.a[1], JSON.stringify({b: true}), json.stringify([1], 2), JSON.parse("[1, 2]")]
    """
    res = await run_script(src)
    assert_ok(res, ['{\n  "a": [\n    1,\n    2\n  ]\n}', 2, '{"b":true}', "[\n  1\n]", [1, 2]])


@pytest.mark.asyncio
async def test_json_decode_of_bad_text_fails():
    res = await run_script('jsonDecode("{bad")')
    assert not res.success


@pytest.mark.asyncio
async def test_yaml_namespace():
    src = r'''
    let data = yaml.parse("a: 1\nb: [x, y]")
    return [data, yaml.stringify({a: 1})]
    '''
    assert_ok(await run_script(src), [{"a": 1, "b": ["x", "y"]}, "a: 1\n"])


# Types and utilities
@pytest.mark.asyncio
async def test_typeof_and_predicates():
    src = """
    return [typeof(1), typeof("s"), typeof(null), typeof([]), typeof({}), typeof(print), typeof(x => x),
            isNull(null), isNumber("1"), isArray([]), isDict({}), isFunction(len), isString("s"), isBool(false)]
    """
    expected = ["number", "string", "null", "array", "object", "function", "function",
                True, False, True, True, True, True, True]
    assert_ok(await run_script(src), expected)


@pytest.mark.asyncio
async def test_env_namespace_uses_an_overlay():
    environ = {"BUDDY_TEST": "yes"}
    src = """
    let before = env.get("NEW_VAR")
    env.set("NEW_VAR", 5)
    return [env.get("BUDDY_TEST"), before, env.get("NEW_VAR"), env.all()["NEW_VAR"]]
    """
    res = await run_script(src, environ=environ)
    assert_ok(res, ["yes", None, "5", "5"])
    assert environ == {"BUDDY_TEST": "yes"}


@pytest.mark.asyncio
async def test_expect():
    assert_ok(await run_script("expect(1 + 1, 2)"))
    assert_error(await run_script("expect(1, 2)"), "Expected 2, got 1")
    assert_error(await run_script('expect(1, 2, "custom")'), "custom")


@pytest.mark.asyncio
async def test_sleep_is_capped_by_the_timeout():
    assert_ok(await run_script("sleep(5)\nreturn 1"), 1)
    res = await run_script("sleep(5000)", timeout=50)
    assert res.error == "Script timeout after 50ms"


@pytest.mark.asyncio
async def test_console_namespace():
    res = await run_script('console.log("a", 1)\nconsole.warn("w")\nconsole.error("e")')
    assert_ok(res)
    assert res.output == ["a 1", "[WARN] w", "[ERROR] e"]


@pytest.mark.asyncio
async def test_input_returns_empty_string():
    res = await run_script('let v = input("Name? ")\nreturn v')
    assert_ok(res, "")
    assert res.output == ["Name? "]


@pytest.mark.asyncio
async def test_cwd_is_the_workdir(tmp_path):
    assert_ok(await run_script("return cwd()", workdir=str(tmp_path)), str(tmp_path))


@pytest.mark.asyncio
async def test_host_errors_become_script_errors():
    res = await run_script('try { jsonDecode("{bad") } catch (e) { return typeof(e.message) }')
    assert_ok(res, "string")
