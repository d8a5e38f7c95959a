import asyncio

import pytest

from islet.islet_datatypes import (
    CallError, InterpretError, IsletSyntaxError, LexError, UndefinedVariableError
)
from islet.islet_globals import GlobalValues
from islet.islet_registry import FunctionRegistry
from islet.islet_runtime import (
    InterpretOptions, Interpreter, _Interpretation, build_registry, default_interpreter, interpret
)
from islet.islet_serialize import serialized_size


# --- Passthrough ---

@pytest.mark.asyncio
@pytest.mark.parametrize("value", [
    "plain text",
    "",
    "mail me at someone@example.com",
    "@unknown('x', 1)",
    "@concat without parens",
    "it's (nearly) 5 o'clock, isn't it",
    "  leading and trailing  \n",
    ["a", ("b", "c"), {"k": "v", "n": [1, 2.5, None, True]}],
    42,
    None,
])
async def test_passthrough(interpreter, value):
    assert await interpreter.interpret(value) == value


@pytest.mark.asyncio
async def test_lookup_of_known_key(interpreter):
    assert await interpreter.interpret("@gv('k')", {'k': 'v'}) == 'v'
    assert await interpreter.interpret("@getvalue('k')", {'k': 'v'}) == 'v'


@pytest.mark.asyncio
async def test_nesting(interpreter):
    assert await interpreter.interpret("@concat(@upper('ab'), @lower('CD'))", {}) == 'ABcd'


@pytest.mark.asyncio
async def test_tree_walk_interprets_keys_and_values(interpreter):
    value = {
        "@concat('na', 'me')": "@upper(@gv('who'))",
        "items": ["@add(1, 1)", "x-@add(1, 1)", 7],
        "pair": ("@lower('A')", "b"),
        "nested": {"deep": "@gv('who')"},
    }
    result = await interpreter.interpret(value, {'who': 'ada'})
    assert result == {
        "name": "ADA",
        "items": [2, "x-2", 7],
        "pair": ("a", "b"),
        "nested": {"deep": "ada"},
    }


@pytest.mark.asyncio
async def test_non_string_keys_are_rendered_as_text(interpreter):
    result = await interpreter.interpret({"@add(1, 2)": "v", 5: "@upper('x')"})
    assert result == {"3": "v", 5: "X"}


@pytest.mark.asyncio
async def test_sequential_side_effects():
    log = []

    async def effect(tag, delay):
        await asyncio.sleep(delay)
        log.append(tag)
        return tag

    registry = FunctionRegistry({'effect': effect})
    interpreter = Interpreter(registry=registry)
    result = await interpreter.interpret(["@effect('e1', 0.02)", "@effect('e2', 0)"])
    assert result == ['e1', 'e2']
    assert log == ['e1', 'e2']


@pytest.mark.asyncio
async def test_mapping_value_is_interpreted_before_its_key():
    log = []

    def effect(tag):
        log.append(tag)
        return tag

    registry = FunctionRegistry({'effect': effect})
    await Interpreter(registry=registry).interpret({"@effect('key')": "@effect('value')"})
    assert log == ['value', 'key']


# --- Size guard ---

@pytest.mark.asyncio
async def test_size_guard_returns_value_unchanged(interpreter):
    big = {"text": "@upper('x')" * 50}
    limit = serialized_size(big) - 1
    result = await interpreter.interpret(big, {}, {'maxSize': limit})
    assert result is big


@pytest.mark.asyncio
async def test_size_guard_allows_small_values(interpreter):
    value = "@upper('x')"
    result = await interpreter.interpret(value, {}, InterpretOptions(max_size=serialized_size(value)))
    assert result == 'X'


# --- Memoization ---

@pytest.mark.asyncio
async def test_local_params_are_interpreted_once_per_call():
    calls = []

    def count():
        calls.append(1)
        return len(calls)

    registry = build_registry()
    registry.register('count', count)
    interpreter = Interpreter(registry=registry)
    params = {'n': "@count()"}
    tree = {'a': "@gv('n')", 'b': ["@gv('n')", {'c': "@gv('n')"}]}
    result = await interpreter.interpret(tree, params)
    assert calls == [1]
    assert result == {'a': 1, 'b': [1, {'c': 1}]}
    # The caller's parameters are left untouched.
    assert params == {'n': "@count()"}


@pytest.mark.asyncio
async def test_interpret_all_shares_one_parameter_layering():
    calls = []
    registry = build_registry()
    registry.register('count', lambda: calls.append(1) or len(calls))
    interpreter = Interpreter(registry=registry)
    results = await interpreter.interpret_all(["@gv('n')", "n=@gv('n')"], {'n': "@count()"})
    assert results == [1, 'n=1']
    assert calls == [1]


# --- Global values ---

@pytest.mark.asyncio
async def test_locals_override_globals(interpreter):
    result = await interpreter.interpret("@gv('k')", {'k': 'L'}, new_globals={'k': 'g'})
    assert result == 'L'
    assert await interpreter.interpret("@gv('k')") == 'g'


@pytest.mark.asyncio
async def test_globals_accumulate_across_calls(interpreter):
    await interpreter.interpret("x", new_globals={'a': '1'})
    await interpreter.interpret("x", new_globals={'b': '2'})
    assert await interpreter.interpret("@gv('a')@gv('b')") == '12'


@pytest.mark.asyncio
async def test_ignore_global_values(interpreter):
    await interpreter.interpret("x", new_globals={'k': 'g'})
    opts = {'ignore_global_values': True}
    assert await interpreter.interpret("[@gv('k')]", {}, opts) == '[]'
    # Opting out also skips merging.
    await interpreter.interpret("x", {}, opts, new_globals={'other': 'o'})
    assert 'other' not in interpreter.global_values


@pytest.mark.asyncio
async def test_namespaced_globals(interpreter):
    new_globals = [
        {'db': {'host': 'localhost', 'port': 5432}},
        {'app': {'name': 'islet'}},
    ]
    result = await interpreter.interpret("@gv('db_host'):@gv('db_port')/@gv('app_name')", new_globals=new_globals)
    assert result == 'localhost:5432/islet'


@pytest.mark.asyncio
async def test_text_list_global(interpreter):
    new_globals = {'ids': {'format': 'text-list', 'value': ['a', 'b', 'c'], 'quotechar': "'", 'delimiter': ','}}
    assert await interpreter.interpret("IN (@gv('ids'))", new_globals=new_globals) == "IN ('a','b','c')"


@pytest.mark.asyncio
async def test_json_global_expands_against_locals(interpreter):
    new_globals = {
        'greeting': 'hello',
        'payload': {'format': 'json', 'value': {'msg': "@gv('greeting') @gv('user')", 'n': 1}},
    }
    result = await interpreter.interpret("@gv('payload')", {'user': 'ada'}, new_globals=new_globals)
    assert result == '{"msg":"hello ada","n":1}'


@pytest.mark.asyncio
async def test_local_params_see_plain_globals(interpreter):
    result = await interpreter.interpret(
        "@gv('url')", {'url': "https://@gv('host')/x"}, new_globals={'host': 'example.com'}
    )
    assert result == 'https://example.com/x'


@pytest.mark.asyncio
async def test_global_values_can_be_shared():
    store = GlobalValues({'shared': 'yes'})
    a = Interpreter(global_values=store)
    b = Interpreter(global_values=store)
    await a.interpret("x", new_globals={'added': 'by-a'})
    assert await b.interpret("@gv('shared')-@gv('added')") == 'yes-by-a'


# --- Errors ---

@pytest.mark.asyncio
async def test_undefined_identifier(interpreter):
    with pytest.raises(UndefinedVariableError) as exc:
        await interpreter.interpret("@eq(missingvar, 1)", {})
    assert exc.value.source == "@eq(missingvar, 1)"


@pytest.mark.asyncio
async def test_malformed_call(interpreter):
    with pytest.raises(SyntaxError):
        await interpreter.interpret("@concat('a'", {})


@pytest.mark.asyncio
async def test_unterminated_string(interpreter):
    with pytest.raises(LexError):
        await interpreter.interpret("@concat('a)", {})


@pytest.mark.asyncio
async def test_errors_are_enriched_with_chain_id(interpreter):
    params = {'CHAIN_ID': 'chain-7'}
    with pytest.raises(IsletSyntaxError) as exc:
        await interpreter.interpret({'ok': 'fine', 'bad': ["@concat('a'"]}, params)
    err = exc.value
    assert err.chain_id == 'chain-7'
    assert err.source == "@concat('a'"
    assert str(err).startswith("Interpreter: CHAIN: chain-7: ")
    assert str(err).endswith(" IN: @concat('a'")


@pytest.mark.asyncio
async def test_process_id_is_used_without_chain_id(interpreter):
    with pytest.raises(CallError) as exc:
        await interpreter.interpret("@divide(1, 0)", {'PROCESS_ID': 'p-1'})
    assert str(exc.value).startswith("Interpreter: PROCESS: p-1: CallError in divide")


@pytest.mark.asyncio
async def test_nested_interpretation_keeps_inner_context():
    registry = build_registry()
    interpreter = Interpreter(registry=registry)
    # forof re-enters the interpreter; the template string is the innermost source.
    with pytest.raises(CallError) as exc:
        await interpreter.interpret("@forof(@gv('xs'), '@divide(1, 0)')", {'xs': [1]})
    assert exc.value.source == "@forof(@gv('xs'), '@divide(1, 0)')"
    inner = exc.value.cause
    assert isinstance(inner, CallError)
    assert inner.source == "@divide(1, 0)"


@pytest.mark.asyncio
async def test_structured_key_results_are_rendered_as_json():
    registry = FunctionRegistry({'obj': lambda: {'a': 1}})
    result = await Interpreter(registry=registry).interpret({"@obj()": 1})
    assert result == {'{"a":1}': 1}


@pytest.mark.asyncio
async def test_non_islet_failures_become_interpret_errors():
    class Exploding(dict):
        def __contains__(self, key):
            raise RuntimeError("broken mapping")

    registry = FunctionRegistry({'concat': lambda *a: ''.join(a)})
    state = _Interpretation(Interpreter(registry=registry), InterpretOptions(), {'CHAIN_ID': 'c'})
    with pytest.raises(InterpretError) as exc:
        await state.interpret_string("@concat(x)", Exploding())
    assert isinstance(exc.value.__cause__, RuntimeError)
    assert exc.value.chain_id == 'c'


# --- Quoting ---

@pytest.mark.asyncio
async def test_quoting_round_trip(interpreter):
    direct = await interpreter.interpret("@gvq('k')", {'k': 'v'})
    assert direct == "'v'"
    assert await interpreter.interpret(direct) == direct
    quoted = await interpreter.interpret("@quote('a b')")
    assert await interpreter.interpret(quoted) == quoted


# --- Options and entry points ---

def test_options_coercion():
    assert InterpretOptions.coerce(None) == InterpretOptions()
    assert InterpretOptions.coerce({'maxSize': 10}).max_size == 10
    assert InterpretOptions.coerce({'ignoreGlobalValues': True}).ignore_global_values
    opts = InterpretOptions(max_size=3)
    assert InterpretOptions.coerce(opts) is opts
    with pytest.raises(TypeError):
        InterpretOptions.coerce(5)


@pytest.mark.asyncio
async def test_module_level_interpret_uses_default_interpreter():
    assert default_interpreter() is default_interpreter()
    assert await interpret("@concat('a', 'b')") == 'ab'


def test_sync_run():
    assert Interpreter().run("@upper('x')") == 'X'


@pytest.mark.asyncio
async def test_forof_templates_see_the_callers_registry():
    registry = build_registry()
    registry.register('shout', lambda s: s.upper() + '!')
    interpreter = Interpreter(registry=registry, global_values=GlobalValues())
    assert registry['forof'].func.__self__.interpreter is interpreter
    result = await interpreter.interpret("@forof(@gv('xs'), '@shout(x)')", {'xs': [{'x': 'a'}, {'x': 'b'}]})
    assert result == ['A!', 'B!']


@pytest.mark.asyncio
@pytest.mark.parametrize("options", [{'maxSize': 0}, InterpretOptions(max_size=0), {'max_size': None}])
async def test_zero_or_missing_size_limit_disables_the_guard(interpreter, options):
    assert await interpreter.interpret("@upper('x')", {'p': "@lower('Y')"}, options) == 'X'
    assert await interpreter.interpret("@gv('p')", {'p': "@lower('Y')"}, options) == 'y'
