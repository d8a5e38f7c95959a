import pytest

from islet.islet_globals import GlobalValues
from islet.islet_registry import FunctionRegistry
from islet.islet_runtime import Interpreter, build_registry


@pytest.fixture
def registry():
    return build_registry()


@pytest.fixture
def small_registry():
    return FunctionRegistry({
        'concat': lambda *parts: ''.join(str(p) for p in parts),
        'upper': lambda s: s.upper(),
    })


@pytest.fixture
def interpreter():
    # A private global store keeps tests from leaking into each other.
    return Interpreter(global_values=GlobalValues())
