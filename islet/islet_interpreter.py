"""
The core islet evaluator: walks parsed expression nodes against a variable
namespace and a function registry.
"""
import inspect
import math
import os
import sys
from collections import ChainMap
from typing import Any, Dict, List, Mapping, Optional

from islet.islet_datatypes import (
    Call, CallError, Identifier, Node, NumberLiteral, StringLiteral, Text,
    UndefinedVariableError
)
from islet.islet_lexer import tokenize
from islet.islet_parser import parse
from islet.islet_printer import Printer
from islet.islet_registry import FunctionRegistry
from islet.islet_serialize import serialize

CONSTANTS: Dict[str, Any] = {
    'pi': math.pi,
    'e': math.e,
}

ENV_PREFIX = 'ENV_'


def env_value(name: str) -> str:
    """Resolves the ``ENV_NAME`` shorthand to the environment variable NAME."""
    if not name.startswith(ENV_PREFIX):
        return ''
    return os.environ.get(name[len(ENV_PREFIX):], '')


def strip_quotes(value: Any) -> Any:
    """Removes one enclosing pair of single quotes from a string argument."""
    if isinstance(value, str) and len(value) >= 2 and value[0] == "'" and value[-1] == "'":
        return value[1:-1]
    return value


def to_text(value: Any) -> str:
    """Renders an evaluated fragment for concatenation into output text."""
    match value:
        case str():
            return value
        case None:
            return ''
        case bool():
            return 'true' if value else 'false'
        case float() if value.is_integer():
            return str(int(value))
        case int() | float():
            return str(value)
        case list() | tuple() | dict():
            return serialize(value, fmt='json', pretty=False)
        case _:
            return str(value)


class Evaluator:
    """The islet execution engine.

    An evaluator is bound to one registry. ``eval`` may be awaited
    concurrently from independent tasks; each call keeps its state local
    except for the diagnostic ``call_stack``.
    """
    def __init__(self, registry: FunctionRegistry):
        self.registry = registry
        self.call_stack: List[Dict[str, Any]] = []

    def _dbg(self, *parts):
        if os.environ.get("ISLET_DEBUG"):
            print("[DBG]", *parts, file=sys.stderr)

    def _push_frame(self, node: Call, args: List[Any]):
        self.call_stack.append({'name': node.name, 'source': node.source or f"@{node.name}", 'args': args})

    def _pop_frame(self):
        if self.call_stack:
            self.call_stack.pop()

    def _format_stacktrace(self) -> str:
        printer = Printer()
        lines = ["islet call chain:"]
        for frame in self.call_stack:
            lines.append(f"  at {printer.format_call(frame['source'], frame['args'])}")
        return "\n".join(lines)

    # --- Public entry points ---

    async def run(self, text: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        """Tokenizes, parses and evaluates one string."""
        nodes = parse(tokenize(text, self.registry))
        return await self.eval(nodes, params)

    async def eval(self, nodes: List[Node], params: Optional[Mapping[str, Any]] = None) -> Any:
        """Evaluates a parsed node list.

        A single node producing a non-string value yields that value as is;
        otherwise all fragments are rendered and concatenated.
        """
        params = params if params is not None else {}
        variables = ChainMap(params, CONSTANTS)
        if len(nodes) == 1:
            value = await self._eval_top(nodes[0], variables, params)
            return '' if value is None else value
        parts = []
        for node in nodes:
            parts.append(to_text(await self._eval_top(node, variables, params)))
        return ''.join(parts)

    # --- Node evaluation ---

    def lookup(self, name: str, variables: Mapping[str, Any]) -> Any:
        if name in variables:
            return variables[name]
        if name.startswith(ENV_PREFIX):
            return env_value(name)
        raise UndefinedVariableError(name)

    async def _eval_top(self, node: Node, variables: Mapping[str, Any], params: Mapping[str, Any]) -> Any:
        match node:
            case Text(text) | StringLiteral(text) | NumberLiteral(text):
                return text
            case Identifier(name):
                return self.lookup(name, variables)
            case Call():
                return await self.call(node, variables, params)
        raise TypeError(f"cannot evaluate node {node!r}")

    async def _eval_arg(self, node: Node, variables: Mapping[str, Any], params: Mapping[str, Any]) -> Any:
        match node:
            case NumberLiteral():
                return node.value
            case Text(text) | StringLiteral(text):
                return text
            case Identifier(name):
                return self.lookup(name, variables)
            case Call():
                return await self.call(node, variables, params)
        raise TypeError(f"cannot evaluate node {node!r}")

    async def call(self, node: Call, variables: Mapping[str, Any], params: Mapping[str, Any]) -> Any:
        """Evaluates the arguments of ``node`` in order, then dispatches it."""
        entry = self.registry.lookup(node.name)
        args: List[Any] = []
        self._push_frame(node, args)
        try:
            if entry is None:
                raise CallError(node.name, (), LookupError(f"function {node.name!r} is not registered"))
            for arg in node.args:
                # Each argument is fully resolved before the next one starts.
                if entry.wants_params and isinstance(arg, Identifier):
                    # Lookup functions take a bare word as the key itself.
                    args.append(arg.name)
                    continue
                args.append(strip_quotes(await self._eval_arg(arg, variables, params)))
            self._dbg("Evaluator.call", node.name, "argc", len(args), "params" if entry.wants_params else "")
            kwargs = {'params': params} if entry.wants_params else {}
            try:
                result = entry.func(*args, **kwargs)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as e:
                raise CallError(node.name, tuple(args), e, self._format_stacktrace()) from e
            return result
        finally:
            self._pop_frame()

