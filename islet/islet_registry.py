"""
The function registry consulted by the lexer (to recognize call islands) and
invoked by the evaluator.
"""
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional


@dataclass(frozen=True)
class RegistryEntry:
    name: str
    func: Callable[..., Any]
    # When True the evaluator passes the active parameter mapping as ``params=``.
    wants_params: bool = False


def _accepts_params(func: Callable[..., Any]) -> bool:
    try:
        sig = inspect.signature(func)
    except (TypeError, ValueError):
        # Builtins such as math.sin may not expose a signature.
        return False
    param = sig.parameters.get('params')
    return param is not None and param.kind == inspect.Parameter.KEYWORD_ONLY


class FunctionRegistry:
    """A mapping from lowercase function name to a callable.

    Registries are ordinary objects: build one, register callables on it and
    hand it to an ``Interpreter``. Lookups are case-insensitive and tolerate a
    single leading ``@`` sigil.
    """
    def __init__(self, functions: Optional[Dict[str, Callable[..., Any]]] = None):
        self._entries: Dict[str, RegistryEntry] = {}
        for name, func in (functions or {}).items():
            self.register(name, func)

    @staticmethod
    def normalize(name: str) -> str:
        if name.startswith('@'):
            name = name[1:]
        return name.lower()

    def register(self, name: str, func: Callable[..., Any], *, wants_params: Optional[bool] = None) -> RegistryEntry:
        """Registers ``func`` under ``name``.

        ``wants_params`` defaults to whether ``func`` declares a keyword-only
        ``params`` argument.
        """
        if not callable(func):
            raise TypeError(f"cannot register non-callable {func!r} as {name!r}")
        key = self.normalize(name)
        if not key:
            raise ValueError("function name must not be empty")
        if wants_params is None:
            wants_params = _accepts_params(func)
        entry = RegistryEntry(key, func, bool(wants_params))
        self._entries[key] = entry
        return entry

    def alias(self, alias: str, target: str) -> RegistryEntry:
        entry = self.lookup(target)
        if entry is None:
            raise KeyError(target)
        return self.register(alias, entry.func, wants_params=entry.wants_params)

    def unregister(self, name: str):
        del self._entries[self.normalize(name)]

    def lookup(self, name: str) -> Optional[RegistryEntry]:
        return self._entries.get(self.normalize(name))

    def __getitem__(self, name: str) -> RegistryEntry:
        entry = self.lookup(name)
        if entry is None:
            raise KeyError(name)
        return entry

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.normalize(name) in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def names(self):
        return sorted(self._entries)

    def copy(self) -> 'FunctionRegistry':
        clone = FunctionRegistry()
        clone._entries = dict(self._entries)
        return clone

    def __repr__(self) -> str:
        return f"<FunctionRegistry functions={len(self._entries)}>"
