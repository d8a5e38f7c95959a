"""
Global values: the accumulating store of named substitution values and the
resolver that flattens it into a plain parameter mapping.

A registry is either a flat mapping ``{key: entry}`` or an ordered sequence of
single-key mappings ``[{group: {key: entry}}, ...]`` whose keys are flattened
to ``group_key``. An entry is a plain value, or a mapping with a ``format``:

  - ``verbatim``            ``value`` passes through (a mapping without
                            ``format`` passes through whole)
  - ``text`` / ``text-list`` a sequence ``value`` is joined: each item wrapped
                            in ``quotechar``, items separated by ``delimiter``
  - ``json``                ``value`` is serialized to compact JSON and run
                            through the expression pipeline
"""
import os
import threading
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from islet.islet_datatypes import GlobalValueError
from islet.islet_interpreter import to_text
from islet.islet_serialize import load_file, serialize

Expander = Callable[[str, Mapping[str, Any]], Awaitable[Any]]

TEXT_FORMATS = ('text', 'text-list')


def flatten_registry(registry: Any) -> Dict[str, Any]:
    """Returns ``{key: entry}`` for either registry shape."""
    if registry is None:
        return {}
    if isinstance(registry, Mapping):
        return dict(registry)
    if isinstance(registry, (list, tuple)):
        out: Dict[str, Any] = {}
        for group in registry:
            if not isinstance(group, Mapping):
                raise GlobalValueError(repr(group), "namespaced global values must be mappings of group -> entries")
            for prefix, entries in group.items():
                if not isinstance(entries, Mapping):
                    raise GlobalValueError(str(prefix), "a global value group must map keys to entries")
                for key, entry in entries.items():
                    out[f"{prefix}_{key}"] = entry
        return out
    raise GlobalValueError(type(registry).__name__, "registry must be a mapping or a sequence of single-key mappings")


def join_text(values, quotechar: str = '', delimiter: str = '') -> str:
    return delimiter.join(f"{quotechar}{to_text(v)}{quotechar}" for v in values)


async def resolve(registry: Any,
                  expand: Optional[Expander] = None,
                  local: Optional[Mapping[str, Any]] = None,
                  include_json: bool = True) -> Dict[str, Any]:
    """Flattens ``registry`` into a fresh ``{key: value}`` mapping.

    ``json`` entries are expanded last with ``expand(text, variables)``, where
    ``variables`` holds the non-json entries overlaid by ``local``. A json
    entry never sees another json entry, so entries cannot form cycles.
    With ``include_json=False`` json entries are left out entirely.
    """
    out: Dict[str, Any] = {}
    pending: List[Tuple[str, Any]] = []

    for key, entry in flatten_registry(registry).items():
        if not isinstance(entry, Mapping) or not entry.get('format'):
            out[key] = entry
            continue
        fmt = str(entry['format']).lower()
        if fmt in TEXT_FORMATS:
            value = entry.get('value')
            if isinstance(value, (list, tuple)):
                value = join_text(value, entry.get('quotechar') or '', entry.get('delimiter') or '')
            out[key] = value
        elif fmt == 'verbatim':
            out[key] = entry.get('value')
        elif fmt == 'json':
            if include_json:
                out[key] = None
                pending.append((key, entry.get('value')))
        else:
            raise GlobalValueError(key, f"unknown format {entry['format']!r}")

    if pending:
        if expand is None:
            raise GlobalValueError(pending[0][0], "json entries need an expression expander")
        json_keys = {k for k, _ in pending}
        variables = {k: v for k, v in out.items() if k not in json_keys}
        variables.update(local or {})
        for key, value in pending:
            out[key] = await expand(serialize(value, fmt='json', pretty=False), variables)
    return out


class GlobalValues:
    """Process-wide, accumulating store of global value entries.

    ``merge`` adds or replaces entries and never drops existing ones. Merges
    and snapshots are serialized behind a lock so concurrent interpretation
    calls each work on a consistent copy.
    """
    def __init__(self, initial: Any = None):
        self._entries: Dict[str, Any] = {}
        self._lock = threading.Lock()
        if initial is not None:
            self.merge(initial)

    @classmethod
    def from_file(cls, path: str | os.PathLike, fmt: Optional[str] = None) -> 'GlobalValues':
        return cls(load_file(path, fmt))

    def load(self, path: str | os.PathLike, fmt: Optional[str] = None) -> Dict[str, Any]:
        return self.merge(load_file(path, fmt))

    def merge(self, new: Any) -> Dict[str, Any]:
        """Merges ``new`` (either registry shape) and returns a snapshot."""
        flat = flatten_registry(new)
        with self._lock:
            self._entries.update(flat)
            return dict(self._entries)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._entries)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"<GlobalValues entries={len(self._entries)}>"
