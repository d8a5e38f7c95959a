from __future__ import annotations

import json
import os
from typing import Any, Optional
import collections.abc

import yaml

# TOML: prefer stdlib tomllib (3.11+) for reading; dumping needs the 'toml' package
try:
    import tomllib as _toml_loader  # type: ignore[attr-defined]
    _HAS_TOMLLIB = True
except ImportError:
    _HAS_TOMLLIB = False
try:
    import toml as _toml
except ImportError:
    _toml = None  # type: ignore[assignment]

try:
    import xmltodict
except ImportError:
    xmltodict = None  # type: ignore[assignment]


_EXTENSIONS = {
    '.json': 'json',
    '.yaml': 'yaml',
    '.yml': 'yaml',
    '.toml': 'toml',
    '.xml': 'xml',
}


# --------------------------
# Helpers
# --------------------------

def _norm_text(data: bytes | bytearray | str, *, encoding: Optional[str] = None) -> str:
    if isinstance(data, (bytes, bytearray)):
        return data.decode(encoding or 'utf-8', errors='replace')
    return str(data)


def _to_builtin(obj: Any) -> Any:
    # Mappings (including xmltodict's OrderedDicts) and tuples become plain JSON shapes
    if isinstance(obj, (list, tuple)):
        return [_to_builtin(x) for x in obj]
    if isinstance(obj, collections.abc.Mapping):
        return {k: _to_builtin(v) for k, v in obj.items()}
    return obj


def detect_format(content_type: Optional[str] = None, data_hint: Optional[str] = None) -> Optional[str]:
    """
    Returns a canonical format name among: 'json', 'yaml', 'toml', 'xml'.
    Uses the content type (or file extension) first, then simple sniffing.
    """
    ct = (content_type or "").lower()
    if ct in _EXTENSIONS:
        return _EXTENSIONS[ct]
    if 'json' in ct:
        return 'json'
    if 'yaml' in ct:
        return 'yaml'
    if 'toml' in ct:
        return 'toml'
    if 'xml' in ct:
        return 'xml'

    if data_hint is not None:
        s = data_hint.lstrip()
        if s.startswith('{') or s.startswith('['):
            return 'json'
        if s.startswith('<'):
            return 'xml'
    return None


# --------------------------
# Public API
# --------------------------

def deserialize(data: bytes | bytearray | str,
                *,
                content_type: Optional[str] = None,
                fmt: Optional[str] = None) -> Any:
    """
    Convert text or bytes into native Python structures.
    Supported fmt: 'json', 'yaml', 'toml', 'xml'. Unlike a lenient loader, a
    declared format that fails to parse raises ValueError.
    """
    text = _norm_text(data)
    f = fmt or detect_format(content_type, text)
    if f == 'json':
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"invalid JSON: {e}") from e
    if f == 'yaml':
        try:
            return yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ValueError(f"invalid YAML: {e}") from e
    if f == 'toml':
        if _HAS_TOMLLIB:
            return _toml_loader.loads(text)  # type: ignore[name-defined]
        if _toml is None:
            raise RuntimeError("TOML support requires Python 3.11+ (tomllib) or the 'toml' package")
        return _toml.loads(text)
    if f == 'xml':
        if xmltodict is None:
            raise RuntimeError("XML support requires the 'xmltodict' package")
        return _to_builtin(xmltodict.parse(text))
    return text


def serialize(value: Any,
              *,
              fmt: str = 'json',
              pretty: bool = True,
              xml_root: str = "root") -> str:
    """
    Convert a native value into text.
    - fmt: 'json' | 'yaml' | 'toml' | 'xml'
    - Compact JSON (pretty=False) matches what JSON.stringify would produce.
    """
    f = (fmt or '').lower()
    built = _to_builtin(value)
    if f == 'json':
        if pretty:
            return json.dumps(built, ensure_ascii=False, indent=2, default=str)
        return json.dumps(built, ensure_ascii=False, separators=(',', ':'), default=str)
    if f == 'yaml':
        return yaml.safe_dump(built, sort_keys=False)
    if f == 'toml':
        if _toml is None:
            raise RuntimeError("TOML serialization requires the 'toml' package")
        return _toml.dumps(built)
    if f == 'xml':
        if xmltodict is None:
            raise RuntimeError("XML serialization requires the 'xmltodict' package")
        root = built if isinstance(built, dict) else {xml_root: built}
        return xmltodict.unparse(root, pretty=pretty)
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


def serialized_size(value: Any) -> int:
    """Size in bytes of the compact JSON form of ``value``."""
    return len(serialize(value, fmt='json', pretty=False).encode('utf-8'))


def load_file(path: str | os.PathLike, fmt: Optional[str] = None) -> Any:
    """Reads a structured file, choosing the format from its extension."""
    ext = os.path.splitext(os.fspath(path))[1].lower()
    f = fmt or _EXTENSIONS.get(ext)
    if f is None:
        raise ValueError(f"cannot infer format of {os.fspath(path)!r}; pass fmt=")
    with open(path, 'rb') as fh:
        data = fh.read()
    return deserialize(data, fmt=f)


__all__ = [
    "deserialize",
    "serialize",
    "serialized_size",
    "detect_format",
    "load_file",
]
