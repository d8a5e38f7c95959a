# islet_runtime.py

import asyncio
import base64
import calendar
import collections.abc
import hashlib
import html
import inspect
import math
import os
import posixpath
import random
import re
import sys
import uuid as uuidlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlsplit

from cryptography.hazmat.primitives import padding as sym_padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from islet.islet_datatypes import InterpretError, IsletError
from islet.islet_globals import GlobalValues, resolve
from islet.islet_interpreter import Evaluator, env_value, to_text
from islet.islet_registry import FunctionRegistry
from islet.islet_serialize import deserialize, serialize, serialized_size

# ===================================================================
# 1. Argument helpers
# ===================================================================

_INT = re.compile(r'[+-]?\d+\Z')


def _num(value):
    """Coerces a call argument to a number the way the expression text reads."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    s = to_text(value).strip()
    if _INT.match(s):
        return int(s)
    return float(s)


def _is_numeric(value) -> bool:
    try:
        _num(value)
    except (TypeError, ValueError):
        return False
    return not isinstance(value, bool)


def _compare_pair(a, b):
    """Normalizes two operands for comparison: numbers when both read as numbers."""
    if _is_numeric(a) and _is_numeric(b):
        return _num(a), _num(b)
    return to_text(a), to_text(b)


def _truthy_flag(value) -> bool:
    return bool(value) and value != 'false'


def _lookup_param(key, params) -> Any:
    if isinstance(key, (int, float)) and not isinstance(key, bool):
        key = to_text(key)
    if key in params:
        match = params[key]
        if match is not None and match != '':
            return match
        return ''
    if isinstance(key, str):
        return env_value(key)
    return ''


def _pad(s: str, length, fill: str, left: bool) -> str:
    length = int(_num(length))
    if len(s) >= length or not fill:
        return s
    needed = length - len(s)
    padding = (fill * (needed // len(fill) + 1))[:needed]
    return padding + s if left else s + padding


_ESCAPES = {
    '"': '\\"',
    "'": "\\'",
    '\\': '\\\\',
    '\n': '\\n',
    '\r': '\\r',
    '\u2028': '\\u2028',
    '\u2029': '\\u2029',
}
_UNESCAPES = {v: k for k, v in _ESCAPES.items() if k != '\\'}
_ESCAPE_RE = re.compile('["\'\\\\\n\r\u2028\u2029]')
_UNESCAPE_RE = re.compile(r"\\'|\\\"|\\n|\\r|\\u2028|\\u2029")

_UUID_RE = re.compile(
    r'^(?:[0-9a-f]{8}-[0-9a-f]{4}-[1-8][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}'
    r'|00000000-0000-0000-0000-000000000000|ffffffff-ffff-ffff-ffff-ffffffffffff)$',
    re.IGNORECASE,
)

# --- Dates (moment-style format tokens) ---

_MOMENT_TOKENS = re.compile(
    r'\[([^\]]*)\]|YYYY|YY|MMMM|MMM|MM|M|DDDD|DD|Do|D|dddd|ddd|HH|H|hh|h|mm|m|ss|s|SSS|A|a|X|x'
)
_STRPTIME = {
    'YYYY': '%Y', 'YY': '%y', 'MMMM': '%B', 'MMM': '%b', 'MM': '%m', 'M': '%m',
    'DD': '%d', 'D': '%d', 'dddd': '%A', 'ddd': '%a', 'HH': '%H', 'H': '%H',
    'hh': '%I', 'h': '%I', 'mm': '%M', 'm': '%M', 'ss': '%S', 's': '%S',
    'SSS': '%f', 'A': '%p', 'a': '%p',
}
_PERIODS = {
    'y': 'years', 'year': 'years', 'years': 'years',
    'q': 'quarters', 'quarter': 'quarters', 'quarters': 'quarters',
    'month': 'months', 'months': 'months',
    'w': 'weeks', 'week': 'weeks', 'weeks': 'weeks',
    'd': 'days', 'day': 'days', 'days': 'days',
    'h': 'hours', 'hour': 'hours', 'hours': 'hours',
    'm': 'minutes', 'minute': 'minutes', 'minutes': 'minutes',
    's': 'seconds', 'second': 'seconds', 'seconds': 'seconds',
}


def _ordinal(n: int) -> str:
    if 10 <= n % 100 <= 20:
        return f"{n}th"
    suffix = {1: 'st', 2: 'nd', 3: 'rd'}.get(n % 10, 'th')
    return f"{n}{suffix}"


def format_moment(dt: datetime, fmt: str) -> str:
    """Formats ``dt`` using moment.js tokens (``YYYY-MM-DD HH:mm:ss``)."""
    def _token(m):
        if m.group(1) is not None:
            return m.group(1)
        tok = m.group(0)
        match tok:
            case 'YYYY': return f"{dt.year:04d}"
            case 'YY': return f"{dt.year % 100:02d}"
            case 'MMMM': return calendar.month_name[dt.month]
            case 'MMM': return calendar.month_abbr[dt.month]
            case 'MM': return f"{dt.month:02d}"
            case 'M': return str(dt.month)
            case 'DDDD': return f"{dt.timetuple().tm_yday:03d}"
            case 'DD': return f"{dt.day:02d}"
            case 'Do': return _ordinal(dt.day)
            case 'D': return str(dt.day)
            case 'dddd': return calendar.day_name[dt.weekday()]
            case 'ddd': return calendar.day_abbr[dt.weekday()]
            case 'HH': return f"{dt.hour:02d}"
            case 'H': return str(dt.hour)
            case 'hh': return f"{(dt.hour % 12) or 12:02d}"
            case 'h': return str((dt.hour % 12) or 12)
            case 'mm': return f"{dt.minute:02d}"
            case 'm': return str(dt.minute)
            case 'ss': return f"{dt.second:02d}"
            case 's': return str(dt.second)
            case 'SSS': return f"{dt.microsecond // 1000:03d}"
            case 'A': return 'AM' if dt.hour < 12 else 'PM'
            case 'a': return 'am' if dt.hour < 12 else 'pm'
            case 'X': return str(int(dt.timestamp()))
            case 'x': return str(int(dt.timestamp() * 1000))
        return tok
    return _MOMENT_TOKENS.sub(_token, fmt)


def parse_moment(text: str, fmt: str) -> datetime:
    """Parses ``text`` written in the moment.js format ``fmt``."""
    def _token(m):
        if m.group(1) is not None:
            return m.group(1).replace('%', '%%')
        return _STRPTIME.get(m.group(0), m.group(0))
    pattern = _MOMENT_TOKENS.sub(_token, fmt)
    return datetime.strptime(to_text(text), pattern)


def _add_months(dt: datetime, months: int) -> datetime:
    total = dt.month - 1 + months
    year, month = dt.year + total // 12, total % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def shift_date(dt: datetime, period: str, increment) -> datetime:
    unit = _PERIODS.get(to_text(period).strip().lower())
    if unit is None:
        raise ValueError(f"unknown date period {period!r}")
    n = _num(increment)
    match unit:
        case 'years': return _add_months(dt, int(n) * 12)
        case 'quarters': return _add_months(dt, int(n) * 3)
        case 'months': return _add_months(dt, int(n))
        case _: return dt + timedelta(**{unit: n})


# --- Ciphers ---

_CIPHER = re.compile(r'aes-?(128|192|256)-?(cbc|ctr|cfb|ofb)\Z', re.IGNORECASE)


def _cipher(algorithm: str, password, iv: bytes) -> Tuple[Cipher, bool]:
    m = _CIPHER.match(to_text(algorithm).strip())
    if not m:
        raise ValueError(f"unsupported cipher algorithm {algorithm!r}")
    bits, mode_name = int(m.group(1)), m.group(2).lower()
    key = to_text(password).encode('utf-8')
    if len(key) * 8 != bits:
        raise ValueError(f"{algorithm} needs a {bits // 8}-byte password, got {len(key)}")
    mode = {'cbc': modes.CBC, 'ctr': modes.CTR, 'cfb': modes.CFB, 'ofb': modes.OFB}[mode_name](iv)
    return Cipher(algorithms.AES(key), mode), mode_name == 'cbc'


# ===================================================================
# 2. The Standard Library
# ===================================================================

class StdLib:
    """Python implementations of the islet built-in functions.

    Every method named ``_<name>`` is registered as ``@<name>``; ``ALIASES``
    adds the short spellings. Methods declaring a keyword-only ``params``
    receive the active parameter mapping.
    """
    ALIASES = {
        'gv': 'getvalue',
        'gvq': 'getvaluequoted',
        'gvescape': 'getvalueescape',
        'gvunescape': 'getvalueunescape',
        'genv': 'getenv',
        'env': 'getenv',
        'uuidv4': 'uuid',
        'jsonstringify': 'stringify',
    }

    def __init__(self, interpreter: Optional['Interpreter'] = None):
        self.interpreter = interpreter

    # --- Value lookup ---
    def _getvalue(self, key, quote=None, *, params):
        res = _lookup_param(key, params)
        if quote:
            if quote == "\\'":
                quote = "'"
            res = f"{quote}{to_text(res)}{quote}"
        return res
    def _getvaluequoted(self, key, quote="'", *, params):
        return self._getvalue(key, quote, params=params)
    def _getvalueescape(self, key, *, params):
        return self._escape(_lookup_param(key, params))
    def _getvalueunescape(self, key, *, params):
        return self._unescape(_lookup_param(key, params))
    def _getenv(self, name, quote=None):
        res = os.environ.get(to_text(name), '')
        if quote:
            if quote == "\\'":
                quote = "'"
            res = f"{quote}{res}{quote}"
        return res

    # --- Logic ---
    def _if(self, condition, ontrue=None, onfalse=None):
        return ontrue if condition is True or condition == 'true' else onfalse
    def _eq(self, a, b):
        a, b = _compare_pair(a, b)
        return a == b
    def _ne(self, a, b): return not self._eq(a, b)
    def _gt(self, a, b):
        a, b = _compare_pair(a, b)
        return a > b
    def _gte(self, a, b):
        a, b = _compare_pair(a, b)
        return a >= b
    def _lt(self, a, b):
        a, b = _compare_pair(a, b)
        return a < b
    def _lte(self, a, b):
        a, b = _compare_pair(a, b)
        return a <= b
    def _ifnull(self, value, alternative, otherwise=None):
        if not value:
            return alternative
        return otherwise or value

    # --- Math ---
    def _sin(self, x): return math.sin(_num(x))
    def _cos(self, x): return math.cos(_num(x))
    def _tan(self, x): return math.tan(_num(x))
    def _asin(self, x): return math.asin(_num(x))
    def _acos(self, x): return math.acos(_num(x))
    def _atan(self, x): return math.atan(_num(x))
    def _abs(self, x): return abs(_num(x))
    def _round(self, x): return math.floor(_num(x) + 0.5)
    def _ceil(self, x): return math.ceil(_num(x))
    def _floor(self, x): return math.floor(_num(x))
    def _log(self, x): return math.log(_num(x))
    def _exp(self, x): return math.exp(_num(x))
    def _pow(self, b, e): return _num(b) ** _num(e)
    def _sqrt(self, x): return math.sqrt(_num(x))
    def _max(self, *xs): return max(_num(x) for x in xs)
    def _min(self, *xs): return min(_num(x) for x in xs)
    def _add(self, *xs): return sum((_num(x) for x in xs), 0)
    def _subtract(self, first=0, *rest):
        res = _num(first)
        for x in rest:
            res -= _num(x)
        return res
    def _multiply(self, a, b): return _num(a) * _num(b)
    def _divide(self, a, b): return _num(a) / _num(b)
    def _modulus(self, a, b):
        a, b = _num(a), _num(b)
        res = math.fmod(a, b)
        return int(res) if isinstance(a, int) and isinstance(b, int) else res
    def _random(self, digits=None, low=None, high=None):
        if low not in (None, '') and high not in (None, ''):
            low, high = int(_num(low)), int(_num(high))
            res = random.random() * (high + 1 - low) + low
        else:
            res = random.random()
        if digits not in (None, ''):
            return f"{res:.{int(_num(digits))}f}"
        return res

    # --- Strings ---
    def _trim(self, s): return to_text(s).replace("'", '').strip()
    def _ltrim(self, s): return to_text(s).replace("'", '').lstrip()
    def _rtrim(self, s): return to_text(s).replace("'", '').rstrip()
    def _lpad(self, s, length, fill=' '):
        return _pad(to_text(s).replace("'", ''), length, to_text(fill).replace("'", ''), left=True)
    def _rpad(self, s, length, fill=' '):
        return _pad(to_text(s).replace("'", ''), length, to_text(fill).replace("'", ''), left=False)
    def _concat(self, *parts): return ''.join(to_text(p) for p in parts)
    def _concatws(self, separator, *parts):
        out = ''
        for p in parts:
            out += (to_text(separator) if out else '') + to_text(p)
        return out
    def _upper(self, s): return to_text(s).upper()
    def _lower(self, s): return to_text(s).lower()
    def _includes(self, s, sub): return to_text(sub) in to_text(s)
    def _indexof(self, s, sub): return to_text(s).find(to_text(sub))
    def _substr(self, s, start, length=None):
        s = to_text(s)
        start = int(_num(start))
        if start < 0:
            start = max(len(s) + start, 0)
        if length:
            return s[start:start + int(_num(length))]
        return s[start:]
    def _length(self, s): return len(to_text(s))
    def _replace(self, s, old, new, flags=None):
        s, old, new = to_text(s), to_text(old), to_text(new)
        if not flags:
            return s.replace(old, new, 1)
        re_flags = 0
        for f in to_text(flags):
            re_flags |= {'i': re.IGNORECASE, 'm': re.MULTILINE, 's': re.DOTALL}.get(f, 0)
        repl = re.sub(r'\$(\d+)', r'\\g<\1>', new)
        return re.sub(old, repl, s, count=0 if 'g' in flags else 1, flags=re_flags)
    def _charcode(self, s): return ord(to_text(s)[0])
    def _escape(self, s):
        return _ESCAPE_RE.sub(lambda m: _ESCAPES[m.group(0)], to_text(s))
    def _unescape(self, s):
        return _UNESCAPE_RE.sub(lambda m: _UNESCAPES[m.group(0)], to_text(s))
    def _htmlescape(self, s):
        return html.escape(to_text(s), quote=True).replace('&#x27;', '&#39;')
    def _htmlunescape(self, s): return html.unescape(to_text(s))
    def _quote(self, s, quote="'"): return f"{quote}{to_text(s)}{quote}"
    def _stringify(self, value):
        if not value:
            raise ValueError(f"stringifying non value variable -> {value!r}")
        return serialize(value, fmt='json', pretty=False)

    # --- Hashing and ciphers ---
    def _hash(self, s, algorithm, digest='hex'):
        h = hashlib.new(to_text(algorithm).lower(), to_text(s).encode('utf-8'))
        match to_text(digest).lower():
            case 'hex': return h.hexdigest()
            case 'base64': return base64.b64encode(h.digest()).decode('ascii')
            case 'latin1' | 'binary': return h.digest().decode('latin-1')
        raise ValueError(f"unsupported digest encoding {digest!r}")
    def _encrypt(self, s, algorithm, password):
        iv = os.urandom(16)
        cipher, padded = _cipher(algorithm, password, iv)
        data = to_text(s).encode('utf-8')
        if padded:
            padder = sym_padding.PKCS7(128).padder()
            data = padder.update(data) + padder.finalize()
        encryptor = cipher.encryptor()
        return f"{iv.hex()}:{(encryptor.update(data) + encryptor.finalize()).hex()}"
    def _decrypt(self, s, algorithm, password):
        iv_hex, _, body = to_text(s).partition(':')
        cipher, padded = _cipher(algorithm, password, bytes.fromhex(iv_hex))
        decryptor = cipher.decryptor()
        data = decryptor.update(bytes.fromhex(body)) + decryptor.finalize()
        if padded:
            unpadder = sym_padding.PKCS7(128).unpadder()
            data = unpadder.update(data) + unpadder.finalize()
        return data.decode('utf-8')

    # --- Identifiers ---
    def _uuid(self): return str(uuidlib.uuid4())
    def _uuidv1(self): return str(uuidlib.uuid1())
    def _uuidv3(self, name, namespace):
        if not self._uuidvalidate(namespace):
            raise ValueError(f"INVALID NAMESPACE UUID: {namespace}")
        return str(uuidlib.uuid3(uuidlib.UUID(namespace), to_text(name)))
    def _uuidv5(self, name, namespace):
        if not self._uuidvalidate(namespace):
            raise ValueError(f"INVALID NAMESPACE UUID: {namespace}")
        return str(uuidlib.uuid5(uuidlib.UUID(namespace), to_text(name)))
    def _uuidvalidate(self, value): return isinstance(value, str) and bool(_UUID_RE.match(value))
    def _uuidversion(self, value):
        if not self._uuidvalidate(value):
            raise ValueError(f"Invalid UUID: {value}")
        return int(value[14], 16)

    # --- Dates ---
    def _getdate(self, format='YYYY-MM-DDTHH:mm:ss', lang=None, period=None, increment=1, uppercase=None):
        now = datetime.now()
        if period:
            now = shift_date(now, period, increment)
        out = format_moment(now, to_text(format))
        return out.upper() if _truthy_flag(uppercase) else out
    def _dateformat(self, date=None, format='YYYYMMDD', output_format=None, lang=None, period=None,
                    increment=1, uppercase=None):
        format = to_text(format) if format else 'YYYYMMDD'
        output_format = to_text(output_format) if output_format else format
        dt = parse_moment(date, format) if date else datetime.now()
        if period:
            dt = shift_date(dt, period, increment)
        out = format_moment(dt, output_format)
        return out.upper() if _truthy_flag(uppercase) else out
    def _lastday(self, date=None, format='YYYYMMDD', output_format=None, lang=None, uppercase=None):
        format = to_text(format) if format else 'YYYYMMDD'
        output_format = to_text(output_format) if output_format else format
        dt = parse_moment(date, format) if date else datetime.now()
        last = calendar.monthrange(dt.year, dt.month)[1]
        dt = dt.replace(day=last, hour=23, minute=59, second=59, microsecond=999000)
        out = format_moment(dt, output_format)
        return out.upper() if _truthy_flag(uppercase) else out

    # --- Paths and URLs ---
    def _pathparse(self, path, prop):
        if not path:
            return ''
        path = to_text(path)
        base = posixpath.basename(path.rstrip('/')) if path.rstrip('/') else ''
        name, ext = posixpath.splitext(base)
        parts = {
            'root': '/' if path.startswith('/') else '',
            'dir': posixpath.dirname(path.rstrip('/')) if path.rstrip('/') else path,
            'base': base,
            'ext': ext,
            'name': name,
        }
        key = re.sub(r'[\'"]+', '', to_text(prop)).lower().strip()
        if key not in parts:
            raise ValueError(f"PathParse ({path}) wrong property {key}.")
        return parts[key]
    def _pathnormalize(self, path):
        path = to_text(path)
        if not path:
            return '.'
        out = posixpath.normpath(path)
        return out + '/' if path.endswith('/') and not out.endswith('/') else out
    def _pathjoin(self, *parts):
        joined = '/'.join(to_text(p) for p in parts if p not in (None, ''))
        return posixpath.normpath(joined) if joined else '.'
    def _urlparse(self, url, prop):
        if not url:
            return ''
        url = to_text(url)
        u = urlsplit(url)
        if not u.scheme or not u.netloc:
            raise ValueError(f"UrlParser ({url}) invalid URL.")
        host = u.hostname or ''
        port = str(u.port) if u.port else ''
        parts = {
            'href': url,
            'protocol': f"{u.scheme}:",
            'username': u.username or '',
            'password': u.password or '',
            'host': f"{host}:{port}" if port else host,
            'hostname': host,
            'port': port,
            'pathname': u.path or '/',
            'search': f"?{u.query}" if u.query else '',
            'hash': f"#{u.fragment}" if u.fragment else '',
            'origin': f"{u.scheme}://{host}:{port}" if port else f"{u.scheme}://{host}",
        }
        key = re.sub(r'[\'"]+', '', to_text(prop)).lower().strip()
        if key not in parts:
            raise ValueError(f"UrlParser ({url}) wrong property {key}.")
        return parts[key]

    # --- Structure ---
    async def _forof(self, values, template):
        """Interprets ``template`` once per element, the element acting as
        local parameters (non-mapping elements are bound as ``value``)."""
        if not isinstance(values, (list, tuple)):
            raise TypeError(f"For of exception: invalid array -> {values!r}")
        if isinstance(template, str):
            try:
                template = deserialize(template, fmt='json')
            except ValueError:
                pass  # a plain string template is interpreted as text
        interpreter = self.interpreter or default_interpreter()
        out = []
        for value in values:
            params = value if isinstance(value, collections.abc.Mapping) else {'value': value}
            out.append(await interpreter.interpret(template, params))
        return out


def build_registry(stdlib: Optional[StdLib] = None) -> FunctionRegistry:
    """Builds a registry holding every ``StdLib`` built-in and its aliases."""
    stdlib = stdlib if stdlib is not None else StdLib()
    registry = FunctionRegistry()
    for name, member in inspect.getmembers(stdlib):
        if name.startswith('_') and not name.startswith('__') and callable(member):
            registry.register(name[1:], member)
    for alias, target in StdLib.ALIASES.items():
        registry.alias(alias, target)
    return registry


# ===================================================================
# 3. The tree interpreter
# ===================================================================

@dataclass
class InterpretOptions:
    """Per-call options.

    ``max_size``: skip interpretation of values whose compact JSON form is
    larger than this many bytes; ``None`` or ``0`` turns the guard off.
    ``ignore_global_values``: neither merge nor layer global values for this
    call.
    """
    max_size: Optional[int] = None
    ignore_global_values: bool = False

    @classmethod
    def coerce(cls, options: Any) -> 'InterpretOptions':
        if options is None:
            return cls()
        if isinstance(options, cls):
            return options
        if isinstance(options, collections.abc.Mapping):
            max_size = options.get('max_size', options.get('maxSize'))
            ignore = options.get('ignore_global_values', options.get('ignoreGlobalValues', False))
            return cls(max_size=max_size, ignore_global_values=bool(ignore))
        raise TypeError(f"options must be InterpretOptions or a mapping, not {type(options).__name__}")


def _correlation(params: Any) -> Tuple[Any, Any]:
    if not isinstance(params, collections.abc.Mapping):
        return None, None
    return params.get('CHAIN_ID'), params.get('PROCESS_ID')


class _Interpretation:
    """State of one top-level ``Interpreter.interpret`` call."""

    def __init__(self, interpreter: 'Interpreter', options: InterpretOptions, local_params: Any):
        self.interpreter = interpreter
        self.options = options
        self.local_params = local_params
        self.evaluator = Evaluator(interpreter.registry)
        # id(local params) -> (local params, self-interpreted copy)
        self._replaced: Dict[int, Tuple[Any, Any]] = {}

    async def layer(self, snapshot: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Builds the layered parameter mapping: locals over global values."""
        plain: Dict[str, Any] = {}
        if snapshot:
            plain = await resolve(snapshot, include_json=False)
        local = await self.replaced_params(self.local_params, plain)
        if not snapshot:
            return dict(local)
        layered = await resolve(snapshot, self.expand, local)
        layered.update(local)
        return layered

    async def replaced_params(self, local_params: Any, variables: Dict[str, Any]) -> Any:
        if not local_params:
            return {}
        key = id(local_params)
        cached = self._replaced.get(key)
        if cached is not None and cached[0] is local_params:
            return cached[1]
        self.interpreter._dbg("self-interpreting local params", list(local_params))
        if self.options.max_size and serialized_size(local_params) > self.options.max_size:
            result = local_params
        else:
            result = await self.walk(local_params, variables)
        self._replaced[key] = (local_params, result)
        return result

    async def expand(self, text: str, variables: Dict[str, Any]) -> Any:
        return await self.interpret_string(text, variables)

    async def walk(self, value: Any, params: Dict[str, Any]) -> Any:
        match value:
            case str():
                return await self.interpret_string(value, params)
            case list():
                out = []
                for item in value:
                    # Strictly in order: item i+1 starts after item i resolved.
                    out.append(await self.walk(item, params))
                return out
            case tuple():
                out = []
                for item in value:
                    out.append(await self.walk(item, params))
                return tuple(out)
            case collections.abc.Mapping():
                result = {}
                for key, item in value.items():
                    new_item = await self.walk(item, params)
                    new_key = await self.interpret_key(key, params)
                    result[new_key] = new_item
                return result
            case _:
                return value

    async def interpret_key(self, key: Any, params: Dict[str, Any]) -> Any:
        if not isinstance(key, str):
            return key
        result = await self.interpret_string(key, params)
        return result if isinstance(result, str) else to_text(result)

    async def interpret_string(self, text: str, params: Dict[str, Any]) -> Any:
        if '@' not in text:
            return text
        chain_id, process_id = _correlation(self.local_params)
        try:
            return await self.evaluator.run(text, params)
        except IsletError as e:
            e.enrich(text, chain_id, process_id)
            raise
        except Exception as e:
            err = InterpretError(e)
            err.enrich(text, chain_id, process_id)
            raise err from e


class Interpreter:
    """Interprets every string inside a nested value.

    The registry defaults to the standard library bound to this interpreter;
    the global value store defaults to a private ``GlobalValues``.
    """
    def __init__(self, registry: Optional[FunctionRegistry] = None,
                 global_values: Optional[GlobalValues] = None):
        self.global_values = global_values if global_values is not None else GlobalValues()
        self.registry = registry if registry is not None else build_registry(StdLib(self))
        # A library built without an owner re-enters this interpreter.
        for name in self.registry:
            owner = getattr(self.registry[name].func, "__self__", None)
            if isinstance(owner, StdLib) and owner.interpreter is None:
                owner.interpreter = self

    def _dbg(self, *parts):
        if os.environ.get("ISLET_DEBUG"):
            print("[DBG]", *parts, file=sys.stderr)

    async def interpret(self, value: Any, local_params: Optional[collections.abc.Mapping] = None,
                        options: Any = None, new_globals: Any = None) -> Any:
        """Returns ``value`` with every embedded expression resolved.

        ``local_params`` may itself contain expressions; they are resolved
        once per call and override global values on conflicting keys.
        ``new_globals`` is merged into the accumulating global store unless
        ``ignore_global_values`` is set.
        """
        opts = InterpretOptions.coerce(options)
        if opts.max_size and serialized_size(value) > opts.max_size:
            self._dbg("size guard: skipping value larger than", opts.max_size)
            return value

        snapshot = None
        if not opts.ignore_global_values:
            if new_globals is not None:
                snapshot = self.global_values.merge(new_globals)
            else:
                snapshot = self.global_values.snapshot()

        run = _Interpretation(self, opts, local_params)
        params = await run.layer(snapshot)
        return await run.walk(value, params)

    async def interpret_all(self, values, local_params=None, options=None, new_globals=None):
        """Interprets several values in order, sharing one parameter layering."""
        opts = InterpretOptions.coerce(options)
        snapshot = None
        if not opts.ignore_global_values:
            snapshot = self.global_values.merge(new_globals) if new_globals is not None else self.global_values.snapshot()
        run = _Interpretation(self, opts, local_params)
        params = await run.layer(snapshot)
        out = []
        for value in values:
            if opts.max_size and serialized_size(value) > opts.max_size:
                out.append(value)
                continue
            out.append(await run.walk(value, params))
        return out

    def run(self, value: Any, local_params=None, options=None, new_globals=None) -> Any:
        """Synchronous wrapper around ``interpret`` for code without an event loop."""
        return asyncio.run(self.interpret(value, local_params, options, new_globals))


# ===================================================================
# 4. Module-level default
# ===================================================================

_default_interpreter: Optional[Interpreter] = None


def default_interpreter() -> Interpreter:
    """The process-wide interpreter owning the process-wide global values."""
    global _default_interpreter
    if _default_interpreter is None:
        _default_interpreter = Interpreter()
    return _default_interpreter


async def interpret(value: Any, local_params: Optional[collections.abc.Mapping] = None,
                    options: Any = None, new_globals: Any = None) -> Any:
    return await default_interpreter().interpret(value, local_params, options, new_globals)
