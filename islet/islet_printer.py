"""
A pretty-printer for islet expression nodes and values.
"""
import collections.abc

from islet.islet_datatypes import Call, Identifier, NumberLiteral, StringLiteral, Text


class Printer:
    """Formats islet nodes and runtime values as islet source text."""

    def __init__(self, max_width=60):
        self._max_width = max_width
        self._handlers = self._create_handlers()

    def pformat(self, obj):
        """Public entry point to format an object."""
        handler = self._get_handler(obj)
        return handler(obj)

    def pformat_nodes(self, nodes):
        return "".join(self.pformat(n) for n in nodes)

    def format_call(self, name, args):
        """Formats a dispatched call with its evaluated arguments."""
        if not name.startswith('@'):
            name = '@' + name
        return f"{name}({', '.join(self.pformat(a) for a in args)})"

    def _get_handler(self, obj):
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, str): return self._pformat_str
        if isinstance(obj, collections.abc.Mapping): return self._pformat_dict
        if isinstance(obj, (list, tuple)): return self._pformat_list
        return repr

    def _create_handlers(self):
        return {
            str: self._pformat_str,
            int: self._pformat_primitive,
            float: self._pformat_primitive,
            bool: self._pformat_bool,
            type(None): self._pformat_none,
            Text: self._pformat_text,
            NumberLiteral: self._pformat_text,
            StringLiteral: self._pformat_text,
            Identifier: self._pformat_identifier,
            Call: self._pformat_call,
            dict: self._pformat_dict,
            list: self._pformat_list,
            tuple: self._pformat_list,
        }

    def _pformat_primitive(self, obj):
        return str(obj)

    def _pformat_str(self, obj):
        text = obj.replace('\\', '\\\\').replace("'", "\\'")
        if len(text) > self._max_width:
            text = text[:self._max_width - 3] + '...'
        return f"'{text}'"

    def _pformat_bool(self, obj):
        return 'true' if obj else 'false'

    def _pformat_none(self, obj):
        return 'none'

    def _pformat_text(self, obj):
        return obj.text

    def _pformat_identifier(self, obj):
        return obj.name

    def _pformat_call(self, obj):
        name = obj.source or f"@{obj.name}"
        return f"{name}({', '.join(self.pformat(a) for a in obj.args)})"

    def _pformat_dict(self, obj):
        items = ", ".join(f"{self.pformat(k)}: {self.pformat(v)}" for k, v in obj.items())
        return f"{{{items}}}"

    def _pformat_list(self, obj):
        return f"[{', '.join(self.pformat(x) for x in obj)}]"
