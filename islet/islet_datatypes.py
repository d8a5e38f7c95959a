"""
Defines the core data types for the islet expression language.

This module provides the token record produced by the lexer, the expression
nodes produced by the parser and consumed by the evaluator, and the error
taxonomy shared by every stage of the pipeline.
"""

from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Tuple, Union

# =================================================================
# Errors
# =================================================================

class IsletError(Exception):
    """Base class for every error raised by the islet pipeline.

    The tree interpreter enriches an error in place when it escapes the
    interpretation of a string: ``source`` is the offending raw string and
    ``chain_id`` / ``process_id`` are correlation identifiers taken from the
    surrounding parameters. The exception keeps its original type.
    """
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        self.source: Optional[str] = None
        self.chain_id: Optional[Any] = None
        self.process_id: Optional[Any] = None

    def enrich(self, source: str, chain_id: Any = None, process_id: Any = None):
        # The innermost string keeps its context.
        if self.source is not None:
            return
        self.source = source
        self.chain_id = chain_id
        self.process_id = process_id

    def _correlation(self) -> str:
        if self.chain_id is not None:
            return f"CHAIN: {self.chain_id}"
        if self.process_id is not None:
            return f"PROCESS: {self.process_id}"
        return ""

    def __str__(self) -> str:
        if self.source is None:
            return self.message
        return f"Interpreter: {self._correlation()}: {self.message} IN: {self.source}"


class LexError(IsletError):
    """Raised by the tokenizer, e.g. for a quoted argument that never closes."""
    def __init__(self, message: str, position: Optional[int] = None):
        super().__init__(message)
        self.position = position


class IsletSyntaxError(IsletError, SyntaxError):
    """Raised by the parser on malformed call syntax."""
    def __init__(self, message: str, token: Optional['Token'] = None):
        IsletError.__init__(self, message)
        self.token = token

    def __str__(self) -> str:
        return IsletError.__str__(self)


class UndefinedVariableError(IsletError, NameError):
    def __init__(self, name: str):
        IsletError.__init__(self, f"{name} is undefined")
        self.name = name

    def __str__(self) -> str:
        return IsletError.__str__(self)


class CallError(IsletError):
    """A registered callable raised; carries the function name, its bound
    arguments and the underlying cause."""
    def __init__(self, function: str, args: Tuple[Any, ...], cause: BaseException, trace: str = ""):
        detail = f"{type(cause).__name__}: {cause}"
        message = f"CallError in {function}: {detail}"
        if trace:
            message = f"{message}\n{trace}"
        super().__init__(message)
        self.function = function
        self.call_args = tuple(args)
        self.cause = cause


class GlobalValueError(IsletError):
    """A global-value registry entry could not be resolved."""
    def __init__(self, key: str, message: str):
        super().__init__(f"global value {key!r}: {message}")
        self.key = key


class InterpretError(IsletError):
    """Wraps a non-islet exception escaping the interpretation of a string."""
    def __init__(self, cause: BaseException):
        super().__init__(f"{type(cause).__name__}: {cause}")
        self.cause = cause


# =================================================================
# Tokens
# =================================================================

TokenKind = Literal['text', 'number', 'string', 'call', '(', ')', ',', 'end']

STRUCTURAL = frozenset('(),')


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    text: str
    pos: int = 0

    def __repr__(self) -> str:
        return f"Token({self.kind!r}, {self.text!r})"


# =================================================================
# Expression nodes
# =================================================================

@dataclass(frozen=True)
class Text:
    """Literal text carried through unchanged."""
    text: str


@dataclass(frozen=True)
class NumberLiteral:
    text: str

    @property
    def value(self) -> Union[int, float]:
        if '.' in self.text:
            return float(self.text)
        return int(self.text)


@dataclass(frozen=True)
class StringLiteral:
    """A quoted string; ``text`` still includes the surrounding quotes."""
    text: str


@dataclass(frozen=True)
class Identifier:
    """A bare name resolved against the variable namespace."""
    name: str


@dataclass(frozen=True)
class Call:
    """A call to a registered function.

    ``name`` is lowercase without the ``@`` sigil and always names an entry
    that was registered when the text was tokenized. ``source`` keeps the
    spelling used in the input (e.g. ``@Concat``).
    """
    name: str
    args: Tuple['Node', ...] = ()
    source: str = field(default='', compare=False)


Node = Union[Text, NumberLiteral, StringLiteral, Identifier, Call]
