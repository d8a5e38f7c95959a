"""
Splits raw text into islet tokens.

Only registered ``@name`` words are special; everything else is carried as
literal text so that free-form input passes through unchanged.
"""
import re
from typing import List

from islet.islet_datatypes import LexError, Token, STRUCTURAL
from islet.islet_registry import FunctionRegistry

SIGIL = '@'
WHITESPACE = frozenset(' \t\r\n')
_NUMBER = re.compile(r'[0-9]+(?:\.[0-9]+)?')


def _is_word_char(c: str) -> bool:
    return c not in STRUCTURAL and c not in WHITESPACE and c != SIGIL


def is_call_word(word: str, registry: FunctionRegistry) -> bool:
    """True when ``word`` is ``@name`` and ``name`` is registered (any case)."""
    return len(word) > 1 and word.startswith(SIGIL) and word in registry


def tokenize(text: str, registry: FunctionRegistry) -> List[Token]:
    """Converts ``text`` into a flat token list terminated by an ``end`` token.

    The lexer tracks whether it is inside a call's argument list: a ``(``
    directly after a call word opens one, a ``(`` inside an argument list
    opens a group and ``)`` closes the innermost. Quoted strings are only
    recognized inside argument lists; outside them a quote is plain text.
    """
    tokens: List[Token] = []
    depth = 0
    i = 0
    n = len(text)

    while i < n:
        c = text[i]

        if c in WHITESPACE:
            tokens.append(Token('text', c, i))
            i += 1
            continue

        if c in STRUCTURAL:
            if c == '(' and (depth or (tokens and tokens[-1].kind == 'call')):
                depth += 1
            elif c == ')' and depth:
                depth -= 1
            tokens.append(Token(c, c, i))
            i += 1
            continue

        m = _NUMBER.match(text, i)
        if m:
            tokens.append(Token('number', m.group(0), i))
            i = m.end()
            continue

        if c == "'" and depth:
            j = i + 1
            while j < n:
                ch = text[j]
                if ch == '\\':
                    j += 2
                    continue
                if ch == "'":
                    break
                j += 1
            if j >= n:
                raise LexError(f"unterminated string starting at offset {i}: {text[i:i + 20]!r}", i)
            tokens.append(Token('string', text[i:j + 1], i))
            i = j + 1
            continue

        # Words: '@' may only open a word, so 'a@b' splits into 'a' and '@b'.
        j = i + 1
        while j < n and _is_word_char(text[j]):
            j += 1
        word = text[i:j]
        kind = 'call' if is_call_word(word, registry) else 'text'
        tokens.append(Token(kind, word, i))
        i = j

    tokens.append(Token('end', '', n))
    return tokens
