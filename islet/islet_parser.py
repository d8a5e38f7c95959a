"""
A precedence-climbing (Pratt) parser turning islet tokens into expression nodes.

The language has no infix operators: every operation is call syntax, so no
token carries a left denotation and ``,`` / ``)`` / ``end`` simply stop an
argument expression. Outside call syntax every token is literal text.
"""
import re
from typing import List

from islet.islet_datatypes import (
    Call, Identifier, IsletSyntaxError, Node, NumberLiteral, StringLiteral, Text, Token
)
from islet.islet_lexer import WHITESPACE

IDENTIFIER = re.compile(r'[A-Za-z_][A-Za-z0-9_.$-]*\Z')

# Left binding powers. Tokens not listed bind 0 as well.
LBP = {',': 0, ')': 0, 'end': 0}
ARG_RBP = 2


class Parser:
    """Parses one token list. Use ``parse(tokens)`` for the common case."""

    def __init__(self, tokens: List[Token]):
        if not tokens or tokens[-1].kind != 'end':
            raise ValueError("token list must be terminated by an 'end' token")
        self.tokens = tokens
        self.i = 0

    @property
    def token(self) -> Token:
        return self.tokens[self.i]

    def advance(self) -> Token:
        t = self.tokens[self.i]
        if t.kind != 'end':
            self.i += 1
        return t

    def parse(self) -> List[Node]:
        nodes: List[Node] = []
        while self.token.kind != 'end':
            node = self.expression(0, in_args=False)
            # Fold adjacent literal text into one node.
            if isinstance(node, Text) and nodes and isinstance(nodes[-1], Text):
                nodes[-1] = Text(nodes[-1].text + node.text)
            else:
                nodes.append(node)
        return nodes

    # --- Pratt core ---

    def lbp(self, token: Token) -> int:
        return LBP.get(token.kind, 0)

    def expression(self, rbp: int, *, in_args: bool) -> Node:
        t = self.advance()
        left = self.nud(t, in_args)
        while rbp < self.lbp(self.token):
            t = self.advance()
            left = self.led(t, left)
        return left

    def led(self, token: Token, left: Node) -> Node:
        raise IsletSyntaxError(f"Unexpected token: {token.text!r}", token)

    def nud(self, token: Token, in_args: bool) -> Node:
        if not in_args:
            if token.kind == 'call' and self.token.kind == '(':
                return self.call(token)
            if token.kind == 'number':
                return NumberLiteral(token.text)
            # Anything else outside a call, including stray parentheses and
            # commas, is literal text.
            return Text(token.text)

        match token.kind:
            case 'number':
                return NumberLiteral(token.text)
            case 'string':
                return StringLiteral(token.text)
            case 'call':
                if self.token.kind == '(':
                    return self.call(token)
                return Text(token.text)
            case '(':
                return self.group(token)
            case 'text':
                if IDENTIFIER.match(token.text):
                    return Identifier(token.text)
                return Text(token.text)
            case 'end':
                raise IsletSyntaxError("Expected closing parenthesis ')'", token)
            case _:
                raise IsletSyntaxError(f"Unexpected token: {token.text!r}", token)

    # --- Constructs ---

    def skip_whitespace(self):
        while self.token.kind == 'text' and self.token.text in WHITESPACE:
            self.advance()

    def expect_close(self):
        if self.token.kind != ')':
            if self.token.kind == 'end':
                raise IsletSyntaxError("Expected closing parenthesis ')'", self.token)
            raise IsletSyntaxError(f"Expected closing parenthesis ')': {self.token.text!r}", self.token)
        self.advance()

    def call(self, name_token: Token) -> Call:
        self.advance()  # '('
        args: List[Node] = []
        self.skip_whitespace()
        if self.token.kind == ')':
            self.advance()
            return Call(name_token.text[1:].lower(), (), name_token.text)

        while True:
            self.skip_whitespace()
            args.append(self.expression(ARG_RBP, in_args=True))
            self.skip_whitespace()
            if self.token.kind == ',':
                self.advance()
                continue
            self.expect_close()
            break
        return Call(name_token.text[1:].lower(), tuple(args), name_token.text)

    def group(self, open_token: Token) -> Node:
        self.skip_whitespace()
        if self.token.kind == ')':
            raise IsletSyntaxError("Empty parenthesized expression", open_token)
        inner = self.expression(ARG_RBP, in_args=True)
        self.skip_whitespace()
        self.expect_close()
        return inner


def parse(tokens: List[Token]) -> List[Node]:
    """Parses a token list into an ordered list of expression nodes."""
    return Parser(tokens).parse()
