"""
Restricted parser for rate laws, rule values and numeric constants.

Text is tokenized and parsed by recursive descent straight into a sympy expression tree;
nothing is ever passed to `eval`. Identifiers are turned into sympy objects by a caller-supplied
`resolve` callback, so the caller decides what each name means (species, parameter, compartment, ...).
An identifier may be compartment-qualified, e.g. ``cytoplasm.A``, in which case the full dotted
name is handed to `resolve`.

Supported grammar:

```
expr   := term (('+' | '-') term)*
term   := unary (('*' | '/') unary)*
unary  := ('+' | '-') unary | power
power  := atom (('^' | '**') unary)?
atom   := NUMBER | NAME | NAME '(' expr (',' expr)* ')' | '(' expr ')'
```
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable

import sympy

from crnsens.errors import ValidationError

Resolver = Callable[[str], sympy.Expr]

functions: dict[str, Callable[..., sympy.Expr]] = {
    'exp': sympy.exp,
    'log': sympy.log,
    'sqrt': sympy.sqrt,
    'sin': sympy.sin,
    'cos': sympy.cos,
    'tan': sympy.tan,
    'abs': sympy.Abs,
    'min': sympy.Min,
    'max': sympy.Max,
}
"""functions that may be called from an expression, keyed by the name used in the text"""

_token_pattern = re.compile(r"""
    (?P<space>\s+)
  | (?P<number>(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)
  | (?P<name>[A-Za-z_]\w*(?:\.[A-Za-z_]\w*)?)
  | (?P<op>\*\*|[-+*/^(),])
""", re.VERBOSE)


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    position: int


def tokenize(text: str) -> list[Token]:
    tokens = []
    position = 0
    while position < len(text):
        match = _token_pattern.match(text, position)
        if match is None:
            raise ValidationError(f"unexpected character {text[position]!r} at position {position} "
                                  f"in expression {text!r}")
        kind = match.lastgroup
        assert kind is not None
        if kind != 'space':
            tokens.append(Token(kind, match.group(), position))
        position = match.end()
    return tokens


class _Parser:

    def __init__(self, text: str, resolve: Resolver) -> None:
        self.text = text
        self.tokens = tokenize(text)
        self.index = 0
        self.resolve = resolve

    def peek(self) -> Token | None:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def accept(self, *ops: str) -> Token | None:
        token = self.peek()
        if token is not None and token.kind == 'op' and token.text in ops:
            self.index += 1
            return token
        return None

    def expect(self, op: str) -> None:
        if self.accept(op) is None:
            self.fail(f"expected {op!r}")

    def fail(self, message: str) -> None:
        token = self.peek()
        where = f"at position {token.position}" if token is not None else "at end of input"
        raise ValidationError(f"{message} {where} in expression {self.text!r}")

    def parse(self) -> sympy.Expr:
        if len(self.tokens) == 0:
            raise ValidationError("expression is empty")
        expr = self.expr()
        if self.peek() is not None:
            self.fail("unexpected token")
        return expr

    def expr(self) -> sympy.Expr:
        value = self.term()
        while (op := self.accept('+', '-')) is not None:
            rhs = self.term()
            value = value + rhs if op.text == '+' else value - rhs
        return value

    def term(self) -> sympy.Expr:
        value = self.unary()
        while (op := self.accept('*', '/')) is not None:
            rhs = self.unary()
            value = value * rhs if op.text == '*' else value / rhs
        return value

    def unary(self) -> sympy.Expr:
        if self.accept('-') is not None:
            return -self.unary()
        if self.accept('+') is not None:
            return self.unary()
        return self.power()

    def power(self) -> sympy.Expr:
        base = self.atom()
        if self.accept('^', '**') is not None:
            return base ** self.unary()
        return base

    def atom(self) -> sympy.Expr:
        token = self.peek()
        if token is None:
            self.fail("expected a number, name or '('")
        assert token is not None
        if token.kind == 'number':
            self.index += 1
            return sympy.Rational(token.text)
        if token.kind == 'name':
            self.index += 1
            if self.accept('(') is not None:
                return self.call(token)
            return self.resolve(token.text)
        if self.accept('(') is not None:
            value = self.expr()
            self.expect(')')
            return value
        self.fail(f"unexpected token {token.text!r}")
        raise AssertionError('unreachable')

    def call(self, name: Token) -> sympy.Expr:
        if name.text not in functions:
            raise ValidationError(f"unknown function {name.text!r} at position {name.position} "
                                  f"in expression {self.text!r}; "
                                  f"supported functions are {', '.join(functions)}")
        args = [self.expr()]
        while self.accept(',') is not None:
            args.append(self.expr())
        self.expect(')')
        return functions[name.text](*args)


def parse_expression(text: str, resolve: Resolver) -> sympy.Expr:
    """
    Parse `text` into a sympy expression.

    Parameters
    ----------
    text:
        arithmetic expression, e.g. ``"kf * cell.A * B - kr * C"``

    resolve:
        called with each identifier (including any ``compartment.`` qualifier) and must return
        the sympy expression it stands for, or raise
        [`ValidationError`][crnsens.errors.ValidationError] if the name is unknown.

    Returns
    -------
    :
        the parsed expression

    Raises
    ------
    ValidationError
        if `text` is not a well-formed expression
    """
    return _Parser(text, resolve).parse()


def _no_names(name: str) -> sympy.Expr:
    raise ValidationError(f"constant expressions cannot reference names, but found {name!r}")


def evaluate_constant(value: float | int | str) -> float:
    """
    Numeric value of a number or of a string holding a constant arithmetic expression,
    e.g. ``"6.022e23 * 1e-12"``.
    """
    if isinstance(value, str):
        expr = parse_expression(value, _no_names)
        if not expr.is_number:
            raise ValidationError(f"expression {value!r} is not a number")
        return float(expr)
    return float(value)
