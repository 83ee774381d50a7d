#!/usr/bin/env python3

# msdscript: a small expression language with let, conditionals and closures.

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import IntEnum
from io import StringIO
from typing import Iterator, Optional, TextIO
import string

from more_itertools import peekable

# Integers are fixed-width and wrap around on overflow
INT_BITS = 32
INT_MIN = -(2 ** (INT_BITS - 1))
INT_MAX = 2 ** (INT_BITS - 1) - 1


def to_int32(n: int) -> int:
    """Reinterpret the low INT_BITS bits of `n` as a signed integer, the way a
    two's-complement machine would after an unsigned add or multiply."""
    n &= (1 << INT_BITS) - 1
    if n > INT_MAX:
        n -= 1 << INT_BITS
    return n


def check_int32(value: int) -> None:
    if not INT_MIN <= value <= INT_MAX:
        raise ValueError(f"{value} does not fit in a {INT_BITS}-bit integer!")

# Errors

class MsdscriptError(Exception):
    """Base class for everything the language itself reports. Each of these
    aborts the whole parse or evaluation."""
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

class UnboundVariable(MsdscriptError):
    """A variable was evaluated where nothing binds it."""
    def __init__(self, name: str):
        super().__init__(f"Unbound variable '{name}'")
        self.name = name

class TypeMismatch(MsdscriptError, TypeError):
    """An operation was applied to a value of the wrong kind, e.g. adding a
    boolean or calling a number."""

class ParseError(MsdscriptError):
    """Error during some part of the parsing process."""
    def __init__(self, message: str, index: Optional[int]=None):
        super().__init__(message)
        self.index = index
        # Filled in by parse_expr
        self.src: Optional[str] = None

    def format(self, src: Optional[str]=None) -> str:
        """Given the original source code, `src`, format a nice error message
        that has the line with the error and a '^' pointing to where it
        happened."""
        if src is None:
            src = self.src
        if self.index is not None and src is not None:
            c = 0
            lines = src.split("\n")
            # loop through lines until we find which line `index` is on. The
            # end of a line counts too, since input can run out there.
            for line_number, line in enumerate(lines, start=1):
                if c <= self.index <= c + len(line):
                    char = self.index - c

                    # handle indentation with tabs: len("\t") is 1, but it will
                    # be printed as 8 characters
                    padding = len(line[:char].expandtabs(8))

                    return "\n".join((
                        f"Parse error, line {line_number}:",
                        self.message,
                        line,
                        " " * padding + "^",
                    ))
                c += len(line) + 1 # for newline
        return f"Parse error:\n{self.message}"

# Values

class Value(ABC):
    """The result of evaluating an expression. Operations a value doesn't
    support raise TypeMismatch."""

    @abstractmethod
    def to_expr(self) -> "Expression":
        """Convert back to an expression, e.g. to print a result"""
        pass

    def equals(self, other: object) -> bool:
        return self == other

    def add_to(self, other: "Value") -> "Value":
        raise TypeMismatch("invalid operation on non-number")

    def multiply_with(self, other: "Value") -> "Value":
        raise TypeMismatch("invalid operation on non-number")

    def is_true(self) -> bool:
        raise TypeMismatch(f"cannot call is_true on {type(self).__name__}")

    def call(self, argument: "Value") -> "Value":
        raise TypeMismatch("cannot use call() on this type")

    def print(self, stream: TextIO) -> None:
        self.to_expr().print(stream)

    def to_string(self) -> str:
        return self.to_expr().to_string()

    def __str__(self) -> str:
        return self.to_string()

@dataclass(frozen=True)
class NumberValue(Value):
    value: int

    def __post_init__(self) -> None:
        check_int32(self.value)

    def to_expr(self) -> "Expression":
        return Number(self.value)

    def _check_number(self, other: Value) -> "NumberValue":
        if not isinstance(other, NumberValue):
            raise TypeMismatch("invalid operation on non-number")
        return other

    def add_to(self, other: Value) -> Value:
        other = self._check_number(other)
        return NumberValue(to_int32(self.value + other.value))

    def multiply_with(self, other: Value) -> Value:
        other = self._check_number(other)
        return NumberValue(to_int32(self.value * other.value))

@dataclass(frozen=True)
class BooleanValue(Value):
    value: bool

    def to_expr(self) -> "Expression":
        return Boolean(self.value)

    def is_true(self) -> bool:
        return self.value

@dataclass(frozen=True)
class ClosureValue(Value):
    """A function together with the environment it was created in. Two
    closures are equal when their syntax is; the environments are not
    compared."""
    parameter: str
    body: "Expression"
    captured_env: "Environment" = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.captured_env is None:
            object.__setattr__(self, "captured_env", EMPTY_ENV)

    def to_expr(self) -> "Expression":
        # Printing a closure shows its syntax, not what it closed over
        return Function(self.parameter, self.body)

    def call(self, argument: Value) -> Value:
        # Bind in the environment the closure was created in, not the caller's
        return self.body.interp(self.captured_env.extend(self.parameter, argument))

# Environments

class Environment(ABC):
    """Immutable chain of name => value bindings. Extending never changes the
    parent, so one environment can be shared by any number of children and
    closures."""

    @abstractmethod
    def lookup(self, name: str) -> Value:
        pass

    def extend(self, name: str, value: Value) -> "Environment":
        return ExtendedEnvironment(name, value, self)

@dataclass(frozen=True)
class EmptyEnvironment(Environment):
    def lookup(self, name: str) -> Value:
        raise UnboundVariable(name)

@dataclass(frozen=True)
class ExtendedEnvironment(Environment):
    name: str
    value: Value
    rest: Environment

    def lookup(self, name: str) -> Value:
        # Newest binding wins
        env: Environment = self
        while isinstance(env, ExtendedEnvironment):
            if env.name == name:
                return env.value
            env = env.rest
        return env.lookup(name)

EMPTY_ENV = EmptyEnvironment()

# Expressions

class Precedence(IntEnum):
    """How tightly a pretty-printed operand's context binds. An operator
    prints parentheses around itself when its caller binds tighter."""
    NONE = 0
    ADD = 1
    MULT = 2

class ColumnWriter:
    """Wraps a text stream and keeps track of the column the next character
    will be written at. Multi-line forms line their keywords up with it."""

    def __init__(self, stream: TextIO):
        self.stream = stream
        self.column = 0

    def write(self, s: str) -> None:
        self.stream.write(s)
        newline = s.rfind("\n")
        if newline == -1:
            self.column += len(s)
        else:
            self.column = len(s) - newline - 1

@contextmanager
def parenthesized(out: ColumnWriter, needed: bool) -> Iterator[None]:
    if needed:
        out.write("(")
    yield
    if needed:
        out.write(")")

class Expression(ABC):
    """An expression in the source language. Expressions are never modified
    after construction; subst() builds a new tree that may share subtrees
    with the old one."""

    def equals(self, other: object) -> bool:
        """Structural equality. Different kinds of expression are never
        equal."""
        return self == other

    @abstractmethod
    def interp(self, env: Optional[Environment] = None) -> Value:
        """Evaluate in `env`, or in the empty environment if not given"""
        pass

    @abstractmethod
    def has_variable(self) -> bool:
        pass

    @abstractmethod
    def subst(self, name: str, replacement: "Expression") -> "Expression":
        """Replace free occurrences of the variable `name`. This is textual
        substitution: nothing is renamed to avoid capture."""
        pass

    @abstractmethod
    def print(self, stream: TextIO) -> None:
        """Write the fully parenthesized form"""
        pass

    def pretty_print(self, stream: TextIO) -> None:
        """Write the conventionally spaced form, with parentheses only where
        they are needed and multi-line keyword forms lined up."""
        self.pretty_print_at(ColumnWriter(stream), Precedence.NONE, False)

    def pretty_print_at(self, out: ColumnWriter, caller_prec: int, has_paren: bool) -> None:
        self.print(out)

    def to_string(self) -> str:
        stream = StringIO()
        self.print(stream)
        return stream.getvalue()

    def to_pretty_string(self) -> str:
        stream = StringIO()
        self.pretty_print(stream)
        return stream.getvalue()

    def __str__(self) -> str:
        return self.to_string()

@dataclass(frozen=True)
class Number(Expression):
    value: int

    def __post_init__(self) -> None:
        check_int32(self.value)

    def interp(self, env: Optional[Environment] = None) -> Value:
        return NumberValue(self.value)

    def has_variable(self) -> bool:
        return False

    def subst(self, name: str, replacement: Expression) -> Expression:
        return self

    def print(self, stream: TextIO) -> None:
        stream.write(str(self.value))

@dataclass(frozen=True)
class Boolean(Expression):
    value: bool

    def interp(self, env: Optional[Environment] = None) -> Value:
        return BooleanValue(self.value)

    def has_variable(self) -> bool:
        return False

    def subst(self, name: str, replacement: Expression) -> Expression:
        return self

    def print(self, stream: TextIO) -> None:
        stream.write("_true" if self.value else "_false")

@dataclass(frozen=True)
class BinaryExpression(Expression):
    """Shared shape of ==, + and *"""
    lhs: Expression
    rhs: Expression

    OPERATOR = ""

    def has_variable(self) -> bool:
        return self.lhs.has_variable() or self.rhs.has_variable()

    def subst(self, name: str, replacement: Expression) -> Expression:
        return type(self)(self.lhs.subst(name, replacement), self.rhs.subst(name, replacement))

    def print(self, stream: TextIO) -> None:
        stream.write("(")
        self.lhs.print(stream)
        stream.write(self.OPERATOR)
        self.rhs.print(stream)
        stream.write(")")

@dataclass(frozen=True)
class Equals(BinaryExpression):
    """Compares the values of both sides. Values of different kinds are
    simply unequal."""
    OPERATOR = "=="

    def interp(self, env: Optional[Environment] = None) -> Value:
        return BooleanValue(self.lhs.interp(env).equals(self.rhs.interp(env)))

    def pretty_print_at(self, out: ColumnWriter, caller_prec: int, has_paren: bool) -> None:
        with parenthesized(out, caller_prec > Precedence.NONE and not has_paren):
            self.lhs.pretty_print_at(out, Precedence.NONE + 1, has_paren)
            out.write(" == ")
            self.rhs.pretty_print_at(out, Precedence.NONE, has_paren)

@dataclass(frozen=True)
class Add(BinaryExpression):
    OPERATOR = "+"

    def interp(self, env: Optional[Environment] = None) -> Value:
        if env is None:
            env = EMPTY_ENV
        return self.lhs.interp(env).add_to(self.rhs.interp(env))

    def pretty_print_at(self, out: ColumnWriter, caller_prec: int, has_paren: bool) -> None:
        with parenthesized(out, caller_prec > Precedence.ADD):
            self.lhs.pretty_print_at(out, Precedence.ADD + 1, has_paren)
            out.write(" + ")
            self.rhs.pretty_print_at(out, Precedence.NONE, has_paren)

@dataclass(frozen=True)
class Multiply(BinaryExpression):
    OPERATOR = "*"

    def interp(self, env: Optional[Environment] = None) -> Value:
        if env is None:
            env = EMPTY_ENV
        return self.lhs.interp(env).multiply_with(self.rhs.interp(env))

    def pretty_print_at(self, out: ColumnWriter, caller_prec: int, has_paren: bool) -> None:
        needed = caller_prec > Precedence.MULT
        # Our own parentheses already enclose any keyword form below us
        has_paren = has_paren or needed
        with parenthesized(out, needed):
            self.lhs.pretty_print_at(out, Precedence.MULT + 1, has_paren)
            out.write(" * ")
            self.rhs.pretty_print_at(out, Precedence.MULT, has_paren)

@dataclass(frozen=True)
class Variable(Expression):
    name: str

    def interp(self, env: Optional[Environment] = None) -> Value:
        if env is None:
            env = EMPTY_ENV
        return env.lookup(self.name)

    def has_variable(self) -> bool:
        return True

    def subst(self, name: str, replacement: Expression) -> Expression:
        return replacement if name == self.name else self

    def print(self, stream: TextIO) -> None:
        stream.write(self.name)

@dataclass(frozen=True)
class Let(Expression):
    """Non-recursive binding: `bound_expr` can't see `name`, `body` can."""
    name: str
    bound_expr: Expression
    body: Expression

    def interp(self, env: Optional[Environment] = None) -> Value:
        if env is None:
            env = EMPTY_ENV
        bound_value = self.bound_expr.interp(env)
        return self.body.interp(env.extend(self.name, bound_value))

    def has_variable(self) -> bool:
        return self.bound_expr.has_variable() or self.body.has_variable()

    def subst(self, name: str, replacement: Expression) -> Expression:
        # Occurrences of our own name in the body refer to this binding
        if name == self.name:
            return Let(self.name, self.bound_expr.subst(name, replacement), self.body)
        return Let(self.name, self.bound_expr.subst(name, replacement), self.body.subst(name, replacement))

    def print(self, stream: TextIO) -> None:
        stream.write(f"(_let {self.name}=")
        self.bound_expr.print(stream)
        stream.write(" _in ")
        self.body.print(stream)
        stream.write(")")

    def pretty_print_at(self, out: ColumnWriter, caller_prec: int, has_paren: bool) -> None:
        with parenthesized(out, caller_prec > Precedence.NONE and not has_paren):
            indent = " " * out.column
            out.write(f"_let {self.name} = ")
            self.bound_expr.pretty_print_at(out, Precedence.NONE, has_paren)
            out.write(f"\n{indent}_in  ")
            self.body.pretty_print_at(out, Precedence.NONE, has_paren)

@dataclass(frozen=True)
class If(Expression):
    condition: Expression
    then_branch: Expression
    else_branch: Expression

    def interp(self, env: Optional[Environment] = None) -> Value:
        # The condition and branches are evaluated in the empty environment,
        # not in `env`
        if self.condition.interp().is_true():
            return self.then_branch.interp()
        return self.else_branch.interp()

    def has_variable(self) -> bool:
        return (self.condition.has_variable()
                or self.then_branch.has_variable()
                or self.else_branch.has_variable())

    def subst(self, name: str, replacement: Expression) -> Expression:
        return If(
            self.condition.subst(name, replacement),
            self.then_branch.subst(name, replacement),
            self.else_branch.subst(name, replacement),
        )

    def print(self, stream: TextIO) -> None:
        stream.write("(_if ")
        self.condition.print(stream)
        stream.write(" _then ")
        self.then_branch.print(stream)
        stream.write(" _else ")
        self.else_branch.print(stream)
        stream.write(")")

    def pretty_print_at(self, out: ColumnWriter, caller_prec: int, has_paren: bool) -> None:
        with parenthesized(out, caller_prec > Precedence.NONE and not has_paren):
            indent = " " * out.column
            out.write("_if   ")
            self.condition.pretty_print_at(out, Precedence.NONE, has_paren)
            out.write(f"\n{indent}_then ")
            self.then_branch.pretty_print_at(out, Precedence.NONE, has_paren)
            out.write(f"\n{indent}_else ")
            self.else_branch.pretty_print_at(out, Precedence.NONE, has_paren)

@dataclass(frozen=True)
class Function(Expression):
    """Function literal with a single named parameter"""
    parameter: str
    body: Expression

    def interp(self, env: Optional[Environment] = None) -> Value:
        return ClosureValue(self.parameter, self.body, EMPTY_ENV if env is None else env)

    def has_variable(self) -> bool:
        return self.body.has_variable()

    def subst(self, name: str, replacement: Expression) -> Expression:
        if name == self.parameter:
            return self
        return Function(self.parameter, self.body.subst(name, replacement))

    def print(self, stream: TextIO) -> None:
        stream.write(f"(_fun ({self.parameter}) ")
        self.body.print(stream)
        stream.write(")")

    def pretty_print_at(self, out: ColumnWriter, caller_prec: int, has_paren: bool) -> None:
        with parenthesized(out, caller_prec > Precedence.NONE and not has_paren):
            indent = " " * out.column
            out.write(f"_fun ({self.parameter})\n{indent}  ")
            self.body.pretty_print_at(out, Precedence.NONE, has_paren)

@dataclass(frozen=True)
class Call(Expression):
    """Function application."""
    callee: Expression
    argument: Expression

    def interp(self, env: Optional[Environment] = None) -> Value:
        # Like If, the callee and argument don't see `env`
        function = self.callee.interp()
        argument = self.argument.interp()
        return function.call(argument)

    def has_variable(self) -> bool:
        return self.callee.has_variable() or self.argument.has_variable()

    def subst(self, name: str, replacement: Expression) -> Expression:
        return Call(self.callee.subst(name, replacement), self.argument.subst(name, replacement))

    def print(self, stream: TextIO) -> None:
        self.callee.print(stream)
        stream.write(" ")
        self.argument.print(stream)

    def pretty_print_at(self, out: ColumnWriter, caller_prec: int, has_paren: bool) -> None:
        self.callee.pretty_print_at(out, Precedence.NONE, has_paren)
        out.write("(")
        self.argument.pretty_print_at(out, Precedence.NONE, has_paren)
        out.write(")")

# Parsing

# Source code => Expression, by recursive descent straight over the
# characters. Each read_* function handles one level of the grammar:
#
#   expr  := eqs
#   eqs   := adds ( "==" eqs )?
#   adds  := mults ( "+" adds )?
#   mults := calls ( "*" mults )?
#   calls := bases ( "(" expr ")" )*
#   bases := number | boolean | variable | "(" expr ")" | let | if | fun

DIGITS = frozenset(string.digits)
LETTERS = frozenset(string.ascii_letters)
WHITESPACE = frozenset(" \t\n\r\v\f")

# What may directly follow a number or variable token
TOKEN_FOLLOWERS = WHITESPACE | frozenset(")*+=")

class Cursor:
    """Read position in the source. Looking ahead never consumes anything,
    so a failed probe leaves the input as it was."""

    def __init__(self, src: str):
        self.src = src
        self.chars = peekable(enumerate(src))

    @property
    def index(self) -> int:
        return self.chars.peek((len(self.src), ""))[0]

    def peek(self, offset: int = 0) -> str:
        """The character `offset` places ahead, or "" past the end"""
        try:
            return self.chars[offset][1]
        except IndexError:
            return ""

    def at_end(self) -> bool:
        return not self.chars

    def consume(self, expect: str) -> None:
        """Consume exactly the characters of `expect`"""
        for char in expect:
            index, c = next(self.chars, (len(self.src), ""))
            if c != char:
                raise ParseError(f"Expected '{expect}'!", index)

    def skip_whitespace(self) -> None:
        while self.peek() in WHITESPACE:
            next(self.chars)


def read_expr(cursor: Cursor) -> Expression:
    return read_eqs(cursor)

def read_eqs(cursor: Cursor) -> Expression:
    expr = read_adds(cursor)
    cursor.skip_whitespace()

    # A lone "=" belongs to an enclosing _let
    if cursor.peek() == "=" and cursor.peek(1) == "=":
        cursor.consume("==")
        return Equals(expr, read_eqs(cursor))
    return expr

def read_adds(cursor: Cursor) -> Expression:
    expr = read_mults(cursor)
    cursor.skip_whitespace()

    if cursor.peek() == "+":
        cursor.consume("+")
        return Add(expr, read_adds(cursor))
    return expr

def read_mults(cursor: Cursor) -> Expression:
    expr = read_calls(cursor)
    cursor.skip_whitespace()

    if cursor.peek() == "*":
        cursor.consume("*")
        return Multiply(expr, read_mults(cursor))
    return expr

def read_calls(cursor: Cursor) -> Expression:
    expr = read_bases(cursor)

    # f(x)(y) applies left to right
    while cursor.peek() == "(":
        cursor.consume("(")
        argument = read_expr(cursor)
        cursor.consume(")")
        expr = Call(expr, argument)
    return expr

def read_bases(cursor: Cursor) -> Expression:
    cursor.skip_whitespace()

    c = cursor.peek()
    if c == "-" or c in DIGITS:
        return read_number(cursor)
    if c in LETTERS:
        return read_variable(cursor)
    if c == "(":
        return read_paren(cursor)
    if c == "_":
        keyword = peek_keyword(cursor)
        if keyword == "let":
            return read_let(cursor)
        if keyword == "if":
            return read_if(cursor)
        if keyword == "fun":
            return read_fun(cursor)
        return read_boolean(cursor, keyword)

    if cursor.at_end():
        raise ParseError("Invalid input: unexpected end of input!", cursor.index)
    raise ParseError(f"Invalid input: unexpected '{c}'!", cursor.index)

def peek_keyword(cursor: Cursor) -> str:
    """Tell which underscore form is coming up without consuming it"""
    second = cursor.peek(1)
    if second == "l":
        return "let"
    if second == "i":
        return "if"
    if second == "t":
        return "true"
    if second == "f":
        # _false or _fun
        return "false" if cursor.peek(2) == "a" else "fun"
    raise ParseError("Invalid keyword!", cursor.index)

def check_token_end(cursor: Cursor, message: str) -> None:
    if not cursor.at_end() and cursor.peek() not in TOKEN_FOLLOWERS:
        raise ParseError(message, cursor.index)

def read_number(cursor: Cursor) -> Expression:
    negative = cursor.peek() == "-"
    if negative:
        cursor.consume("-")
        if cursor.peek() not in DIGITS:
            raise ParseError("Expected digit after '-'!", cursor.index)

    value = 0
    while (c := cursor.peek()) in DIGITS:
        cursor.consume(c)
        value = value * 10 + int(c)

    check_token_end(cursor, "Malformed number!")
    return Number(to_int32(-value if negative else value))

def read_variable(cursor: Cursor) -> Expression:
    name = ""
    while (c := cursor.peek()) in LETTERS:
        cursor.consume(c)
        name += c

    check_token_end(cursor, "Malformed variable!")
    return Variable(name)

def read_boolean(cursor: Cursor, keyword: str) -> Expression:
    cursor.consume(f"_{keyword}")
    return Boolean(keyword == "true")

def read_paren(cursor: Cursor) -> Expression:
    cursor.consume("(")
    expr = read_expr(cursor)

    if cursor.peek() != ")":
        raise ParseError("Missing closing parenthesis!", cursor.index)
    cursor.consume(")")
    return expr

def read_let(cursor: Cursor) -> Expression:
    start = cursor.index
    cursor.consume("_let")

    var = read_expr(cursor)
    if not isinstance(var, Variable):
        raise ParseError("Invalid let: expected variable name!", start)

    cursor.consume("=")
    bound_expr = read_expr(cursor)
    cursor.consume("_in")
    body = read_expr(cursor)

    # The bound name has to actually be used in the body
    if body.subst(var.name, bound_expr).equals(body):
        raise ParseError(f"Invalid let: '{var.name}' is unused!", start)

    return Let(var.name, bound_expr, body)

def read_if(cursor: Cursor) -> Expression:
    cursor.consume("_if")
    condition = read_expr(cursor)

    cursor.consume("_then")
    then_branch = read_expr(cursor)

    cursor.consume("_else")
    else_branch = read_expr(cursor)

    return If(condition, then_branch, else_branch)

def read_fun(cursor: Cursor) -> Expression:
    start = cursor.index
    cursor.consume("_fun")

    parameter = read_expr(cursor)
    if not isinstance(parameter, Variable):
        raise ParseError("Invalid function: expected parameter name!", start)

    body = read_expr(cursor)

    # Substitutes the body into itself rather than a placeholder, so a body
    # that is just the parameter is rejected too
    if body.subst(parameter.name, body).equals(body):
        raise ParseError(f"Invalid function: '{parameter.name}' is unused!", start)

    return Function(parameter.name, body)


def parse_expr(src: str) -> Expression:
    """Convert source code to AST. All of `src` has to be one expression."""
    cursor = Cursor(src)
    try:
        expr = read_expr(cursor)

        cursor.skip_whitespace()
        if not cursor.at_end():
            raise ParseError("Invalid input after expression!", cursor.index)
    except ParseError as e:
        e.src = src
        raise
    return expr
