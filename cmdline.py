#!/usr/bin/env python3

# Command-mode front end: read an expression from stdin, then interpret or
# print it depending on the flags given.

from pathlib import Path
from typing import Callable, Dict, List
import resource
import sys

from msdscript import MsdscriptError, ParseError, parse_expr

HELP = "\n".join((
    "--help:\t\tlists valid arguments",
    "--test:\t\truns tests",
    "--interp:\tsimplifies a user-inputted expression",
    "--print:\tprints a user-inputted expression as a basic string",
    "--pretty-print:\tprints a user-inputted expression as a stylized string",
))

# Evaluation recurses once per level of nesting
RECURSION_LIMIT = 10 ** 5
STACK_LIMIT = 2 ** 29


def raise_limits() -> None:
    """Raise the stack limit or deeply nested input hits the maximum recursion
    depth"""
    _, hard = resource.getrlimit(resource.RLIMIT_STACK)
    soft = STACK_LIMIT if hard == resource.RLIM_INFINITY else min(STACK_LIMIT, hard)
    try:
        resource.setrlimit(resource.RLIMIT_STACK, (soft, hard))
    except (ValueError, OSError) as e:
        print("Couldn't raise the stack limit:", e, file=sys.stderr)
    sys.setrecursionlimit(RECURSION_LIMIT)


def read_src() -> str:
    """Read the whole of stdin, minus the final newline"""
    if sys.stdin.isatty():
        print("Enter an expression:", file=sys.stderr)
    src = sys.stdin.read()
    if src.endswith("\n"):
        src = src[:-1]
    return src


def run_help() -> None:
    print(HELP)

def run_test() -> None:
    import pytest

    tests = Path(__file__).with_name("test_msdscript.py")
    if pytest.main(["-q", str(tests)]) != 0:
        sys.exit(1)

def run_interp() -> None:
    print(parse_expr(read_src()).interp().to_string())

def run_print() -> None:
    print(parse_expr(read_src()).to_string())

def run_pretty_print() -> None:
    print(parse_expr(read_src()).to_pretty_string())


modes: Dict[str, Callable[[], None]] = {
    "--help": run_help,
    "--test": run_test,
    "--interp": run_interp,
    "--print": run_print,
    "--pretty-print": run_pretty_print,
}

def use_arguments(args: List[str]) -> int:
    """Run each flag in `args` in order. Returns the exit code."""
    try:
        for arg in args:
            if arg in modes:
                modes[arg]()
            else:
                print('Invalid argument: run program with "--help" flag to list valid arguments',
                      file=sys.stderr)
    except ParseError as e:
        print(f"ERROR: {e.message}", file=sys.stderr)
        if e.src is not None:
            print(e.format(e.src), file=sys.stderr)
        return 1
    except MsdscriptError as e:
        print(f"ERROR: {e.message}", file=sys.stderr)
        return 1

    return 0


def main() -> None:
    raise_limits()
    sys.exit(use_arguments(sys.argv[1:]))

if __name__ == "__main__":
    main()
