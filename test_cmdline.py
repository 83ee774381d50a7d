#!/usr/bin/env python3

from pathlib import Path
from subprocess import run, PIPE, CompletedProcess
from typing import List
import sys

from cmdline import HELP

CMDLINE = Path(__file__).with_name("cmdline.py")

def run_cmdline(args: List[str], input: str="") -> CompletedProcess:
    return run([sys.executable, str(CMDLINE), *args], input=input.encode("utf-8"),
               stdout=PIPE, stderr=PIPE)

def check_output(flag: str, input: str, output: str):
    p = run_cmdline([flag], input)
    assert p.returncode == 0, p.stderr.decode("utf-8")
    assert p.stdout.decode("utf-8") == output + "\n"

def check_error(flag: str, input: str, message: str) -> str:
    p = run_cmdline([flag], input)
    assert p.returncode == 1
    assert p.stdout == b""
    stderr = p.stderr.decode("utf-8")
    assert f"ERROR: {message}" in stderr
    return stderr

def test_help():
    check_output("--help", "", HELP)

def test_interp():
    check_output("--interp", "1 + 2\n", "3")
    check_output("--interp", "_let x = 5 _in x + 5", "10")
    check_output("--interp", "1+1==2+0", "_true")
    check_output("--interp", "(_fun (x) x + 4)(3 + 8)", "15")
    check_output("--interp", "_let y = 3 _in _fun (x) x + y", "(_fun (x) (x+y))")

def test_print():
    check_output("--print", "_let x = 5 _in x + 1\n", "(_let x=5 _in (x+1))")
    check_output("--print", "1 * (2 + 3)", "(1*(2+3))")

def test_pretty_print():
    check_output("--pretty-print", "(1 + 2) + 3\n", "(1 + 2) + 3")
    check_output("--pretty-print", "_let x=5 _in x+1", "_let x = 5\n_in  x + 1")

def test_parse_error():
    stderr = check_error("--interp", "1 +\n2x\n", "Malformed number!")
    assert "Parse error, line 2:\nMalformed number!\n2x\n ^" in stderr

def test_runtime_errors():
    check_error("--interp", "_true + 1", "invalid operation on non-number")
    check_error("--interp", "x * 2", "Unbound variable 'x'")
    check_error("--interp", "_if 1 _then 2 _else 3", "cannot call is_true on NumberValue")
    check_error("--interp", "(5)(1)", "cannot use call() on this type")

def test_errors_only_matter_for_evaluating_modes():
    check_output("--print", "_true + 1", "(_true+1)")

def test_invalid_argument():
    p = run_cmdline(["--bogus"])
    assert p.returncode == 0
    assert p.stdout == b""
    assert b'run program with "--help"' in p.stderr

def test_flags_run_in_order():
    p = run_cmdline(["--help", "--bogus", "--print"], "4")
    assert p.returncode == 0
    assert p.stdout.decode("utf-8") == HELP + "\n4\n"

def test_no_arguments():
    p = run_cmdline([])
    assert p.returncode == 0
    assert p.stdout == b""

def test_deep_nesting():
    src = " + ".join(["1"] * 2000)
    check_output("--interp", src, "2000")
