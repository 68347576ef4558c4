"""Command line tests."""

from __future__ import annotations

import json
import math
from pathlib import Path

import pytest

from seeing_is_believing.app import ERROR_EXIT_CODE, TIMEOUT_EXIT_CODE, build_parser, main
from seeing_is_believing.config import Config


def run_main(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as excinfo:
        main(argv)
    return excinfo.value.code


def json_events(output: str) -> list[dict]:
    return [json.loads(line) for line in output.splitlines() if line]


class TestParser:
    """Test argument parsing."""

    def test_defaults_from_config(self):
        config = Config(timeout_seconds=3, max_line_captures=5, encoding="latin-1")
        args = build_parser(config).parse_args(["example.py"])

        assert args.timeout == 3
        assert args.max_line_captures == 5
        assert args.encoding == "latin-1"
        assert args.load_path == []

    def test_unlimited_captures(self):
        args = build_parser(Config(max_line_captures=math.inf)).parse_args(["example.py"])
        assert args.max_line_captures is None

    def test_repeatable_options(self):
        args = build_parser(Config()).parse_args(
            ["example.py", "-I", "a", "-I", "b", "-r", "mod", "-t", "2.5"]
        )
        assert args.load_path == ["a", "b"]
        assert args.require == ["mod"]
        assert args.timeout == 2.5


class TestMain:
    """Test running files from the command line."""

    def test_writes_json_events(self, temp_workspace: Path, capsys: pytest.CaptureFixture[str]):
        target = temp_workspace / "example.py"
        target.write_text("print('hi')\n")

        assert run_main([str(target)]) == 0

        events = json_events(capsys.readouterr().out)
        names = [e["event_name"] for e in events]
        assert {"event_name": "stdout", "value": "hi\n"} in events
        assert names[-1] == "finished"
        assert target.read_text() == "print('hi')\n"

    def test_program_file_and_input(self, temp_workspace: Path, capsys: pytest.CaptureFixture[str]):
        target = temp_workspace / "example.py"
        target.write_text("original\n")
        program = temp_workspace / "program.txt"
        program.write_text("import sys\nsys.stdout.write(sys.stdin.read().upper())\n")
        stdin = temp_workspace / "input.txt"
        stdin.write_text("shout")

        assert run_main([str(target), "--program-file", str(program), "--input-file", str(stdin)]) == 0

        events = json_events(capsys.readouterr().out)
        assert "".join(e["value"] for e in events if e["event_name"] == "stdout") == "SHOUT"
        assert target.read_text() == "original\n"

    def test_exit_status_passed_through(self, temp_workspace: Path):
        target = temp_workspace / "example.py"
        target.write_text("raise SystemExit(3)\n")

        assert run_main([str(target)]) == 3

    def test_timeout_exit_code(self, temp_workspace: Path):
        target = temp_workspace / "example.py"
        target.write_text("import time\ntime.sleep(60)\n")

        assert run_main([str(target), "--timeout", "0.5"]) == TIMEOUT_EXIT_CODE

    def test_missing_file(self, temp_workspace: Path, capsys: pytest.CaptureFixture[str]):
        assert run_main([str(temp_workspace / "missing.py")]) == ERROR_EXIT_CODE
        assert "seeing-is-believing:" in capsys.readouterr().err
