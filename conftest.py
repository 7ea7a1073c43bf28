"""Pytest configuration running the code blocks of the documentation."""

from os import chdir, getcwd
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Any

from sybil import Sybil
from sybil.parsers.markdown import PythonCodeBlockParser, SkipParser


def documentation_setup(namespace: dict[str, Any]) -> None:
    """Run documentation examples inside a scratch directory."""
    scratch = TemporaryDirectory()
    namespace["_scratch"] = scratch
    namespace["_cwd"] = getcwd()
    chdir(scratch.name)


def documentation_teardown(namespace: dict[str, Any]) -> None:
    """Return to the original directory and remove the scratch directory."""
    chdir(namespace.pop("_cwd"))
    namespace.pop("_scratch").cleanup()


pytest_collect_file = Sybil(
    parsers=[
        PythonCodeBlockParser(),
        SkipParser(),
    ],
    path=str(Path(__file__).parent / "docs"),
    patterns=["*.md", "**/*.md"],
    setup=documentation_setup,
    teardown=documentation_teardown,
).pytest()
