"""Shared fixtures for CLI tests."""

from __future__ import annotations

import pytest
from typer.testing import CliRunner

from memongo.cli import app

FIXTURE_YAML = """\
database: shop
collections:
  users:
    indexes:
      - key: {email: 1}
        unique: true
    documents:
      - {_id: 1, name: Alice, email: a@example.com, age: 30, tags: [x, y]}
      - {_id: 2, name: Bob, email: b@example.com, age: 25, tags: [y]}
      - {_id: 3, name: Carol, email: c@example.com, age: 35}
      - {_id: {$oid: "650000000000000000000001"}, name: Dave, age: 25}
  empty: {}
"""


@pytest.fixture
def runner():
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def fixture_file(tmp_path):
    """Write the shop fixture and return its path."""
    path = tmp_path / "shop.yaml"
    path.write_text(FIXTURE_YAML)
    return str(path)


@pytest.fixture
def invoke(runner, fixture_file):
    """Invoke the CLI with the shop fixture selected."""

    def run(args: list[str], fixture: str | None = fixture_file):
        if fixture:
            args = ["--fixture", fixture] + args
        return runner.invoke(app, args, catch_exceptions=False)

    return run
