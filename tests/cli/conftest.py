"""Pytest configuration and fixtures for CLI tests."""

import pytest
import yaml
from click.testing import CliRunner

from instancestore.cli import cli

CLASSES = [
    {"name": "Account", "indexes": ["accountNumber", "country"]},
    {"name": "Person", "indexes": ["country", ["lastName", "firstName"]]},
    {"name": "Company", "indexes": ["country", "name"]},
]


class InstanceStoreRunner:
    """CliRunner bound to the instancestore command group."""

    def __init__(self):
        self.runner = CliRunner()

    def invoke(self, args, **kwargs):
        return self.runner.invoke(cli, args, **kwargs)


@pytest.fixture
def project_dir(tmp_path, monkeypatch):
    """Empty working directory with user configuration out of the way."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    project = tmp_path / "project"
    project.mkdir()
    monkeypatch.chdir(project)
    return project


@pytest.fixture
def store_config(project_dir):
    """Project configuration declaring a SQLite store."""
    path = project_dir / "instancestore.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "name": "Test",
                "url": f"sqlite://{project_dir / 'store.db'}",
                "classes": CLASSES,
            }
        )
    )
    return path


@pytest.fixture
def cli_runner(store_config):
    """CLI runner working against the configured store."""
    return InstanceStoreRunner()
