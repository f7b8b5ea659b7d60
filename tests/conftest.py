"""Shared fixtures for progress ledger tests."""

import pytest
import yaml

from progress_ledger.ledger_logging import observability_hooks, performance_monitor
from progress_ledger.manifest import Manifest


SAMPLE_MANIFEST = {
    "name": "demo",
    "groups": [
        {
            "id": "setup",
            "name": "Setup",
            "tasks": [
                {"id": "T1", "description": "Create package layout", "files": ["pkg/__init__.py"]},
                {"id": "T2", "description": "Add config loader", "files": ["pkg/config.py"], "depends_on": ["T1"]},
            ],
        },
        {
            "id": "features",
            "name": "Features",
            "parallel": True,
            "tasks": [
                {"id": "T3", "description": "Parser", "depends_on": ["T2"]},
                {"id": "T4", "description": "Writer", "depends_on": ["T2"]},
            ],
        },
    ],
}


@pytest.fixture
def manifest_data():
    """A fresh copy of the sample manifest mapping."""
    return yaml.safe_load(yaml.safe_dump(SAMPLE_MANIFEST))


@pytest.fixture
def manifest(manifest_data):
    return Manifest.from_dict(manifest_data)


@pytest.fixture
def project_dir(tmp_path, manifest_data):
    """A project root holding manifest.yaml and no ledger yet."""
    (tmp_path / "manifest.yaml").write_text(yaml.safe_dump(manifest_data, sort_keys=False), encoding="utf-8")
    return tmp_path


@pytest.fixture(autouse=True)
def clean_observability():
    """Keep global hooks and metrics from leaking between tests."""
    yield
    observability_hooks.hooks.clear()
    performance_monitor.clear()
