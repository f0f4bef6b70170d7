"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for k8s_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from hpa_operator.config import Config  # noqa: E402

CPU70_TEMPLATE = """\
type: Resource
resource:
  name: cpu
  target:
    type: Utilization
    averageUtilization: 70
"""

MEMORY80_TEMPLATE = """\
type: Resource
resource:
  name: memory
  target:
    type: Utilization
    averageUtilization: 80
"""

REQUESTS_TEMPLATE = """\
{"type": "Pods", "pods": {"metric": {"name": "http_requests"},
 "target": {"type": "AverageValue", "averageValue": "100"}}}
"""


@pytest.fixture
def templates_dir(tmp_path: Path) -> Path:
    """Template directory holding cpu70, mem80 and requests (JSON) templates."""
    directory = tmp_path / "templates"
    directory.mkdir()
    (directory / "cpu70").write_text(CPU70_TEMPLATE)
    (directory / "mem80").write_text(MEMORY80_TEMPLATE)
    (directory / "requests").write_text(REQUESTS_TEMPLATE)
    return directory


@pytest.fixture
def config(templates_dir: Path) -> Config:
    return Config(templates_dir=templates_dir)
