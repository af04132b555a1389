import os
import sys

import pytest

# Ensure repository root is on sys.path for package imports
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
HERE = os.path.dirname(os.path.abspath(__file__))
for p in (ROOT, HERE):
    if p not in sys.path:
        sys.path.insert(0, p)

from pipeline_fixtures import build_pipeline_graph  # noqa: E402


@pytest.fixture
def pipeline_graph():
    return build_pipeline_graph()


# Expose a pytest fixture to help tests access the repo root
@pytest.fixture(autouse=True)
def repo_root():
    return ROOT
