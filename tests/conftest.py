import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Ensure `src/` is importable in tests without installing the package.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from sandbox_orchestrator.config import Settings  # noqa: E402


@pytest.fixture()
def settings() -> Settings:
    return Settings(_env_file=None, auto_cleanup_enabled=False)


@pytest.fixture()
def kc() -> MagicMock:
    """Stand-in for K8sClient; every API call succeeds unless told otherwise."""
    k = MagicMock()
    k.namespace = "user-sandboxes"
    k.call_options = {}
    return k
