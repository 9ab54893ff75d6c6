"""Each service module must import on its own, whatever is loaded first."""

import os
import subprocess
import sys
from pathlib import Path

import pytest

SERVER_DIR = Path(__file__).resolve().parents[1] / "server"


@pytest.mark.parametrize("module", [
    "services.collaborators",
    "services.node_executor",
    "services.handlers",
    "services.reputation",
    "services.triggers",
    "services.workflow",
    "services.execution",
    "services.execution.executor",
    "services.execution.recovery",
    "core.container",
    "routers.workflow",
])
def test_module_imports_in_fresh_interpreter(module, tmp_path):
    env = {**os.environ, "PYTHONPATH": str(SERVER_DIR),
           "DATABASE_URL": f"sqlite+aiosqlite:///{tmp_path / 'imports.db'}"}
    result = subprocess.run([sys.executable, "-c", f"import {module}"], cwd=tmp_path, env=env,
                            capture_output=True, text=True)
    assert result.returncode == 0, result.stderr
