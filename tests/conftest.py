import pathlib
import signal
import sys
from pathlib import Path

import psutil
import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from chatrelay.config import Settings  # noqa: E402


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        backend_api_key="test-key",
        backend_base_url="https://backend.example.com/v1",
        default_model="test/model",
        system_prompt="You are a test assistant.",
        workspace_root=tmp_path,
        approval_mode="yolo",
        stream_keepalive_seconds=15,
        request_deadline_seconds=30,
        tool_batch_timeout_seconds=10,
    )


@pytest.fixture(scope="session", autouse=True)
def cleanup_processes():
    """Terminate shell commands that outlived the tests that started them."""
    yield

    children = psutil.Process().children(recursive=True)
    for child in children:
        try:
            child.send_signal(signal.SIGTERM)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

    _, alive = psutil.wait_procs(children, timeout=1.0)
    for child in alive:
        try:
            child.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
