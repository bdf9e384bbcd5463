"""
Test fixtures and utilities for mdrun tests.

Provides temporary Markdown documents, isolated configuration, results
stores and a RunService wired with a minimal, predictable environment.
"""

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Optional

import pytest

from mdrun.config import runtime_config
from mdrun.config.runtime_config import (
    ExecutionConfig,
    MdrunConfig,
    ResultsConfig,
)
from mdrun.runtime.execution import Executor
from mdrun.runtime.results import ResultsStore
from mdrun.runtime.service import RunService
from mdrun.runtime.session import SessionStore
from mdrun.runtime.types import CaptureStrategy, ExecutionResult

SAMPLE_DOC = """# Sample

Intro paragraph.

```sh
echo hello
```

Some prose.

```python
print("not runnable")
```

```bash
echo second
```
"""


# ============================================================================
# Configuration isolation
# ============================================================================


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch):
    """Clear MDRUN_* variables and the config cache around every test."""
    for name in list(os.environ):
        if name.startswith("MDRUN_"):
            monkeypatch.delenv(name, raising=False)
    runtime_config.reset_config()
    yield
    runtime_config.reset_config()


# ============================================================================
# Documents
# ============================================================================


@pytest.fixture
def write_doc(tmp_path: Path) -> Callable[..., Path]:
    """Factory writing a Markdown document into tmp_path."""

    def _write(text: str = SAMPLE_DOC, name: str = "doc.md") -> Path:
        path = tmp_path / name
        path.write_text(text, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def doc_path(write_doc) -> Path:
    """The sample document on disk."""
    return write_doc()


# ============================================================================
# Stores and service
# ============================================================================


@pytest.fixture
def results_config() -> ResultsConfig:
    return ResultsConfig(lock_timeout_ms=500)


@pytest.fixture
def store(results_config: ResultsConfig) -> ResultsStore:
    return ResultsStore(results_config)


@pytest.fixture
def execution_config() -> ExecutionConfig:
    return ExecutionConfig(
        shell="/bin/sh",
        timeout_ms=5000,
        kill_grace_ms=200,
        capture_strategy=CaptureStrategy.HYBRID,
        wait_ceiling_ms=10000,
    )


@pytest.fixture
def base_env(tmp_path: Path) -> Dict[str, str]:
    """Small, deterministic environment for spawned shells."""
    return {
        "PATH": os.environ.get("PATH", "/usr/bin:/bin"),
        "HOME": str(tmp_path),
        "LANG": "C",
    }


@pytest.fixture
def sessions(base_env: Dict[str, str], tmp_path: Path) -> SessionStore:
    return SessionStore(environ_factory=lambda: base_env, cwd_factory=lambda: str(tmp_path))


@pytest.fixture
def service(
    sessions: SessionStore,
    store: ResultsStore,
    execution_config: ExecutionConfig,
    results_config: ResultsConfig,
) -> RunService:
    config = MdrunConfig(execution=execution_config, results=results_config)
    return RunService(
        sessions=sessions,
        results=store,
        executor=Executor(execution_config),
        config=config,
    )


# ============================================================================
# Result factory
# ============================================================================


@pytest.fixture
def make_result() -> Callable[..., ExecutionResult]:
    """Factory for ExecutionResult objects without spawning anything."""

    def _make(
        command: str = "echo hi\n",
        stdout: bytes = b"hi\n",
        stderr: bytes = b"",
        exit_code: int = 0,
        timed_out: bool = False,
        identity: Optional[str] = None,
        started_at: Optional[datetime] = None,
    ) -> ExecutionResult:
        return ExecutionResult(
            identity=identity,
            command=command,
            ok=exit_code == 0 and not timed_out,
            exit_code=exit_code,
            signal=0,
            timed_out=timed_out,
            duration_ms=12,
            cwd="/tmp",
            shell="/bin/sh",
            started_at=started_at or datetime.now(timezone.utc),
            stdout=stdout,
            stderr=stderr,
        )

    return _make
