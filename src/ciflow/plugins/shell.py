# plugins/shell.py
from __future__ import annotations

import contextlib
import os
import signal
import subprocess
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from ..model import Status, TaskResult, format_value
from .base import TaskPlugin


# A task publishes outputs by appending `key=value` lines (or
# `key<<DELIM ... DELIM` blocks for multi-line values) to this file.
OUTPUT_ENV = "CIFLOW_OUTPUT"

LOG_TAIL = 4000


def parse_output_file(text: str) -> Dict[str, str]:
    outputs: Dict[str, str] = {}
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            key, delimiter = line.split("<<", 1)
            block = []
            while i < len(lines) and lines[i] != delimiter:
                block.append(lines[i])
                i += 1
            i += 1  # closing delimiter
            outputs[key.strip()] = "\n".join(block)
            continue
        if "=" not in line:
            raise ValueError(f"Malformed output line (expected key=value): {line!r}")
        key, value = line.split("=", 1)
        outputs[key.strip()] = value
    return outputs


class ShellPlugin(TaskPlugin):
    """
    Runs `params["run"]` through the shell.

    Params:
      run: command line (required)
      cwd: working directory (default: current directory)
      env: extra environment variables
    """

    def __init__(self) -> None:
        self._proc: Optional[subprocess.Popen] = None
        self._cancelled = False
        self._lock = threading.Lock()

    def execute(self, name: str, params: Mapping[str, Any]) -> TaskResult:
        cmd = params.get("run")
        if not cmd:
            raise ValueError(f"{name} task needs a 'run' param")

        cwd = Path(params.get("cwd") or ".").expanduser().resolve()
        if not cwd.exists():
            raise FileNotFoundError(f"cwd not found: {cwd}")

        env = os.environ.copy()
        env.update({k: format_value(v) for k, v in (params.get("env") or {}).items()})

        fd, output_path = tempfile.mkstemp(prefix="ciflow-output-")
        os.close(fd)
        env[OUTPUT_ENV] = output_path

        try:
            with self._lock:
                if self._cancelled:
                    return TaskResult(status=Status.FAILED, logs="cancelled before start")
                self._proc = subprocess.Popen(
                    str(cmd),
                    shell=True,
                    cwd=str(cwd),
                    env=env,
                    text=True,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
            stdout, _ = self._proc.communicate()
            returncode = self._proc.returncode
            outputs = parse_output_file(Path(output_path).read_text()) if returncode == 0 else {}
        finally:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(output_path)

        return TaskResult(
            status=Status.SUCCEEDED if returncode == 0 else Status.FAILED,
            outputs=outputs,
            logs=(stdout or "")[-LOG_TAIL:],
            exit_code=returncode,
        )

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
            if self._proc is not None and self._proc.poll() is None:
                # signal the shell and everything it spawned
                with contextlib.suppress(ProcessLookupError):
                    os.killpg(self._proc.pid, signal.SIGTERM)
