from __future__ import annotations

import json
import logging
import os
import re
import subprocess
import threading
import time
from contextlib import contextmanager
from pathlib import Path

from warden.models import ActionRecord

logger = logging.getLogger(__name__)

RUN_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")
NOTES_REF_PREFIX = "refs/notes/warden/"


class ActionLogError(RuntimeError):
    """Raised when action-log persistence fails."""


class ActionLogStore:
    """Append-only per-run action log.

    Backends: ``local`` writes JSON lines under ``log_dir``, ``notes`` appends
    to git notes on an anchor object (falling back to ``local`` outside a git
    repository) and ``memory`` keeps records in-process only.
    """

    BACKENDS = {"local", "notes", "memory"}

    def __init__(
        self,
        repo_root: Path,
        *,
        backend_mode: str = "local",
        log_dir: str = ".warden/logs",
    ) -> None:
        if backend_mode not in self.BACKENDS:
            raise ActionLogError(f"Unsupported action log backend: {backend_mode}")
        self.repo_root = repo_root.resolve()
        self.log_dir = self.repo_root / log_dir
        self.lock_file = self.log_dir / ".lock"
        self.anchor_file = self.repo_root / ".warden" / "anchor"
        self._memory: dict[str, list[ActionRecord]] = {}
        self._thread_lock = threading.Lock()
        if backend_mode == "notes" and not self._is_git_repo():
            logger.info("No git repository at %s, action log falls back to local", self.repo_root)
            backend_mode = "local"
        self._backend_mode = backend_mode

    @property
    def backend_mode(self) -> str:
        return self._backend_mode

    def _is_git_repo(self) -> bool:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", "rev-parse", "--is-inside-work-tree"],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
            )
        except OSError:
            return False
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def _run_git(
        self,
        args: list[str],
        input_text: str | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
            input=input_text,
        )
        if check and proc.returncode != 0:
            raise ActionLogError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    @staticmethod
    def _validate_run_id(run_id: str) -> None:
        if not RUN_ID_PATTERN.match(run_id):
            raise ActionLogError(f"Invalid run id: {run_id!r}")

    def _local_file(self, run_id: str) -> Path:
        return self.log_dir / f"{run_id}.jsonl"

    def _anchor_object(self) -> str:
        if self.anchor_file.exists():
            return self.anchor_file.read_text(encoding="utf-8").strip()
        anchor = self._run_git(
            ["hash-object", "-w", "--stdin"],
            input_text="warden-action-log-anchor\n",
        ).stdout.strip()
        self.anchor_file.parent.mkdir(parents=True, exist_ok=True)
        self.anchor_file.write_text(anchor, encoding="utf-8")
        return anchor

    @contextmanager
    def _file_lock(self, timeout_seconds: float = 3.0):
        self.log_dir.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise ActionLogError("Timed out waiting for action log lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def append(self, run_id: str, record: ActionRecord) -> None:
        self._validate_run_id(run_id)
        serialized = json.dumps(record.to_dict(), ensure_ascii=False, separators=(",", ":"))
        with self._thread_lock:
            if self._backend_mode == "memory":
                self._memory.setdefault(run_id, []).append(record)
                return
            if self._backend_mode == "notes":
                self._run_git(
                    [
                        "notes",
                        "--ref",
                        f"{NOTES_REF_PREFIX}{run_id}",
                        "append",
                        "-m",
                        serialized,
                        self._anchor_object(),
                    ]
                )
                return
            with self._file_lock():
                with self._local_file(run_id).open("a", encoding="utf-8") as handle:
                    handle.write(serialized + "\n")

    def _raw_lines(self, run_id: str) -> list[str]:
        if self._backend_mode == "notes":
            proc = self._run_git(
                ["notes", "--ref", f"{NOTES_REF_PREFIX}{run_id}", "show", self._anchor_object()],
                check=False,
            )
            return proc.stdout.splitlines() if proc.returncode == 0 else []
        local_file = self._local_file(run_id)
        if not local_file.exists():
            return []
        return local_file.read_text(encoding="utf-8").splitlines()

    def read(self, run_id: str) -> list[ActionRecord]:
        self._validate_run_id(run_id)
        if self._backend_mode == "memory":
            with self._thread_lock:
                return list(self._memory.get(run_id, []))
        records: list[ActionRecord] = []
        for line in self._raw_lines(run_id):
            line = line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipping unreadable action log line for %s", run_id)
                continue
            if isinstance(payload, dict):
                records.append(ActionRecord.from_dict(payload))
        return records

    def run_ids(self) -> list[str]:
        if self._backend_mode == "memory":
            with self._thread_lock:
                return sorted(self._memory)
        if self._backend_mode == "notes":
            proc = self._run_git(
                ["for-each-ref", "--format=%(refname)", NOTES_REF_PREFIX],
                check=False,
            )
            return sorted(
                line.strip()[len(NOTES_REF_PREFIX):]
                for line in proc.stdout.splitlines()
                if line.strip().startswith(NOTES_REF_PREFIX)
            )
        if not self.log_dir.exists():
            return []
        return sorted(path.stem for path in self.log_dir.glob("*.jsonl"))
