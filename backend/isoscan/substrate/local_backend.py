# isoscan/substrate/local_backend.py
"""
Local process substrate for development and single-host deployments.

    bundle  →  directory under <root>/bundles/<name>, files and directory
               made read-only (0444 / 0555), metadata in <name>.json
    unit    →  a subprocess (own session / process group) started by a
               daemon thread, state in <root>/units/<name>/state.json,
               output captured to <root>/units/<name>/output.log

The scanner binaries must be installed on the host; the image name is
ignored. Attempts, the wall-clock deadline and the TTL are enforced here.
CPU and memory limits are NOT enforced. Use the Kubernetes substrate
when running untrusted code for real.

TTL is applied lazily: every list/get reaps finished units (and their
bundles) whose finished_at + ttl has passed.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import signal
import subprocess
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from isoscan.substrate.base import (
    KIND_BUNDLE,
    KIND_UNIT,
    PHASE_FAILED,
    PHASE_PENDING,
    PHASE_RUNNING,
    PHASE_SUCCEEDED,
    PHASE_TIMED_OUT,
    ANNOTATION_DIGEST,
    ArtifactExists,
    BundleInfo,
    ExecutionBackend,
    UnitSpec,
    UnitStatus,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


def _parse(ts: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(ts) if ts else None


class LocalProcessBackend(ExecutionBackend):

    name = "local"

    def __init__(self, root: str):
        self.root = os.path.abspath(root)
        self.bundles_dir = os.path.join(self.root, "bundles")
        self.units_dir = os.path.join(self.root, "units")
        os.makedirs(self.bundles_dir, exist_ok=True)
        os.makedirs(self.units_dir, exist_ok=True)

        self._lock = threading.Lock()
        self._procs: Dict[str, subprocess.Popen] = {}
        self._threads: Dict[str, threading.Thread] = {}
        self._cancelled: set = set()

    # ── Paths ───────────────────────────────────────────────────────

    def _bundle_path(self, name: str) -> str:
        return os.path.join(self.bundles_dir, name)

    def _bundle_meta_path(self, name: str) -> str:
        return os.path.join(self.bundles_dir, f"{name}.json")

    def _unit_path(self, name: str) -> str:
        return os.path.join(self.units_dir, name)

    def _state_path(self, name: str) -> str:
        return os.path.join(self._unit_path(name), "state.json")

    def _log_path(self, name: str) -> str:
        return os.path.join(self._unit_path(name), "output.log")

    def mount_path_for(self, bundle_name: str, default: str) -> str:
        return self._bundle_path(bundle_name)

    # ── Bundles ─────────────────────────────────────────────────────

    def create_bundle(self, name, files, labels, annotations) -> BundleInfo:
        path = self._bundle_path(name)
        try:
            os.makedirs(path)
        except FileExistsError:
            raise ArtifactExists(KIND_BUNDLE, name)

        for filename, content in files.items():
            file_path = os.path.join(path, filename)
            with open(file_path, "w", encoding="utf-8") as fh:
                fh.write(content)
            os.chmod(file_path, 0o444)
        os.chmod(path, 0o555)

        info = BundleInfo(
            name=name,
            digest=annotations.get(ANNOTATION_DIGEST),
            created_at=_now(),
            labels=dict(labels),
            annotations=dict(annotations),
        )
        with open(self._bundle_meta_path(name), "w", encoding="utf-8") as fh:
            json.dump({
                "name": name,
                "created_at": _iso(info.created_at),
                "labels": info.labels,
                "annotations": info.annotations,
            }, fh)
        return info

    def get_bundle(self, name: str) -> Optional[BundleInfo]:
        try:
            with open(self._bundle_meta_path(name), encoding="utf-8") as fh:
                meta = json.load(fh)
        except FileNotFoundError:
            return None
        annotations = meta.get("annotations") or {}
        return BundleInfo(
            name=meta["name"],
            digest=annotations.get(ANNOTATION_DIGEST),
            created_at=_parse(meta.get("created_at")),
            labels=meta.get("labels") or {},
            annotations=annotations,
        )

    def delete_bundle(self, name: str) -> bool:
        path = self._bundle_path(name)
        existed = os.path.isdir(path)
        if existed:
            os.chmod(path, 0o755)
            shutil.rmtree(path, ignore_errors=True)
        try:
            os.remove(self._bundle_meta_path(name))
            existed = True
        except FileNotFoundError:
            pass
        return existed

    def list_bundles(self) -> List[BundleInfo]:
        bundles = []
        for entry in sorted(os.listdir(self.bundles_dir)):
            if entry.endswith(".json"):
                info = self.get_bundle(entry[:-5])
                if info:
                    bundles.append(info)
        return bundles

    # ── Unit state ──────────────────────────────────────────────────

    def _write_state(self, name: str, state: dict) -> None:
        tmp = self._state_path(name) + ".tmp"
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(state, fh)
        os.replace(tmp, self._state_path(name))

    def _read_state(self, name: str) -> Optional[dict]:
        try:
            with open(self._state_path(name), encoding="utf-8") as fh:
                return json.load(fh)
        except FileNotFoundError:
            return None

    def _update_state(self, name: str, **changes) -> None:
        with self._lock:
            state = self._read_state(name)
            if state is None:
                return
            state.update(changes)
            self._write_state(name, state)

    # ── Units ───────────────────────────────────────────────────────

    def create_unit(self, spec: UnitSpec) -> UnitStatus:
        with self._lock:
            try:
                os.makedirs(self._unit_path(spec.name))
            except FileExistsError:
                raise ArtifactExists(KIND_UNIT, spec.name)
            self._cancelled.discard(spec.name)

            state = {
                "name": spec.name,
                "phase": PHASE_PENDING,
                "attempts": 0,
                "exit_code": None,
                "reason": None,
                "bundle_name": spec.bundle_name,
                "ttl_seconds": spec.ttl_seconds,
                "created_at": _iso(_now()),
                "started_at": None,
                "finished_at": None,
                "labels": spec.labels,
                "annotations": spec.annotations,
            }
            self._write_state(spec.name, state)

            thread = threading.Thread(
                target=self._run_unit,
                args=(spec,),
                name=f"unit-{spec.name}",
                daemon=True,
            )
            self._threads[spec.name] = thread
            thread.start()

        return self._status_from_state(state)

    def _run_unit(self, spec: UnitSpec) -> None:
        deadline = time.monotonic() + spec.timeout_seconds
        env = dict(os.environ)
        env.update(spec.env)
        env["HOME"] = self._unit_path(spec.name)

        self._update_state(spec.name, started_at=_iso(_now()))

        phase, exit_code, reason = PHASE_FAILED, None, None
        for attempt in range(1, spec.max_attempts + 1):
            if spec.name in self._cancelled:
                reason = "Cancelled"
                break

            self._update_state(spec.name, phase=PHASE_RUNNING, attempts=attempt)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                phase, reason = PHASE_TIMED_OUT, "DeadlineExceeded"
                break

            try:
                with open(self._log_path(spec.name), "w", encoding="utf-8") as log:
                    proc = subprocess.Popen(
                        spec.command,
                        stdout=log,
                        stderr=subprocess.STDOUT,
                        cwd=self._unit_path(spec.name),
                        env=env,
                        start_new_session=True,
                    )
                    with self._lock:
                        self._procs[spec.name] = proc
                        cancelled = spec.name in self._cancelled
                    if cancelled:
                        self._kill(proc)
                    try:
                        exit_code = proc.wait(timeout=remaining)
                    except subprocess.TimeoutExpired:
                        self._kill(proc)
                        phase, reason = PHASE_TIMED_OUT, "DeadlineExceeded"
                        break
                    finally:
                        with self._lock:
                            self._procs.pop(spec.name, None)
            except OSError as e:
                logger.warning(f"Unit {spec.name} attempt {attempt} could not start: {e}")
                exit_code, reason = 127, "StartError"
                continue

            if exit_code == 0:
                phase, reason = PHASE_SUCCEEDED, None
                break
            reason = "BackoffLimitExceeded"

        self._update_state(
            spec.name,
            phase=phase,
            exit_code=exit_code,
            reason=reason,
            finished_at=_iso(_now()),
        )
        logger.debug(f"Unit {spec.name} finished: {phase} (exit={exit_code})")

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            pass

    def _status_from_state(self, state: dict) -> UnitStatus:
        return UnitStatus(
            name=state["name"],
            phase=state["phase"],
            attempts=state.get("attempts") or 0,
            exit_code=state.get("exit_code"),
            reason=state.get("reason"),
            bundle_name=state.get("bundle_name"),
            created_at=_parse(state.get("created_at")),
            started_at=_parse(state.get("started_at")),
            finished_at=_parse(state.get("finished_at")),
            labels=state.get("labels") or {},
            annotations=state.get("annotations") or {},
        )

    def get_unit(self, name: str) -> Optional[UnitStatus]:
        self._reap_expired()
        with self._lock:
            state = self._read_state(name)
            alive = name in self._threads and self._threads[name].is_alive()
        if state is None:
            return None

        status = self._status_from_state(state)
        if not status.is_terminal and not alive:
            # Started by a previous process that is gone.
            status.phase = PHASE_FAILED
            status.reason = "Orphaned"
        return status

    def read_output(self, name: str) -> str:
        try:
            with open(self._log_path(name), encoding="utf-8", errors="replace") as fh:
                return fh.read()
        except FileNotFoundError:
            return ""

    def delete_unit(self, name: str) -> bool:
        with self._lock:
            self._cancelled.add(name)
            proc = self._procs.get(name)
        if proc is not None:
            self._kill(proc)

        with self._lock:
            thread = self._threads.pop(name, None)
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=10)
        if thread is None or not thread.is_alive():
            with self._lock:
                self._cancelled.discard(name)

        path = self._unit_path(name)
        if not os.path.isdir(path):
            return False
        shutil.rmtree(path, ignore_errors=True)
        return True

    def list_units(self) -> List[UnitStatus]:
        self._reap_expired()
        units = []
        for entry in sorted(os.listdir(self.units_dir)):
            status = self.get_unit(entry)
            if status:
                units.append(status)
        return units

    def _reap_expired(self) -> None:
        now = _now()
        for entry in os.listdir(self.units_dir):
            state = self._read_state(entry)
            if not state or not state.get("finished_at"):
                continue
            expires = _parse(state["finished_at"]) + timedelta(seconds=state.get("ttl_seconds") or 0)
            if expires <= now:
                logger.info(f"TTL expired for local unit {entry}; reclaiming")
                self.delete_unit(entry)
                if state.get("bundle_name"):
                    self.delete_bundle(state["bundle_name"])

    def close(self) -> None:
        with self._lock:
            names = list(self._procs)
        for name in names:
            self.delete_unit(name)
