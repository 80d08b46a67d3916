import contextvars
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional

from cluster_adapter.adapter import ClusterCommandError
from deadline import Deadline
from errors import DeadlineExceeded, PrerequisiteError
from models import Prerequisite
from observability import log_event


_INSTALL_LOCKS: dict[str, threading.Lock] = {}
_INSTALL_LOCKS_GUARD = threading.Lock()


def install_lock(name: str) -> threading.Lock:
    with _INSTALL_LOCKS_GUARD:
        lock = _INSTALL_LOCKS.get(name)
        if lock is None:
            lock = threading.Lock()
            _INSTALL_LOCKS[name] = lock
        return lock


def versions_match(installed: Optional[str], required: Optional[str]) -> bool:
    if installed is None:
        return False
    if not required:
        return True
    return installed.strip().lstrip("v") == required.strip().lstrip("v")


class PrerequisiteInstaller:
    def __init__(
        self,
        cluster,
        verify_attempts: int = 5,
        verify_base_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        max_workers: int = 4,
    ) -> None:
        self.cluster = cluster
        self.verify_attempts = max(verify_attempts, 1)
        self.verify_base_seconds = verify_base_seconds
        self.sleep = sleep
        self.max_workers = max_workers
        self._logger = logging.getLogger("relorch.prerequisites")

    def ensure(self, prerequisites: List[Prerequisite], deadline: Optional[Deadline] = None) -> List[dict]:
        """Converge every add-on to present-at-version; returns one entry per add-on.

        Presence checks run concurrently. Installs of the same add-on are
        serialized process-wide. Any failure is raised as ``PrerequisiteError``
        once every check has finished, so no install is left running behind
        the caller's back.
        """
        deadline = deadline or Deadline(None)
        deadline.check("cluster reachability check")
        try:
            self.cluster.cluster_info(timeout=deadline.bounded(None))
        except ClusterCommandError as exc:
            raise PrerequisiteError("cluster", str(exc)) from exc
        if not prerequisites:
            return []

        results: List[dict] = []
        errors: List[Exception] = []
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(prerequisites))) as executor:
            futures = [
                executor.submit(contextvars.copy_context().run, self._ensure_one, prerequisite, deadline)
                for prerequisite in prerequisites
            ]
            for future in futures:
                try:
                    results.append(future.result())
                except (PrerequisiteError, DeadlineExceeded) as exc:
                    errors.append(exc)
        for exc in errors:
            if isinstance(exc, DeadlineExceeded):
                raise exc
        if errors:
            raise errors[0]
        return results

    def _ensure_one(self, prerequisite: Prerequisite, deadline: Deadline) -> dict:
        installed = self._installed_version(prerequisite, deadline)
        if versions_match(installed, prerequisite.version):
            log_event("prerequisite_present", prerequisite=prerequisite.name, version=installed)
            return {"name": prerequisite.name, "version": installed, "action": "present"}

        with install_lock(prerequisite.name):
            # Another release may have installed it while this one waited.
            installed = self._installed_version(prerequisite, deadline)
            if versions_match(installed, prerequisite.version):
                log_event("prerequisite_present", prerequisite=prerequisite.name, version=installed)
                return {"name": prerequisite.name, "version": installed, "action": "present"}
            deadline.check(f"install of {prerequisite.name}")
            log_event(
                "prerequisite_install_started",
                prerequisite=prerequisite.name,
                installed_version=installed,
                required_version=prerequisite.version,
            )
            try:
                self.cluster.install_prerequisite(prerequisite.model_dump(), timeout=deadline.bounded(None))
            except ClusterCommandError as exc:
                log_event(
                    "prerequisite_install_failed",
                    level=logging.WARNING,
                    prerequisite=prerequisite.name,
                    error=str(exc),
                )
                raise PrerequisiteError(prerequisite.name, str(exc)) from exc
            version = self._verify(prerequisite, deadline)
        log_event("prerequisite_installed", prerequisite=prerequisite.name, version=version)
        return {"name": prerequisite.name, "version": version, "action": "installed"}

    def _verify(self, prerequisite: Prerequisite, deadline: Deadline) -> str:
        installed = None
        for attempt in range(self.verify_attempts):
            installed = self._installed_version(prerequisite, deadline)
            if versions_match(installed, prerequisite.version):
                return installed
            if attempt + 1 < self.verify_attempts:
                delay = deadline.bounded(self.verify_base_seconds * (2 ** attempt))
                self._logger.info(
                    "prerequisite.verify name=%s attempt=%s installed=%s retry_in=%s",
                    prerequisite.name,
                    attempt + 1,
                    installed,
                    delay,
                )
                if delay:
                    self.sleep(delay)
                deadline.check(f"verification of {prerequisite.name}")
        raise PrerequisiteError(
            prerequisite.name,
            f"not present at version {prerequisite.version or 'any'} after {self.verify_attempts} checks "
            f"(found {installed or 'nothing'})",
        )

    def _installed_version(self, prerequisite: Prerequisite, deadline: Deadline) -> Optional[str]:
        deadline.check(f"presence check of {prerequisite.name}")
        try:
            return self.cluster.prerequisite_version(prerequisite.model_dump(), timeout=deadline.bounded(None))
        except ClusterCommandError as exc:
            raise PrerequisiteError(prerequisite.name, str(exc)) from exc
