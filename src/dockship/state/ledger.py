"""Append-only deployment ledger."""

from __future__ import annotations

import json
import os
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from ..errors import DeploymentInProgress
from ..paths import lock_path_for
from ..utils.logging import get_logger
from .models import DeploymentRecord, Outcome, ServiceStatus, new_deploy_id, utcnow

logger = get_logger(__name__)

_RUNNING_OUTCOMES = (Outcome.SUCCESS, Outcome.ROLLED_BACK)


class DeploymentLedger(ABC):
    """Ledger of deploy attempts keyed by service.

    Subclasses only store rows; folding rows into attempts and the
    one-deploy-per-service rule live here.
    """

    @abstractmethod
    def _rows(self) -> List[DeploymentRecord]:
        """Every row ever appended, oldest first."""

    @abstractmethod
    def _append_row(self, record: DeploymentRecord) -> None:
        """Persist one row. Callers hold the exclusive section."""

    @abstractmethod
    def _exclusive(self):
        """Context manager excluding other writers."""

    # ------------------------------------------------------------------
    # reads

    def attempts(self, service: str) -> List[DeploymentRecord]:
        """Latest state of every attempt for `service`, oldest first."""
        latest: Dict[str, DeploymentRecord] = {}
        for row in self._rows():
            if row.service == service:
                # dict 保留首次插入顺序，值更新为最新行
                latest[row.deploy_id] = row
        return list(latest.values())

    def current(self, service: str) -> Optional[DeploymentRecord]:
        attempts = self.attempts(service)
        return attempts[-1] if attempts else None

    def history(self, service: str, limit: Optional[int] = None) -> List[DeploymentRecord]:
        """Attempts newest first."""
        attempts = list(reversed(self.attempts(service)))
        return attempts[:limit] if limit else attempts

    def get_last_success(
        self, service: str, *, exclude_digest: Optional[str] = None
    ) -> Optional[DeploymentRecord]:
        for record in reversed(self.attempts(service)):
            if record.outcome is not Outcome.SUCCESS:
                continue
            if exclude_digest and record.digest == exclude_digest:
                continue
            return record
        return None

    def rollback_target(self, service: str) -> Optional[DeploymentRecord]:
        """The newest success older than the running image.

        Successes that a later rollback moved away from are skipped, so
        repeated rollbacks keep walking back instead of returning to the
        image the previous rollback left.
        """
        running = self.running(service)
        if running is None:
            return None
        rolled_away = set()
        for record in reversed(self.attempts(service)):
            if record.outcome is Outcome.ROLLED_BACK:
                if record.previous_digest:
                    rolled_away.add(record.previous_digest)
                continue
            if record.outcome is not Outcome.SUCCESS:
                continue
            if running.digest and record.digest == running.digest:
                continue
            if record.digest in rolled_away:
                continue
            return record
        return None

    def running(self, service: str) -> Optional[DeploymentRecord]:
        """The attempt whose image should currently be serving traffic."""
        for record in reversed(self.attempts(service)):
            if record.outcome in _RUNNING_OUTCOMES:
                return record
        return None

    def status(self, service: str) -> ServiceStatus:
        attempts = self.attempts(service)
        return ServiceStatus(
            service=service,
            current=attempts[-1] if attempts else None,
            last_success=self.get_last_success(service),
            attempts=len(attempts),
        )

    # ------------------------------------------------------------------
    # writes

    def append(self, record: DeploymentRecord) -> DeploymentRecord:
        with self._exclusive():
            self._append_row(record)
        return record

    def record_start(
        self,
        service: str,
        image: str,
        *,
        force: bool = False,
        **fields: Any,
    ) -> DeploymentRecord:
        """Register a new in-progress attempt.

        Raises DeploymentInProgress if the service already has one, unless
        `force` is set, in which case that attempt is closed as abandoned.
        """
        with self._exclusive():
            current = self.current(service)
            if current is not None and current.outcome is Outcome.IN_PROGRESS:
                if not force:
                    raise DeploymentInProgress(
                        f"{service} is already being deployed (attempt {current.deploy_id}, "
                        f"started {current.started_at})",
                        service=service,
                        step="record_start",
                    )
                logger.warning("Abandoning stale attempt %s for %s", current.deploy_id, service)
                self._append_row(
                    current.evolve(
                        outcome=Outcome.ABANDONED,
                        finished_at=utcnow(),
                        error="superseded by a forced deploy",
                    )
                )
            record = DeploymentRecord(
                deploy_id=new_deploy_id(),
                service=service,
                image=image,
                **fields,
            )
            self._append_row(record)
        return record

    def record_outcome(
        self, record: DeploymentRecord, outcome: Outcome, **fields: Any
    ) -> DeploymentRecord:
        final = record.evolve(outcome=outcome, finished_at=utcnow(), **fields)
        return self.append(final)


class InMemoryLedger(DeploymentLedger):
    """Ledger kept in a list; for tests and embedding."""

    def __init__(self) -> None:
        self._records: List[DeploymentRecord] = []
        self._lock = threading.Lock()

    def _rows(self) -> List[DeploymentRecord]:
        return list(self._records)

    def _append_row(self, record: DeploymentRecord) -> None:
        self._records.append(record)

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        with self._lock:
            yield


class FileLedger(DeploymentLedger):
    """JSON-lines ledger file, one row per line, never rewritten."""

    def __init__(self, path: Union[str, Path], lock_timeout: float = 10.0) -> None:
        self.path = Path(path)
        self.lock_path = lock_path_for(self.path)
        self.lock_timeout = lock_timeout

    def _rows(self) -> List[DeploymentRecord]:
        if not self.path.exists():
            return []
        rows: List[DeploymentRecord] = []
        with self.path.open("r", encoding="utf-8") as handle:
            for line_no, line in enumerate(handle, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    rows.append(DeploymentRecord.from_dict(json.loads(line)))
                except (ValueError, KeyError) as exc:
                    # 进程崩溃可能留下半行
                    logger.warning("Skipping unreadable ledger line %s:%d: %s", self.path, line_no, exc)
        return rows

    def _append_row(self, record: DeploymentRecord) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record.to_dict(), ensure_ascii=False) + "\n")
            handle.flush()
            os.fsync(handle.fileno())

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self.lock_timeout
        while True:
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
                break
            except FileExistsError:
                if time.monotonic() >= deadline:
                    raise DeploymentInProgress(
                        f"Ledger {self.path} is locked by another process",
                        step="ledger_lock",
                        hint=f"remove {self.lock_path} if no dockship process is running",
                    )
                time.sleep(0.05)
        try:
            os.write(fd, str(os.getpid()).encode("ascii"))
            yield
        finally:
            os.close(fd)
            self.lock_path.unlink(missing_ok=True)
