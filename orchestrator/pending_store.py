"""
Pending Operation Store

Persists operations suspended while an agent finishes work asynchronously,
so a notification can resume them after a restart.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional, Tuple
import hashlib
import logging
import os
import tempfile

from shared.schemas import PendingOperation

logger = logging.getLogger(__name__)


class PendingOperationStore(ABC):
    """Storage interface for PendingOperation records keyed by (operation_id, agent_id)"""

    @abstractmethod
    def save(self, record: PendingOperation) -> None:
        pass

    @abstractmethod
    def get(self, operation_id: str, agent_id: str) -> Optional[PendingOperation]:
        pass

    @abstractmethod
    def delete(self, operation_id: str, agent_id: str) -> bool:
        pass

    @abstractmethod
    def list_pending(self) -> List[PendingOperation]:
        """Records that have not reached a terminal state"""
        pass


class InMemoryPendingStore(PendingOperationStore):
    """Lock-protected dict; lost on restart"""

    def __init__(self):
        self._records: Dict[Tuple[str, str], PendingOperation] = {}
        self._lock = Lock()

    def save(self, record: PendingOperation) -> None:
        with self._lock:
            self._records[(record.operation_id, record.agent_id)] = record.model_copy(deep=True)

    def get(self, operation_id: str, agent_id: str) -> Optional[PendingOperation]:
        with self._lock:
            record = self._records.get((operation_id, agent_id))
            return record.model_copy(deep=True) if record else None

    def delete(self, operation_id: str, agent_id: str) -> bool:
        with self._lock:
            return self._records.pop((operation_id, agent_id), None) is not None

    def list_pending(self) -> List[PendingOperation]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._records.values() if not r.is_finished]


class FilePendingStore(PendingOperationStore):
    """
    One JSON file per (operation_id, agent_id) in a directory.

    Writes go to a temp file in the same directory and are renamed into place,
    so a reader never sees a half-written record.
    """

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()

    def _path(self, operation_id: str, agent_id: str) -> Path:
        # Ids are caller- and agent-controlled; hash them into a safe file name
        key = hashlib.sha256(f"{operation_id}\0{agent_id}".encode("utf-8")).hexdigest()
        return self.directory / f"{key}.json"

    def _atomic_write(self, path: Path, content: str) -> None:
        temp_fd, temp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp", prefix=".pending_")
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(temp_path, path)
        except Exception:
            if Path(temp_path).exists():
                Path(temp_path).unlink()
            raise

    def save(self, record: PendingOperation) -> None:
        path = self._path(record.operation_id, record.agent_id)
        with self._lock:
            self._atomic_write(path, record.to_json())
        logger.debug(f"Saved pending record {record.operation_id}/{record.agent_id} to {path.name}")

    def get(self, operation_id: str, agent_id: str) -> Optional[PendingOperation]:
        path = self._path(operation_id, agent_id)
        if not path.is_file():
            return None
        return PendingOperation.from_json(path.read_text(encoding="utf-8"))

    def delete(self, operation_id: str, agent_id: str) -> bool:
        path = self._path(operation_id, agent_id)
        with self._lock:
            if not path.is_file():
                return False
            path.unlink()
        return True

    def list_pending(self) -> List[PendingOperation]:
        records = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                record = PendingOperation.from_json(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.warning(f"Skipping unreadable pending record {path.name}: {e}")
                continue
            if not record.is_finished:
                records.append(record)
        return records
