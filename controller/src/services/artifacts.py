"""
Content-addressed artifact store.

Artifacts are identified by the SHA-256 of their bytes, so storing the same
content twice returns the same ID and concurrent puts of identical content
are idempotent. Stored bytes are never modified.
"""

import hashlib
import logging
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, Field

from controller.src.errors import ArtifactNotFoundError
from controller.src.models.run import utcnow

logger = logging.getLogger(__name__)

def content_address(data: bytes) -> str:
    return "sha256:" + hashlib.sha256(data).hexdigest()

class ArtifactInfo(BaseModel):
    id: str
    name: Optional[str] = None
    producer: str
    size: int
    persist: bool = False
    runs: Set[str] = set()
    created_at: datetime = Field(default_factory=utcnow)

class ArtifactStore:
    """In-memory artifact store, scoped to runs and garbage-collected by retention."""

    def __init__(self, retention: float = 86400):
        self.retention = timedelta(seconds=retention)
        self._blobs: Dict[str, bytes] = {}
        self._info: Dict[str, ArtifactInfo] = {}
        self._released: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def put(
        self,
        data: bytes,
        run_id: str,
        producer: str,
        name: Optional[str] = None,
        persist: bool = False,
    ) -> str:
        """Store `data` and return its content address."""
        if not isinstance(data, (bytes, bytearray)):
            raise TypeError("Artifacts must be bytes")
        data = bytes(data)
        artifact_id = content_address(data)

        with self._lock:
            info = self._info.get(artifact_id)
            if info is None:
                self._blobs[artifact_id] = data
                info = ArtifactInfo(
                    id=artifact_id,
                    name=name,
                    producer=producer,
                    size=len(data),
                    persist=persist,
                )
                self._info[artifact_id] = info
                logger.info(f"Stored artifact {artifact_id} ({len(data)} bytes) from {producer}")
            else:
                logger.debug(f"Artifact {artifact_id} already stored; reusing")
                if persist:
                    info.persist = True
            info.runs.add(run_id)

        return artifact_id

    def get(self, artifact_id: str) -> bytes:
        with self._lock:
            try:
                return self._blobs[artifact_id]
            except KeyError:
                raise ArtifactNotFoundError(f"Artifact {artifact_id} not found")

    def info(self, artifact_id: str) -> ArtifactInfo:
        with self._lock:
            try:
                return self._info[artifact_id].model_copy(deep=True)
            except KeyError:
                raise ArtifactNotFoundError(f"Artifact {artifact_id} not found")

    def exists(self, artifact_id: str) -> bool:
        with self._lock:
            return artifact_id in self._blobs

    def persist(self, artifact_id: str):
        """Keep an artifact beyond its runs' retention window."""
        with self._lock:
            if artifact_id not in self._info:
                raise ArtifactNotFoundError(f"Artifact {artifact_id} not found")
            self._info[artifact_id].persist = True

    def release_run(self, run_id: str, now: Optional[datetime] = None):
        """Mark a run as finished; its retention window starts now."""
        with self._lock:
            self._released[run_id] = now or utcnow()

    def collect_garbage(self, now: Optional[datetime] = None) -> List[str]:
        """
        Remove artifacts whose every run has been released for longer than
        the retention window. Persisted artifacts are kept.
        Returns the removed IDs.
        """
        now = now or utcnow()
        removed = []
        with self._lock:
            for artifact_id, info in list(self._info.items()):
                if info.persist:
                    continue
                expired = all(
                    run_id in self._released and now - self._released[run_id] >= self.retention
                    for run_id in info.runs
                )
                if expired:
                    del self._info[artifact_id]
                    del self._blobs[artifact_id]
                    removed.append(artifact_id)

            live_runs = {run_id for info in self._info.values() for run_id in info.runs}
            for run_id in list(self._released):
                if run_id not in live_runs:
                    del self._released[run_id]

        if removed:
            logger.info(f"Garbage collected {len(removed)} artifacts")
        return removed

    def __len__(self):
        with self._lock:
            return len(self._blobs)
