"""In-memory vector store for semantic search.

Handles:
- Cosine similarity over exact (brute force) numpy scans
- Cascade removal of a document's vectors
- Whole-store snapshot/restore and file persistence
- Single-writer / multi-reader access
"""
import json
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

import numpy as np
import structlog

from wali.errors import DimensionMismatchError, FormatError, StorageError

logger = structlog.get_logger()

SNAPSHOT_VERSION = 1


@dataclass
class VectorRecord:
    """A stored passage with its embedding and attribution metadata."""

    id: str
    content: str
    embedding: List[float]
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def document_id(self) -> Optional[str]:
        return self.metadata.get("document_id")

    @property
    def document_name(self) -> Optional[str]:
        return self.metadata.get("document_name")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "embedding": [float(x) for x in self.embedding],
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class SearchHit:
    """A record paired with its similarity to the query."""

    record: VectorRecord
    score: float


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors.

    Returns 0.0 instead of raising when the dimensions differ, either vector
    has zero magnitude, or the result is not finite (NaN/inf components).
    """
    va = np.asarray(a, dtype=np.float64).ravel()
    vb = np.asarray(b, dtype=np.float64).ravel()

    if va.shape != vb.shape or va.size == 0:
        return 0.0

    magnitude = np.linalg.norm(va) * np.linalg.norm(vb)
    if magnitude == 0.0 or not np.isfinite(magnitude):
        return 0.0

    similarity = float(np.dot(va, vb) / magnitude)
    if not np.isfinite(similarity):
        return 0.0
    return max(-1.0, min(1.0, similarity))


def _cosine_scores(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Vectorised cosine of every matrix row against *query*, same rules as above."""
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        scores = (matrix @ query) / norms
    scores[~np.isfinite(scores) | (norms == 0.0)] = 0.0
    return np.clip(scores, -1.0, 1.0)


class ReadWriteLock:
    """Many concurrent readers or one writer; waiting writers block new readers."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class VectorIndex(ABC):
    """Backend-agnostic vector index interface.

    The in-memory store below scans every vector; an approximate
    nearest-neighbour backend only needs to implement these methods.
    """

    @abstractmethod
    def insert(self, record: VectorRecord) -> None:
        ...

    @abstractmethod
    def insert_many(self, records: Iterable[VectorRecord]) -> None:
        ...

    @abstractmethod
    def search(self, query_embedding: Sequence[float], k: int) -> List[SearchHit]:
        """Return up to *k* hits sorted by descending score."""
        ...

    @abstractmethod
    def remove_by_document(self, document_id: str) -> int:
        """Remove every record of *document_id*; returns how many were removed."""
        ...

    @abstractmethod
    def clear(self) -> None:
        ...

    @abstractmethod
    def snapshot(self) -> bytes:
        ...

    @abstractmethod
    def restore(self, data: bytes) -> None:
        """Replace the whole contents with a previous snapshot."""
        ...

    @abstractmethod
    def __len__(self) -> int:
        ...

    def is_empty(self) -> bool:
        return len(self) == 0


class InMemoryVectorStore(VectorIndex):
    """Exact cosine search over an in-memory float32 matrix.

    O(n*d) per query, which is fine at single-user desktop scale.
    """

    def __init__(self, dimension: Optional[int] = None):
        """Initialize the store.

        Args:
            dimension: Fixed embedding dimension; taken from the first insert if omitted
        """
        self._fixed_dimension = dimension
        self._lock = ReadWriteLock()
        self._records: List[VectorRecord] = []
        self._matrix = np.empty((0, dimension or 0), dtype=np.float32)
        self._dimension = dimension

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    def _to_rows(self, records: List[VectorRecord], dimension: Optional[int]) -> np.ndarray:
        """Validate embeddings and stack them into a matrix.

        Raises:
            DimensionMismatchError: If any embedding is empty or has the wrong length
        """
        if not records:
            return np.empty((0, dimension or 0), dtype=np.float32)

        expected = dimension if dimension is not None else len(records[0].embedding)
        for record in records:
            if len(record.embedding) == 0 or len(record.embedding) != expected:
                raise DimensionMismatchError(
                    f"Embedding dimension mismatch for record {record.id}: "
                    f"expected {expected}, got {len(record.embedding)}"
                )

        return np.asarray([r.embedding for r in records], dtype=np.float32)

    def insert(self, record: VectorRecord) -> None:
        self.insert_many([record])

    def insert_many(self, records: Iterable[VectorRecord]) -> None:
        """Append records; either all are added or none."""
        records = list(records)
        if not records:
            return

        with self._lock.write():
            rows = self._to_rows(records, self._dimension)
            if self._dimension is None:
                self._dimension = rows.shape[1]
                self._matrix = rows
            else:
                self._matrix = np.vstack([self._matrix, rows])
            self._records.extend(records)
            total = len(self._records)

        logger.debug("vectors_added", count=len(records), total_vectors=total)

    def search(self, query_embedding: Sequence[float], k: int) -> List[SearchHit]:
        """Find the *k* stored records most similar to *query_embedding*.

        Ties keep insertion order. A query of the wrong dimension scores 0.0
        against everything rather than failing.

        Args:
            query_embedding: Query vector
            k: Maximum number of hits

        Returns:
            Hits sorted by descending score, at most ``min(k, len(self))``
        """
        if k <= 0:
            return []

        with self._lock.read():
            if not self._records:
                return []

            query = np.asarray(query_embedding, dtype=np.float64).ravel()
            if query.shape[0] != self._dimension:
                logger.warning(
                    "query_dimension_mismatch",
                    expected=self._dimension,
                    got=query.shape[0],
                )
                scores = np.zeros(len(self._records), dtype=np.float64)
            else:
                scores = _cosine_scores(self._matrix.astype(np.float64), query)

            order = np.argsort(-scores, kind="stable")[:k]
            hits = [SearchHit(record=self._records[i], score=float(scores[i])) for i in order]

        logger.debug(
            "vector_search_completed",
            top_k=k,
            results_found=len(hits),
            top_score=hits[0].score if hits else None,
        )
        return hits

    def remove_by_document(self, document_id: str) -> int:
        with self._lock.write():
            keep = [
                i for i, r in enumerate(self._records)
                if r.document_id is None or str(r.document_id) != str(document_id)
            ]
            removed = len(self._records) - len(keep)
            if removed:
                self._records = [self._records[i] for i in keep]
                self._matrix = self._matrix[keep]
            self._reset_dimension_if_empty()

        logger.info("vectors_removed", document_id=document_id, count=removed)
        return removed

    def clear(self) -> None:
        with self._lock.write():
            self._records = []
            self._reset_dimension_if_empty()

    def _reset_dimension_if_empty(self) -> None:
        if not self._records:
            self._dimension = self._fixed_dimension
            self._matrix = np.empty((0, self._dimension or 0), dtype=np.float32)

    def records(self) -> List[VectorRecord]:
        """Copy of the stored records in insertion order."""
        with self._lock.read():
            return list(self._records)

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._records)

    def snapshot(self) -> bytes:
        """Serialize the whole store to JSON bytes."""
        with self._lock.read():
            payload = {
                "version": SNAPSHOT_VERSION,
                "dimension": self._dimension,
                "records": [r.to_dict() for r in self._records],
            }
        return json.dumps(payload, ensure_ascii=False).encode("utf-8")

    def restore(self, data: bytes) -> None:
        """Replace the current contents with a snapshot.

        Raises:
            FormatError: If the snapshot cannot be decoded
            DimensionMismatchError: If its vectors disagree on dimension
        """
        try:
            payload = json.loads(data.decode("utf-8"))
            if isinstance(payload, list):
                raw_records = payload
            else:
                raw_records = payload["records"]
            records = [
                VectorRecord(
                    id=str(item["id"]),
                    content=item["content"],
                    embedding=[float(x) for x in item["embedding"]],
                    metadata=dict(item.get("metadata") or {}),
                )
                for item in raw_records
            ]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise FormatError(f"Invalid vector snapshot: {e}") from e

        with self._lock.write():
            rows = self._to_rows(records, self._fixed_dimension)
            self._records = records
            self._matrix = rows
            self._dimension = rows.shape[1] if records else self._fixed_dimension

        logger.info("vector_store_restored", vector_count=len(records))

    def save(self, path: Path) -> None:
        """Write a snapshot to *path*, replacing any previous file atomically.

        Raises:
            StorageError: If the file cannot be written
        """
        path = Path(path)
        data = self.snapshot()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=path.name, suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise StorageError(f"Failed to save vector store: {e}") from e

        logger.info("vector_store_saved", path=str(path), vector_count=len(self))

    def load(self, path: Path) -> bool:
        """Restore from *path* if it exists.

        Returns:
            True if a snapshot was loaded, False if the file does not exist

        Raises:
            StorageError: If the file exists but cannot be read
            FormatError: If the file is not a valid snapshot
        """
        path = Path(path)
        if not path.exists():
            logger.info("no_vector_snapshot_found", path=str(path))
            return False

        try:
            data = path.read_bytes()
        except OSError as e:
            raise StorageError(f"Failed to load vector store: {e}") from e

        self.restore(data)
        return True

    def get_stats(self) -> Dict[str, Any]:
        with self._lock.read():
            documents = {r.document_id for r in self._records if r.document_id is not None}
            return {
                "vector_count": len(self._records),
                "dimension": self._dimension,
                "document_count": len(documents),
            }
