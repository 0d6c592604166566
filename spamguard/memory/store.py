"""LanceDB-backed similarity memory of past spam classifications.

Each classified email is stored with an embedding of its content. Before a
new email is classified, the most similar past emails (and any human
corrections of them) are retrieved and shown to the model as context.

The vector column is a fixed-size list, so its width is pinned to the
embedding model's output dimension when the table is created. Switching to
a model with a different width requires an explicit, destructive rebuild.
"""

import asyncio
import json
import logging
import math
import uuid
from datetime import UTC, datetime
from pathlib import Path

import lancedb
import numpy as np
import pyarrow as pa
import pyarrow.compute as pc

from spamguard.errors import SchemaMismatchError, TransientBackendError
from spamguard.memory.embedding import Embedder
from spamguard.schemas.email import Email
from spamguard.schemas.memory import SimilarEmail, SimilarityRecord, UserValidation
from spamguard.schemas.processing import ClassificationResult

logger = logging.getLogger(__name__)

TABLE_NAME = "emails"
META_FILE = "memory_meta.json"

# IVF-PQ training needs at least 256 rows.
INDEX_MIN_ROWS = 256
DEFAULT_SEARCH_PARTITIONS = 20
REFINE_FACTOR = 10


def memory_text(subject: str, body: str) -> str:
    """Text that is embedded for storage and for queries."""
    return f"{subject} {body}".strip()


def email_schema(dimension: int) -> pa.Schema:
    return pa.schema(
        [
            pa.field("id", pa.string(), nullable=False),
            pa.field("email_id", pa.string(), nullable=False),
            pa.field("account_id", pa.string(), nullable=False),
            pa.field("subject", pa.string(), nullable=False),
            pa.field("sender", pa.string(), nullable=False),
            pa.field("body", pa.string(), nullable=False),
            pa.field("score", pa.int32(), nullable=False),
            pa.field("reasoning", pa.string(), nullable=False),
            pa.field("is_spam", pa.bool_(), nullable=False),
            pa.field("analyzed_at", pa.string(), nullable=False),
            pa.field("user_validation", pa.string(), nullable=False),
            pa.field("vector", pa.list_(pa.float32(), dimension), nullable=False),
        ]
    )


def _sql_string(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _num_sub_vectors(dimension: int) -> int:
    """Largest divisor of ``dimension`` not above ``dimension // 16`` (at least 1)."""
    n = max(1, dimension // 16)
    while dimension % n:
        n -= 1
    return n


class SimilarityMemory:
    """Persistent embedding store with nearest-neighbour search.

    Usage::

        memory = SimilarityMemory("/path/to/memory.lancedb", Embedder(backend, "mxbai-embed-large"))
        await memory.remember(email, result, is_spam=True)
        similar = await memory.search("You won a prize", k=5)
    """

    def __init__(
        self,
        db_path: str | Path,
        embedder: Embedder | None = None,
        *,
        index_min_rows: int = INDEX_MIN_ROWS,
        search_partitions: int = DEFAULT_SEARCH_PARTITIONS,
    ) -> None:
        self._db_path = Path(db_path)
        self._db_path.mkdir(parents=True, exist_ok=True)
        self._meta_path = self._db_path / META_FILE
        self._embedder = embedder
        self._index_min_rows = index_min_rows
        self._search_partitions = search_partitions

        self._db = lancedb.connect(str(self._db_path))
        self._table = None
        if TABLE_NAME in self._db.table_names():
            self._table = self._db.open_table(TABLE_NAME)

    def close(self) -> None:
        self._table = None

    def __enter__(self) -> "SimilarityMemory":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # --- Schema ---

    def _read_meta(self) -> dict:
        if not self._meta_path.exists():
            return {}
        return json.loads(self._meta_path.read_text())

    @property
    def dimension(self) -> int | None:
        if self._table is None:
            return None
        return self._table.schema.field("vector").type.list_size

    @property
    def embed_model(self) -> str | None:
        if self._table is None:
            return None
        return self._read_meta().get("embed_model") or None

    @property
    def indexed(self) -> bool:
        """True once an ANN index exists on the vector column."""
        if self._table is None:
            return False
        return any("vector" in index.columns for index in self._table.list_indices())

    def _create_schema(self, dimension: int, embed_model: str) -> None:
        self._table = self._db.create_table(TABLE_NAME, schema=email_schema(dimension))
        self._meta_path.write_text(json.dumps({"embed_model": embed_model, "dimension": dimension}))
        logger.info("Created similarity store for %s (dimension %d)", embed_model or "?", dimension)

    def _drop_schema(self) -> int:
        deleted = self.count()
        if TABLE_NAME in self._db.table_names():
            self._db.drop_table(TABLE_NAME)
        self._meta_path.unlink(missing_ok=True)
        self._table = None
        return deleted

    def check_schema(self, *, width: int | None = None, model: str | None = None) -> None:
        """Raise SchemaMismatchError if ``width``/``model`` don't match the store.

        An empty store without a schema accepts anything.
        """
        dimension = self.dimension
        if dimension is None:
            return
        if width is not None and width != dimension:
            raise SchemaMismatchError(
                f"Embedding width {width} does not match stored width {dimension}; "
                "rebuild the similarity memory to switch models"
            )
        stored_model = self.embed_model
        if model and stored_model and model != stored_model:
            raise SchemaMismatchError(
                f"Embedding model {model!r} differs from stored model {stored_model!r}; "
                "rebuild the similarity memory to switch models"
            )

    def rebuild(self, *, embed_model: str, dimension: int, confirm: bool = False) -> int:
        """Delete every record and re-create storage for a new model.

        Destructive; refuses unless ``confirm`` is True.

        Returns:
            Number of records deleted.
        """
        if not confirm:
            raise SchemaMismatchError(
                "Rebuilding the similarity memory deletes all stored emails; "
                "pass confirm=True to proceed"
            )
        old_model, old_dimension = self.embed_model, self.dimension
        deleted = self._drop_schema()
        self._create_schema(dimension, embed_model)
        logger.warning(
            "Rebuilt similarity memory: %s/%s -> %s/%d, deleted %d record(s)",
            old_model,
            old_dimension,
            embed_model,
            dimension,
            deleted,
        )
        return deleted

    def clear_all(self) -> int:
        """Delete every record and forget the schema. Returns records deleted."""
        deleted = self._drop_schema()
        logger.warning("Cleared similarity memory, deleted %d record(s)", deleted)
        return deleted

    # --- Writes ---

    def insert(self, record: SimilarityRecord, *, embed_model: str | None = None) -> None:
        """Store a record. The first insert fixes the store's dimension.

        Raises:
            SchemaMismatchError: If the vector width (or model) differs from
                the store's.
        """
        vector = np.asarray(record.vector, dtype=np.float32)
        if vector.ndim != 1 or vector.size == 0:
            raise SchemaMismatchError("Similarity records need a non-empty 1-D vector")

        if self._table is None:
            self._create_schema(vector.size, embed_model or "")
        self.check_schema(width=vector.size, model=embed_model)

        row = {
            "id": record.id,
            "email_id": record.email_id,
            "account_id": record.account_id,
            "subject": record.subject,
            "sender": record.sender,
            "body": record.body,
            "score": record.score,
            "reasoning": record.reasoning,
            "is_spam": record.is_spam,
            "analyzed_at": record.analyzed_at.isoformat(),
            "user_validation": record.user_validation.value,
            "vector": vector.tolist(),
        }
        self._table.add(pa.Table.from_pylist([row], schema=self._table.schema))
        self._ensure_index()

    def _ensure_index(self) -> None:
        """Build the ANN index once the table is large enough to train it."""
        if self.indexed:
            return
        rows = self.count()
        if rows < self._index_min_rows:
            return
        dimension = self.dimension
        try:
            self._table.create_index(
                metric="cosine",
                num_partitions=max(1, int(math.sqrt(rows))),
                num_sub_vectors=_num_sub_vectors(dimension),
                vector_column_name="vector",
            )
        except Exception:
            # Search still works without the index, as a flat scan.
            logger.warning("Could not build vector index over %d row(s)", rows, exc_info=True)
            return
        logger.info("Built vector index over %d row(s)", rows)

    async def remember(
        self,
        email: Email,
        result: ClassificationResult,
        *,
        is_spam: bool,
    ) -> SimilarityRecord:
        """Embed a freshly classified email and store it."""
        if self._embedder is None:
            raise RuntimeError("SimilarityMemory has no embedder")
        self.check_schema(model=self._embedder.model)

        vector = await self._embedder.embed(memory_text(email.subject, email.content))
        record = SimilarityRecord(
            id=uuid.uuid4().hex,
            email_id=email.id,
            account_id=email.account_id,
            subject=email.subject,
            sender=email.sender,
            body=email.content,
            score=result.score,
            reasoning=result.reasoning,
            is_spam=is_spam,
            analyzed_at=datetime.now(UTC),
            vector=vector.tolist(),
        )
        await asyncio.to_thread(self.insert, record, embed_model=self._embedder.model)
        logger.debug("Remembered email %s (score=%d)", email.id, result.score)
        return record

    def set_user_validation(self, email_id: str, validation: UserValidation) -> int:
        """Record a human verdict for every stored copy of ``email_id``.

        Only annotates future prompts; the stored score and reasoning are
        left as the AI produced them. Returns the number of rows updated.
        """
        if self._table is None:
            return 0
        where = f"email_id = {_sql_string(email_id)}"
        matched = self._table.count_rows(where)
        if matched:
            self._table.update(where=where, values={"user_validation": UserValidation(validation).value})
        return matched

    # --- Reads ---

    def count(self) -> int:
        if self._table is None:
            return 0
        return self._table.count_rows()

    def get(self, email_id: str) -> list[SimilarityRecord]:
        """All stored records for ``email_id``."""
        if self._table is None:
            return []
        rows = self._table.to_arrow().filter(pc.field("email_id") == email_id).to_pylist()
        return [self._row_to_record(row, SimilarityRecord) for row in rows]

    async def search(
        self,
        query_text: str,
        k: int = 5,
        account_id: str | None = None,
    ) -> list[SimilarEmail]:
        """Most similar stored emails to ``query_text``, nearest first.

        Returns an empty list when the store is empty or the embedding
        backend is unavailable; never raises for those cases.
        """
        if k <= 0 or self.count() == 0:
            return []
        if self._embedder is None:
            logger.warning("Similarity search skipped: no embedding model configured")
            return []

        try:
            self.check_schema(model=self._embedder.model)
            query = await self._embedder.embed(query_text)
            return await asyncio.to_thread(self.search_vector, query, k, account_id)
        except (TransientBackendError, SchemaMismatchError) as exc:
            logger.warning("Similarity search unavailable, continuing without context: %s", exc)
            return []

    def search_vector(
        self,
        query: np.ndarray,
        k: int = 5,
        account_id: str | None = None,
    ) -> list[SimilarEmail]:
        """Nearest stored emails to an already-embedded query vector.

        The account filter is applied before the vector search, so a narrow
        filter still returns up to ``k`` rows.
        """
        query = np.asarray(query, dtype=np.float32)
        if k <= 0 or self.count() == 0:
            return []
        self.check_schema(width=query.size)

        builder = self._table.search(query, vector_column_name="vector").distance_type("cosine").limit(k)
        if account_id is not None:
            builder = builder.where(f"account_id = {_sql_string(account_id)}", prefilter=True)
        if self.indexed:
            builder = builder.nprobes(self._search_partitions).refine_factor(REFINE_FACTOR)

        results = []
        for row in builder.to_list():
            hit = self._row_to_record(row, SimilarEmail)
            hit.distance = float(row["_distance"])
            results.append(hit)
        return results

    @staticmethod
    def _row_to_record(row: dict, cls: type[SimilarityRecord]) -> SimilarityRecord:
        return cls(
            id=row["id"],
            email_id=row["email_id"],
            account_id=row["account_id"],
            subject=row["subject"],
            sender=row["sender"],
            body=row["body"],
            score=row["score"],
            reasoning=row["reasoning"],
            is_spam=row["is_spam"],
            analyzed_at=datetime.fromisoformat(row["analyzed_at"]),
            user_validation=UserValidation(row["user_validation"]),
        )
