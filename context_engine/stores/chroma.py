"""Chroma-backed vector store."""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import chromadb

from ..errors import InvalidInput
from ..rag.filters import CONTENT_FIELD, FilterCondition, FilterExpression, LogicalOperator
from ..rag.interfaces import VectorStore
from ..rag.models import Chunk, VectorCandidate


logger = logging.getLogger(__name__)

DEFAULT_COLLECTION = "context_engine"

# Extra candidates fetched when part of a filter has to be applied in Python
POSTFILTER_FACTOR = 5

# Metadata fields stored as comma-joined strings
DEFAULT_LIST_FIELDS = frozenset({"tags"})

PUSHDOWN_OPERATORS = {"eq": "$eq", "in": "$in", "gt": "$gt", "gte": "$gte", "lt": "$lt", "lte": "$lte"}
SCALAR_TYPES = (str, int, float, bool)


def sanitize_metadata(metadata: Dict[str, Any], list_fields: Set[str]) -> Dict[str, Any]:
    """Convert metadata to the scalar values Chroma accepts.

    Lists are comma-joined (and their field recorded in ``list_fields``),
    datetimes become ISO strings, dicts become JSON, None values are dropped.
    """
    clean = {}
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple, set, frozenset)):
            list_fields.add(key)
            clean[key] = ",".join(str(v) for v in value)
        elif isinstance(value, datetime):
            clean[key] = value.isoformat()
        elif isinstance(value, dict):
            clean[key] = json.dumps(value, sort_keys=True, default=str)
        elif isinstance(value, SCALAR_TYPES):
            clean[key] = value
        else:
            clean[key] = str(value)
    return clean


def translate_filter(expr: Optional[FilterExpression],
                     list_fields=DEFAULT_LIST_FIELDS) -> Tuple[Optional[Dict], bool]:
    """Translate a filter tree into a Chroma ``where`` clause.

    Returns (where, exact). When ``exact`` is False the clause is looser than
    the filter and results must be re-checked with ``expr.matches``. Content
    conditions, NOT, negative operators, non-numeric range comparisons and
    list-valued fields are always re-checked in Python.
    """
    if expr is None or expr.is_empty():
        return None, True
    return _translate(expr, frozenset(list_fields))


def _translate(node, list_fields) -> Tuple[Optional[Dict], bool]:
    if isinstance(node, FilterCondition):
        return _translate_condition(node, list_fields)

    if node.operator is LogicalOperator.NOT:
        return None, False

    parts = [_translate(child, list_fields) for child in node.conditions]
    if node.operator is LogicalOperator.AND:
        clauses = [where for where, _ in parts if where is not None]
        exact = all(e for _, e in parts)
        if not clauses:
            return None, exact
        if len(clauses) == 1:
            return clauses[0], exact
        return {"$and": clauses}, exact

    # OR can only be pushed down when every branch translates exactly
    if not parts or not all(where is not None and exact for where, exact in parts):
        return None, False
    clauses = [where for where, _ in parts]
    if len(clauses) == 1:
        return clauses[0], True
    return {"$or": clauses}, True


def _translate_condition(cond: FilterCondition, list_fields) -> Tuple[Optional[Dict], bool]:
    if cond.field == CONTENT_FIELD or cond.field in list_fields:
        return None, False
    op = PUSHDOWN_OPERATORS.get(cond.operator)
    if op is None:
        return None, False
    value = cond.value
    if op in ("$gt", "$gte", "$lt", "$lte"):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None, False
    elif op == "$in":
        value = list(value)
        if not value or not all(isinstance(v, SCALAR_TYPES) for v in value):
            return None, False
    elif not isinstance(value, SCALAR_TYPES):
        return None, False
    return {cond.field: {op: value}}, True


def _to_float_tuple(embedding) -> Optional[Tuple[float, ...]]:
    if embedding is None:
        return None
    return tuple(float(x) for x in embedding)


class ChromaVectorStore(VectorStore):
    """VectorStore over a Chroma collection using cosine distance."""

    def __init__(self, path: Optional[str] = None, collection_name: str = DEFAULT_COLLECTION,
                 client=None, list_fields=DEFAULT_LIST_FIELDS):
        """Open (or create) the collection.

        Args:
            path: Directory for a persistent client; in-memory when None
            collection_name: Chroma collection name
            client: Existing chromadb client, overrides ``path``
            list_fields: Metadata fields known to hold lists
        """
        if client is None:
            client = chromadb.PersistentClient(path=path) if path else chromadb.EphemeralClient()
        self.client = client
        self.collection = client.get_or_create_collection(
            name=collection_name, metadata={"hnsw:space": "cosine"})
        self.list_fields: Set[str] = set(list_fields)

    def upsert(self, chunks: Sequence[Chunk]):
        chunks = list(chunks)
        if not chunks:
            return
        missing = [c.id for c in chunks if c.embedding is None]
        if missing:
            raise InvalidInput(f"Chunks without embeddings cannot be stored: {missing[:5]}")

        metadatas = []
        for c in chunks:
            meta = dict(c.metadata)
            meta["document_id"] = c.document_id
            meta["chunk_index"] = c.index
            metadatas.append(sanitize_metadata(meta, self.list_fields))
        self.collection.upsert(
            ids=[c.id for c in chunks],
            embeddings=[list(c.embedding) for c in chunks],
            documents=[c.content for c in chunks],
            metadatas=metadatas,
        )
        logger.debug("Upserted %d chunks into %s", len(chunks), self.collection.name)

    def delete(self, ids: Sequence[str]):
        ids = list(ids)
        if ids:
            self.collection.delete(ids=ids)

    def get(self, id: str) -> Optional[VectorCandidate]:
        result = self.collection.get(ids=[id], include=["documents", "metadatas", "embeddings"])
        if not result["ids"]:
            return None
        embeddings = result.get("embeddings")
        embedding = embeddings[0] if embeddings is not None and len(embeddings) else None
        return VectorCandidate(
            id=result["ids"][0],
            score=1.0,
            metadata=dict(result["metadatas"][0] or {}),
            content=result["documents"][0] or "",
            embedding=_to_float_tuple(embedding),
        )

    def count(self) -> int:
        return self.collection.count()

    def query(self, vector, top_k, filter=None, include_metadata=True) -> List[VectorCandidate]:
        if top_k <= 0:
            return []
        where, exact = translate_filter(filter, self.list_fields)

        if vector is None:
            candidates = self._scan(where, top_k if exact else None)
        else:
            candidates = self._similar(vector, top_k if exact else top_k * POSTFILTER_FACTOR, where)

        if not exact:
            candidates = [c for c in candidates if filter.matches(c.metadata, c.content)]
        if not include_metadata:
            candidates = [VectorCandidate(id=c.id, score=c.score, content=c.content) for c in candidates]
        return candidates[:top_k]

    def _scan(self, where, limit) -> List[VectorCandidate]:
        kwargs = {"include": ["documents", "metadatas"]}
        if where is not None:
            kwargs["where"] = where
        if limit is not None:
            kwargs["limit"] = limit
        result = self.collection.get(**kwargs)
        return [
            VectorCandidate(id=i, score=1.0, metadata=dict(m or {}), content=d or "")
            for i, d, m in zip(result["ids"], result["documents"], result["metadatas"])
        ]

    def _similar(self, vector, n_results, where) -> List[VectorCandidate]:
        total = self.collection.count()
        if total == 0:
            return []
        kwargs = {
            "query_embeddings": [list(vector)],
            "n_results": min(n_results, total),
            "include": ["documents", "metadatas", "distances"],
        }
        if where is not None:
            kwargs["where"] = where
        result = self.collection.query(**kwargs)
        ids = result["ids"][0] if result["ids"] else []
        documents = result["documents"][0] if result["documents"] else []
        metadatas = result["metadatas"][0] if result["metadatas"] else []
        distances = result["distances"][0] if result["distances"] else []
        return [
            # Cosine distance is in [0, 2]; map it onto a [0, 1] similarity
            VectorCandidate(id=i, score=1 - dist / 2, metadata=dict(m or {}), content=d or "")
            for i, d, m, dist in zip(ids, documents, metadatas, distances)
        ]
