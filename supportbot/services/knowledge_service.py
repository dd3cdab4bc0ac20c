"""Q&A retrieval over a prebuilt embedding index (``data/qa_index.json``).

The index is produced offline and looks like::

    {"generated_at": "...", "embedding_model": "...", "count": 2,
     "items": [{"id": "1", "question": "...", "answer": "...",
                "meta": {"category": "...", "keywords": "..."}, "emb": [...]}]}

Search is a linear scan of dot products over L2-normalised vectors, which is
cosine similarity. Corpora here are a few hundred rows.
"""

import json
import math
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

from supportbot.logging_config import get_logger

logger = get_logger("knowledge_service")


class IndexNotFoundError(Exception):
    def __init__(self, path: Path, detail: Optional[str] = None):
        self.path = path
        message = f"Q&A index not available: {path}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


def l2_normalize(vector: Sequence[float]) -> List[float]:
    norm = math.sqrt(sum(value * value for value in vector))
    if norm == 0:
        return list(vector)
    return [value / norm for value in vector]


def dot_product(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b):
        raise ValueError(f"Vector length mismatch: {len(a)} vs {len(b)}")
    return sum(x * y for x, y in zip(a, b))


def top_k(items: Sequence, scores: Sequence[float], k: int) -> List[tuple]:
    """(item, score) pairs, best first. Ties keep index order."""
    if len(items) != len(scores):
        raise ValueError("Items and scores length mismatch")
    ranked = sorted(zip(items, scores), key=lambda pair: pair[1], reverse=True)
    return ranked[: max(0, k)]


class KnowledgeBase:
    def __init__(self, index_path: Union[str, Path], embed: Callable[[str], List[float]]):
        self.index_path = Path(index_path)
        self._embed = embed
        self._index: Optional[dict] = None
        self._vectors: List[List[float]] = []

    def exists(self) -> bool:
        return self.index_path.exists()

    @property
    def loaded(self) -> bool:
        return self._index is not None

    def load(self) -> dict:
        """Load and cache the index. Raises IndexNotFoundError when missing or unreadable."""
        if self._index is not None:
            return self._index
        if not self.index_path.exists():
            raise IndexNotFoundError(self.index_path)
        try:
            index = json.loads(self.index_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise IndexNotFoundError(self.index_path, str(exc)) from exc

        items = index.get("items") or []
        self._vectors = [l2_normalize(item.get("emb") or []) for item in items]
        self._index = index
        logger.info(
            "Q&A index loaded",
            extra={"context": {"path": str(self.index_path), "count": len(items), "model": index.get("embedding_model")}},
        )
        return index

    def reload(self) -> dict:
        self._index = None
        self._vectors = []
        return self.load()

    def count(self) -> int:
        return len(self.load().get("items") or [])

    def search_by_vector(self, vector: Sequence[float], k: int = 5) -> List[dict]:
        index = self.load()
        items = index.get("items") or []
        query = l2_normalize(vector)
        scores = [dot_product(query, item_vector) for item_vector in self._vectors]

        results = []
        for item, score in top_k(items, scores, k):
            meta = item.get("meta") or {}
            results.append(
                {
                    "id": item.get("id"),
                    "score": score,
                    "question": item.get("question", ""),
                    "answer": item.get("answer", ""),
                    "category": meta.get("category"),
                    "keywords": meta.get("keywords"),
                }
            )
        return results

    def search(self, query: str, k: int = 5) -> List[dict]:
        """Embed the query and return the k closest Q&A rows, best first."""
        self.load()
        vector = self._embed(query.strip())
        results = self.search_by_vector(vector, k)
        logger.info(f"Knowledge search: found {len(results)} results for '{query[:30]}...'")
        return results


def format_knowledge_context(results: List[dict]) -> str:
    """Format search results as numbered Q/A pairs for the prompt."""
    return "\n\n".join(
        f"Q{i}: {result.get('question', '')}\nA{i}: {result.get('answer', '')}" for i, result in enumerate(results, 1)
    )
