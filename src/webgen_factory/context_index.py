from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import chromadb
from chromadb.api.types import Documents, EmbeddingFunction
from chromadb.utils import embedding_functions

from .chunking import DEFAULT_MAX_CHARS, DEFAULT_OVERLAP, code_aware_chunks, is_indexable
from .llm import ensure_openai_api_key
from .models import normalize_file_path
from .settings import DEFAULT_ALWAYS_RELEVANT_FILES
from .state_store import append_jsonl, atomic_write_text, locked_file

logger = logging.getLogger(__name__)

_COLLECTION_NAME = "file_chunks"
_TOKEN_RE = re.compile(r"[A-Za-z0-9_]{3,}")
_MAX_LITERAL_TOKENS = 16
_STOPWORDS = frozenset(
    {
        "the", "and", "for", "with", "that", "this", "from", "into", "make", "add", "change",
        "update", "please", "can", "you", "should", "would", "could", "when", "what", "where",
        "there", "page", "file", "files", "component", "use", "using", "want", "need", "all",
        "new", "not", "but", "are", "was", "has", "have", "our", "your", "its", "more", "less",
    }
)


def _build_embedding_function(*, model_name: str) -> EmbeddingFunction[Documents]:
    api_key = ensure_openai_api_key()
    return embedding_functions.OpenAIEmbeddingFunction(
        api_key=api_key,
        model_name=model_name,
    )


def literal_tokens(text: str, limit: int = _MAX_LITERAL_TOKENS) -> list[str]:
    """Distinct identifier-like tokens of 3+ characters, in order of appearance, stopwords dropped."""
    tokens: list[str] = []
    seen: set[str] = set()
    for token in _TOKEN_RE.findall(text):
        if token.lower() in _STOPWORDS or token in seen:
            continue
        seen.add(token)
        tokens.append(token)
        if len(tokens) >= limit:
            break
    return tokens


@dataclass(frozen=True)
class ContextHit:
    file_path: str
    source: str
    score: float | None = None


class ContextIndex:
    """Chroma-backed chunk index of promoted project files, partitioned by project and build.

    Every chunk carries ``project_id``/``build_id`` metadata. Reindexing a build only
    ever replaces chunks of that same build; chunks of earlier builds stay queryable
    by explicit ``build_id``.
    """

    def __init__(
        self,
        root: Path,
        *,
        embedding_model: str = "text-embedding-3-small",
        always_relevant_files: tuple[str, ...] = DEFAULT_ALWAYS_RELEVANT_FILES,
        literal_cap: int = 5,
        max_chars: int = DEFAULT_MAX_CHARS,
        overlap: int = DEFAULT_OVERLAP,
    ) -> None:
        if not embedding_model.strip():
            raise ValueError("embedding_model must be non-empty")
        if literal_cap < 0:
            raise ValueError("literal_cap must be >= 0")
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        self.events_path = self.root / "events.jsonl"
        self.latest_builds_path = self.root / "latest_builds.json"
        self.embedding_model = embedding_model.strip()
        self.always_relevant_files = tuple(normalize_file_path(path) for path in always_relevant_files)
        self.literal_cap = literal_cap
        self.max_chars = max_chars
        self.overlap = overlap
        self._lock = threading.RLock()
        self.embedding_function = _build_embedding_function(model_name=self.embedding_model)
        self.client = chromadb.PersistentClient(path=str(self.root))
        self.collection = self.client.get_or_create_collection(
            name=_COLLECTION_NAME,
            embedding_function=self.embedding_function,
            metadata={"hnsw:space": "cosine", "embedding_model": self.embedding_model},
        )

    # ------------------------------------------------------------------
    # Build pointers
    # ------------------------------------------------------------------

    def _read_latest_builds(self) -> dict[str, str]:
        if not self.latest_builds_path.is_file():
            return {}
        return dict(json.loads(self.latest_builds_path.read_text(encoding="utf-8")))

    def latest_build_id(self, project_id: str) -> str | None:
        return self._read_latest_builds().get(project_id)

    @staticmethod
    def _build_filter(project_id: str, build_id: str) -> dict[str, Any]:
        return {"$and": [{"project_id": project_id}, {"build_id": build_id}]}

    # ------------------------------------------------------------------
    # Reindex
    # ------------------------------------------------------------------

    def reindex(self, project_id: str, build_id: str, files: Mapping[str, str]) -> int:
        """Chunk and embed ``files`` as the index of ``build_id``. Returns the chunk count.

        Safe to repeat for the same build: that build's previous chunks are replaced.
        Chunks tagged with any other build id are left untouched.
        """
        chunks = [
            chunk
            for path, content in sorted(files.items())
            if is_indexable(path)
            for chunk in code_aware_chunks(
                normalize_file_path(path), content, max_chars=self.max_chars, overlap=self.overlap
            )
        ]
        with self._lock, locked_file(self.latest_builds_path):
            self.collection.delete(where=self._build_filter(project_id, build_id))
            if chunks:
                self.collection.add(
                    ids=[f"{project_id}:{build_id}:{chunk.file_path}:{chunk.chunk_index}" for chunk in chunks],
                    documents=[chunk.content for chunk in chunks],
                    metadatas=[
                        {
                            "project_id": project_id,
                            "build_id": build_id,
                            "file_path": chunk.file_path,
                            "chunk_index": chunk.chunk_index,
                        }
                        for chunk in chunks
                    ],
                )
            latest = self._read_latest_builds()
            latest[project_id] = build_id
            atomic_write_text(self.latest_builds_path, json.dumps(latest, indent=2, sort_keys=True))
        append_jsonl(
            self.events_path,
            {"event": "reindexed", "project_id": project_id, "build_id": build_id, "chunks": len(chunks)},
        )
        logger.info("Indexed %d chunk(s) from %d file(s) for %s/%s", len(chunks), len(files), project_id, build_id)
        return len(chunks)

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def _semantic_paths(self, where: dict[str, Any], text: str, k: int) -> list[ContextHit]:
        if not text.strip() or self.collection.count() == 0:
            return []
        result = self.collection.query(
            query_texts=[text],
            n_results=max(k * 3, 20),
            where=where,
            include=["metadatas", "distances"],
        )
        metadatas = result.get("metadatas", [[]])[0]
        distances = result.get("distances", [[]])[0]
        hits: list[ContextHit] = []
        seen: set[str] = set()
        for metadata, distance in zip(metadatas, distances):
            path = str(metadata["file_path"])
            if path in seen:
                continue
            seen.add(path)
            # Chroma cosine distance: lower is better.
            hits.append(ContextHit(file_path=path, source="semantic", score=max(0.0, min(1.0, 1.0 - float(distance)))))
            if len(hits) >= k:
                break
        return hits

    def _lowercased_files(self, where: dict[str, Any]) -> dict[str, str]:
        """Lowercased path plus chunk text of every file in one build, keyed by path."""
        payload = self.collection.get(where=where, include=["documents", "metadatas"])
        texts: dict[str, list[str]] = {}
        for document, metadata in zip(payload.get("documents") or [], payload.get("metadatas") or []):
            path = str(metadata["file_path"])
            texts.setdefault(path, [path.lower()]).append((document or "").lower())
        return {path: "\n".join(parts) for path, parts in texts.items()}

    def _literal_paths(self, where: dict[str, Any], text: str) -> list[ContextHit]:
        """Files containing request tokens (case-insensitive), rarest token first, at most ``literal_cap``."""
        tokens = literal_tokens(text)
        if self.literal_cap == 0 or not tokens:
            return []
        files = self._lowercased_files(where)
        matches = [
            (token, sorted(path for path, haystack in files.items() if token.lower() in haystack)) for token in tokens
        ]
        matches = [(token, paths) for token, paths in matches if paths]
        matches.sort(key=lambda item: len(item[1]))
        hits: list[ContextHit] = []
        seen: set[str] = set()
        for _token, paths in matches:
            for path in paths:
                if path in seen:
                    continue
                seen.add(path)
                hits.append(ContextHit(file_path=path, source="literal"))
                if len(hits) >= self.literal_cap:
                    return hits
        return hits

    def _always_relevant_paths(self, where: dict[str, Any]) -> list[ContextHit]:
        if not self.always_relevant_files:
            return []
        payload = self.collection.get(
            where={"$and": [*where["$and"], {"file_path": {"$in": list(self.always_relevant_files)}}]},
            include=["metadatas"],
        )
        present = {str(metadata["file_path"]) for metadata in payload.get("metadatas") or []}
        return [ContextHit(file_path=path, source="always") for path in self.always_relevant_files if path in present]

    def query_hits(self, project_id: str, text: str, k: int, build_id: str | None = None) -> list[ContextHit]:
        if k <= 0:
            raise ValueError("k must be > 0")
        resolved_build = build_id or self.latest_build_id(project_id)
        if resolved_build is None:
            logger.info("No indexed build for %s; context query returns nothing", project_id)
            return []
        where = self._build_filter(project_id, resolved_build)
        with self._lock:
            groups = (
                self._semantic_paths(where, text, k),
                self._literal_paths(where, text),
                self._always_relevant_paths(where),
            )
        merged: list[ContextHit] = []
        seen: set[str] = set()
        for group in groups:
            for hit in group:
                if hit.file_path not in seen:
                    seen.add(hit.file_path)
                    merged.append(hit)
        logger.debug(
            "Context for %s/%s: %s",
            project_id,
            resolved_build,
            ", ".join(f"{hit.file_path}[{hit.source}]" for hit in merged),
        )
        return merged

    def query(self, project_id: str, text: str, k: int, build_id: str | None = None) -> list[str]:
        """Return distinct relevant file paths for ``text``.

        Semantic top-``k`` files come first, then files that literally contain a
        request token (rarest token first), then the always-relevant files present in
        the build. With no ``build_id`` the latest indexed build is queried.

        Raises:
            ValueError: If ``k`` is not positive.
        """
        return [hit.file_path for hit in self.query_hits(project_id, text, k, build_id)]
