from __future__ import annotations

import asyncio
import math
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence

from flashflow.logging import get_logger
from flashflow.service.errors import NodeExecutionError
from flashflow.service.sandbox import AllowlistedFetcher, SandboxError, read_data_url

logger = get_logger(__name__)

DEFAULT_CHUNK_TOKENS = 200
DEFAULT_OVERLAP_TOKENS = 20
DEFAULT_TOP_K = 5

# BM25 hyperparameters (standard defaults)
BM25_K1 = 1.5
BM25_B = 0.75

SNIPPET_CHARS = 200


def store_key(name: str) -> str:
    return f"rag:store:{name}"


def _simple_tokenize(text: str) -> List[str]:
    """Word and punctuation tokens approximating model token boundaries."""
    return re.findall(r"\b\w+\b|[^\w\s]", text)


def _detokenize(tokens: List[str]) -> str:
    """Reconstruct text from tokens, handling spacing."""
    if not tokens:
        return ""
    result = []
    for i, token in enumerate(tokens):
        if i > 0 and re.match(r"\w", token):
            result.append(" ")
        result.append(token)
    return "".join(result)


def tokenize_text(text: str) -> List[str]:
    """Lowercased word tokens for BM25 scoring."""
    return re.findall(r"\w+", text.lower())


def compute_bm25_scores(
    query_tokens: Sequence[str],
    documents: List[List[str]],
    k1: float = BM25_K1,
    b: float = BM25_B,
) -> List[float]:
    """Compute BM25 relevance scores for documents against query tokens.

    Args:
        query_tokens: Tokenized query terms
        documents: List of tokenized documents
        k1: Term frequency saturation parameter (default 1.5)
        b: Document length normalization parameter (default 0.75)

    Returns:
        List of BM25 scores corresponding to each document
    """
    if not query_tokens or not documents:
        return [0.0 for _ in documents]

    N = len(documents)
    avgdl = sum(len(doc) for doc in documents) / float(N)

    doc_freq: dict[str, int] = {}
    for doc in documents:
        for tok in set(doc):
            doc_freq[tok] = doc_freq.get(tok, 0) + 1

    scores: List[float] = []
    for doc in documents:
        tf: dict[str, int] = {}
        for tok in doc:
            tf[tok] = tf.get(tok, 0) + 1

        score = 0.0
        for tok in query_tokens:
            df = doc_freq.get(tok, 0)
            if df == 0:
                continue
            idf = math.log(1 + (N - df + 0.5) / (df + 0.5))
            freq = tf.get(tok, 0)
            denom = freq + k1 * (1 - b + b * (len(doc) / (avgdl or 1.0)))
            score += idf * (freq * (k1 + 1)) / denom if denom else 0.0
        scores.append(score)

    return scores


def chunk_text(
    text: str,
    max_tokens: int = DEFAULT_CHUNK_TOKENS,
    overlap_tokens: int = DEFAULT_OVERLAP_TOKENS,
) -> List[str]:
    """Split text into token windows of ``max_tokens`` sharing ``overlap_tokens``."""
    blob = " ".join(line.strip() for line in text.split("\n") if line.strip())
    tokens = _simple_tokenize(blob)
    if not tokens:
        return []
    size = max(1, max_tokens)
    overlap = min(max(0, overlap_tokens), size // 2)
    step = max(1, size - overlap)
    chunks: List[str] = []
    for start in range(0, len(tokens), step):
        segment = _detokenize(tokens[start : start + size])
        if segment.strip():
            chunks.append(segment)
        if start + size >= len(tokens):
            break
    return chunks


class RAGService:
    """BM25 retrieval over named static stores and per-run file variables."""

    def __init__(self, store: Any, *, fetcher: Optional[AllowlistedFetcher] = None) -> None:
        self.store = store
        self.fetcher = fetcher

    async def ingest_text(
        self,
        store_name: str,
        text: str,
        *,
        source: str = "inline",
        max_tokens: int = DEFAULT_CHUNK_TOKENS,
        overlap_tokens: int = DEFAULT_OVERLAP_TOKENS,
    ) -> int:
        pieces = chunk_text(text, max_tokens, overlap_tokens)
        if not pieces:
            return 0
        existing = await self.store.get(store_key(store_name)) or []
        offset = sum(1 for c in existing if c.get("source") == source)
        existing.extend(
            {"content": piece, "source": source, "chunkIndex": offset + i}
            for i, piece in enumerate(pieces)
        )
        await self.store.put(store_key(store_name), existing)
        logger.info("rag_ingested", store=store_name, source=source, chunks=len(pieces))
        return len(pieces)

    async def retrieve_static(
        self, store_name: str, query: str, *, top_k: int = DEFAULT_TOP_K
    ) -> List[Dict[str, Any]]:
        chunks = await self.store.get(store_key(store_name))
        if chunks is None:
            raise NodeExecutionError(f"knowledge store {store_name!r} does not exist")
        return self.rank(query, chunks, top_k)

    async def retrieve_from_files(
        self,
        files: Sequence[Mapping[str, Any]],
        query: str,
        *,
        top_k: int = DEFAULT_TOP_K,
        max_tokens: int = DEFAULT_CHUNK_TOKENS,
        overlap_tokens: int = DEFAULT_OVERLAP_TOKENS,
    ) -> List[Dict[str, Any]]:
        chunks: List[Dict[str, Any]] = []
        for file in files:
            source = str(file.get("name") or file.get("url") or "file")
            text = await self._read_file(file)
            chunks.extend(
                {"content": piece, "source": source, "chunkIndex": i}
                for i, piece in enumerate(chunk_text(text, max_tokens, overlap_tokens))
            )
        return self.rank(query, chunks, top_k)

    def rank(self, query: str, chunks: Sequence[Mapping[str, Any]], top_k: int) -> List[Dict[str, Any]]:
        if not chunks:
            return []
        scores = compute_bm25_scores(
            tokenize_text(query), [tokenize_text(str(c.get("content", ""))) for c in chunks]
        )
        ranked = sorted(
            (pair for pair in zip(scores, chunks) if pair[0] > 0),
            key=lambda pair: pair[0],
            reverse=True,
        )
        return [
            {
                "content": chunk.get("content", ""),
                "source": chunk.get("source", ""),
                "chunkIndex": chunk.get("chunkIndex", 0),
                "score": round(score, 4),
            }
            for score, chunk in ranked[: max(1, top_k)]
        ]

    async def _read_file(self, file: Mapping[str, Any]) -> str:
        if isinstance(file.get("content"), str):
            return file["content"]
        url = file.get("url")
        if not isinstance(url, str) or not url:
            raise NodeExecutionError("file reference has neither content nor url")
        try:
            if url.startswith("data:"):
                payload, _ = read_data_url(url)
                return payload.decode("utf-8", errors="ignore")
            if self.fetcher is None:
                raise NodeExecutionError("no fetcher configured for file retrieval")
            response = await asyncio.to_thread(self.fetcher.get, url)
        except SandboxError as exc:
            raise NodeExecutionError(f"cannot read file {url}: {exc}") from exc
        if response.status_code >= 400:
            raise NodeExecutionError(f"cannot read file {url}: HTTP {response.status_code}")
        return response.text


def build_citations(documents: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    citations = []
    for i, doc in enumerate(documents, start=1):
        content = str(doc.get("content", ""))
        citations.append(
            {
                "index": i,
                "source": doc.get("source", ""),
                "chunkIndex": doc.get("chunkIndex", 0),
                "snippet": content[:SNIPPET_CHARS],
            }
        )
    return citations
