from __future__ import annotations

import logging
import math
from typing import Any, Mapping

from pydantic import BaseModel, Field

from validator.retrieval import RetrievalResponse

logger = logging.getLogger("validator.grounding")

UNKNOWN_DOCUMENT = "Unknown Document"


class Citation(BaseModel):
    document_name: str = Field(..., min_length=1)
    page_numbers: list[int] = Field(default_factory=list)
    excerpt: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


def _coerce_confidence(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number):
        return None
    return min(1.0, max(0.0, number))


def _coerce_pages(source: Mapping[str, Any]) -> list[int]:
    raw = source.get("pageNumbers")
    if raw is None and source.get("pageNumber") is not None:
        raw = [source.get("pageNumber")]
    if not isinstance(raw, list):
        return []
    pages: set[int] = set()
    for value in raw:
        try:
            page = int(value)
        except (TypeError, ValueError):
            continue
        if page > 0:
            pages.add(page)
    return sorted(pages)


def _confidence_by_chunk(supports: Any) -> dict[int, float]:
    """Highest confidence reported for each chunk index across all grounding supports."""
    best: dict[int, float] = {}
    if not isinstance(supports, list):
        return best
    for support in supports:
        if not isinstance(support, Mapping):
            continue
        indices = support.get("groundingChunkIndices") or []
        scores = support.get("confidenceScores") or []
        if not isinstance(indices, list) or not isinstance(scores, list):
            continue
        for position, chunk_index in enumerate(indices):
            if not isinstance(chunk_index, int) or position >= len(scores):
                continue
            score = _coerce_confidence(scores[position])
            if score is None:
                continue
            best[chunk_index] = max(score, best.get(chunk_index, 0.0))
    return best


def _chunk_to_citation(chunk: Mapping[str, Any], confidence: float) -> Citation:
    source = chunk.get("fileSearchChunk") or chunk.get("retrievedContext") or {}
    if not isinstance(source, Mapping):
        source = {}
    document = ""
    for field in ("documentName", "displayName", "title", "uri"):
        value = source.get(field)
        if isinstance(value, str) and value.strip():
            document = value.strip()
            break
    excerpt = source.get("chunkText") or source.get("text") or ""
    return Citation(
        document_name=document or UNKNOWN_DOCUMENT,
        page_numbers=_coerce_pages(source),
        excerpt=" ".join(str(excerpt).split()),
        confidence=confidence,
    )


def _overlaps(left: Citation, right: Citation) -> bool:
    if left.document_name != right.document_name:
        return False
    if not left.page_numbers or not right.page_numbers:
        return False
    return left.page_numbers[0] <= right.page_numbers[-1] and right.page_numbers[0] <= left.page_numbers[-1]


def merge_overlapping(citations: list[Citation]) -> list[Citation]:
    """Merge citations for the same document whose page ranges overlap, transitively.

    Merged citations keep the union of their pages, the highest confidence, and the first
    non-empty excerpt. Output follows the first appearance of each merged group.
    """
    parent = list(range(len(citations)))

    def find(index: int) -> int:
        while parent[index] != index:
            parent[index] = parent[parent[index]]
            index = parent[index]
        return index

    for left in range(len(citations)):
        for right in range(left + 1, len(citations)):
            if _overlaps(citations[left], citations[right]):
                root_left, root_right = find(left), find(right)
                if root_left != root_right:
                    parent[max(root_left, root_right)] = min(root_left, root_right)

    groups: dict[int, list[Citation]] = {}
    for index, citation in enumerate(citations):
        groups.setdefault(find(index), []).append(citation)

    merged: list[Citation] = []
    for root in sorted(groups):
        members = groups[root]
        pages = sorted({page for member in members for page in member.page_numbers})
        excerpt = next((member.excerpt for member in members if member.excerpt), "")
        merged.append(
            Citation(
                document_name=members[0].document_name,
                page_numbers=pages,
                excerpt=excerpt,
                confidence=max(member.confidence for member in members),
            )
        )
    return merged


def extract_citations(grounding_metadata: Mapping[str, Any] | None) -> list[Citation]:
    if not isinstance(grounding_metadata, Mapping):
        return []
    chunks = grounding_metadata.get("groundingChunks")
    if not isinstance(chunks, list):
        return []

    confidences = _confidence_by_chunk(grounding_metadata.get("groundingSupports"))
    citations: list[Citation] = []
    skipped = 0
    for index, chunk in enumerate(chunks):
        if not isinstance(chunk, Mapping):
            skipped += 1
            continue
        citations.append(_chunk_to_citation(chunk, confidences.get(index, 0.0)))

    merged = merge_overlapping(citations)
    logger.debug(
        "citations_extracted",
        extra={
            "event": "citations_extracted",
            "chunk_count": len(chunks),
            "skipped_chunks": skipped,
            "citation_count": len(merged),
        },
    )
    return merged


class CitationExtractor:
    def extract(self, response: RetrievalResponse | Mapping[str, Any]) -> list[Citation]:
        if isinstance(response, RetrievalResponse):
            return extract_citations(response.grounding_metadata)
        candidates = response.get("candidates")
        if isinstance(candidates, list) and candidates and isinstance(candidates[0], Mapping):
            return extract_citations(candidates[0].get("groundingMetadata"))
        return extract_citations(response)
