"""
Context Builder - turns retrieved crates into text for the language model.

Converts similarity hits plus crate descriptions into snippet lines that the
conversation session injects ahead of the user's question.
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

from .vector_search import SimilarityHit

logger = logging.getLogger(__name__)

CONTEXT_HEADER = "=== RELEVANT CRATES FROM THE INDEX ==="
TRUNCATION_MARKER = "... (context truncated)"


class ContextBuilder:
    """
    Builds RAG context from retrieved crates.

    Steps:
    1. Deduplicate hits by crate id (highest score wins)
    2. Format one line per crate, best score first
    3. Cut the list to the maximum context length
    """

    def __init__(self, max_length: int = 3000):
        """
        Args:
            max_length: Maximum context length in characters, header included
        """
        self.max_length = max_length

    def deduplicate(self, hits: Sequence[SimilarityHit]) -> List[SimilarityHit]:
        best: Dict[str, SimilarityHit] = {}
        for hit in hits:
            current = best.get(hit.crate_id)
            if current is None or hit.score > current.score:
                best[hit.crate_id] = hit

        removed_count = len(hits) - len(best)
        if removed_count > 0:
            logger.info(f"🗑️ Removed {removed_count} duplicates from {len(hits)} hits")

        return sorted(best.values(), key=lambda h: (-h.score, h.crate_id))

    @staticmethod
    def format_snippet(hit: SimilarityHit, description: str) -> str:
        description = " ".join(description.split()) or "(no description)"
        return f"- {hit.crate_id} (similarity {hit.score:.2f}): {description}"

    def select(
        self,
        hits: Sequence[SimilarityHit],
        descriptions: Dict[str, str],
        max_length: Optional[int] = None,
    ) -> List[Tuple[str, str]]:
        """
        (crate_id, snippet line) pairs that fit into `max_length` once rendered.

        Hits without a description (crate deleted since the search) are skipped.
        If even the best hit does not fit, its line is cut and marked.
        """
        if not hits:
            logger.info("⚠️ No hits to build context from")
            return []

        max_length = max_length or self.max_length
        budget = max_length - len(CONTEXT_HEADER) - 1

        selected: List[Tuple[str, str]] = []
        for hit in self.deduplicate(hits):
            if hit.crate_id not in descriptions:
                continue
            line = self.format_snippet(hit, descriptions[hit.crate_id])
            cost = len(line) + 1
            if cost > budget:
                if not selected:
                    keep = budget - len(TRUNCATION_MARKER) - 2
                    if keep > 0:
                        selected.append((hit.crate_id, f"{line[:keep]} {TRUNCATION_MARKER}"))
                logger.info(
                    f"✂️ Context truncated after {len(selected)} crate(s) (max_length={max_length})"
                )
                break
            selected.append((hit.crate_id, line))
            budget -= cost

        return selected

    def snippets(
        self,
        hits: Sequence[SimilarityHit],
        descriptions: Dict[str, str],
        max_length: Optional[int] = None,
    ) -> List[str]:
        return [line for _, line in self.select(hits, descriptions, max_length)]

    @staticmethod
    def render(snippets: Sequence[str]) -> str:
        """Render snippet lines as one context block (empty string when there are none)."""
        if not snippets:
            return ""
        return "\n".join([CONTEXT_HEADER, *snippets])

    def build_context(
        self,
        hits: Sequence[SimilarityHit],
        descriptions: Dict[str, str],
        max_length: Optional[int] = None,
    ) -> str:
        """
        Main entry point: deduplicate, format and truncate in one call.
        """
        context = self.render(self.snippets(hits, descriptions, max_length))
        logger.debug(f"📝 Formatted context: {len(context)} characters")
        return context
