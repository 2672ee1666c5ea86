"""
Query processing for keyword search.

Natural-language questions are reduced to keywords and every query is
rewritten into a comma-separated keyword list with synonyms. The chat model
does the work when available; simple text heuristics take over when it fails.
"""

import os
import re
import logging
from pathlib import Path
from typing import List, Optional

from ..exceptions import GenerationError
from ..gpt_client import GPTClient

logger = logging.getLogger(__name__)

QUESTION_WORDS = {
    "how", "what", "which", "where", "who", "why", "can", "could",
    "help", "find", "need", "want", "looking",
}

DEFAULT_STOP_WORDS = [
    "a", "an", "the", "is", "are", "was", "were", "be", "in", "on", "at", "by",
    "for", "with", "about", "against", "how", "what", "where", "when", "why",
    "who", "which", "and", "or", "if", "but", "because", "as", "until", "while",
    "of", "to", "from", "need", "want", "find", "looking", "search", "rust", "crate",
]

ENHANCEMENT_STOP_WORDS = {"the", "a", "an", "in", "for", "with", "by"}

KEYWORD_EXTRACTION_PROMPT = (
    "You extract Rust package search keywords from natural-language questions. "
    "Identify the core concepts and required functionality in the Rust ecosystem. "
    "Return only a comma-separated list of keywords."
)

REWRITE_PROMPT = (
    "You rewrite queries for a Rust package (crate) search engine. Whether the input is "
    "keywords or a question, turn it into a list of relevant technical terms and synonyms "
    "suitable for searching crates.io. Return a comma-separated keyword list without explanations."
)

_WORD_SPLIT = re.compile(r"[^\w]+", re.UNICODE)


def is_natural_language_query(query: str) -> bool:
    """
    A query looks like natural language when it has more than three words,
    contains '?' or '.', or uses a question/intent word.
    """
    words = query.lower().split()
    return (
        len(words) > 3
        or "?" in query
        or "." in query
        or any(word in QUESTION_WORDS for word in words)
    )


def load_stop_words(path: Optional[str] = None) -> List[str]:
    """
    Stop words from STOP_WORDS_PATH (one per line, `//` comments), or the built-in list.
    """
    stop_words_path = Path(path or os.getenv("STOP_WORDS_PATH", "resources/stopwords.txt"))
    if stop_words_path.is_file():
        lines = stop_words_path.read_text(encoding="utf-8").splitlines()
        stop_words = [
            line.strip() for line in lines
            if line.strip() and not line.lstrip().startswith("//")
        ]
        if stop_words:
            logger.debug(f"Loaded {len(stop_words)} stop words from {stop_words_path}")
            return stop_words
    return list(DEFAULT_STOP_WORDS)


def basic_keyword_extraction(query: str, stop_words: Optional[List[str]] = None) -> str:
    """Comma-separated keywords: words longer than two characters that are not stop words."""
    stop = set(stop_words if stop_words is not None else load_stop_words())
    keywords = [
        word for word in _WORD_SPLIT.split(query.lower())
        if word and len(word) > 2 and word not in stop
    ]
    return ", ".join(keywords)


def basic_query_enhancement(query: str) -> str:
    """Lower-case the query and drop a few filler words."""
    words = query.strip().lower().split()
    return " ".join(word for word in words if word not in ENHANCEMENT_STOP_WORDS)


def split_keywords(keywords: str) -> List[str]:
    """"http client, json" -> ["http client", "json"]"""
    return [part.strip() for part in keywords.split(",") if part.strip()]


class QueryRewriter:
    def __init__(self, gpt_client: Optional[GPTClient] = None):
        self.gpt_client = gpt_client

    async def _ask(self, system_prompt: str, user_prompt: str, max_tokens: int) -> Optional[str]:
        if self.gpt_client is None:
            return None
        try:
            return await self.gpt_client.complete_messages(
                [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=0.3,
                max_tokens=max_tokens,
            )
        except GenerationError as e:
            logger.warning(f"⚠️ Query model call failed, using heuristic fallback: {e}")
            return None

    async def extract_keywords_from_query(self, query: str) -> str:
        answer = await self._ask(
            KEYWORD_EXTRACTION_PROMPT,
            f"Extract keywords for searching Rust crates (comma-separated list) from: {query}",
            max_tokens=100,
        )
        return answer or basic_keyword_extraction(query)

    async def rewrite_query(self, query: str) -> str:
        answer = await self._ask(
            REWRITE_PROMPT,
            f"Generate a comma-separated Rust crate keyword list for: {query}",
            max_tokens=150,
        )
        return answer or basic_query_enhancement(query)

    async def process_query(self, query: str) -> str:
        """Reduce natural-language questions to keywords; keyword queries pass through."""
        if not is_natural_language_query(query):
            return query
        keywords = await self.extract_keywords_from_query(query)
        logger.info(f"🔤 Keywords extracted from natural-language query: {keywords}")
        return keywords or query

    async def prepare_terms(self, query: str) -> List[str]:
        """Full pipeline: process, rewrite, split into keyword terms."""
        processed = await self.process_query(query)
        rewritten = await self.rewrite_query(processed)
        logger.info(f"✏️ Rewritten query: {rewritten}")
        return split_keywords(rewritten) or split_keywords(processed) or [query]
