"""
Release analysis pipeline.

Local keyword detection flags releases whose notes mention breaking changes.
When an AI backend is configured, release notes are summarized and the
upstream source diff can be screened for malicious changes. AI calls are
retried up to MAX_AI_ATTEMPTS times without backoff; when every attempt
fails the analysis is simply omitted.
"""

import logging
from typing import Awaitable, Callable, List, Optional, TypeVar

from models.release_models import AIResult, SecurityAnalysisResult
from updates.ollama_client import OllamaClient

logger = logging.getLogger(__name__)

T = TypeVar('T')

MAX_AI_ATTEMPTS = 3

BREAKING_KEYWORDS = ("breaking", "critical", "review before", "before upgrad", "important")
# Matched case-sensitively: lower-case "warning" is too common in changelogs
CASE_SENSITIVE_KEYWORDS = ("Warning",)


def detect_breaking(body: Optional[str]) -> bool:
    """Keyword based breaking change detection on release notes"""
    if not body:
        return False
    lowered = body.lower()
    if any(keyword in lowered for keyword in BREAKING_KEYWORDS):
        return True
    return any(keyword in body for keyword in CASE_SENSITIVE_KEYWORDS)


def chunk_text(text: str, max_chars: int) -> List[str]:
    """
    Split text into chunks of at most max_chars, preferring line boundaries.

    A single line longer than max_chars is split hard.
    """
    if len(text) <= max_chars:
        return [text]

    chunks: List[str] = []
    current = ''
    for line in text.splitlines(keepends=True):
        while len(line) > max_chars:
            if current:
                chunks.append(current)
                current = ''
            chunks.append(line[:max_chars])
            line = line[max_chars:]
        if len(current) + len(line) > max_chars:
            chunks.append(current)
            current = ''
        current += line
    if current:
        chunks.append(current)
    return chunks


class ReleaseAnalyzer:
    """Runs AI analysis with a bounded retry ceiling"""

    def __init__(self, ai_client: Optional[OllamaClient], max_attempts: int = MAX_AI_ATTEMPTS):
        self.ai_client = ai_client
        self.max_attempts = max_attempts

    def is_ready(self) -> bool:
        return self.ai_client is not None and self.ai_client.is_ready()

    @property
    def _chunk_size(self) -> int:
        return getattr(self.ai_client, 'max_chunk_chars', 16000)

    async def _with_retries(self, label: str, call: Callable[[], Awaitable[T]]) -> Optional[T]:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await call()
            except Exception as e:
                logger.warning(f"{label} failed (attempt {attempt}/{self.max_attempts}): {e}")
        logger.error(f"{label} failed after {self.max_attempts} attempts, skipping")
        return None

    async def summarize(self, body: Optional[str]) -> Optional[AIResult]:
        """AI summary of release notes, None when unavailable"""
        if not self.is_ready() or not body or not body.strip():
            return None

        results: List[AIResult] = []
        for chunk in chunk_text(body, self._chunk_size):
            result = await self._with_retries(
                "Release notes summary",
                lambda chunk=chunk: self.ai_client.summarize(chunk),
            )
            if result is None:
                return None
            results.append(result)

        if len(results) == 1:
            return results[0]
        return AIResult(
            summary='\n\n'.join(result.summary for result in results),
            breaking=any(result.breaking for result in results),
        )

    async def analyze_diff(self, diff: Optional[str]) -> Optional[SecurityAnalysisResult]:
        """AI security screening of an upstream diff, None when unavailable"""
        if not self.is_ready() or not diff or not diff.strip():
            return None

        results: List[SecurityAnalysisResult] = []
        chunks = chunk_text(diff, self._chunk_size)
        for index, chunk in enumerate(chunks, start=1):
            result = await self._with_retries(
                f"Security analysis of diff chunk {index}/{len(chunks)}",
                lambda chunk=chunk: self.ai_client.analyze_diff(chunk),
            )
            if result is None:
                return None
            results.append(result)

        if len(results) == 1:
            return results[0]
        return SecurityAnalysisResult(
            analysis='\n\n'.join(result.analysis for result in results),
            suspected_malicious=any(result.suspected_malicious for result in results),
        )
