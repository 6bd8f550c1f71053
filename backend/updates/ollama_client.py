"""
Ollama AI backend

Summarizes release notes and classifies upstream diffs through the Ollama
generate API. Each call is a single attempt: failures raise AIBackendError
and the retry ceiling is enforced by the release analyzer.
"""

import json
import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from config.settings import AppConfig
from models.release_models import AIResult, SecurityAnalysisResult

logger = logging.getLogger(__name__)

SUMMARY_PROMPT = (
    "Summarize the following release notes in one short paragraph (3-5 sentences), "
    "formulated for the people self-hosting this application. Only highlight important "
    "changes and notable new features. Also, determine if there are any breaking changes."
    "\n\nRelease notes:\n{text}\n\n"
    "**RESPOND IN THE PROVIDED JSON FORMAT** You MUST respond in JSON no matter the "
    "circumstance: {{\"summary\": string, \"breaking\": bool}}."
)

SECURITY_PROMPT = (
    "You are reviewing a source code diff between two releases of an open source "
    "application that will be deployed on a private server. Look for malicious or "
    "suspicious changes: obfuscated code, unexpected network calls, credential "
    "exfiltration, crypto miners, backdoors or tampering with build scripts."
    "\n\nDiff:\n{text}\n\n"
    "**RESPOND IN THE PROVIDED JSON FORMAT** You MUST respond in JSON no matter the "
    "circumstance: {{\"analysis\": string, \"isSuspectedMalicious\": bool}}."
)


class AIBackendError(Exception):
    """The AI backend could not produce a usable answer"""
    pass


class OllamaClient:
    """Thin client for POST {endpoint}/api/generate"""

    def __init__(self, endpoint: Optional[str] = None, model: Optional[str] = None,
                 num_ctx: Optional[int] = None, timeout: float = 300.0):
        self.endpoint = (endpoint if endpoint is not None else AppConfig.OLLAMA_URL or '').rstrip('/')
        self.model = model if model is not None else AppConfig.OLLAMA_MODEL
        self.num_ctx = num_ctx or AppConfig.OLLAMA_NUM_CTX
        self.http_client = httpx.AsyncClient(timeout=timeout)

        if self.is_ready():
            logger.info(f"Ollama configured with endpoint {self.endpoint} and model {self.model}")
        else:
            logger.info("Ollama not configured (OLLAMA_URL / OLLAMA_MODEL), AI analysis disabled")

    def is_ready(self) -> bool:
        return bool(self.endpoint and self.model)

    @property
    def max_chunk_chars(self) -> int:
        """Rough character budget per prompt, leaving room for instructions and answer"""
        return max(1000, self.num_ctx * 2)

    async def _generate(self, prompt: str) -> dict:
        payload = {
            'model': self.model,
            'prompt': prompt,
            'stream': False,
            'format': 'json',
            'options': {'num_ctx': self.num_ctx},
        }

        try:
            response = await self.http_client.post(f"{self.endpoint}/api/generate", json=payload)
            response.raise_for_status()
            outer = response.json()
            logger.debug(f"Ollama response: {outer.get('response')}")
            return json.loads(outer.get('response') or '')
        except httpx.HTTPStatusError as e:
            raise AIBackendError(f"Ollama returned HTTP {e.response.status_code}") from e
        except httpx.RequestError as e:
            raise AIBackendError(f"Could not reach Ollama: {e}") from e
        except (ValueError, AttributeError) as e:
            raise AIBackendError(f"Ollama returned a non-JSON answer: {e}") from e

    async def summarize(self, text: str) -> AIResult:
        data = await self._generate(SUMMARY_PROMPT.format(text=text))
        try:
            return AIResult.model_validate(data)
        except ValidationError as e:
            raise AIBackendError(f"Unexpected summary shape: {e}") from e

    async def analyze_diff(self, text: str) -> SecurityAnalysisResult:
        data = await self._generate(SECURITY_PROMPT.format(text=text))
        try:
            return SecurityAnalysisResult.model_validate(data)
        except ValidationError as e:
            raise AIBackendError(f"Unexpected analysis shape: {e}") from e

    async def close(self):
        await self.http_client.aclose()
