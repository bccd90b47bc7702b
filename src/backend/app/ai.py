import os
import re
import json
import httpx
import asyncio
import random
import logging
from typing import Dict, Any, List, Optional

from .cache import breaker_allow, breaker_on_result
from .metrics_counters import AI_CALLS

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    """Models often wrap JSON in ```json fences; drop them before parsing."""
    return _FENCE_RE.sub("", (text or "").strip()).strip()


def parse_json_reply(text: Optional[str]) -> Optional[Any]:
    if not text:
        return None
    cleaned = strip_code_fences(text)
    try:
        return json.loads(cleaned)
    except ValueError:
        # tolerate prose around a single JSON object
        m = re.search(r"\{.*\}", cleaned, re.DOTALL)
        if not m:
            return None
        try:
            return json.loads(m.group(0))
        except ValueError:
            return None


class AIClient:
    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None, model: Optional[str] = None):
        self.api_key = api_key or os.getenv("OPENAI_API_KEY", "")
        self.base_url = base_url or os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
        self.model = model or os.getenv("OPENAI_MODEL", "gpt-4o-mini")
        self.fallback_models = [m.strip() for m in os.getenv("OPENAI_FALLBACK_MODELS", "").split(",") if m.strip()]

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def generate(
        self,
        system: str,
        messages: List[Dict[str, str]],
        max_tokens: int = 512,
        temperature: float = 0.4,
        purpose: str = "chat",
    ) -> Optional[str]:
        """Chat completion with model fallbacks. None when unconfigured or every attempt failed."""
        if not self.api_key:
            return None
        if not breaker_allow("ai:openai"):
            AI_CALLS.labels(purpose=purpose, status="breaker_open").inc()
            return None
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        candidates = [self.model] + [m for m in self.fallback_models if m != self.model]
        for model_name in candidates:
            payload: Dict[str, Any] = {
                "model": model_name,
                "messages": ([{"role": "system", "content": system}] + messages),
                "max_tokens": max_tokens,
                "temperature": temperature,
            }
            backoff_seconds = 1.0
            for attempt in range(3):
                try:
                    async with httpx.AsyncClient(timeout=60) as client:
                        r = await client.post(f"{self.base_url}/chat/completions", headers=headers, json=payload)
                        if r.status_code in (429,) or r.status_code >= 500:
                            if attempt < 2:
                                await asyncio.sleep(backoff_seconds + random.uniform(0, 0.5))
                                backoff_seconds *= 2
                                continue
                        r.raise_for_status()
                        data = r.json()
                        text = (data["choices"][0]["message"]["content"] or "").strip()
                        breaker_on_result("ai:openai", True)
                        AI_CALLS.labels(purpose=purpose, status="ok").inc()
                        return text
                except httpx.HTTPError as e:
                    logger.warning("ai_request_failed", extra={"model": model_name, "attempt": attempt, "error": str(e)})
                    if attempt < 2:
                        await asyncio.sleep(backoff_seconds + random.uniform(0, 0.5))
                        backoff_seconds *= 2
                        continue
                    # give next model a chance
                    break
                except (KeyError, IndexError, ValueError):
                    logger.warning("ai_response_malformed", extra={"model": model_name})
                    break
        breaker_on_result("ai:openai", False)
        AI_CALLS.labels(purpose=purpose, status="error").inc()
        return None

    async def generate_json(
        self,
        system: str,
        messages: List[Dict[str, str]],
        max_tokens: int = 400,
        purpose: str = "json",
    ) -> Optional[Any]:
        text = await self.generate(system, messages, max_tokens=max_tokens, temperature=0.2, purpose=purpose)
        return parse_json_reply(text)
