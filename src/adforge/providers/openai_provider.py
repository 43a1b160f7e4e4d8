from __future__ import annotations

import json
import logging
import re
from typing import Any

from adforge.config import Settings, settings as default_settings
from adforge.errors import ProviderValidationError, RateLimitedError, TransientProviderError

log = logging.getLogger(__name__)


class OpenAITextProvider:
    name = "openai"

    def __init__(self, api_key: str | None = None, client: Any = None, settings: Settings | None = None) -> None:
        from openai import AsyncOpenAI  # type: ignore

        self.settings = settings or default_settings
        self.client = client or AsyncOpenAI(api_key=api_key or self.settings.openai_api_key)

    async def generate_copy_sets(self, brief_text: str, count: int = 8) -> list[dict[str, str]]:
        """
        Generate headline + subhead + CTA copy sets to run alongside an ad image.
        """
        prompt = (
            "You are writing performance ad copy.\n"
            f"Return EXACTLY {count} copy sets as a JSON array, and nothing else.\n"
            "Each item must be an object with keys: headline, subhead, cta.\n"
            "- headline: <= 10 words\n"
            "- subhead: <= 18 words\n"
            "- cta: 2-4 words, Title Case\n"
            "No numbering, no markdown, no commentary, no extra keys.\n"
            f"\nContext:\n{brief_text}\n"
        )

        import openai  # type: ignore

        try:
            resp = await self.client.responses.create(
                model=self.settings.openai_text_model,
                input=prompt,
            )
        except openai.RateLimitError as e:
            raise RateLimitedError(f"openai rate limited: {e}") from e
        except (openai.APITimeoutError, openai.APIConnectionError, openai.InternalServerError) as e:
            raise TransientProviderError(f"openai unavailable: {e}") from e
        except openai.APIError as e:
            raise ProviderValidationError(f"openai rejected the request: {e}") from e
        return parse_copy_sets(getattr(resp, "output_text", "") or "", count)


def parse_copy_sets(text: str, count: int) -> list[dict[str, str]]:
    raw = text.strip()

    # Tolerate fenced blocks and stray text around the array.
    m = re.search(r"```(?:json)?\s*(\[.*?\])\s*```", raw, re.DOTALL | re.IGNORECASE)
    if m:
        raw = m.group(1).strip()
    else:
        start = raw.find("[")
        end = raw.rfind("]")
        if start != -1 and end != -1 and end > start:
            raw = raw[start : end + 1].strip()

    try:
        data = json.loads(raw)
    except ValueError:
        log.warning("copy provider returned unparseable output")
        return []

    out: list[dict[str, str]] = []
    if isinstance(data, list):
        for item in data:
            if not isinstance(item, dict):
                continue
            h = str(item.get("headline", "")).strip()
            s = str(item.get("subhead", "")).strip()
            c = str(item.get("cta", "")).strip()
            if not (h and c):
                continue
            out.append({"headline": h, "subhead": s, "cta": c})

    return out[:count]
