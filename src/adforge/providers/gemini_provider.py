from __future__ import annotations

import json
import logging
from typing import Any, Sequence

import httpx

from adforge.config import Settings, settings as default_settings
from adforge.errors import (
    MalformedResponseError,
    ProviderValidationError,
    RateLimitedError,
    TransientProviderError,
)
from adforge.models import ImageInput, ImagePart, OpaqueTurn, RawResult, VisionContext
from adforge.providers.base import ImageJudgement

log = logging.getLogger(__name__)


class GeminiProvider:
    """google-genai adapter: image generation, image judging and vision analysis.

    This is the only place that knows the shape of a conversation turn. Turns
    leave here as OpaqueTurn (the SDK Content serialized to JSON bytes) and come
    back in unchanged.
    """

    name = "gemini"

    def __init__(self, api_key: str | None = None, client: Any = None, settings: Settings | None = None) -> None:
        # Imported lazily so the app can start without the dependency installed.
        from google import genai  # type: ignore
        from google.genai import types  # type: ignore

        self.settings = settings or default_settings
        self._types = types
        self.client = client or genai.Client(api_key=api_key or self.settings.gemini_api_key)

    async def invoke(
        self,
        prompt: str,
        image_parts: Sequence[ImagePart],
        prior_conversation: Sequence[OpaqueTurn] | None = None,
        *,
        resolution: str = "2K",
        aspect_ratio: str = "1:1",
    ) -> RawResult:
        types = self._types
        model = self.settings.gemini_image_model

        # Images first, each preceded by a one-line role label, then the prompt.
        parts: list[Any] = []
        for idx, ip in enumerate(image_parts, start=1):
            parts.append(types.Part.from_text(text=f"Image {idx}: {ip.label}"))
            parts.append(types.Part.from_bytes(data=ip.data, mime_type=ip.mime_type))
        parts.append(types.Part.from_text(text=prompt))
        user_turn = types.Content(role="user", parts=parts)

        contents = [decode_turn(t, types) for t in (prior_conversation or ())]
        contents.append(user_turn)

        resp = await self._call(
            model=model,
            contents=contents,
            config=types.GenerateContentConfig(
                response_modalities=["TEXT", "IMAGE"],
                image_config=types.ImageConfig(aspect_ratio=aspect_ratio, image_size=resolution),
            ),
        )

        model_turn, image_bytes, mime = _extract_image(resp)
        history = tuple(prior_conversation or ()) + (encode_turn(user_turn), encode_turn(model_turn))

        usage: dict[str, Any] = {}
        um = getattr(resp, "usage_metadata", None)
        if um is not None and hasattr(um, "model_dump"):
            usage = um.model_dump(mode="json", exclude_none=True)

        return RawResult(
            image_bytes=image_bytes,
            mime_type=mime,
            conversation_history=history,
            usage_metadata=usage,
            model=model,
        )

    async def judge(self, image_bytes: bytes, mime_type: str, rubric: str) -> ImageJudgement:
        types = self._types
        resp = await self._call(
            model=self.settings.gemini_vision_model,
            contents=[types.Part.from_bytes(data=image_bytes, mime_type=mime_type), rubric],
            config=types.GenerateContentConfig(response_mime_type="application/json"),
        )
        data = _parse_jsonish(getattr(resp, "text", None))
        if data is None:
            raise MalformedResponseError("judge returned no parseable JSON")

        raw_score = data.get("score")
        score = None
        if isinstance(raw_score, (int, float)):
            score = int(min(100, max(0, raw_score)))
        issues = [str(i) for i in data.get("issues") or [] if isinstance(i, str)]
        return ImageJudgement(
            score=score,
            product_visible=data.get("product_visible") is not False,
            brand_consistent=data.get("brand_consistent") is not False,
            composition_good=data.get("composition_good") is not False,
            prompt_faithful=data.get("prompt_faithful") is not False,
            issues=tuple(issues[:5]),
        )

    async def analyze(self, images: Sequence[ImageInput]) -> VisionContext | None:
        """
        Ask the vision model what the product is. Returns None when the model
        does not give a category, which the assembler treats as "no signal".
        """
        types = self._types
        prompt = (
            "You are analyzing product photos for an advertising pipeline.\n"
            "Return STRICT JSON only (no markdown) with keys:\n"
            "- category: string\n"
            "- materials: [string]\n"
            "- colors: [string]\n"
            "- style: string\n"
            "- usage_context: string\n"
        )
        contents: list[Any] = [prompt]
        for img in images[:4]:
            contents.append(types.Part.from_bytes(data=img.data, mime_type=img.mime_type))

        resp = await self._call(
            model=self.settings.gemini_vision_model,
            contents=contents,
            config=types.GenerateContentConfig(response_mime_type="application/json"),
        )
        data = _parse_jsonish(getattr(resp, "text", None))
        if not data or not data.get("category"):
            return None
        return VisionContext(
            category=str(data["category"]),
            materials=tuple(str(m) for m in data.get("materials") or []),
            colors=tuple(str(c) for c in data.get("colors") or []),
            style=str(data.get("style") or ""),
            usage_context=str(data.get("usage_context") or ""),
        )

    async def _call(self, **kwargs: Any) -> Any:
        from google.genai import errors  # type: ignore

        try:
            return await self.client.aio.models.generate_content(**kwargs)
        except errors.APIError as e:
            raise _classify_api_error(e) from e
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"provider timeout: {e}") from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"provider transport error: {e}") from e


def encode_turn(content: Any) -> OpaqueTurn:
    return OpaqueTurn(blob=content.model_dump_json(exclude_none=True).encode("utf-8"))


def decode_turn(turn: OpaqueTurn, types: Any) -> Any:
    return types.Content.model_validate_json(turn.blob)


def _classify_api_error(e: Any) -> Exception:
    code = getattr(e, "code", None) or 0
    message = getattr(e, "message", None) or str(e)
    if code == 429:
        return RateLimitedError(f"gemini rate limited: {message}", retry_after_s=_retry_delay_s(getattr(e, "details", None)))
    if code == 408 or code >= 500:
        return TransientProviderError(f"gemini {code}: {message}")
    return ProviderValidationError(f"gemini {code}: {message}")


def _retry_delay_s(details: Any) -> float | None:
    """Read google.rpc.RetryInfo ("retryDelay": "37s") from an API error body."""
    if isinstance(details, list) and details:
        details = details[0]
    if not isinstance(details, dict):
        return None
    body = details.get("error", details)
    items = body.get("details") if isinstance(body, dict) else None
    for item in items or []:
        if not isinstance(item, dict) or not str(item.get("@type", "")).endswith("RetryInfo"):
            continue
        delay = str(item.get("retryDelay") or "").strip()
        try:
            return float(delay.removesuffix("s"))
        except ValueError:
            return None
    return None


def _extract_image(resp: Any) -> tuple[Any, bytes, str]:
    for cand in getattr(resp, "candidates", []) or []:
        content = getattr(cand, "content", None)
        for part in getattr(content, "parts", None) or []:
            inline = getattr(part, "inline_data", None)
            if not inline:
                continue
            data = getattr(inline, "data", None)
            mime = getattr(inline, "mime_type", None) or "image/png"
            if not data or not mime.startswith("image/"):
                continue
            return content, data, mime
    raise MalformedResponseError("response contained no image part")


def _strip_code_fences(text: str) -> str:
    s = text.strip()
    if s.startswith("```"):
        first_nl = s.find("\n")
        if first_nl != -1:
            s = s[first_nl + 1 :]
        if s.rstrip().endswith("```"):
            s = s.rstrip()[:-3]
    return s.strip()


def _parse_jsonish(raw_text: str | None) -> dict[str, Any] | None:
    if not raw_text:
        return None
    try:
        data = json.loads(_strip_code_fences(raw_text))
    except ValueError:
        log.debug("could not parse provider JSON: %.200s", raw_text)
        return None
    return data if isinstance(data, dict) else None
