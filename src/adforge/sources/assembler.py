"""Concurrent context fan-out.

Every stage reads only the GenerationInput and writes exactly one field of the
GenerationContext, so stages run side by side and their completion order does
not matter. A stage that raises or runs past its timeout is logged and left
out; it never fails the request.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from adforge.config import Settings, settings as default_settings
from adforge.models import GenerationContext, GenerationInput, Mode, PatternContext, StyleContext
from adforge.sources.base import ContextSources
from adforge.sources.references import fetch_reference_images

log = logging.getLogger(__name__)

MAX_STYLE_REFERENCES = 3
MAX_PATTERNS = 3
MAX_KB_RESULTS = 3

VISION_MODES = (Mode.STANDARD, Mode.EXACT_INSERT)
REFERENCE_MODES = (Mode.EXACT_INSERT, Mode.INSPIRATION)


@dataclass(frozen=True)
class _Stage:
    name: str
    field: str
    fetch: Callable[[], Awaitable[Any]]


class ContextAssembler:
    def __init__(
        self,
        sources: ContextSources,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.sources = sources
        self.settings = settings or default_settings
        self._http = http_client

    async def assemble(self, inp: GenerationInput) -> tuple[GenerationContext, list[str]]:
        """Return the filled context and the names of the stages that contributed."""
        ctx = GenerationContext(input=inp)
        stages = self._plan(inp)
        if not stages:
            return ctx, []

        values = await asyncio.gather(*(self._run(stage) for stage in stages))

        contributed: list[str] = []
        for stage, value in zip(stages, values):
            if value is None:
                continue
            setattr(ctx, stage.field, value)
            contributed.append(stage.name)

        log.info("context assembled: %s (skipped: %s)", contributed, [s.name for s in stages if s.name not in contributed])
        return ctx, contributed

    async def _run(self, stage: _Stage) -> Any:
        try:
            value = await asyncio.wait_for(stage.fetch(), timeout=self.settings.source_timeout_s)
        except asyncio.TimeoutError:
            log.warning("context stage %s timed out after %.1fs, continuing without it", stage.name, self.settings.source_timeout_s)
            return None
        except Exception:
            log.warning("context stage %s failed, continuing without it", stage.name, exc_info=True)
            return None
        # Empty collections count as "no signal".
        if value is None or value == ():
            return None
        return value

    def _plan(self, inp: GenerationInput) -> list[_Stage]:
        src = self.sources
        stages: list[_Stage] = []
        product_id = inp.primary_product_id

        if src.product and product_id:
            stages.append(_Stage("product", "product", lambda: src.product.get_product_context(product_id, inp.user_id)))
        if src.brand:
            stages.append(_Stage("brand", "brand", lambda: src.brand.get_brand_profile(inp.user_id)))
        if src.style and inp.style_reference_ids:
            stages.append(_Stage("style", "style", lambda: self._style(inp)))
        if src.vision and inp.images and inp.mode in VISION_MODES:
            stages.append(_Stage("vision", "vision", lambda: src.vision.analyze(inp.images)))
        if src.kb and product_id:
            stages.append(_Stage("kb", "kb", lambda: src.kb.search(kb_query(inp), max_results=MAX_KB_RESULTS)))
        if src.patterns:
            stages.append(_Stage("patterns", "patterns", lambda: self._patterns(inp)))
        if src.template and inp.template_id:
            stages.append(_Stage("template", "template", lambda: src.template.get_template(inp.template_id)))
        if inp.template_reference_urls and inp.mode in REFERENCE_MODES:
            stages.append(_Stage("references", "reference_images", lambda: self._references(inp)))
        return stages

    async def _style(self, inp: GenerationInput) -> StyleContext | None:
        directives: list[str] = []
        for ref_id in inp.style_reference_ids[:MAX_STYLE_REFERENCES]:
            directive = await self.sources.style.get_style_directive(ref_id)
            if directive:
                directives.append(directive.strip())
        if not directives:
            return None
        return StyleContext(directive="\n".join(directives), reference_count=len(directives))

    async def _patterns(self, inp: GenerationInput) -> PatternContext | None:
        category = inp.recipe.category if inp.recipe else None
        patterns = await self.sources.patterns.relevant_patterns(inp.user_id, category, limit=MAX_PATTERNS)
        patterns = [p.strip() for p in patterns if p and p.strip()]
        if not patterns:
            return None
        return PatternContext(directive="\n".join(f"- {p}" for p in patterns), pattern_count=len(patterns))

    async def _references(self, inp: GenerationInput):
        args = (inp.template_reference_urls, self.settings.reference_hosts, self.settings.max_reference_images)
        if self._http is not None:
            return await fetch_reference_images(self._http, *args)
        async with httpx.AsyncClient(timeout=self.settings.source_timeout_s, follow_redirects=True) as client:
            return await fetch_reference_images(client, *args)


def kb_query(inp: GenerationInput) -> str:
    parts = [inp.prompt]
    if inp.recipe:
        parts.extend(p.name for p in inp.recipe.products[:1] if p.name)
        if inp.recipe.category:
            parts.append(inp.recipe.category)
    return " ".join(parts)
