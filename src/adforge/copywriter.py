from __future__ import annotations

import logging

from adforge.errors import GenerationError, NotFoundError, ProviderError
from adforge.models import BrandContext
from adforge.providers.base import CopyProvider
from adforge.storage import ResultPersister

log = logging.getLogger(__name__)


class Copywriter:
    """Derivative ad copy (headline / subhead / CTA) for a finished generation."""

    def __init__(self, provider: CopyProvider, persister: ResultPersister) -> None:
        self.provider = provider
        self.persister = persister

    async def copy_for(
        self,
        generation_id: str,
        brand: BrandContext | None = None,
        count: int = 6,
    ) -> list[dict[str, str]]:
        chain = await self.persister.get_edit_chain(generation_id)
        if not chain:
            raise NotFoundError(f"generation {generation_id} not found")

        try:
            sets = await self.provider.generate_copy_sets(brief_for(chain, brand), count=count)
        except ProviderError as e:
            raise GenerationError(f"copy generation failed: {e}") from e

        log.info("generated %d copy set(s) for %s", len(sets), generation_id)
        return sets


def brief_for(chain, brand: BrandContext | None) -> str:
    root = chain[0]
    lines = [f"Ad image brief: {root.prompt}"]
    edits = [g.edit_prompt for g in chain[1:] if g.edit_prompt]
    if edits:
        lines.append("Later edits: " + "; ".join(edits))
    if brand is not None:
        lines.append(f"Brand: {brand.name}")
        if brand.voice_principles:
            lines.append("Voice: " + ", ".join(brand.voice_principles))
        if brand.values:
            lines.append("Values: " + ", ".join(brand.values))
    return "\n".join(lines)
