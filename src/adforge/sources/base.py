from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from adforge.models import BrandContext, KnowledgeContext, ProductContext, TemplateContext
from adforge.providers.base import VisionAnalyzer


# Read-only lookups owned by the surrounding application. Each one is
# idempotent and may return None when it has nothing to say.


class ProductKnowledgeSource(Protocol):
    async def get_product_context(self, product_id: str, user_id: str) -> ProductContext | None: ...


class BrandProfileSource(Protocol):
    async def get_brand_profile(self, user_id: str) -> BrandContext | None: ...


class StyleReferenceSource(Protocol):
    async def get_style_directive(self, reference_id: str) -> str | None: ...


class KnowledgeBase(Protocol):
    async def search(self, query: str, max_results: int = 3) -> KnowledgeContext | None: ...


class PatternLibrary(Protocol):
    async def relevant_patterns(self, user_id: str, category: str | None, limit: int = 3) -> list[str]: ...


class TemplateCatalog(Protocol):
    async def get_template(self, template_id: str) -> TemplateContext | None: ...


@dataclass(frozen=True)
class ContextSources:
    """Whatever lookups the host application wires in. Missing ones are skipped."""

    product: ProductKnowledgeSource | None = None
    brand: BrandProfileSource | None = None
    style: StyleReferenceSource | None = None
    vision: VisionAnalyzer | None = None
    kb: KnowledgeBase | None = None
    patterns: PatternLibrary | None = None
    template: TemplateCatalog | None = None
