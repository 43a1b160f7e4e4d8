from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Mode(str, Enum):
    STANDARD = "standard"
    EXACT_INSERT = "exact_insert"
    INSPIRATION = "inspiration"


class ImageRole(str, Enum):
    PRESERVE_EXACT = "preserve_exact"
    PRODUCT = "product"
    SUPPORTING = "supporting"
    STYLE_REFERENCE = "style_reference"
    SCENE_REFERENCE = "scene_reference"


RESOLUTIONS = ("1K", "2K", "4K")


@dataclass(frozen=True)
class ImageInput:
    data: bytes
    mime_type: str
    name: str = "image"


@dataclass(frozen=True)
class RecipeProduct:
    id: str
    name: str = ""
    category: str | None = None


@dataclass(frozen=True)
class Recipe:
    # Frozen snapshot of what the composer used, kept for reproducibility.
    products: tuple[RecipeProduct, ...] = ()
    relationships: tuple[dict[str, Any], ...] = ()
    scenarios: tuple[dict[str, Any], ...] = ()
    platform: str | None = None

    @property
    def primary_product_id(self) -> str | None:
        for p in self.products:
            if p.id:
                return p.id
        return None

    @property
    def category(self) -> str | None:
        return next((p.category for p in self.products if p.category), None)


@dataclass(frozen=True)
class GenerationInput:
    prompt: str
    user_id: str
    mode: Mode = Mode.STANDARD
    images: tuple[ImageInput, ...] = ()
    template_id: str | None = None
    template_reference_urls: tuple[str, ...] = ()
    recipe: Recipe | None = None
    style_reference_ids: tuple[str, ...] = ()
    resolution: str = "2K"
    aspect_ratio: str = "1:1"
    platform: str | None = None

    @property
    def primary_product_id(self) -> str | None:
        return self.recipe.primary_product_id if self.recipe else None

    @property
    def product_ids(self) -> list[str]:
        if not self.recipe:
            return []
        return [p.id for p in self.recipe.products if p.id]


# ---------------------------------------------------------------------------
# Context fragments. Each one is written by exactly one source.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProductRelationship:
    target_product_name: str
    relationship_type: str
    description: str | None = None


@dataclass(frozen=True)
class ProductScenario:
    title: str
    description: str
    steps: tuple[str, ...] = ()
    is_active: bool = True


@dataclass(frozen=True)
class ProductContext:
    primary_id: str
    primary_name: str
    category: str | None = None
    description: str | None = None
    relationships: tuple[ProductRelationship, ...] = ()
    scenarios: tuple[ProductScenario, ...] = ()
    brand_image_urls: tuple[str, ...] = ()
    formatted_context: str = ""


@dataclass(frozen=True)
class BrandContext:
    name: str
    styles: tuple[str, ...] = ()
    values: tuple[str, ...] = ()
    colors: tuple[str, ...] = ()
    voice_principles: tuple[str, ...] = ()


@dataclass(frozen=True)
class StyleContext:
    directive: str
    reference_count: int


@dataclass(frozen=True)
class VisionContext:
    category: str
    materials: tuple[str, ...] = ()
    colors: tuple[str, ...] = ()
    style: str = ""
    usage_context: str = ""


@dataclass(frozen=True)
class KnowledgeContext:
    text: str
    citations: tuple[str, ...] = ()


@dataclass(frozen=True)
class PatternContext:
    directive: str
    pattern_count: int


@dataclass(frozen=True)
class TemplateContext:
    id: str
    title: str
    blueprint: str
    mood: str = ""
    lighting: str = ""
    environment: str = ""
    placement_hints: dict[str, Any] = field(default_factory=dict)
    category: str = ""
    reference_image_urls: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Provider boundary
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OpaqueTurn:
    """One provider conversation turn. Stored and replayed verbatim, never read."""

    blob: bytes


@dataclass(frozen=True)
class ImagePart:
    data: bytes
    mime_type: str
    role: ImageRole
    label: str


@dataclass(frozen=True)
class AssembledPrompt:
    prompt: str
    image_parts: tuple[ImagePart, ...]


@dataclass(frozen=True)
class RawResult:
    image_bytes: bytes
    mime_type: str
    conversation_history: tuple[OpaqueTurn, ...]
    usage_metadata: dict[str, Any]
    model: str


@dataclass(frozen=True)
class EditSeed:
    parent_id: str
    parent_edit_count: int
    edit_prompt: str
    history: tuple[OpaqueTurn, ...]


@dataclass
class GenerationContext:
    input: GenerationInput
    product: ProductContext | None = None
    brand: BrandContext | None = None
    style: StyleContext | None = None
    vision: VisionContext | None = None
    kb: KnowledgeContext | None = None
    patterns: PatternContext | None = None
    template: TemplateContext | None = None
    reference_images: tuple[ImageInput, ...] = ()
    conversation: EditSeed | None = None
    assembled: AssembledPrompt | None = None
    result: RawResult | None = None

    @property
    def expects_product(self) -> bool:
        return bool(self.input.images) or self.product is not None


# ---------------------------------------------------------------------------
# Critique / results / persistence
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CritiqueChecks:
    product_visible: bool = True
    brand_consistent: bool = True
    composition_ok: bool = True
    prompt_faithful: bool = True

    def failed(self) -> list[str]:
        return [name for name, ok in self.__dict__.items() if not ok]


@dataclass(frozen=True)
class CritiqueResult:
    passed: bool
    score: int
    checks: CritiqueChecks
    issues: tuple[str, ...] = ()
    revised_prompt: str | None = None


@dataclass(frozen=True)
class GenerationResult:
    generation_id: str
    image_url: str
    prompt: str
    can_edit: bool
    mode: Mode
    stages_completed: tuple[str, ...]
    template_id: str | None = None
    issues: tuple[str, ...] = ()
    score: int | None = None
    attempts: int = 1
    parent_generation_id: str | None = None
    edit_count: int = 0


@dataclass(frozen=True)
class GenerationMetadata:
    user_id: str
    prompt: str
    image_bytes: bytes
    mime_type: str
    conversation_history: tuple[OpaqueTurn, ...]
    model: str
    aspect_ratio: str
    mode: Mode = Mode.STANDARD
    template_id: str | None = None
    product_ids: tuple[str, ...] = ()
    resolution: str = "2K"
    # Uploaded source images, kept next to the result.
    original_images: tuple[ImageInput, ...] = ()
    usage_metadata: dict[str, Any] = field(default_factory=dict)
    duration_ms: int | None = None


@dataclass(frozen=True)
class Generation:
    id: str
    user_id: str
    prompt: str
    image_path: str
    image_url: str
    conversation_history: tuple[OpaqueTurn, ...]
    model: str
    aspect_ratio: str
    created_at: str
    parent_generation_id: str | None = None
    edit_prompt: str | None = None
    edit_count: int = 0
    mode: str = Mode.STANDARD.value
    template_id: str | None = None
    product_ids: tuple[str, ...] = ()
    resolution: str = "2K"
    original_image_paths: tuple[str, ...] = ()
    usage_metadata: dict[str, Any] = field(default_factory=dict)
    duration_ms: int | None = None
