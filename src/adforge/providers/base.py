from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Sequence

from adforge.models import ImageInput, ImagePart, OpaqueTurn, RawResult, VisionContext


@dataclass(frozen=True)
class ImageJudgement:
    # Vision-model verdict on a generated image; score is holistic 0-100.
    score: int | None
    product_visible: bool
    brand_consistent: bool
    composition_good: bool
    prompt_faithful: bool
    issues: tuple[str, ...] = ()


class ImageProvider(Protocol):
    name: str

    async def invoke(
        self,
        prompt: str,
        image_parts: Sequence[ImagePart],
        prior_conversation: Sequence[OpaqueTurn] | None = None,
        *,
        resolution: str = "2K",
        aspect_ratio: str = "1:1",
    ) -> RawResult: ...


class ImageJudge(Protocol):
    async def judge(self, image_bytes: bytes, mime_type: str, rubric: str) -> ImageJudgement: ...


class VisionAnalyzer(Protocol):
    async def analyze(self, images: Sequence[ImageInput]) -> VisionContext | None: ...


class CopyProvider(Protocol):
    name: str

    async def generate_copy_sets(self, brief_text: str, count: int = 8) -> list[dict[str, str]]: ...
