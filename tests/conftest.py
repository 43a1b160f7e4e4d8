"""Shared fakes for pipeline tests: scripted image provider, judge and sources."""

import asyncio
from io import BytesIO

import pytest
from PIL import Image

from adforge.config import Settings
from adforge.models import ImageInput, OpaqueTurn, RawResult
from adforge.providers.base import ImageJudgement
from adforge.storage import GenerationStore


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


LONG_PROMPT = "A professional product photo of a ceramic mug on a wooden table, soft morning light"


def png_bytes(size=(256, 256)) -> bytes:
    """A gradient PNG: decodes, large enough, not a flat frame."""
    img = Image.linear_gradient("L").resize(size).convert("RGB")
    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def flat_png_bytes(size=(256, 256), color=(255, 255, 255)) -> bytes:
    buf = BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def upload(name="product.png") -> ImageInput:
    return ImageInput(data=png_bytes(), mime_type="image/png", name=name)


def judgement(score=90, product_visible=True, brand_consistent=True, composition_good=True, prompt_faithful=True, issues=()):
    return ImageJudgement(
        score=score,
        product_visible=product_visible,
        brand_consistent=brand_consistent,
        composition_good=composition_good,
        prompt_faithful=prompt_faithful,
        issues=tuple(issues),
    )


class FakeImageProvider:
    """Returns a fresh image per call and appends two turns to the prior history.

    `script` holds per-call behaviour: None for success, an exception instance
    to raise, or an awaitable factory to await before succeeding.
    """

    name = "fake"

    def __init__(self, script=None, image=None):
        self.script = list(script or [])
        self.image = image
        self.calls = []

    async def invoke(self, prompt, image_parts, prior_conversation=None, *, resolution="2K", aspect_ratio="1:1"):
        n = len(self.calls) + 1
        self.calls.append(
            {
                "prompt": prompt,
                "image_parts": tuple(image_parts),
                "prior": tuple(prior_conversation or ()),
                "resolution": resolution,
                "aspect_ratio": aspect_ratio,
            }
        )
        step = self.script.pop(0) if self.script else None
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            await step()

        prior = tuple(prior_conversation or ())
        return RawResult(
            image_bytes=self.image or png_bytes(),
            mime_type="image/png",
            conversation_history=prior + (OpaqueTurn(f"user-{n}".encode()), OpaqueTurn(f"model-{n}".encode())),
            usage_metadata={"call": n},
            model="fake-image-model",
        )


class FakeJudge:
    def __init__(self, verdicts):
        self.verdicts = list(verdicts)
        self.rubrics = []

    async def judge(self, image_bytes, mime_type, rubric):
        self.rubrics.append(rubric)
        verdict = self.verdicts.pop(0) if len(self.verdicts) > 1 else self.verdicts[0]
        if isinstance(verdict, BaseException):
            raise verdict
        return verdict


class StaticSource:
    """Any read-only source: returns `value` (or raises it) after `delay` seconds."""

    def __init__(self, value, delay=0.0):
        self.value = value
        self.delay = delay
        self.calls = 0

    async def _answer(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(self.value, BaseException):
            raise self.value
        return self.value

    async def get_product_context(self, product_id, user_id):
        return await self._answer()

    async def get_brand_profile(self, user_id):
        return await self._answer()

    async def get_style_directive(self, reference_id):
        return await self._answer()

    async def analyze(self, images):
        return await self._answer()

    async def search(self, query, max_results=3):
        return await self._answer()

    async def relevant_patterns(self, user_id, category, limit=3):
        return await self._answer()

    async def get_template(self, template_id):
        return await self._answer()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        data_dir=str(tmp_path),
        source_timeout_s=0.2,
        invoke_timeout_s=2.0,
        invoke_max_attempts=3,
        invoke_backoff_base_s=0,
        invoke_backoff_max_s=0,
        max_attempts=3,
    )


@pytest.fixture
def store(tmp_path):
    return GenerationStore(tmp_path / "store")
