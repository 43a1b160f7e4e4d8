from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import FileResponse, JSONResponse

from adforge import log_setup
from adforge.config import settings
from adforge.copywriter import Copywriter
from adforge.errors import (
    GenerationError,
    NotFoundError,
    PersistenceError,
    PipelineCancelled,
    PipelineError,
    QualityGateError,
    RateLimitedError,
    ValidationError,
)
from adforge.models import Generation, GenerationInput, ImageInput, Mode, Recipe, RecipeProduct
from adforge.pipeline.critic import RubricCritic
from adforge.pipeline.service import GenerationPipeline
from adforge.providers.gemini_provider import GeminiProvider
from adforge.providers.openai_provider import OpenAITextProvider
from adforge.sources.base import ContextSources
from adforge.storage import GenerationStore

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    log_setup.configure()
    yield


app = FastAPI(title="adforge generation pipeline", lifespan=lifespan)

_STATUS: list[tuple[type[PipelineError], int]] = [
    (QualityGateError, 422),
    (ValidationError, 400),
    (NotFoundError, 404),
    (RateLimitedError, 429),
    (PersistenceError, 500),
    (GenerationError, 502),
    (PipelineCancelled, 499),
]


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    status = next((code for cls, code in _STATUS if isinstance(exc, cls)), 500)
    body: dict[str, Any] = {"error": type(exc).__name__, "detail": str(exc)}
    if isinstance(exc, QualityGateError):
        body["score"] = exc.score
        body["suggestions"] = exc.suggestions
    if isinstance(exc, PersistenceError):
        # True when the image was made and only saving failed.
        body["creative_succeeded"] = exc.creative_succeeded
    headers = {}
    if isinstance(exc, RateLimitedError) and exc.retry_after_s:
        headers["Retry-After"] = str(int(exc.retry_after_s))
    log.info("%s %s -> %d %s", request.method, request.url.path, status, body["error"])
    return JSONResponse(status_code=status, content=body, headers=headers)


def get_store() -> GenerationStore:
    return GenerationStore()


def get_pipeline(store: GenerationStore = Depends(get_store)) -> GenerationPipeline:
    if not settings.gemini_api_key:
        raise HTTPException(status_code=400, detail="GEMINI_API_KEY is not set")
    gemini = GeminiProvider(api_key=settings.gemini_api_key)
    return GenerationPipeline(
        provider=gemini,
        persister=store,
        sources=ContextSources(vision=gemini),
        critic=RubricCritic(judge=gemini, pass_threshold=settings.critic_pass_threshold),
    )


def get_copywriter(store: GenerationStore = Depends(get_store)) -> Copywriter:
    if not settings.openai_api_key:
        raise HTTPException(status_code=400, detail="OPENAI_API_KEY is not set")
    return Copywriter(OpenAITextProvider(api_key=settings.openai_api_key), store)


def _split_list(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(v.strip() for v in value.replace("\n", ",").split(",") if v.strip())


def _parse_mode(value: str) -> Mode:
    try:
        return Mode(value.strip().lower())
    except ValueError:
        raise ValidationError(f"mode must be one of {', '.join(m.value for m in Mode)}") from None


def _generation_json(gen: Generation) -> dict[str, Any]:
    data = asdict(gen)
    # Turns are provider-owned blobs; expose only how many there are.
    data.pop("conversation_history")
    data["conversation_turns"] = len(gen.conversation_history)
    return data


@app.post("/generations")
async def create_generation(
    prompt: str = Form(...),
    user_id: str = Form(...),
    mode: str = Form("standard"),
    images: list[UploadFile] = File(default=[]),
    template_id: str = Form(""),
    template_reference_urls: str = Form(""),
    style_reference_ids: str = Form(""),
    product_ids: str = Form(""),
    product_category: str = Form(""),
    resolution: str = Form("2K"),
    aspect_ratio: str = Form("1:1"),
    platform: str = Form(""),
    pipeline: GenerationPipeline = Depends(get_pipeline),
):
    uploads: list[ImageInput] = []
    for f in images:
        uploads.append(
            ImageInput(
                data=await f.read(),
                mime_type=f.content_type or "application/octet-stream",
                name=f.filename or "upload",
            )
        )

    recipe = None
    ids = _split_list(product_ids)
    if ids:
        category = product_category.strip() or None
        recipe = Recipe(
            products=tuple(RecipeProduct(id=pid, category=category) for pid in ids),
            platform=platform.strip() or None,
        )

    inp = GenerationInput(
        prompt=prompt,
        user_id=user_id,
        mode=_parse_mode(mode),
        images=tuple(uploads),
        template_id=template_id.strip() or None,
        template_reference_urls=_split_list(template_reference_urls),
        recipe=recipe,
        style_reference_ids=_split_list(style_reference_ids),
        resolution=resolution.strip().upper(),
        aspect_ratio=aspect_ratio.strip(),
        platform=platform.strip() or None,
    )
    result = await pipeline.run_generation(inp)
    return asdict(result)


@app.post("/generations/{generation_id}/edit")
async def edit_generation(
    generation_id: str,
    edit_prompt: str = Form(...),
    user_id: str = Form(""),
    pipeline: GenerationPipeline = Depends(get_pipeline),
):
    result = await pipeline.run_edit(generation_id, edit_prompt, user_id=user_id.strip() or None)
    return asdict(result)


@app.get("/generations/{generation_id}")
async def get_generation(generation_id: str, store: GenerationStore = Depends(get_store)):
    gen = await store.get_generation(generation_id)
    if gen is None:
        raise NotFoundError(f"generation {generation_id} not found")
    return _generation_json(gen)


@app.get("/generations/{generation_id}/image")
async def get_generation_image(generation_id: str, store: GenerationStore = Depends(get_store)):
    gen = await store.get_generation(generation_id)
    if gen is None:
        raise NotFoundError(f"generation {generation_id} not found")
    path = store.image_path(gen)
    if not path.exists():
        raise HTTPException(status_code=404, detail="image file missing")
    return FileResponse(path)


@app.get("/generations/{generation_id}/chain")
async def get_edit_chain(generation_id: str, store: GenerationStore = Depends(get_store)):
    chain = await store.get_edit_chain(generation_id)
    if not chain:
        raise NotFoundError(f"generation {generation_id} not found")
    return {
        "generation_id": generation_id,
        "chain": [
            {"id": g.id, "edit_prompt": g.edit_prompt, "edit_count": g.edit_count, "image_url": g.image_url, "created_at": g.created_at}
            for g in chain
        ],
    }


@app.post("/generations/{generation_id}/copy")
async def generate_copy(
    generation_id: str,
    count: int = Form(6),
    copywriter: Copywriter = Depends(get_copywriter),
):
    sets = await copywriter.copy_for(generation_id, count=int(count))
    return {"generation_id": generation_id, "copy_sets": sets}
