from __future__ import annotations

import base64
import json
import logging
import os
import uuid
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from adforge.config import settings
from adforge.errors import NotFoundError, PersistenceError
from adforge.models import Generation, GenerationMetadata, OpaqueTurn

log = logging.getLogger(__name__)

_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "image/heic": "heic",
    "image/heif": "heif",
}


class ResultPersister(Protocol):
    async def create_generation(self, metadata: GenerationMetadata) -> Generation: ...

    async def create_edit(self, parent_id: str, edit_prompt: str, metadata: GenerationMetadata) -> Generation: ...

    async def get_generation(self, generation_id: str) -> Generation | None: ...

    async def get_edit_chain(self, generation_id: str) -> list[Generation]: ...


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _safe_id(value: str) -> str:
    # Ids become file names; refuse anything that could walk the tree.
    if not value or os.path.basename(value) != value or value in (".", ".."):
        raise NotFoundError(f"generation {value!r} not found")
    return value


class GenerationStore:
    """File-backed persister: one JSON record + one image file per generation.

    Records are written once and never rewritten. An edit is a new record that
    points at its parent, so a chain is walked by following parent ids.
    """

    def __init__(self, root_dir: Path | None = None) -> None:
        self.root_dir = Path(root_dir or settings.data_dir).resolve()
        self.records_dir = self.root_dir / "generations"
        self.images_dir = self.root_dir / "images"
        self.originals_dir = self.images_dir / "originals"
        self.records_dir.mkdir(parents=True, exist_ok=True)
        self.images_dir.mkdir(parents=True, exist_ok=True)
        self.originals_dir.mkdir(parents=True, exist_ok=True)

    async def create_generation(self, metadata: GenerationMetadata) -> Generation:
        return self._create(metadata, parent=None, edit_prompt=None)

    async def create_edit(self, parent_id: str, edit_prompt: str, metadata: GenerationMetadata) -> Generation:
        parent = await self.get_generation(parent_id)
        if parent is None:
            raise NotFoundError(f"parent generation {parent_id} not found")
        return self._create(metadata, parent=parent, edit_prompt=edit_prompt)

    async def get_generation(self, generation_id: str) -> Generation | None:
        path = self.records_dir / f"{_safe_id(generation_id)}.json"
        if not path.exists():
            return None
        try:
            return _from_record(json.loads(path.read_text("utf-8")))
        except (OSError, ValueError, TypeError, KeyError) as e:
            log.error("generation record %s is unreadable", path, exc_info=True)
            raise PersistenceError(f"generation {generation_id} record is corrupt: {e}", creative_succeeded=False) from e

    async def get_edit_chain(self, generation_id: str) -> list[Generation]:
        """Root first, ending at generation_id."""
        chain: list[Generation] = []
        seen: set[str] = set()
        current: str | None = generation_id
        while current and current not in seen:
            seen.add(current)
            gen = await self.get_generation(current)
            if gen is None:
                break
            chain.append(gen)
            current = gen.parent_generation_id
        chain.reverse()
        return chain

    def image_path(self, gen: Generation) -> Path:
        return self.root_dir / gen.image_path

    def _create(self, metadata: GenerationMetadata, parent: Generation | None, edit_prompt: str | None) -> Generation:
        generation_id = uuid.uuid4().hex
        ext = _EXTENSIONS.get(metadata.mime_type, "png")
        rel_image = str(Path("images") / f"generation_{generation_id}.{ext}")
        abs_image = self.root_dir / rel_image

        written: list[Path] = []
        try:
            abs_image.write_bytes(metadata.image_bytes)
            written.append(abs_image)
            originals = self._write_originals(generation_id, metadata, written)
        except OSError as e:
            self._discard_files(written)
            raise PersistenceError(f"failed to write image: {e}", prompt=metadata.prompt, mime_type=metadata.mime_type) from e

        gen = Generation(
            id=generation_id,
            user_id=metadata.user_id,
            prompt=metadata.prompt,
            image_path=rel_image,
            image_url=f"/generations/{generation_id}/image",
            conversation_history=tuple(metadata.conversation_history),
            model=metadata.model,
            aspect_ratio=metadata.aspect_ratio,
            created_at=_now_iso(),
            parent_generation_id=parent.id if parent else None,
            edit_prompt=edit_prompt,
            edit_count=parent.edit_count + 1 if parent else 0,
            mode=metadata.mode.value,
            template_id=metadata.template_id,
            product_ids=tuple(metadata.product_ids),
            resolution=metadata.resolution,
            original_image_paths=originals,
            usage_metadata=dict(metadata.usage_metadata),
            duration_ms=metadata.duration_ms,
        )

        try:
            self._write_record(gen)
        except (OSError, TypeError, ValueError) as e:
            self._discard_files(written)
            raise PersistenceError(
                f"failed to save generation record: {e}", prompt=metadata.prompt, mime_type=metadata.mime_type
            ) from e

        log.info("saved generation %s (parent=%s, edit_count=%d)", gen.id, gen.parent_generation_id, gen.edit_count)
        return gen

    def _write_originals(self, generation_id: str, metadata: GenerationMetadata, written: list[Path]) -> tuple[str, ...]:
        paths: list[str] = []
        for idx, img in enumerate(metadata.original_images):
            ext = _EXTENSIONS.get(img.mime_type, "bin")
            rel = str(Path("images") / "originals" / f"original_{generation_id}_{idx}.{ext}")
            abs_path = self.root_dir / rel
            abs_path.write_bytes(img.data)
            written.append(abs_path)
            paths.append(rel)
        return tuple(paths)

    def _write_record(self, gen: Generation) -> None:
        path = self.records_dir / f"{gen.id}.json"
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(_to_record(gen), indent=2), encoding="utf-8")
        os.replace(tmp, path)

    def _discard_files(self, paths: list[Path]) -> None:
        for path in paths:
            try:
                path.unlink(missing_ok=True)
            except OSError:
                log.warning("orphaned image left at %s", path, exc_info=True)
            else:
                log.warning("removed orphaned image %s after failed save", path)


def _to_record(gen: Generation) -> dict[str, Any]:
    data = asdict(gen)
    data["conversation_history"] = [base64.b64encode(t.blob).decode("ascii") for t in gen.conversation_history]
    data["product_ids"] = list(gen.product_ids)
    data["original_image_paths"] = list(gen.original_image_paths)
    return data


def _from_record(data: dict[str, Any]) -> Generation:
    data = dict(data)
    data["conversation_history"] = tuple(OpaqueTurn(blob=base64.b64decode(t)) for t in data.get("conversation_history") or [])
    data["product_ids"] = tuple(data.get("product_ids") or ())
    data["original_image_paths"] = tuple(data.get("original_image_paths") or ())
    data["usage_metadata"] = dict(data.get("usage_metadata") or {})
    return Generation(**data)
