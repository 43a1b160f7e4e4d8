from __future__ import annotations

import logging

from adforge.errors import NotFoundError, ValidationError
from adforge.models import EditSeed, Generation, GenerationContext, GenerationInput, Mode
from adforge.storage import ResultPersister

log = logging.getLogger(__name__)


class ConversationManager:
    """Loads a parent generation and turns an edit instruction into a context seed.

    The parent's conversation history is handed on untouched; the provider
    appends the instruction turn and its own reply, and the result is saved
    as a new child row.
    """

    def __init__(self, persister: ResultPersister) -> None:
        self.persister = persister

    async def seed(self, parent_id: str, edit_prompt: str, user_id: str | None = None) -> tuple[Generation, EditSeed]:
        if not (edit_prompt or "").strip():
            raise ValidationError("edit prompt is empty")

        parent = await self.persister.get_generation(parent_id)
        # Someone else's generation is reported as missing, not forbidden.
        if parent is None or (user_id is not None and parent.user_id != user_id):
            raise NotFoundError(f"generation {parent_id} not found")
        if not parent.conversation_history:
            raise ValidationError(f"generation {parent_id} has no conversation history and cannot be edited")

        log.info(
            "edit seeded from %s (edit_count=%d, turns=%d)",
            parent.id,
            parent.edit_count,
            len(parent.conversation_history),
        )
        return parent, EditSeed(
            parent_id=parent.id,
            parent_edit_count=parent.edit_count,
            edit_prompt=edit_prompt.strip(),
            history=tuple(parent.conversation_history),
        )


def edit_context(parent: Generation, seed: EditSeed) -> GenerationContext:
    try:
        mode = Mode(parent.mode)
    except ValueError:
        mode = Mode.STANDARD
    inp = GenerationInput(
        prompt=seed.edit_prompt,
        user_id=parent.user_id,
        mode=mode,
        template_id=parent.template_id,
        resolution=parent.resolution,
        aspect_ratio=parent.aspect_ratio,
    )
    return GenerationContext(input=inp, conversation=seed)
