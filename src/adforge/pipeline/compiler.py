"""Prompt compilation: (context, mode) -> prompt text + ordered image parts.

Pure and deterministic. The same context and mode always produce the same
bytes, so a revised prompt differs from the original only where the critic
changed it.
"""

from __future__ import annotations

import json

from adforge.models import (
    AssembledPrompt,
    GenerationContext,
    ImageInput,
    ImagePart,
    ImageRole,
    Mode,
)

NO_TEXT = "- Do not add text or watermarks"

ROLE_LABELS = {
    ImageRole.PRESERVE_EXACT: "primary product. Preserve its geometry, proportions and details exactly",
    ImageRole.PRODUCT: "product photo. Keep it recognizable as the hero",
    ImageRole.SUPPORTING: "additional product photo",
    ImageRole.STYLE_REFERENCE: "style reference only. Do not reproduce it literally",
    ImageRole.SCENE_REFERENCE: "template scene reference. Match its composition and lighting",
}

PLATFORM_GUIDELINES = {
    "instagram": "Square (1:1) or vertical (4:5), vibrant colors, lifestyle-focused, clean composition, high visual impact",
    "linkedin": "Horizontal (1.91:1), professional tone, data-driven visuals, minimal text overlay, business-appropriate",
    "tiktok": "Vertical (9:16), bold text, high contrast, dynamic composition, eye-catching in first frame",
    "facebook": "Flexible (1.91:1 for ads, 1:1 for posts), engaging, storytelling-focused, works at small sizes in feed",
    "twitter": "Horizontal (16:9), clean composition, minimal text, works well cropped, stands out in timeline",
    "x": "Horizontal (16:9), clean composition, minimal text, works well cropped, stands out in timeline",
}


def compile_prompt(ctx: GenerationContext, mode: Mode | None = None) -> AssembledPrompt:
    mode = mode or ctx.input.mode

    if ctx.conversation is not None:
        # Edits: the prior turns already carry product/brand framing.
        text = (
            f"Edit the previous image: {ctx.conversation.edit_prompt.strip()}\n"
            "Keep everything that the instruction does not mention unchanged."
        )
        return AssembledPrompt(prompt=text, image_parts=())

    parts = build_image_parts(ctx, mode)
    body, template_in_body = _mode_body(ctx, mode)

    sections = [body]
    sections.extend(
        s
        for s in (
            _product_block(ctx),
            _vision_block(ctx),
            _brand_block(ctx),
            _style_block(ctx),
            _patterns_block(ctx),
            _kb_block(ctx),
            None if template_in_body else _template_block(ctx),
            _platform_block(ctx),
        )
        if s
    )
    return AssembledPrompt(prompt="\n\n".join(sections), image_parts=parts)


def build_image_parts(ctx: GenerationContext, mode: Mode) -> tuple[ImagePart, ...]:
    uploads = list(ctx.input.images)
    refs = list(ctx.reference_images)
    out: list[ImagePart] = []

    if mode is Mode.EXACT_INSERT:
        out.extend(_part(img, ImageRole.SCENE_REFERENCE) for img in refs)
        for idx, img in enumerate(uploads):
            out.append(_part(img, ImageRole.PRESERVE_EXACT if idx == 0 else ImageRole.PRODUCT))
    elif mode is Mode.INSPIRATION:
        out.extend(_part(img, ImageRole.STYLE_REFERENCE) for img in uploads + refs)
    else:
        for idx, img in enumerate(uploads):
            out.append(_part(img, ImageRole.PRODUCT if idx == 0 else ImageRole.SUPPORTING))
    return tuple(out)


def _part(img: ImageInput, role: ImageRole) -> ImagePart:
    return ImagePart(data=img.data, mime_type=img.mime_type, role=role, label=ROLE_LABELS[role])


# ---------------------------------------------------------------------------
# Mode bodies
# ---------------------------------------------------------------------------


def _mode_body(ctx: GenerationContext, mode: Mode) -> tuple[str, bool]:
    """Return the leading prompt body and whether it already embeds the template."""
    if mode is Mode.EXACT_INSERT:
        if ctx.template is not None:
            return _exact_insert_body(ctx), True
        return _standard_body(ctx) + "\n- The first image is the product: preserve its shape and details exactly", False
    if mode is Mode.INSPIRATION:
        if ctx.template is not None:
            return _inspiration_body(ctx), True
        return _inspiration_without_template(ctx), False
    return _standard_body(ctx), False


def _standard_body(ctx: GenerationContext) -> str:
    prompt = ctx.input.prompt.strip()
    count = len(ctx.input.images)
    if count == 0:
        return prompt
    if count == 1:
        return (
            f"Transform this product photo based on the following instructions: {prompt}\n\n"
            "Guidelines:\n"
            "- Keep the product as the hero/focus\n"
            "- Maintain professional photography quality\n"
            "- Ensure the product is clearly visible and recognizable\n"
            "- Apply the requested scene, lighting, and style changes\n"
            f"{NO_TEXT}"
        )
    return (
        f"Transform these {count} product photos based on the following instructions: {prompt}\n\n"
        "Guidelines:\n"
        "- Combine all products in one cohesive scene\n"
        "- Keep all products clearly visible and recognizable\n"
        "- Maintain professional photography quality\n"
        "- Apply the requested scene, lighting, and style changes\n"
        f"{NO_TEXT}"
    )


def _exact_insert_body(ctx: GenerationContext) -> str:
    t = ctx.template
    prompt = ctx.input.prompt.strip()
    hints = json.dumps(t.placement_hints or {}, sort_keys=True, default=str)
    if ctx.input.images:
        return (
            "Insert the product into the following scene template.\n\n"
            f"Template Scene ({t.title}): {t.blueprint}\n\n"
            f"User Instructions: {prompt}\n\n"
            "CRITICAL CONSTRAINTS:\n"
            "- The product must keep its exact geometry, proportions, colors and details\n"
            "- The product must be clearly visible as the main subject\n"
            f"- Follow the template placement hints: {hints}\n"
            f"- Lighting must match the template: {t.lighting or 'as described'}\n"
            f"- Environment must match the template: {t.environment or 'as described'}\n"
            f"- Mood must match the template: {t.mood or 'as described'}\n"
            "- The product must look naturally integrated, not pasted on\n"
            f"{NO_TEXT}"
        )
    return (
        "Generate an image following this scene template exactly.\n\n"
        f"Template Scene ({t.title}): {t.blueprint}\n\n"
        f"User Instructions: {prompt}\n\n"
        "CONSTRAINTS:\n"
        f"- Lighting: {t.lighting or 'as described in template'}\n"
        f"- Environment: {t.environment or 'as described'}\n"
        f"- Mood: {t.mood or 'as described'}\n"
        "- Professional photography quality\n"
        f"{NO_TEXT}"
    )


def _inspiration_body(ctx: GenerationContext) -> str:
    t = ctx.template
    prompt = ctx.input.prompt.strip()
    subject = "Create a new product scene" if ctx.input.images else "Generate an image"
    return (
        f"{subject} inspired by the following template style, without copying it.\n\n"
        "Template Inspiration:\n"
        f"- Category: {t.category or 'not specified'}\n"
        f"- Mood: {t.mood or 'not specified'}\n"
        f"- Lighting Style: {t.lighting or 'not specified'}\n"
        f"- Environment Type: {t.environment or 'not specified'}\n"
        f"- General Vibe: {t.blueprint[:200]}\n\n"
        f"User Instructions: {prompt}\n\n"
        "Guidelines:\n"
        "- Treat every provided image as a style reference only; do not reproduce any of them literally\n"
        "- Capture the mood and aesthetic in a NEW, unique scene\n"
        "- Maintain professional photography quality\n"
        f"{NO_TEXT}"
    )


def _inspiration_without_template(ctx: GenerationContext) -> str:
    prompt = ctx.input.prompt.strip()
    if not ctx.input.images:
        return prompt
    return (
        f"Create a new advertising image based on these instructions: {prompt}\n\n"
        "Guidelines:\n"
        "- Treat every provided image as a style reference only; do not reproduce any of them literally\n"
        "- Borrow palette, lighting and mood from the references\n"
        "- Maintain professional photography quality\n"
        f"{NO_TEXT}"
    )


# ---------------------------------------------------------------------------
# Context blocks, appended in fixed order
# ---------------------------------------------------------------------------


def _product_block(ctx: GenerationContext) -> str | None:
    p = ctx.product
    if p is None:
        return None
    lines = [f"PRODUCT CONTEXT ({p.primary_name}):"]
    if p.category:
        lines.append(f"- Category: {p.category}")
    if p.description:
        lines.append(f"- Description: {p.description[:300]}")
    if p.relationships:
        lines.append("Related Products:")
        for rel in p.relationships[:5]:
            suffix = f": {rel.description}" if rel.description else ""
            lines.append(f"- {rel.target_product_name} ({rel.relationship_type}){suffix}")
    active = [s for s in p.scenarios if s.is_active]
    if active:
        lines.append("Installation Context:")
        for s in active[:2]:
            lines.append(f"- {s.title}: {s.description[:200]}")
    if p.formatted_context:
        lines.append(p.formatted_context[:800])
    lines.append("Consider these product relationships and usage contexts when composing the image.")
    return "\n".join(lines)


def _vision_block(ctx: GenerationContext) -> str | None:
    v = ctx.vision
    if v is None:
        return None
    return (
        "PRODUCT VISUAL ANALYSIS:\n"
        f"- Category: {v.category}\n"
        f"- Materials: {', '.join(v.materials) or 'unknown'}\n"
        f"- Colors: {', '.join(v.colors) or 'unknown'}\n"
        f"- Style: {v.style or 'unknown'}\n"
        f"- Usage Context: {v.usage_context or 'unknown'}\n"
        "Keep the generated image consistent with these product characteristics."
    )


def _brand_block(ctx: GenerationContext) -> str | None:
    b = ctx.brand
    if b is None:
        return None
    return (
        f"BRAND GUIDELINES ({b.name}):\n"
        f"- Visual Style: {', '.join(b.styles) or 'Professional'}\n"
        f"- Brand Values: {', '.join(b.values) or 'Reliability'}\n"
        f"- Brand Colors: {', '.join(b.colors) or 'Standard'}\n"
        f"- Voice Principles: {', '.join(b.voice_principles) or 'Professional'}\n"
        "Align the image with these brand guidelines."
    )


def _style_block(ctx: GenerationContext) -> str | None:
    if ctx.style is None or not ctx.style.directive:
        return None
    return f"STYLE DIRECTIVE ({ctx.style.reference_count} reference(s)):\n{ctx.style.directive}"


def _patterns_block(ctx: GenerationContext) -> str | None:
    if ctx.patterns is None or not ctx.patterns.directive:
        return None
    return (
        "LEARNED ADVERTISING PATTERNS:\n"
        f"{ctx.patterns.directive}\n"
        "Apply relevant patterns from successful ads when composing the image."
    )


def _kb_block(ctx: GenerationContext) -> str | None:
    if ctx.kb is None or not ctx.kb.text:
        return None
    return f"BRAND KNOWLEDGE BASE:\n{ctx.kb.text[:1000]}\nUse this knowledge to inform the image."


def _template_block(ctx: GenerationContext) -> str | None:
    t = ctx.template
    if t is None:
        return None
    return (
        f"TEMPLATE BLUEPRINT ({t.title}):\n{t.blueprint}\n"
        f"- Mood: {t.mood or 'not specified'}\n"
        f"- Lighting: {t.lighting or 'not specified'}\n"
        f"- Environment: {t.environment or 'not specified'}"
    )


def _platform_block(ctx: GenerationContext) -> str | None:
    platform = ctx.input.platform or (ctx.input.recipe.platform if ctx.input.recipe else None)
    if not platform:
        return None
    guidelines = PLATFORM_GUIDELINES.get(platform.strip().lower().replace("twitter/x", "x"))
    if not guidelines:
        return None
    return f"PLATFORM GUIDELINES ({platform.upper()}):\n{guidelines}"
