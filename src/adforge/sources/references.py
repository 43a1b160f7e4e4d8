from __future__ import annotations

import logging
from typing import Sequence
from urllib.parse import urlparse

import httpx

from adforge.models import ImageInput

log = logging.getLogger(__name__)


def is_allowed_url(url: str, allowed_hosts: Sequence[str]) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    host = (parsed.hostname or "").lower()
    if parsed.scheme != "https" or not host:
        return False
    return any(host == h or host.endswith("." + h) for h in allowed_hosts)


async def fetch_reference_images(
    client: httpx.AsyncClient,
    urls: Sequence[str],
    allowed_hosts: Sequence[str],
    limit: int = 3,
) -> tuple[ImageInput, ...]:
    """
    Download template reference images. Disallowed or failing URLs are skipped
    with a warning; the rest keep their input order.
    """
    out: list[ImageInput] = []
    for url in list(urls)[:limit]:
        if not is_allowed_url(url, allowed_hosts):
            log.warning("skipping disallowed reference url %s", url)
            continue
        try:
            resp = await client.get(url)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            log.warning("failed to fetch reference image %s: %s", url, e)
            continue

        mime = resp.headers.get("content-type", "image/jpeg").split(";")[0].strip() or "image/jpeg"
        if not mime.startswith("image/"):
            log.warning("reference url %s is not an image (%s)", url, mime)
            continue
        name = urlparse(url).path.rsplit("/", 1)[-1] or "reference"
        out.append(ImageInput(data=resp.content, mime_type=mime, name=name))
    return tuple(out)
