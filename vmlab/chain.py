"""Image ancestry resolution for vmlab."""

from __future__ import annotations

import uuid
from typing import Callable, List

from vmlab.exceptions import ImageCycleDetected
from vmlab.models import Image, ImageWithAncestors

ImageLookup = Callable[[uuid.UUID], Image]


def resolve_chain(image_id: uuid.UUID, lookup: ImageLookup) -> List[Image]:
    """Return the images from the root base image down to ``image_id``.

    ``lookup`` raises :class:`ImageNotFound` for unknown ids, which aborts the
    walk. Root-first order is what disk-chain construction needs.
    """
    chain: List[Image] = []
    seen = set()
    current_id = image_id
    while True:
        if current_id in seen:
            names = " -> ".join(image.name for image in reversed(chain))
            raise ImageCycleDetected(f"Image parent links form a cycle: {names} -> {current_id}")
        seen.add(current_id)
        image = lookup(current_id)
        chain.append(image)
        if image.parent_id is None:
            break
        current_id = image.parent_id
    chain.reverse()
    return chain


def image_with_ancestors(image_id: uuid.UUID, lookup: ImageLookup) -> ImageWithAncestors:
    chain = resolve_chain(image_id, lookup)
    ancestors = list(reversed(chain[:-1]))
    return ImageWithAncestors(image=chain[-1], ancestors=ancestors)
