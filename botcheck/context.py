"""Parent-context resolution for escalated items.

Walks an item's parent chain through the content source and assembles the
surrounding conversation as plain text, root first and immediate parent last.
"""

from typing import List, Optional

import structlog

from botcheck.models.analysis_models import ContentItem

logger = structlog.get_logger()


MAX_DEPTH = 10
CONTEXT_SEPARATOR = "\n\n"


def _item_text(item: ContentItem) -> str:
    if item.is_post:
        return "\n".join(part for part in (item.title, item.body) if part).strip()
    return (item.body or "").strip()


def build_context_text(context: Optional[str], body: str, max_chars: int = 512) -> str:
    """
    Join context and body so the body survives truncation to ``max_chars``.

    When the combined text is too long the context is trimmed from the front
    (its oldest part is dropped first). If the body alone exceeds
    ``max_chars`` the body is returned unchanged and the downstream
    truncation applies to it.

    Examples:
        >>> build_context_text("parent says hi", "reply", 512)
        'parent says hi\\n\\nreply'
        >>> build_context_text(None, "reply")
        'reply'
    """
    body = body or ""
    if not context:
        return body

    budget = max_chars - len(body) - len(CONTEXT_SEPARATOR)
    if budget <= 0:
        return body
    if len(context) > budget:
        context = context[-budget:]
    return f"{context}{CONTEXT_SEPARATOR}{body}"


class ContextResolver:
    """Resolves parent-chain context through a content source.

    Args:
        source: Object with ``async fetch_parent(ref) -> ContentItem | None``
        max_depth: Maximum number of parent hops
    """

    def __init__(self, source, max_depth: int = MAX_DEPTH):
        self.source = source
        self.max_depth = max_depth

    async def resolve_parent_text(self, item: ContentItem) -> Optional[str]:
        """
        Return the context text above ``item``, or None if nothing was resolved.

        Walks upward while the fetched parent is a comment with its own parent
        reference; a post contributes its title and body and ends the walk.
        Never raises: a failure part-way up keeps the context gathered so far.
        """
        ref = item.parent_id
        if not ref:
            return None

        chain: List[str] = []
        depth = 0
        while ref and depth < self.max_depth:
            try:
                parent = await self.source.fetch_parent(ref)
            except Exception as e:
                logger.warning(
                    "parent_fetch_failed",
                    item_id=item.id,
                    ref=ref,
                    depth=depth,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                break

            if parent is None:
                logger.debug("parent_unavailable", item_id=item.id, ref=ref, depth=depth)
                break

            text = _item_text(parent)
            if text:
                chain.append(text)
            depth += 1

            if parent.is_post:
                break
            ref = parent.parent_id

        if not chain:
            return None

        logger.debug("parent_context_resolved", item_id=item.id, hops=depth)
        return CONTEXT_SEPARATOR.join(reversed(chain))
