"""
Demo file storage.

MatchZy uploads each map's demo as a raw request body. Files land in
``{root}/{match_slug}/{filename}``; the stored path is relative to root.
"""

import asyncio
from pathlib import Path
from typing import AsyncIterator, BinaryIO

from orchestrator.logging_config import get_logger
from orchestrator.utils.errors import ValidationError

logger = get_logger(__name__)


class DemoStore:
    """Writes uploaded demos under a root directory."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def relative_path(self, match_slug: str, filename: str) -> Path:
        # Only the final component of either name is used (no traversal)
        slug = Path(match_slug).name
        name = Path(filename).name
        if not slug or not name or name in (".", ".."):
            raise ValidationError("Invalid demo filename", {"filename": filename})
        return Path(slug) / name

    async def save(self, match_slug: str, filename: str, chunks: AsyncIterator[bytes]) -> tuple[str, int]:
        """Stream ``chunks`` to disk; returns (relative path, bytes written)."""
        relative = self.relative_path(match_slug, filename)
        target = self.root / relative
        await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)

        size = 0
        handle: BinaryIO = await asyncio.to_thread(open, target, "wb")
        try:
            async for chunk in chunks:
                if chunk:
                    await asyncio.to_thread(handle.write, chunk)
                    size += len(chunk)
        finally:
            await asyncio.to_thread(handle.close)

        logger.info("demo_saved", match_slug=match_slug, path=str(relative), size=size)
        return str(relative), size
