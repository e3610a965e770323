from __future__ import annotations

from pathlib import PurePath
from typing import Iterable, Optional

from taskkeeper.service.errors import InvalidAttachment

_JPEG_MAGIC = b"\xff\xd8\xff"
_PNG_MAGIC = b"\x89PNG\r\n\x1a\n"


def sniff_media_type(content: bytes) -> Optional[str]:
    if content.startswith(_JPEG_MAGIC):
        return "image/jpeg"
    if content.startswith(_PNG_MAGIC):
        return "image/png"
    return None


class AvatarPolicy:
    """Accepts small JPEG/PNG uploads; the bytes are stored as-is."""

    def __init__(
        self,
        max_bytes: int = 1_000_000,
        allowed_extensions: Iterable[str] = ("jpg", "jpeg", "png"),
    ) -> None:
        self.max_bytes = max_bytes
        self.allowed_extensions = frozenset(ext.lower() for ext in allowed_extensions)

    def check(self, filename: Optional[str], content: bytes) -> str:
        """Return the sniffed media type or raise ``InvalidAttachment``."""
        if not content:
            raise InvalidAttachment("please upload an image", detail={"reason": "empty"})
        if len(content) > self.max_bytes:
            raise InvalidAttachment(
                "file too large",
                detail={"reason": "too_large", "max_bytes": self.max_bytes},
            )
        extension = PurePath(filename or "").suffix.lstrip(".").lower()
        if extension not in self.allowed_extensions:
            raise InvalidAttachment(
                "please upload an image",
                detail={
                    "reason": "extension",
                    "allowed": sorted(self.allowed_extensions),
                },
            )
        media_type = sniff_media_type(content)
        if media_type is None:
            raise InvalidAttachment(
                "please upload an image", detail={"reason": "content"}
            )
        return media_type
