"""ImageReference value type and content-hash derivation.

Midjourney names its output files ``<user>_<prompt>_<uuid>.png``; the UUID is the
job hash that upscale interactions must reference. When the backend does not hand
us the hash directly we recover it from the URL's last path segment.
"""

import re
from dataclasses import asdict, dataclass, replace
from typing import Any, Optional
from urllib.parse import urlparse

UUID_PATTERN = re.compile(r"([a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12})")

DEFAULT_EPHEMERAL_MARKER = "ephemeral-attachments"


def extract_content_hash(url: Optional[str]) -> Optional[str]:
    """Extract the UUID-shaped job hash from the last path segment of url.

    Query strings (signed CDN parameters) are ignored.

    Returns:
        Lowercase hash, or None if the filename carries no UUID
    """
    if not url:
        return None
    filename = urlparse(url).path.rstrip("/").rsplit("/", 1)[-1].lower()
    match = UUID_PATTERN.search(filename)
    return match.group(1) if match else None


def is_ephemeral_url(url: Optional[str], marker: str = DEFAULT_EPHEMERAL_MARKER) -> bool:
    """Return True if url points at a short-lived attachment."""
    return bool(url) and marker in url


@dataclass(frozen=True)
class ImageReference:
    """Pointer to a generated image on the chat platform.

    Attributes:
        url: Attachment URL (ephemeral or permanent)
        message_id: Snowflake of the message that carries the attachment
        content_hash: Backend job hash (needed for upscale interactions)
        ephemeral: True while url is a short-lived attachment link
        proxy_url: Media proxy URL if the backend supplied one
        flags: Message flags of the carrying message
    """

    url: str
    message_id: str
    content_hash: Optional[str] = None
    ephemeral: bool = False
    proxy_url: Optional[str] = None
    flags: int = 0

    @classmethod
    def derive(
        cls,
        url: str,
        message_id: str,
        backend_hash: Optional[str] = None,
        proxy_url: Optional[str] = None,
        flags: int = 0,
        ephemeral_marker: str = DEFAULT_EPHEMERAL_MARKER,
    ) -> "ImageReference":
        """Build a reference, preferring the backend hash over one parsed from the URL."""
        return cls(
            url=url,
            message_id=str(message_id),
            content_hash=backend_hash or extract_content_hash(url),
            ephemeral=is_ephemeral_url(url, ephemeral_marker),
            proxy_url=proxy_url,
            flags=flags,
        )

    def promoted(self, url: str, proxy_url: Optional[str] = None) -> "ImageReference":
        """Return a copy pointing at the permanent url that replaced an ephemeral one."""
        return replace(
            self,
            url=url,
            proxy_url=proxy_url or self.proxy_url,
            content_hash=self.content_hash or extract_content_hash(url),
            ephemeral=False,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ImageReference":
        return cls(
            url=data["url"],
            message_id=str(data["message_id"]),
            content_hash=data.get("content_hash"),
            ephemeral=bool(data.get("ephemeral", False)),
            proxy_url=data.get("proxy_url"),
            flags=int(data.get("flags") or 0),
        )
