"""
Chat media access - signed URL issuance and object path validation.

Media objects are private. Clients only ever see short-lived signed URLs, and
every object path is checked against the owning thread before it is stored.
"""

import logging
import mimetypes
import re
import uuid
from dataclasses import dataclass, field
from typing import Optional, Protocol

from ...config import ChatSettings

logger = logging.getLogger(__name__)

CHAT_PATH_ROOT = "chats"

# Extensions preferred over whatever mimetypes returns first (e.g. .jpe for image/jpeg)
PREFERRED_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
    "image/heic": "heic",
}

_SAFE_EXTENSION = re.compile(r"^[a-z0-9]{1,8}$")


class ObjectStorage(Protocol):
    """Capability the broker needs from a storage provider"""

    def presign_get(self, key: str, ttl_seconds: int) -> str: ...

    def presign_put(self, key: str, content_type: str, ttl_seconds: int) -> tuple[str, dict]: ...

    def delete_prefix(self, prefix: str) -> int: ...


@dataclass
class SignedUpload:
    url: Optional[str] = None
    headers: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.url is not None


def thread_prefix(thread_id: int) -> str:
    return f"{CHAT_PATH_ROOT}/{thread_id}/"


def is_traversal(path: str) -> bool:
    """True for paths that could escape their folder: '..' anywhere, or an absolute prefix"""
    return ".." in path or path.startswith("/") or path.startswith("\\")


def normalize_mime(content_type: str) -> str:
    """'Image/PNG; charset=x' -> 'image/png'"""
    return content_type.split(";", 1)[0].strip().lower()


class MediaAccessBroker:
    """Issues signed URLs for chat media and guards every object path"""

    def __init__(self, storage: ObjectStorage, settings: ChatSettings):
        self.storage = storage
        self.settings = settings

    @property
    def allowed_mime_types(self) -> tuple[str, ...]:
        return self.settings.allowed_image_mime

    def is_allowed_mime(self, content_type: Optional[str]) -> bool:
        if not content_type:
            return False
        return normalize_mime(content_type) in self.allowed_mime_types

    def validate_thread_path(self, thread_id: int, object_path: str) -> bool:
        return object_path.startswith(thread_prefix(thread_id)) and not is_traversal(object_path)

    def sign_get_url(self, object_path: str, ttl_seconds: Optional[int] = None) -> Optional[str]:
        """Signed GET URL, or None for a path that fails the traversal check.

        Storage errors propagate as ChatStorageFailure; callers decide whether
        that degrades (reads) or fails the request.
        """
        if not object_path or is_traversal(object_path):
            logger.warning(f"⚠️ Refusing to sign suspicious media path: {object_path!r}")
            return None
        ttl = ttl_seconds if ttl_seconds is not None else self.settings.signed_url_ttl
        return self.storage.presign_get(object_path, ttl)

    def sign_put_url(
        self, object_path: str, content_type: str, ttl_seconds: Optional[int] = None
    ) -> SignedUpload:
        if not object_path or is_traversal(object_path):
            logger.warning(f"⚠️ Refusing upload URL for suspicious path: {object_path!r}")
            return SignedUpload()
        if not self.is_allowed_mime(content_type):
            logger.warning(f"⚠️ Refusing upload URL for content type: {content_type!r}")
            return SignedUpload()

        ttl = ttl_seconds if ttl_seconds is not None else self.settings.signed_url_ttl
        url, headers = self.storage.presign_put(object_path, normalize_mime(content_type), ttl)
        return SignedUpload(url=url, headers=headers)

    def delete_by_prefix(self, prefix: str) -> int:
        # An empty or absolute prefix would address the whole bucket
        if not prefix or is_traversal(prefix):
            logger.warning(f"⚠️ Chat cleanup rejected suspicious prefix: {prefix!r}")
            return 0

        count = self.storage.delete_prefix(prefix)
        logger.info(f"🗑️ Chat cleanup deleted {count} object(s) under {prefix}")
        return count

    def build_object_path(self, thread_id: int, filename: Optional[str], content_type: str) -> str:
        """Server-generated key: chats/{thread_id}/{uuid}.{ext}

        Only the extension of the client filename is kept, and only when it is
        short and alphanumeric.
        """
        ext = ""
        if filename and "." in filename:
            candidate = filename.rsplit(".", 1)[-1].lower()
            if _SAFE_EXTENSION.match(candidate):
                ext = candidate

        if not ext:
            mime = normalize_mime(content_type)
            guessed = mimetypes.guess_extension(mime) or ""
            ext = PREFERRED_EXTENSIONS.get(mime) or guessed.lstrip(".") or "bin"

        return f"{thread_prefix(thread_id)}{uuid.uuid4().hex}.{ext}"
