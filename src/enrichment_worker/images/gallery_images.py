"""Contractor gallery image downloader.

Imported listings carry gallery image URLs in ``metadata.pending_images``.
This copies each one into local storage under a content hash so the same
picture imported twice is stored once.
"""

import hashlib
import logging
from pathlib import Path
from typing import Optional

import requests

from enrichment_worker.constants import GALLERY_IMAGE_TIMEOUT_SECONDS
from enrichment_worker.images.reviewer_photos import CONTENT_TYPE_EXTENSIONS

logger = logging.getLogger(__name__)


def gallery_storage_path(contractor_id: str, content: bytes, content_type: Optional[str]) -> str:
    """Relative storage key: contractors/<contractor>/<md5 of content prefix>.<ext>."""
    digest = hashlib.md5(content).hexdigest()[:12]  # noqa: S324
    ext = CONTENT_TYPE_EXTENSIONS.get((content_type or "").split(";")[0].strip().lower(), "jpg")
    return f"contractors/{contractor_id}/{digest}.{ext}"


class GalleryImageDownloader:
    def __init__(
        self,
        storage_dir: str,
        public_base_url: str = "/media",
        session: Optional[requests.Session] = None,
        timeout: float = GALLERY_IMAGE_TIMEOUT_SECONDS,
    ):
        self.storage_dir = Path(storage_dir)
        self.public_base_url = public_base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def download(self, image_url: str, contractor_id: str) -> Optional[str]:
        """
        Store one gallery image and return its public URL.

        Returns None when the image could not be fetched or written; the
        caller counts that as a failed image and moves on.
        """
        try:
            response = self.session.get(image_url, timeout=self.timeout)
        except requests.exceptions.Timeout:
            logger.warning("Timed out downloading gallery image %s", image_url)
            return None
        except requests.exceptions.RequestException as e:
            logger.warning("Error downloading gallery image %s: %s", image_url, e)
            return None

        if not response.ok:
            logger.warning("Gallery image %s returned HTTP %s", image_url, response.status_code)
            return None

        key = gallery_storage_path(contractor_id, response.content, response.headers.get("Content-Type"))
        target = self.storage_dir / key
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(response.content)
        except OSError as e:
            logger.warning("Failed to store gallery image %s: %s", key, e)
            return None

        logger.debug("Stored gallery image %s", key)
        return f"{self.public_base_url}/{key}"
