"""Reviewer photo downloader.

Copies reviewer profile photos from Google's CDN into local storage so the
site does not hot-link them. Google throttles aggressively; a 429 stops the
batch and hands the unfinished images back to the caller.
"""

import hashlib
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional
from urllib.parse import urlparse

import requests

from enrichment_worker.constants import IMAGE_DOWNLOAD_DELAY_SECONDS, IMAGE_DOWNLOAD_TIMEOUT_SECONDS
from enrichment_worker.exceptions import ImageRateLimitError
from enrichment_worker.job_queue.models import ReviewerImage
from enrichment_worker.storage.reviews import ReviewRepository

logger = logging.getLogger(__name__)

CONTENT_TYPE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
}


@dataclass
class PhotoBatchResult:
    downloaded: int = 0
    failed: int = 0


def photo_storage_path(contractor_id: str, original_url: str, content_type: Optional[str]) -> str:
    """Relative storage key: reviews/<contractor>/<md5 prefix>.<ext>."""
    digest = hashlib.md5(original_url.encode("utf-8")).hexdigest()[:12]  # noqa: S324
    ext = CONTENT_TYPE_EXTENSIONS.get((content_type or "").split(";")[0].strip().lower())
    if not ext:
        suffix = Path(urlparse(original_url).path).suffix.lstrip(".").lower()
        ext = suffix if suffix in CONTENT_TYPE_EXTENSIONS.values() else "jpg"
    return f"reviews/{contractor_id}/{digest}.{ext}"


class ReviewerPhotoDownloader:
    """Download reviewer photos and record their local URL on the review row."""

    def __init__(
        self,
        review_repo: ReviewRepository,
        storage_dir: str,
        public_base_url: str = "/media",
        session: Optional[requests.Session] = None,
        delay: float = IMAGE_DOWNLOAD_DELAY_SECONDS,
        timeout: float = IMAGE_DOWNLOAD_TIMEOUT_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.review_repo = review_repo
        self.storage_dir = Path(storage_dir)
        self.public_base_url = public_base_url.rstrip("/")
        self.session = session or requests.Session()
        self.delay = delay
        self.timeout = timeout
        self._sleep = sleep

    def download_photos(self, images: List[ReviewerImage], contractor_id: str) -> PhotoBatchResult:
        """
        Download a batch of reviewer photos sequentially.

        Non-OK responses and network errors count as failures and the batch
        continues.

        Raises:
            ImageRateLimitError: On HTTP 429, carrying this image and every
                image after it
        """
        result = PhotoBatchResult()

        for index, image in enumerate(images):
            if index > 0 and self.delay:
                self._sleep(self.delay)

            try:
                response = self.session.get(image.original_url, timeout=self.timeout)
            except requests.exceptions.RequestException as e:
                logger.warning("Reviewer photo %s download error: %s", image.review_id, e)
                result.failed += 1
                continue

            if response.status_code == 429:
                remaining = images[index:]
                logger.warning(
                    "Reviewer photo downloads rate limited for contractor %s, %d remaining",
                    contractor_id,
                    len(remaining),
                )
                raise ImageRateLimitError(remaining)

            if not response.ok:
                logger.debug(
                    "Reviewer photo %s returned HTTP %s", image.review_id, response.status_code
                )
                result.failed += 1
                continue

            try:
                key = photo_storage_path(
                    contractor_id, image.original_url, response.headers.get("Content-Type")
                )
                target = self.storage_dir / key
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(response.content)
                self.review_repo.set_downloaded_photo_url(
                    image.review_id, f"{self.public_base_url}/{key}"
                )
                result.downloaded += 1
            except OSError as e:
                logger.warning("Failed to store reviewer photo %s: %s", image.review_id, e)
                result.failed += 1

        logger.info(
            "Reviewer photos for %s: %d downloaded, %d failed",
            contractor_id,
            result.downloaded,
            result.failed,
        )
        return result
