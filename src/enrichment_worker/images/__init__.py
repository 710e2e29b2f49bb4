"""Reviewer photo and contractor gallery image downloads."""

from enrichment_worker.images.gallery_images import GalleryImageDownloader
from enrichment_worker.images.reviewer_photos import PhotoBatchResult, ReviewerPhotoDownloader

__all__ = ["GalleryImageDownloader", "PhotoBatchResult", "ReviewerPhotoDownloader"]
