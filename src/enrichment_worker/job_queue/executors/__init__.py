"""Job executors package.

One executor per JobType. ``build_registry`` wires them with their external
collaborators; it is called once at worker startup.
"""

from typing import Optional

from enrichment_worker.ai.extraction import AIExtractor
from enrichment_worker.images.gallery_images import GalleryImageDownloader
from enrichment_worker.images.reviewer_photos import ReviewerPhotoDownloader
from enrichment_worker.job_queue.executors.base import (
    ExecutorContext,
    JobExecutor,
    ProgressCallback,
    ProgressTracker,
)
from enrichment_worker.job_queue.executors.image_enrichment import ImageEnrichmentExecutor
from enrichment_worker.job_queue.executors.image_retry import ImageRetryExecutor
from enrichment_worker.job_queue.executors.profile_enrichment import (
    CrawlerFactory,
    ProfileEnrichmentExecutor,
)
from enrichment_worker.job_queue.executors.review_enrichment import (
    ReviewEnrichmentExecutor,
    ReviewsClientFactory,
)
from enrichment_worker.job_queue.registry import JobExecutorRegistry


def build_registry(
    crawler_factory: CrawlerFactory,
    extractor: Optional[AIExtractor],
    reviews_client_factory: ReviewsClientFactory,
    photo_downloader: Optional[ReviewerPhotoDownloader],
    gallery_downloader: Optional[GalleryImageDownloader] = None,
) -> JobExecutorRegistry:
    """
    Create a registry and register the executors that can be built.

    Args:
        crawler_factory: Builds a WebCrawler per profile job
        extractor: AI extractor; profile jobs are not registered without one
        reviews_client_factory: Builds the reviews API client per review job
        photo_downloader: Reviewer photo downloader shared by review and image
            jobs; image retry jobs are not registered without one
        gallery_downloader: Gallery image downloader for image enrichment jobs

    Returns:
        A registry covering every JobType whose collaborators were given
    """
    registry = JobExecutorRegistry()
    if extractor is not None:
        registry.register(
            ProfileEnrichmentExecutor.job_type,
            ProfileEnrichmentExecutor(crawler_factory, extractor),
        )
    registry.register(
        ReviewEnrichmentExecutor.job_type,
        ReviewEnrichmentExecutor(reviews_client_factory, photo_downloader),
    )
    if photo_downloader is not None:
        registry.register(ImageRetryExecutor.job_type, ImageRetryExecutor(photo_downloader))
    if gallery_downloader is not None:
        registry.register(
            ImageEnrichmentExecutor.job_type, ImageEnrichmentExecutor(gallery_downloader)
        )
    return registry


__all__ = [
    "ExecutorContext",
    "JobExecutor",
    "ProgressCallback",
    "ProgressTracker",
    "ProfileEnrichmentExecutor",
    "ReviewEnrichmentExecutor",
    "ImageRetryExecutor",
    "ImageEnrichmentExecutor",
    "build_registry",
]
