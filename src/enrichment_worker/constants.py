"""Application-wide constants."""

# Job Lifecycle
DEFAULT_MAX_ATTEMPTS = 3  # Executions allowed before a job is marked failed
JOB_RETRY_DELAYS_MINUTES = [1, 5, 15]  # Delay before re-running a failed job; last value repeats
DEFAULT_PROCESSING_TIMEOUT_SECONDS = 1800  # Processing rows older than this are reset on startup
DEFAULT_POLL_INTERVAL_SECONDS = 30  # Runner sleep when no job is due
DEFAULT_WORKER_POOL_SIZE = 1  # Concurrent jobs; 1 keeps the single-worker behaviour

# Reviewer Image Retry Escalation (attempt number -> minutes)
IMAGE_RETRY_DELAYS_MINUTES = {1: 15, 2: 30, 3: 60, 4: 120}
IMAGE_RETRY_MAX_ATTEMPTS = 4  # Lineage is abandoned once the next attempt exceeds this

# Batch Limits
DEFAULT_CONTRACTOR_BATCH_SIZE = 10  # Max contractors per profile or review enrichment job
DEFAULT_REVIEW_DEPTH = 50  # Reviews requested per contractor
MAX_REVIEW_DEPTH = 1500

# Review Enrichment
REVIEW_ENRICHMENT_COOLDOWN_DAYS = 30  # Minimum gap between successful enrichments
REVIEW_LOCATION_RADIUS_METERS = 50000  # Radius appended to "lat,lng" for task location
REVIEW_LANGUAGE_NAME = "English"

# Reviews API (DataForSEO)
DATAFORSEO_BASE_URL = "https://api.dataforseo.com"
DATAFORSEO_REVIEWS_ENDPOINT = "/v3/business_data/google/reviews"
DATAFORSEO_MAX_TASKS_PER_REQUEST = 100
DATAFORSEO_STATUS_SUCCESS = 20000
DATAFORSEO_STATUS_TASK_CREATED = 20100
DATAFORSEO_POLL_INTERVAL_SECONDS = 3  # Sleep before each readiness poll
DATAFORSEO_MAX_POLL_ATTEMPTS = 30  # ~90s total before pending tasks time out
DATAFORSEO_REQUEST_TIMEOUT_SECONDS = 60

# Web Crawler
CRAWLER_MAX_PAGES = 10  # Homepage included
CRAWLER_PAGE_DELAY_SECONDS = 1.5  # Pause between page loads on the same site
CRAWLER_PAGE_TIMEOUT_MS = 15000
CRAWLER_MAX_CONTENT_LENGTH = 50000  # Characters kept from the concatenated site text
CRAWLER_TRUNCATION_MARKER = "\n\n[Content truncated...]"

# AI Extraction
AI_EXTRACTION_MODEL = "gpt-4o-mini"
AI_EXTRACTION_TEMPERATURE = 0.1
AI_EXTRACTION_MAX_TOKENS = 2000
AI_EXTRACTION_MAX_INPUT_CHARS = 40000  # Website text sent to the model
AI_COST_PER_1K_TOKENS = 0.0004  # Blended input/output rate for gpt-4o-mini

# Service Types
DEFAULT_SERVICE_TYPE_SLUG = "concrete-contractor"  # Assigned when extraction finds nothing usable
AI_SERVICE_TYPE_CONFIDENCE = 0.85
DEFAULT_SERVICE_TYPE_CONFIDENCE = 1.0

# Reviewer Photos
IMAGE_DOWNLOAD_DELAY_SECONDS = 0.3  # Pause between downloads to the same host
IMAGE_DOWNLOAD_TIMEOUT_SECONDS = 5

# Contractor Gallery Images
DEFAULT_IMAGE_BATCH_SIZE = 10  # Contractors per image enrichment job
MAX_IMAGE_BATCH_SIZE = 100
GALLERY_IMAGE_TIMEOUT_SECONDS = 10
