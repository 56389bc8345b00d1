"""Error taxonomy for the matching pipeline."""


class ShelfMatchError(Exception):
    """Base error. `stage` names the pipeline step that failed, when known."""

    retryable = False

    def __init__(self, message: str, stage: str | None = None):
        super().__init__(message)
        self.stage = stage


class SearchFailed(ShelfMatchError):
    """Catalog service unreachable, erroring, or too slow."""

    retryable = True

    def __init__(self, message: str):
        super().__init__(message, stage="search")


class NoCandidates(ShelfMatchError):
    """Valid empty search result. Used as a NO_MATCH marker, not a failure."""

    def __init__(self, message: str = "No catalog results found"):
        super().__init__(message, stage="search")


class ClassificationFailed(ShelfMatchError):
    def __init__(self, message: str, gtin: str | None = None):
        super().__init__(message, stage="ai_filter")
        self.gtin = gtin


class PersistenceFailed(ShelfMatchError):
    pass


class ConcurrentRunRejected(ShelfMatchError):
    def __init__(self, detection_id: str):
        super().__init__(f"Detection {detection_id} is already being processed")
        self.detection_id = detection_id


class ImageLoadError(ShelfMatchError):
    pass
