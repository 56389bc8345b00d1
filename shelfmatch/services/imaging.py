"""
Detection crops.

Source photos are loaded from a local path or URL once per batch and cropped
to the detection's bounding box (normalized 0-1000 coordinates). Crops are
returned as JPEG data URLs ready for the vision model.
"""

import asyncio
import base64
import io
from pathlib import Path

import httpx
from PIL import Image

from shelfmatch.config.settings import settings
from shelfmatch.errors import ImageLoadError
from shelfmatch.logger import get_logger
from shelfmatch.matching.models import BoundingBox, Detection

logger = get_logger(__name__)


def crop_to_bounding_box(image_bytes: bytes, box: BoundingBox) -> bytes:
    """Crop encoded image bytes to a normalized box. Returns JPEG bytes."""
    with Image.open(io.BytesIO(image_bytes)) as image:
        width, height = image.size
        left = round(box.x0 / 1000 * width)
        top = round(box.y0 / 1000 * height)
        right = round(box.x1 / 1000 * width)
        bottom = round(box.y1 / 1000 * height)
        if right <= left or bottom <= top:
            raise ImageLoadError(f"Bounding box crops to an empty region: {box}")

        cropped = image.crop((left, top, right, bottom)).convert("RGB")
        out = io.BytesIO()
        cropped.save(out, format="JPEG", quality=90)
        return out.getvalue()


def to_data_url(jpeg_bytes: bytes) -> str:
    return "data:image/jpeg;base64," + base64.b64encode(jpeg_bytes).decode("ascii")


class CropLoader:
    def __init__(self, http_client: httpx.AsyncClient | None = None, timeout: float | None = None):
        self.timeout = timeout or settings.image_timeout_seconds
        self.http = http_client or httpx.AsyncClient(timeout=self.timeout)
        # one load per source photo; concurrent callers await the same task
        self._sources: dict[str, asyncio.Task] = {}

    async def aclose(self) -> None:
        await self.http.aclose()

    async def crop(self, detection: Detection) -> str:
        """JPEG data URL of the detection's region. Raises ImageLoadError."""
        if not detection.image_ref:
            raise ImageLoadError("Detection has no source image", stage="ai_filter")
        if detection.bounding_box is None or not detection.bounding_box.is_valid:
            raise ImageLoadError("Invalid bounding box coordinates", stage="ai_filter")

        source = await self._load(detection.image_ref)
        try:
            cropped = await asyncio.to_thread(crop_to_bounding_box, source, detection.bounding_box)
        except ImageLoadError:
            raise
        except (OSError, ValueError) as e:
            raise ImageLoadError(f"Could not crop image: {e}", stage="ai_filter") from e
        return to_data_url(cropped)

    def clear(self) -> None:
        """Drop cached source photos. Loads already in progress finish for their callers."""
        if self._sources:
            logger.debug("source_cache_cleared", count=len(self._sources))
        self._sources.clear()

    @property
    def cached_sources(self) -> int:
        return len(self._sources)

    async def _load(self, image_ref: str) -> bytes:
        task = self._sources.get(image_ref)
        if task is None:
            task = asyncio.create_task(self._fetch(image_ref))
            self._sources[image_ref] = task
        try:
            return await asyncio.shield(task)
        except ImageLoadError:
            # failed loads are not cached
            if self._sources.get(image_ref) is task:
                del self._sources[image_ref]
            raise

    async def _fetch(self, image_ref: str) -> bytes:
        try:
            if image_ref.startswith(("http://", "https://")):
                response = await self.http.get(image_ref)
                response.raise_for_status()
                data = response.content
            else:
                data = await asyncio.to_thread(Path(image_ref).read_bytes)
        except (httpx.HTTPError, OSError) as e:
            raise ImageLoadError(f"Could not load image {image_ref}: {e}", stage="ai_filter") from e

        logger.debug("source_image_loaded", image_ref=image_ref, size=len(data))
        return data
