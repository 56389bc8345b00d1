"""
Catalog search client (FoodGraph-compatible API).

Authenticates with email/password, caches the bearer token, and runs a
fuzzy title search. Results come back as Candidates tagged `search`.
An empty result set is a valid outcome; transport failures, HTTP errors
and timeouts are retried and then raised as SearchFailed.
"""

import asyncio
import time

import httpx
from pydantic import BaseModel

from shelfmatch.catalog.models import CatalogProduct, CatalogSearchResponse
from shelfmatch.config.settings import settings
from shelfmatch.errors import SearchFailed
from shelfmatch.logger import get_logger
from shelfmatch.matching.models import Candidate, ProcessingStage
from shelfmatch.matching.retailers import retailers_from_urls

logger = get_logger(__name__)

AUTH_PATH = "/v1/auth/token"
SEARCH_PATH = "/v1/catalog/products/search/query"


class SearchContext(BaseModel):
    """Extra detection attributes. Only `retailer` is attached to results, never filtered on."""

    product_name: str | None = None
    flavor: str | None = None
    size: str | None = None
    retailer: str | None = None


class CatalogSearchClient:
    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        base_url: str | None = None,
        email: str | None = None,
        password: str | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
        retry_delay: float | None = None,
    ):
        self.base_url = (base_url or settings.catalog_base_url).rstrip("/")
        self.email = email if email is not None else settings.catalog_email
        self.password = password if password is not None else settings.catalog_password
        self.timeout = timeout or settings.search_timeout_seconds
        self.max_attempts = max(1, max_attempts or settings.search_max_attempts)
        self.retry_delay = (
            retry_delay if retry_delay is not None else settings.search_retry_delay_seconds
        )
        self.http = http_client or httpx.AsyncClient(timeout=self.timeout)

        self._token: str | None = None
        self._token_expiry = 0.0
        self._auth_task: asyncio.Task | None = None

    async def aclose(self) -> None:
        await self.http.aclose()

    async def search(
        self, brand_name: str, context: SearchContext | None = None
    ) -> list[Candidate]:
        """Query the catalog. Returns [] when nothing matches."""
        if not brand_name or not brand_name.strip():
            raise ValueError("brand_name must be a non-empty string")

        term = self.build_search_term(brand_name, context)
        retailer = context.retailer if context else None

        last_error: Exception | None = None
        for attempt in range(self.max_attempts):
            try:
                products = await asyncio.wait_for(self._query(term), timeout=self.timeout)
                candidates = [self.to_candidate(p, retailer) for p in products]
                logger.info("catalog_search_done", term=term, results=len(candidates))
                return candidates
            except asyncio.TimeoutError:
                last_error = TimeoutError(f"timed out after {self.timeout}s")
            except (httpx.HTTPError, ValueError) as e:
                last_error = e

            logger.warning(
                "catalog_search_attempt_failed",
                term=term,
                attempt=attempt + 1,
                error=str(last_error),
            )
            if attempt < self.max_attempts - 1:
                await asyncio.sleep(self.retry_delay * (attempt + 1))

        raise SearchFailed(f"Catalog search failed for '{term}': {last_error}") from last_error

    @staticmethod
    def build_search_term(brand_name: str, context: SearchContext | None = None) -> str:
        """Brand, product name, flavor and size joined into one fuzzy query."""
        if context is None:
            return brand_name.strip()
        parts = [brand_name, context.product_name, context.flavor, context.size]
        return " ".join(p.strip() for p in parts if p and p.strip())

    @staticmethod
    def to_candidate(product: CatalogProduct, retailer: str | None = None) -> Candidate:
        return Candidate(
            gtin=product.gtin,
            title=product.title,
            brand=product.companyBrand,
            manufacturer=product.companyManufacturer,
            size=product.measures,
            category=product.category,
            image_url=product.front_image_url(),
            source_retailers=retailers_from_urls(product.sourcePdpUrls),
            retailer_context=retailer,
            raw=product.model_dump(),
            processing_stage=ProcessingStage.SEARCH,
        )

    async def _query(self, term: str) -> list[CatalogProduct]:
        token = await self._authenticate()
        body = {
            "updatedAtFrom": settings.catalog_updated_from,
            "productFilter": "CORE_FIELDS",
            "search": term,
            "searchIn": {"or": ["title"]},
            "fuzzyMatch": True,
        }
        response = await self.http.post(
            f"{self.base_url}{SEARCH_PATH}",
            json=body,
            headers={"Authorization": f"Bearer {token}"},
        )
        if response.status_code == 401:
            # Expired token: drop it so the next attempt re-authenticates.
            self._token = None
        response.raise_for_status()

        parsed = CatalogSearchResponse.model_validate(response.json())
        results = parsed.results[: settings.catalog_max_results]
        return [CatalogProduct.model_validate(r) for r in results]

    async def _authenticate(self) -> str:
        if self._token and time.monotonic() < self._token_expiry:
            return self._token
        # single flight: concurrent callers share one token request
        if self._auth_task is None:
            self._auth_task = asyncio.create_task(self._request_token())
        return await asyncio.shield(self._auth_task)

    async def _request_token(self) -> str:
        try:
            if not self.email or not self.password:
                raise SearchFailed("Catalog credentials not configured")

            response = await self.http.post(
                f"{self.base_url}{AUTH_PATH}",
                json={
                    "email": self.email,
                    "password": self.password,
                    "includeRefreshToken": True,
                },
            )
            response.raise_for_status()
            token = response.json().get("accessToken")
            if not token:
                raise ValueError("Catalog auth response has no accessToken")

            self._token = token
            self._token_expiry = time.monotonic() + settings.catalog_token_ttl_seconds
            logger.info("catalog_authenticated")
            return token
        finally:
            self._auth_task = None
