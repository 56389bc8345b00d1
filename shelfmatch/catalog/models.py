"""Catalog API payload models."""

from typing import Any

from pydantic import BaseModel, Field, field_validator


class CatalogImageUrls(BaseModel):
    original: str | None = None
    desktop: str | None = None
    mobile: str | None = None


class CatalogImage(BaseModel):
    id: str | None = None
    type: str | None = None
    urls: CatalogImageUrls = Field(default_factory=CatalogImageUrls)

    @property
    def display_url(self) -> str | None:
        return self.urls.desktop or self.urls.mobile


class CatalogProduct(BaseModel):
    """A product record as returned by the catalog search endpoint."""

    key: str
    keys: dict[str, str | None] = Field(default_factory=dict)
    title: str = ""
    category: list[str] = Field(default_factory=list)
    measures: str | None = None
    sourcePdpUrls: list[str] = Field(default_factory=list)
    companyBrand: str | None = None
    companyManufacturer: str | None = None
    images: list[CatalogImage] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    @field_validator("category", "sourcePdpUrls", mode="before")
    @classmethod
    def _listify(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value

    @property
    def gtin(self) -> str:
        return self.keys.get("GTIN14") or self.key

    def front_image_url(self) -> str | None:
        """FRONT image first, otherwise the first image with a usable URL."""
        for image in self.images:
            if image.type == "FRONT" and image.display_url:
                return image.display_url
        for image in self.images:
            if image.display_url:
                return image.display_url
        return None


class CatalogSearchResponse(BaseModel):
    success: bool = True
    results: list[dict[str, Any]] = Field(default_factory=list)
