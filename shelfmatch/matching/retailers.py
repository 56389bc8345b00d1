"""Retailer name resolution for store names and catalog source URLs."""

KNOWN_RETAILERS = [
    "target",
    "walmart",
    "walgreens",
    "cvs",
    "kroger",
    "safeway",
    "albertsons",
    "publix",
    "whole foods",
    "trader joe",
    "costco",
    "sam's club",
    "aldi",
    "lidl",
    "food lion",
    "giant",
    "stop & shop",
]

# URL fragment -> retailer
RETAILER_DOMAINS = {
    "walmart.com": "walmart",
    "target.com": "target",
    "walgreens.com": "walgreens",
    "cvs.com": "cvs",
    "kroger.com": "kroger",
    "safeway.com": "safeway",
    "albertsons.com": "albertsons",
    "publix.com": "publix",
    "wholefoodsmarket.com": "whole foods",
    "traderjoes.com": "trader joe",
    "costco.com": "costco",
    "samsclub.com": "sam's club",
    "aldi.": "aldi",
    "lidl.": "lidl",
    "foodlion.com": "food lion",
    "giantfood.com": "giant",
    "stopandshop.com": "stop & shop",
}


def retailer_from_store_name(store_name: str | None) -> str | None:
    """'Target Store #1234' -> 'target'. Unknown chains fall back to the first word."""
    if not store_name:
        return None
    normalized = store_name.lower().strip()
    if not normalized:
        return None
    for retailer in KNOWN_RETAILERS:
        if retailer in normalized:
            return retailer
    return normalized.split()[0]


def retailers_from_urls(urls: list[str] | None) -> list[str]:
    """Retailers whose product pages list the item, in first-seen order."""
    found: list[str] = []
    for url in urls or []:
        lowered = url.lower()
        for fragment, retailer in RETAILER_DOMAINS.items():
            if fragment in lowered and retailer not in found:
                found.append(retailer)
    return found
