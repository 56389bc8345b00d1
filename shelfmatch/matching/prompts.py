"""Visual comparison prompts."""

AI_FILTER_SYSTEM_PROMPT = (
    "You are a retail product identification expert. You compare a photo of a "
    "product taken on a store shelf with a catalog reference image and decide "
    "whether they show the same product."
)

AI_FILTER_PROMPT = """The FIRST image is a product cropped from a shelf photo.
The SECOND image is the catalog reference image of a candidate product.

Shelf product (text read from the photo, may be incomplete):
- Brand: {brand}
- Product name: {product_name}
- Size: {size}
- Flavor/variant: {flavor}
- Category: {category}

Catalog candidate:
- Brand: {candidate_brand}
- Title: {candidate_title}
- Size: {candidate_size}

Compare package form and shape, color scheme, unique visual elements (logo,
graphics, patterns), text (brand, product name, variant, size) and layout.

matchStatus:
- "identical": same product. Same package form, colors, visual elements,
  brand, product name, flavor/variant and size.
- "almost_same": same brand and product family with a small difference
  (packaging refresh, claim wording, different size or flavor variant).
- "not_match": different product, brand, package form or color scheme.

confidence: how certain you are about matchStatus (0.0-1.0).
visualSimilarity: how similar the images look overall (0.0-1.0).

Respond in JSON:
{{"matchStatus": "identical" | "almost_same" | "not_match", "confidence": 0.0-1.0, "visualSimilarity": 0.0-1.0, "reason": "brief explanation naming the key matching or mismatching elements"}}"""
