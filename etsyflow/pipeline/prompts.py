"""
Enhancement request building blocks.

Pure functions: aspect-ratio mapping, the subject-preservation rules that every
enhancement request carries, and prompt precedence between the batch-wide
prompt and per-item overrides.
"""

from enum import Enum
from typing import Optional

from etsyflow.core.config import QualityTier, TIER_TARGETS


class AspectRatio(str, Enum):
    WIDE = "16:9"
    LANDSCAPE = "4:3"
    SQUARE = "1:1"
    PORTRAIT = "3:4"
    TALL = "9:16"


def map_aspect_ratio(width: int, height: int) -> AspectRatio:
    """Map raw dimensions to the nearest supported output ratio band."""
    if width <= 0 or height <= 0:
        return AspectRatio.SQUARE
    ratio = width / height
    if ratio > 1.5:
        return AspectRatio.WIDE
    if ratio > 1.2:
        return AspectRatio.LANDSCAPE
    if ratio < 0.6:
        return AspectRatio.TALL
    if ratio < 0.8:
        return AspectRatio.PORTRAIT
    return AspectRatio.SQUARE


SUBJECT_PRESERVATION_INSTRUCTION = """CRITICAL RULES:
1. TREAT THE PRODUCT AS A LOCKED ASSET.
2. DO NOT modify the product's shape, geometry, color, branding or texture.
3. Only change the environment, lighting, camera settings, resolution and sharpness.
4. DO NOT add objects that touch or overlap the product.
5. Keep the product silhouette pixel-perfect."""

ANALYSIS_INSTRUCTION = (
    "Analyze this product image for an Etsy listing. Identify the object, materials, "
    "texture and style. Respond with JSON containing: title (SEO optimized, max 140 "
    "characters), tags (5-7 search tags), category (best fit Etsy category) and "
    "visualDescription (brief description of textures and materials)."
)

_TIER_PROMPTS = {
    QualityTier.STANDARD: (
        "2K STUDIO POLISH",
        "Upscale this product photo to {edge}px resolution. Sharpen edges cleanly, balance "
        "the exposure for a bright Etsy aesthetic, and keep the product perfectly faithful "
        "to the source."
    ),
    QualityTier.HIGH: (
        "PROFESSIONAL 4K PRODUCT MASTER",
        "Upscale this image to {edge}px resolution. Sharpen existing details only and remove "
        "all compression artifacts. Optimize studio lighting for a premium commercial finish. "
        "The product must be exactly the same as the source, only clearer."
    ),
}


def build_enhancement_prompt(tier: QualityTier, refinement: Optional[str] = None) -> str:
    """Compose the full instruction text sent with an enhancement call."""
    title, body = _TIER_PROMPTS[tier]
    edge, _ = TIER_TARGETS[tier]
    parts = [f"{title}:", SUBJECT_PRESERVATION_INSTRUCTION]
    if refinement:
        parts.append(f"USER SPECIFIC REFINEMENT: {refinement}")
    parts.append(body.format(edge=edge))
    return "\n".join(parts)


def resolve_effective_prompt(
    global_prompt: Optional[str],
    use_global_prompt: bool,
    item_prompt: Optional[str]
) -> Optional[str]:
    """
    Pick the refinement text for one asset.

    With ``use_global_prompt`` on, the global prompt always wins and item
    overrides are ignored. Otherwise a non-blank item prompt wins, falling
    back to the global prompt.
    """
    global_prompt = (global_prompt or "").strip() or None
    item_prompt = (item_prompt or "").strip() or None
    if use_global_prompt:
        return global_prompt
    return item_prompt or global_prompt
