"""
EtsyFlow Enhancer

Batch pipeline that turns raw product photographs into Etsy-ready assets:
normalize -> classify -> analyze (vision) -> enhance (regeneration/upscale) -> export.
"""

__version__ = "1.0.0"
