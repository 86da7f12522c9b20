"""
EtsyFlow Processing Pipeline

Stages per asset:
1. Normalize - size limit, HEIC/HEIF conversion, memory-safe downsampling
2. Classify - publish-resolution check (2000px on both axes)
3. Analyze - vision service derives listing metadata
4. Enhance - regeneration/upscale with subject preservation
5. Export - completed results packaged into one archive
"""
