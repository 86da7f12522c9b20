"""
Resolution Classifier

Tags an asset as meeting or failing the publish-target minimum.
Both axes must reach the threshold.
"""

from etsyflow.modules.batch.models import ResolutionClass

MIN_PUBLISH_DIMENSION = 2000


def classify(width: int, height: int, threshold: int = MIN_PUBLISH_DIMENSION) -> ResolutionClass:
    """
    Classify pixel dimensions against the publish minimum.

    >>> classify(1800, 1800)
    <ResolutionClass.NEEDS_ENHANCEMENT: 'needs_enhancement'>
    >>> classify(2200, 2100)
    <ResolutionClass.SUFFICIENT: 'sufficient'>
    """
    if width >= threshold and height >= threshold:
        return ResolutionClass.SUFFICIENT
    return ResolutionClass.NEEDS_ENHANCEMENT
