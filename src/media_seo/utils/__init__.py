"""Utility modules for media-seo."""

from .image_processor import ImagePayload, ImageProcessor
from .rate_limiter import InMemoryRateLimiter, RateLimiter

__all__ = ["ImagePayload", "ImageProcessor", "InMemoryRateLimiter", "RateLimiter"]
