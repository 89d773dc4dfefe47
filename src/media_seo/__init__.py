"""media-seo - AI generated image metadata with provider fallback and cost tracking."""

__version__ = "0.1.0"
