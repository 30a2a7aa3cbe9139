"""Image access, summarization and ingestion."""

from .access import ImageAccess, ImageRef
from .ingestion import ImageIngestion, UploadedImage, build_storage_key
from .summarizer import ImageSummarizer

__all__ = [
    "ImageAccess",
    "ImageRef",
    "ImageSummarizer",
    "ImageIngestion",
    "UploadedImage",
    "build_storage_key",
]
