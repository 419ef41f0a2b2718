"""
Blob storage exports.
"""

from app.crawler.storage.base import BlobStore, generate_blob_key
from app.crawler.storage.filesystem import FileSystemBlobStore

__all__ = ["BlobStore", "FileSystemBlobStore", "generate_blob_key"]
