"""
File Storage Module for PageFlow

Resolves file references to bytes and stores page files. Workers only see the
FileStore interface; references are the relative paths the files were stored
under.

Environment Variables:
    SUPABASE_URL: Supabase project URL (e.g., https://xxx.supabase.co)
    SUPABASE_KEY: Supabase anon/service key
    STORAGE_DIR: Local directory used when Supabase is not configured
"""

import asyncio
import hashlib
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

from supabase import Client, create_client

from .config import PipelineSettings

logger = logging.getLogger(__name__)


def compute_content_hash(content: bytes) -> str:
    """Compute SHA-256 hash of content."""
    return hashlib.sha256(content).hexdigest()


def page_path(workflow_id: str, page_number: int) -> str:
    """Deterministic storage path for a split page, so re-uploads overwrite."""
    return f"workflows/{workflow_id}/pages/page-{page_number}.pdf"


def upload_path(workflow_id: str, file_name: str) -> str:
    safe_name = Path(file_name).name or "document.pdf"
    return f"uploads/{workflow_id}/{safe_name}"


class FileNotFoundInStoreError(Exception):
    """Raised when a reference does not resolve to a stored file."""
    retryable = False


class FileStore(ABC):
    """File reference resolver."""

    @abstractmethod
    async def fetch(self, ref: str) -> bytes:
        """Return the bytes behind a reference."""

    @abstractmethod
    async def store(
        self,
        content: bytes,
        path: str,
        metadata: Optional[Dict[str, Any]] = None,
        content_type: str = "application/pdf",
    ) -> str:
        """Store bytes at `path` (overwriting) and return the reference."""


class SupabaseFileStore(FileStore):
    """Files in a Supabase Storage bucket."""

    def __init__(self, client: Client, bucket: str = "documents"):
        self.client = client
        self.bucket = bucket

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "SupabaseFileStore":
        client = create_client(settings.supabase_url, settings.supabase_key)
        logger.info("Supabase Storage client initialized")
        return cls(client, settings.storage_bucket)

    async def fetch(self, ref: str) -> bytes:
        try:
            return await asyncio.to_thread(self.client.storage.from_(self.bucket).download, ref)
        except Exception as e:
            logger.error(f"Failed to download {ref} from Supabase: {e}")
            raise

    async def store(
        self,
        content: bytes,
        path: str,
        metadata: Optional[Dict[str, Any]] = None,
        content_type: str = "application/pdf",
    ) -> str:
        file_options = {"content-type": content_type, "upsert": "true"}
        if metadata:
            file_options["metadata"] = {k: str(v) for k, v in metadata.items()}
        try:
            await asyncio.to_thread(
                self.client.storage.from_(self.bucket).upload,
                path=path,
                file=content,
                file_options=file_options,
            )
        except Exception as e:
            logger.error(f"Failed to upload {path} to Supabase: {e}")
            raise
        logger.info(f"Uploaded {path} to Supabase Storage ({len(content)} bytes)")
        return path


class LocalFileStore(FileStore):
    """Files on local disk under a root directory."""

    def __init__(self, root: str):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, ref: str) -> Path:
        path = (self.root / ref).resolve()
        if path != self.root and self.root not in path.parents:
            raise ValueError(f"Reference escapes storage root: {ref}")
        return path

    async def fetch(self, ref: str) -> bytes:
        path = self._resolve(ref)
        if not path.is_file():
            raise FileNotFoundInStoreError(f"No stored file for reference {ref}")
        return await asyncio.to_thread(path.read_bytes)

    async def store(
        self,
        content: bytes,
        path: str,
        metadata: Optional[Dict[str, Any]] = None,
        content_type: str = "application/pdf",
    ) -> str:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(target.write_bytes, content)
        logger.debug(f"Stored {path} locally ({len(content)} bytes, sha256={compute_content_hash(content)[:12]})")
        return path


def create_file_store(settings: PipelineSettings) -> FileStore:
    """Supabase when configured, local disk otherwise."""
    if settings.supabase_configured:
        return SupabaseFileStore.from_settings(settings)
    logger.warning("Supabase credentials not configured. File storage will use local fallback.")
    return LocalFileStore(settings.storage_dir)
