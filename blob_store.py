"""
Local-disk blob store for chat attachments

Bytes land under <root>/<tenant_id>/<file_id>_<name>; each upload registers a
`files` row (status 'pending') so the document becomes queryable.
"""

import asyncio
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from database import DatabaseManager, FileDB, new_id
from errors import BlobStoreError
from monitoring import logger

@dataclass
class UploadMetadata:
    file_name: str
    mime_type: str
    tenant_id: str
    source: str
    size: Optional[int] = None
    uploaded_by: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

@dataclass
class StoredFile:
    id: str
    file_name: str
    size: int

def safe_file_name(name: str) -> str:
    cleaned = re.sub(r"[^\w.\-]+", "_", os.path.basename(name or "")).strip("._")
    return cleaned or "file"

def _write_bytes(path: str, data: bytes):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)

def _remove_quietly(path: str):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass

class LocalBlobStore:
    """Writes files to disk off the event loop and records them in the database"""

    def __init__(self, root_path: str, db: DatabaseManager):
        self.root_path = root_path
        self.db = db

    async def upload(self, data: bytes, meta: UploadMetadata) -> StoredFile:
        if not data:
            raise BlobStoreError(f"{meta.file_name} is empty")

        file_id = new_id()
        path = os.path.join(self.root_path, meta.tenant_id, f"{file_id}_{safe_file_name(meta.file_name)}")

        try:
            await asyncio.to_thread(_write_bytes, path, data)
        except OSError as e:
            raise BlobStoreError(f"Could not write {meta.file_name}: {e.strerror or e}") from e

        try:
            async with self.db.session() as session:
                session.add(FileDB(
                    id=file_id,
                    tenant_id=meta.tenant_id,
                    file_name=meta.file_name,
                    mime_type=meta.mime_type,
                    size=len(data),
                    source=meta.source,
                    storage_path=path,
                    uploaded_by=meta.uploaded_by,
                    processing_status="pending",
                    file_metadata=meta.metadata,
                ))
                await session.commit()
        except SQLAlchemyError as e:
            # Bytes without a files row are unreachable
            await asyncio.to_thread(_remove_quietly, path)
            logger.error("file_registration_failed", file_id=file_id, tenant_id=meta.tenant_id, error=str(e))
            raise BlobStoreError(f"Could not register {meta.file_name}") from e

        logger.info("file_stored", file_id=file_id, tenant_id=meta.tenant_id,
                    file_name=meta.file_name, size=len(data), source=meta.source)
        return StoredFile(id=file_id, file_name=meta.file_name, size=len(data))
