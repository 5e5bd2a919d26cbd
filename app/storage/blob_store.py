"""
storage/blob_store.py
Filesystem storage for templates, uploaded ZIPs, recipient PDFs and stamped PDFs.
Keys are POSIX-style paths relative to the store root.
"""
import asyncio
import shutil
from pathlib import Path

from app.utils.helpers import get_logger

logger = get_logger(__name__)


def template_key(project_id: str) -> str:
    return f"projects/{project_id}/template.pdf"


def batch_dir_key(project_id: str, batch_id: str) -> str:
    return f"projects/{project_id}/batches/{batch_id}"


def source_pdf_key(project_id: str, batch_id: str, filename: str) -> str:
    return f"{batch_dir_key(project_id, batch_id)}/source/{filename}"


def issued_pdf_key(project_id: str, batch_id: str, filename: str) -> str:
    return f"projects/{project_id}/issued/{batch_id}/{filename}"


class FileBlobStore:
    def __init__(self, root: str | Path):
        self.root = Path(root)

    def path_for(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Blob key escapes storage root: {key}")
        return path

    async def read_bytes(self, key: str) -> bytes:
        path = self.path_for(key)
        if not path.exists():
            raise FileNotFoundError(f"Blob not found: {key}")
        return await asyncio.to_thread(path.read_bytes)

    async def write_bytes(self, key: str, data: bytes) -> str:
        path = self.path_for(key)
        await asyncio.to_thread(self._write, path, data)
        return key

    async def exists(self, key: str) -> bool:
        return self.path_for(key).exists()

    async def delete_prefix(self, key: str) -> None:
        """Remove everything stored under a key prefix."""
        path = self.path_for(key)
        if path.is_dir():
            await asyncio.to_thread(shutil.rmtree, path)
        elif path.exists():
            path.unlink()
        logger.info(f"Deleted blobs under {key}")

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
