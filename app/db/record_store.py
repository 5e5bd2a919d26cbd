"""
db/record_store.py
MongoDB persistence for projects, batches and certificates.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import BaseModel

from app.models.batch_model import BatchDocument
from app.models.certificate_model import CertificateDocument
from app.models.project_model import ProjectDocument
from app.utils.helpers import get_logger, utcnow

logger = get_logger(__name__)

_NO_MONGO_ID = {"_id": 0}


def _to_bson(fields: dict[str, Any]) -> dict[str, Any]:
    """Flatten enums and nested models into plain values for an update."""
    out = {}
    for key, value in fields.items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, BaseModel):
            value = value.model_dump()
        out[key] = value
    return out


class MongoRecordStore:
    """Record store backed by three collections: projects, batches, certificates."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def ensure_indexes(self) -> None:
        await self.db.projects.create_index("id", unique=True)
        await self.db.batches.create_index("id", unique=True)
        await self.db.batches.create_index("project_id")
        await self.db.batches.create_index("status")
        await self.db.certificates.create_index("id", unique=True)
        await self.db.certificates.create_index("batch_id")
        await self.db.certificates.create_index("project_id")
        await self.db.certificates.create_index("status")

    # ── Projects ──────────────────────────────────────────────────────────────

    async def insert_project(self, project: ProjectDocument) -> ProjectDocument:
        await self.db.projects.insert_one(project.model_dump())
        return project

    async def get_project(self, project_id: str) -> Optional[ProjectDocument]:
        doc = await self.db.projects.find_one({"id": project_id}, _NO_MONGO_ID)
        return ProjectDocument(**doc) if doc else None

    async def find_project_by_name(self, name: str) -> Optional[ProjectDocument]:
        doc = await self.db.projects.find_one(
            {"name": name}, _NO_MONGO_ID, collation={"locale": "en", "strength": 2}
        )
        return ProjectDocument(**doc) if doc else None

    async def list_projects(self) -> List[ProjectDocument]:
        cursor = self.db.projects.find({}, _NO_MONGO_ID).sort("created_at", -1)
        return [ProjectDocument(**doc) async for doc in cursor]

    async def update_project(self, project_id: str, **fields) -> Optional[ProjectDocument]:
        fields["updated_at"] = utcnow()
        await self.db.projects.update_one({"id": project_id}, {"$set": _to_bson(fields)})
        return await self.get_project(project_id)

    async def delete_project(self, project_id: str) -> bool:
        """Delete a project and cascade to its batches and certificates."""
        certs = await self.db.certificates.delete_many({"project_id": project_id})
        batches = await self.db.batches.delete_many({"project_id": project_id})
        result = await self.db.projects.delete_one({"id": project_id})
        logger.info(
            f"Project {project_id} deleted ({batches.deleted_count} batches, {certs.deleted_count} certificates)"
        )
        return result.deleted_count > 0

    # ── Batches ───────────────────────────────────────────────────────────────

    async def insert_batch(self, batch: BatchDocument) -> BatchDocument:
        await self.db.batches.insert_one(batch.model_dump())
        return batch

    async def get_batch(self, batch_id: str) -> Optional[BatchDocument]:
        doc = await self.db.batches.find_one({"id": batch_id}, _NO_MONGO_ID)
        return BatchDocument(**doc) if doc else None

    async def list_batches(self, project_id: str) -> List[BatchDocument]:
        cursor = self.db.batches.find({"project_id": project_id}, _NO_MONGO_ID).sort("created_at", -1)
        return [BatchDocument(**doc) async for doc in cursor]

    async def find_batches(self, status: str, updated_before: Optional[datetime] = None) -> List[BatchDocument]:
        query: dict[str, Any] = {"status": status}
        if updated_before is not None:
            query["updated_at"] = {"$lt": updated_before}
        cursor = self.db.batches.find(query, _NO_MONGO_ID)
        return [BatchDocument(**doc) async for doc in cursor]

    async def update_batch(self, batch_id: str, **fields) -> None:
        fields["updated_at"] = utcnow()
        await self.db.batches.update_one({"id": batch_id}, {"$set": _to_bson(fields)})

    # ── Certificates ──────────────────────────────────────────────────────────

    async def insert_certificates(self, certificates: List[CertificateDocument]) -> None:
        if certificates:
            await self.db.certificates.insert_many([c.model_dump() for c in certificates])

    async def get_certificate(self, cert_id: str) -> Optional[CertificateDocument]:
        doc = await self.db.certificates.find_one({"id": cert_id}, _NO_MONGO_ID)
        return CertificateDocument(**doc) if doc else None

    async def find_certificates(
        self,
        batch_id: Optional[str] = None,
        project_id: Optional[str] = None,
        status: Optional[str] = None,
        ids: Optional[Iterable[str]] = None,
    ) -> List[CertificateDocument]:
        """Query certificates; results come back in manifest order."""
        query: dict[str, Any] = {}
        if batch_id is not None:
            query["batch_id"] = batch_id
        if project_id is not None:
            query["project_id"] = project_id
        if status is not None:
            query["status"] = status
        if ids is not None:
            query["id"] = {"$in": list(ids)}
        cursor = self.db.certificates.find(query, _NO_MONGO_ID).sort(
            [("created_at", 1), ("row_number", 1)]
        )
        return [CertificateDocument(**doc) async for doc in cursor]

    async def update_certificate(self, cert_id: str, **fields) -> Optional[CertificateDocument]:
        fields["updated_at"] = utcnow()
        await self.db.certificates.update_one({"id": cert_id}, {"$set": _to_bson(fields)})
        return await self.get_certificate(cert_id)

    async def transition_certificate(self, cert_id: str, from_status: str, **fields) -> Optional[CertificateDocument]:
        """Update only if the certificate is still in `from_status`. Returns None when it was not."""
        fields["updated_at"] = utcnow()
        result = await self.db.certificates.update_one(
            {"id": cert_id, "status": from_status}, {"$set": _to_bson(fields)}
        )
        if result.matched_count == 0:
            return None
        return await self.get_certificate(cert_id)

    async def update_batch_certificates(self, batch_id: str, status: str, /, **fields) -> int:
        """Set fields on every certificate of a batch currently in `status`."""
        fields["updated_at"] = utcnow()
        result = await self.db.certificates.update_many(
            {"batch_id": batch_id, "status": status}, {"$set": _to_bson(fields)}
        )
        return result.modified_count
