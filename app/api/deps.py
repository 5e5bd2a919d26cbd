"""
api/deps.py
FastAPI dependencies handing out the services built in the lifespan hook.
"""
from fastapi import Request

from app.services.batch_service import BatchService
from app.services.issuance_service import IssuanceService
from app.services.progress import ProgressBroadcaster
from app.services.project_service import ProjectService


def get_issuance_service(request: Request) -> IssuanceService:
    return request.app.state.issuance_service


def get_batch_service(request: Request) -> BatchService:
    return request.app.state.batch_service


def get_project_service(request: Request) -> ProjectService:
    return request.app.state.project_service


def get_broadcaster(request: Request) -> ProgressBroadcaster:
    return request.app.state.broadcaster
