"""Shared FastAPI dependency providers for controller layer."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from schedule_optimizer.services.optimization_service import ScheduleOptimizationService
from schedule_optimizer.utils.config import get_settings


def get_optimization_service(request: Request) -> ScheduleOptimizationService:
    service = getattr(request.app.state, "optimization_service", None)
    if service is None:
        repository = getattr(request.app.state, "repository", None)
        if repository is not None:
            service = ScheduleOptimizationService(
                schedule_store=repository,
                therapist_gateway=repository,
                room_gateway=repository,
                settings=get_settings(),
            )
            request.app.state.optimization_service = service
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Optimization service is not initialized",
        )
    return service
