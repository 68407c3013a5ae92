"""
gateway/routers/readings.py

Thin HTTP surface over MonitoringService.
POST /readings accepts and categorizes a reading; alert evaluation and
suggestion mining run after it is stored and never fail the request.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request

from gateway.schemas import (
    Alert,
    AlertEvaluation,
    OverrideUpdate,
    PatientOverride,
    ReadingPayload,
    ReadingReceipt,
    Suggestion,
    ThresholdSet,
    ThresholdUpdate,
)
from gateway.services.monitoring import MonitoringService

logger = structlog.get_logger(__name__)

router = APIRouter()


def get_service(request: Request) -> MonitoringService:
    return request.app.state.monitoring


@router.post("/readings", response_model=ReadingReceipt, status_code=201)
async def submit_reading(
    payload: ReadingPayload,
    service: MonitoringService = Depends(get_service),
) -> ReadingReceipt:
    """Categorize and store a reading. NotConfigured is mapped to 503 by the app."""
    logger.info(
        "reading_received",
        patient_id=payload.patient_id,
        value=payload.value,
        unit=payload.unit,
    )
    try:
        return await service.submit_reading(payload)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@router.post("/patients/{patient_id}/alerts/evaluate", response_model=AlertEvaluation)
async def evaluate_alert(
    patient_id: str,
    service: MonitoringService = Depends(get_service),
) -> AlertEvaluation:
    return await service.evaluate_alert(patient_id)


@router.get("/patients/{patient_id}/alerts", response_model=list[Alert])
async def list_alerts(
    patient_id: str,
    service: MonitoringService = Depends(get_service),
) -> list[Alert]:
    return await service.recent_alerts(patient_id)


@router.post("/patients/{patient_id}/suggestions", response_model=list[Suggestion])
async def generate_suggestions(
    patient_id: str,
    service: MonitoringService = Depends(get_service),
) -> list[Suggestion]:
    return await service.generate_suggestions(patient_id)


@router.get("/patients/{patient_id}/suggestions", response_model=list[Suggestion])
async def list_suggestions(
    patient_id: str,
    service: MonitoringService = Depends(get_service),
) -> list[Suggestion]:
    return await service.stored_suggestions(patient_id)


@router.get("/patients/{patient_id}/thresholds", response_model=ThresholdSet)
async def get_thresholds(
    patient_id: str,
    service: MonitoringService = Depends(get_service),
) -> ThresholdSet:
    return await service.thresholds.effective_thresholds(patient_id)


@router.put("/patients/{patient_id}/threshold-override")
async def set_threshold_override(
    patient_id: str,
    update: OverrideUpdate,
    service: MonitoringService = Depends(get_service),
) -> PatientOverride | None:
    try:
        return await service.thresholds.set_patient_override(patient_id, update)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@router.post("/thresholds", response_model=ThresholdSet, status_code=201)
async def publish_thresholds(
    update: ThresholdUpdate,
    service: MonitoringService = Depends(get_service),
) -> ThresholdSet:
    return await service.thresholds.publish_thresholds(update)
