from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, status

from mediapulse.api.deps import get_runtime
from mediapulse.api.schemas.triggers import TriggerAcceptedResponse
from mediapulse.jobs.store import JobConflictError
from mediapulse.triggers.payloads import TriggerPayloadError
from mediapulse.triggers.service import TriggerSourceNotFoundError
from mediapulse.worker.runtime import Runtime

router = APIRouter(prefix="/triggers", tags=["triggers"])


@router.post("/{source_id}", response_model=TriggerAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
def receive_trigger(
    source_id: str,
    payload: dict[str, Any] = Body(...),
    runtime: Runtime = Depends(get_runtime),
) -> TriggerAcceptedResponse:
    try:
        result = runtime.triggers.ingest_payload(source_id, payload)
    except TriggerSourceNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except TriggerPayloadError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except JobConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return TriggerAcceptedResponse(
        source_id=result.source_id,
        received=result.received,
        admitted=result.admitted,
        dropped=result.dropped,
        fingerprints=result.fingerprints,
    )
