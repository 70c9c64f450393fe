from __future__ import annotations

from pydantic import BaseModel


class TriggerAcceptedResponse(BaseModel):
    source_id: str
    received: int
    admitted: int
    dropped: int
    fingerprints: list[str]
