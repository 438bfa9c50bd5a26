# termhist/schemas.py
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class HistoryEntryOut(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    request_id: Optional[str] = None
    session_id: Optional[str] = None
    command: str
    response: Optional[str] = None
    status: str
    source: Optional[str] = None
    timestamp: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None
    synced: bool = False


class HistoryListResponse(BaseModel):
    status: str = "success"
    offline: bool
    entries: List[HistoryEntryOut]


class SearchResponse(BaseModel):
    status: str = "success"
    query: str
    commands: List[str]


class StatusResponse(BaseModel):
    request_id: str
    status: str


class SyncRequest(BaseModel):
    limit: int = Field(default=100, ge=1, le=1000)


class SyncResponse(BaseModel):
    status: str
    offline: bool
    synced: int = 0
    failed: int = 0
    skipped: int = 0
    aborted: bool = False
    error: Optional[str] = None
