"""
Pydantic schemas for request/response validation
"""
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime

# ===== Common Schemas =====

class HealthResponse(BaseModel):
    status: str

class VersionResponse(BaseModel):
    version: str

# ===== Jobs =====

class CreateJobRequest(BaseModel):
    subjectId: str = Field(min_length=1)
    subjectUrl: str = Field(min_length=1)
    userContext: Optional[str] = None

class CreateGroupJobRequest(BaseModel):
    groupId: str = Field(min_length=1)
    subjectIds: List[str]
    subjectUrls: List[str]
    groupContext: Optional[str] = None
    prompt: Optional[str] = None
    sessionId: Optional[str] = None

class JobResponse(BaseModel):
    id: str
    subjectId: str
    status: str
    currentStage: str
    progress: int
    attempt: int
    error: Optional[str] = None
    resultId: Optional[str] = None
    qualityScore: Optional[int] = None
    isPartialResult: Optional[bool] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None
    completedAt: Optional[datetime] = None

class GroupJobResponse(BaseModel):
    id: str
    groupId: str
    sessionId: Optional[str] = None
    subjectIds: List[str]
    status: str
    currentStage: str
    progress: int
    attempt: int
    error: Optional[str] = None
    resultId: Optional[str] = None
    qualityScore: Optional[int] = None
    isPartialResult: Optional[bool] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None
    completedAt: Optional[datetime] = None

# ===== Events =====

class EventResponse(BaseModel):
    id: int
    eventName: str
    stage: str
    status: Optional[str] = None
    progress: int
    attempt: int
    message: Optional[str] = None
    metadata: Dict[str, Any] = {}
    startedAt: Optional[datetime] = None
    endedAt: Optional[datetime] = None
    durationMs: Optional[int] = None
    createdAt: Optional[datetime] = None

class EventListResponse(BaseModel):
    jobId: str
    events: List[EventResponse]

# ===== Sessions =====

class ForkSessionRequest(BaseModel):
    prompt: str = Field(min_length=1)
    groupContext: Optional[str] = None

class ForkSessionResponse(BaseModel):
    sessionId: str
    parentSessionId: str
    groupJob: GroupJobResponse

# ===== Analyses =====

class AnalysisVersion(BaseModel):
    id: str
    subjectId: str
    analysisType: str
    version: int
    status: str
    qualityScore: Optional[int] = None
    isPartialResult: Optional[bool] = None
    summary: Dict[str, Any] = {}
    createdAt: Optional[datetime] = None

class AnalysisHistoryResponse(BaseModel):
    subjectId: str
    analyses: List[AnalysisVersion]

# ===== Internal =====

class StageRunResponse(BaseModel):
    jobId: str
    stage: str
    outcome: str
