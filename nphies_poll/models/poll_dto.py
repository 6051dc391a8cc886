"""
API Response Models
Pydantic models returned by the poll service and the trigger route
"""
from typing import Optional, Dict, List, Any
from pydantic import BaseModel, Field, ConfigDict


class KindSummary(BaseModel):
    """Per payload kind counters stored in poll_logs.processing_summary"""
    model_config = ConfigDict(populate_by_name=True)

    matched: int = 0
    unmatched: int = 0
    new_records: int = Field(default=0, alias="newRecords", serialization_alias="newRecords")


class PollStats(BaseModel):
    messages_received: int = 0
    messages_processed: int = 0
    messages_matched: int = 0
    messages_unmatched: int = 0
    processing_summary: Dict[str, KindSummary] = Field(default_factory=dict)


class PollMessageSummary(BaseModel):
    """One polled message as it was classified and applied"""
    message_header_id: Optional[str] = None
    resource_type: Optional[str] = None
    message_type: Optional[str] = None
    matched: bool = False
    processing_status: Optional[str] = None
    match_strategy: Optional[str] = None
    matched_table: Optional[str] = None
    matched_record_id: Optional[int] = None
    error: Optional[str] = None


class PollRunResult(BaseModel):
    """Result of one execute_poll call"""
    success: bool
    skipped: bool = False
    poll_id: Optional[str] = None
    poll_log_id: Optional[int] = None
    schema_name: Optional[str] = None
    status: Optional[str] = None  # terminal PollStatus, None when skipped
    message: Optional[str] = None
    response_code: Optional[str] = None
    stats: PollStats = Field(default_factory=PollStats)
    messages: List[PollMessageSummary] = Field(default_factory=list)
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    duration_ms: Optional[int] = None


class PollTriggerRequest(BaseModel):
    schema_name: Optional[str] = None
    trigger_type: str = Field(default="manual", pattern="^(manual|scheduled)$")


class HealthResponse(BaseModel):
    """Health check response"""
    status: str = "ok"
    version: str = "1.0.0"
    details: Optional[dict] = None
