from typing import Optional

from pydantic import BaseModel, Field


class EventOutcomeSchema(BaseModel):
    event_id: str
    status: str
    action: Optional[str] = None
    error: Optional[str] = None


class WebhookResponse(BaseModel):
    success: bool
    message: str
    processed: int = 0
    failed: int = 0
    outcomes: list[EventOutcomeSchema] = Field(default_factory=list)


class WorkflowExecuteRequest(BaseModel):
    testMessage: str = ""
    isNewCustomer: bool = True
    isOffHours: bool = False


class ExecutedNodeSchema(BaseModel):
    nodeId: str
    type: str
    subType: Optional[str] = None
    output: Optional[object] = None


class WorkflowExecuteResponse(BaseModel):
    success: bool
    handled: bool
    testMessage: str
    executedNodes: list[ExecutedNodeSchema] = Field(default_factory=list)
    logId: Optional[str] = None
    error: Optional[str] = None


class CleanupResponse(BaseModel):
    success: bool
    deleted: int
