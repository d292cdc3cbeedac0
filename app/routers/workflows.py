from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException

from app.logging_config import get_logger
from app.routers.internal import require_internal_secret
from app.schemas.webhook import ExecutedNodeSchema, WorkflowExecuteRequest, WorkflowExecuteResponse
from app.schemas.workflow import WorkflowLoadError, load_workflow_graph
from app.services.ingress_service import MessagePipeline, get_pipeline
from app.services.workflow_engine import WorkflowContext

logger = get_logger("workflows")

router = APIRouter(prefix="/workflows", tags=["workflows"])


@router.post("/{workflow_id}/execute", response_model=WorkflowExecuteResponse)
async def execute_workflow(
    workflow_id: str,
    payload: WorkflowExecuteRequest,
    x_internal_secret: Optional[str] = Header(default=None, alias="X-Internal-Secret"),
    pipeline: MessagePipeline = Depends(get_pipeline),
):
    """Dry-run a stored workflow against a test message. Nothing is sent or written except the log row."""
    require_internal_secret(x_internal_secret)

    try:
        UUID(workflow_id)
    except ValueError:
        raise HTTPException(status_code=404, detail="Workflow not found")

    row = await pipeline.store.get_workflow(workflow_id)
    if row is None:
        raise HTTPException(status_code=404, detail="Workflow not found")

    try:
        graph = load_workflow_graph(row["id"], row.get("name"), row.get("nodes"), row.get("edges"))
    except WorkflowLoadError as e:
        raise HTTPException(status_code=422, detail=f"Invalid workflow: {e.detail}")

    config = await pipeline.settings_provider.get_settings(row["merchant_id"])
    ctx = WorkflowContext(
        message=payload.testMessage,
        merchant_id=row["merchant_id"],
        is_new_customer=payload.isNewCustomer,
        is_off_hours=payload.isOffHours,
        system_prompt=config.system_prompt,
        ai_model=config.ai_model,
        max_reply_length=config.max_reply_length,
        dry_run=True,
    )
    result = await pipeline.workflow_engine.execute(graph, ctx)
    log_id = await pipeline.workflow_engine.record_run(result, ctx)

    logger.info(
        "Workflow dry run",
        extra={"context": {"workflow_id": graph.id, "success": result.success, "handled": result.handled}},
    )
    return WorkflowExecuteResponse(
        success=result.success,
        handled=result.handled,
        testMessage=payload.testMessage,
        executedNodes=[ExecutedNodeSchema.model_validate(n) for n in result.trace()],
        logId=log_id,
        error=result.error,
    )
