"""FastAPI REST endpoints for the workflow engine."""

import json
from datetime import datetime
from typing import Dict, List, Any, Optional
from fastapi import APIRouter, HTTPException, Depends, Request, Response, status
from pydantic import BaseModel, Field, ValidationError

from ..core.execution_engine import ExecutionEngine
from ..core.node_registry import NodeRegistry
from ..core.workflow_registry import WorkflowRegistry
from ..core.exceptions import (
    WebhookSignatureError,
    WorkflowEngineError,
    WorkflowNotFoundError,
    create_error_response,
    get_status_code
)
from ..models.core import (
    Node,
    NodeCategory,
    TriggerType,
    WebhookDelivery,
    Workflow,
    WorkflowRun,
    WorkflowSummary
)
from ..nodes.triggers import verify_webhook_signature
from ..core.middleware import RUN_ID_HEADER
from ..core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SIGNATURE_HEADER = "x-webhook-signature"

# Create router
router = APIRouter(prefix="/api", tags=["workflow"])

# Global instances (initialized by the application lifespan)
_node_registry: Optional[NodeRegistry] = None
_workflow_registry: Optional[WorkflowRegistry] = None
_execution_engine: Optional[ExecutionEngine] = None


def init_dependencies(
    node_registry: NodeRegistry,
    workflow_registry: WorkflowRegistry,
    execution_engine: ExecutionEngine
):
    """Initialize the global dependencies."""
    global _node_registry, _workflow_registry, _execution_engine
    _node_registry = node_registry
    _workflow_registry = workflow_registry
    _execution_engine = execution_engine


def reset_dependencies():
    """Drop the global dependencies (application shutdown)."""
    global _node_registry, _workflow_registry, _execution_engine
    _node_registry = None
    _workflow_registry = None
    _execution_engine = None


def get_node_registry() -> NodeRegistry:
    """Dependency to get the node registry."""
    if _node_registry is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Node registry not initialized"
        )
    return _node_registry


def get_workflow_registry() -> WorkflowRegistry:
    """Dependency to get the workflow registry."""
    if _workflow_registry is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Workflow registry not initialized"
        )
    return _workflow_registry


def get_execution_engine() -> ExecutionEngine:
    """Dependency to get the execution engine."""
    if _execution_engine is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Execution engine not initialized"
        )
    return _execution_engine


def _http_error(e: WorkflowEngineError) -> HTTPException:
    return HTTPException(status_code=get_status_code(e), detail=create_error_response(e))


def _internal_error(action: str, e: Exception) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "error": "InternalError",
            "message": f"An unexpected error occurred while {action}",
            "details": {"original_error": str(e)},
            "timestamp": datetime.utcnow().isoformat()
        }
    )


# Request/Response models
class CreateWorkflowResponse(BaseModel):
    """Response model for workflow creation."""
    workflow_id: str = Field(..., description="Identifier of the stored workflow")
    message: str = Field(..., description="Success message")
    validation_warnings: List[str] = Field(default_factory=list, description="Validation warnings")


class ExecutionOptions(BaseModel):
    start_node_id: Optional[str] = Field(None, description="Node to start from instead of the triggers")
    trigger_data: Optional[Any] = Field(None, description="Payload handed to trigger nodes")


class ExecuteWorkflowRequest(BaseModel):
    """Request model for executing a workflow."""
    workflow: Workflow = Field(..., description="Workflow definition to execute")
    options: ExecutionOptions = Field(default_factory=ExecutionOptions, description="Execution options")


class StopWorkflowResponse(BaseModel):
    workflow_id: str = Field(..., description="Workflow whose runs were stopped")
    stopped_runs: List[str] = Field(default_factory=list, description="IDs of the stopped runs")
    message: str = Field(..., description="Result message")


class WebhookPayload(BaseModel):
    """Body accepted on a workflow's webhook endpoint."""
    event: Optional[str] = Field(None, description="Event name")
    data: Any = Field(None, description="Event payload")
    timestamp: Optional[str] = Field(None, description="Sender timestamp")


class WebhookAcceptedResponse(BaseModel):
    delivery_id: str = Field(..., description="Identifier of the recorded delivery")
    run_id: str = Field(..., description="Run started for the delivery")
    message: str = Field(..., description="Result message")


# Endpoints

@router.post(
    "/workflows",
    response_model=CreateWorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Store a workflow",
    description="Validate a workflow definition and store it, replacing any workflow with the same ID"
)
async def create_workflow(
    workflow: Workflow,
    workflow_registry: WorkflowRegistry = Depends(get_workflow_registry)
) -> CreateWorkflowResponse:
    """
    Store a workflow definition.

    Raises:
        HTTPException: 400 if the workflow contains a cycle
    """
    try:
        logger.info(f"Creating workflow: {workflow.name}")
        validation = workflow.validate_structure()
        workflow_registry.save_workflow(workflow)

        return CreateWorkflowResponse(
            workflow_id=workflow.id,
            message=f"Workflow '{workflow.name}' saved successfully",
            validation_warnings=validation.warnings
        )

    except WorkflowEngineError as e:
        logger.warning(f"Workflow engine error during workflow creation: {str(e)}")
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Unexpected error during workflow creation: {str(e)}", exc_info=True)
        raise _internal_error("saving the workflow", e)


@router.get("/workflows", response_model=List[WorkflowSummary], summary="List stored workflows")
async def list_workflows(
    workflow_registry: WorkflowRegistry = Depends(get_workflow_registry)
) -> List[WorkflowSummary]:
    return workflow_registry.list_workflows()


@router.get("/workflows/{workflow_id}", response_model=Workflow, summary="Get a stored workflow")
async def get_workflow(
    workflow_id: str,
    workflow_registry: WorkflowRegistry = Depends(get_workflow_registry)
) -> Workflow:
    try:
        return workflow_registry.get_workflow(workflow_id)
    except WorkflowNotFoundError as e:
        logger.warning(f"Workflow not found: {workflow_id}")
        raise _http_error(e)


@router.get(
    "/workflows/{workflow_id}/executions",
    response_model=List[WorkflowRun],
    summary="Execution history of a workflow",
    description="Runs of the workflow, most recent first, including runs still in progress"
)
async def get_workflow_executions(
    workflow_id: str,
    workflow_registry: WorkflowRegistry = Depends(get_workflow_registry)
) -> List[WorkflowRun]:
    try:
        workflow_registry.get_workflow(workflow_id)
    except WorkflowNotFoundError as e:
        raise _http_error(e)
    return workflow_registry.get_executions(workflow_id)


@router.post(
    "/execute-workflow",
    response_model=WorkflowRun,
    summary="Execute a workflow",
    description="Store the workflow, run it to completion and return the finished run"
)
async def execute_workflow(
    request: ExecuteWorkflowRequest,
    response: Response,
    workflow_registry: WorkflowRegistry = Depends(get_workflow_registry),
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> WorkflowRun:
    """
    Execute a workflow synchronously.

    A run that fails or is cancelled is still returned with status 200; its
    ``status`` and ``error`` fields carry the outcome. Only problems that
    prevent the workflow from being accepted produce an error response.
    """
    workflow = request.workflow
    try:
        logger.info(f"Executing workflow: {workflow.name} ({workflow.id})")
        workflow_registry.save_workflow(workflow)

        run = await execution_engine.execute_workflow(
            workflow,
            start_node_id=request.options.start_node_id,
            trigger_data=request.options.trigger_data
        )

        response.headers[RUN_ID_HEADER] = run.id
        logger.info(f"Workflow {workflow.id} finished run {run.id} with status {run.status.value}")
        return run

    except WorkflowEngineError as e:
        logger.warning(f"Workflow engine error during execution: {str(e)}")
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Unexpected error during workflow execution: {str(e)}", exc_info=True)
        raise _internal_error("executing the workflow", e)


@router.delete(
    "/execute-workflow/{workflow_id}",
    response_model=StopWorkflowResponse,
    summary="Stop a running workflow",
    description="Cancel every active run of the workflow"
)
async def stop_workflow(
    workflow_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> StopWorkflowResponse:
    stopped = execution_engine.stop_workflow(workflow_id)
    message = f"Stopped {len(stopped)} run(s)" if stopped else "Workflow has no active runs"
    return StopWorkflowResponse(workflow_id=workflow_id, stopped_runs=stopped, message=message)


def _find_webhook_trigger(workflow: Workflow) -> Optional[Node]:
    for node in workflow.trigger_nodes():
        if node.subtype == TriggerType.WEBHOOK.value:
            return node
    return None


@router.post(
    "/webhooks/{workflow_id}",
    response_model=WebhookAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Deliver a webhook",
    description="Record a webhook delivery and start a background run with the payload as trigger data"
)
async def receive_webhook(
    workflow_id: str,
    request: Request,
    response: Response,
    workflow_registry: WorkflowRegistry = Depends(get_workflow_registry),
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> WebhookAcceptedResponse:
    """
    Accept a webhook delivery for a workflow.

    The workflow must contain an enabled webhook trigger. When that trigger
    configures a ``secret``, the raw body must carry a valid ``sha256=``
    HMAC signature in the configured header.
    """
    try:
        workflow = workflow_registry.get_workflow(workflow_id)
        trigger = _find_webhook_trigger(workflow)
        if trigger is None or trigger.config.get("enabled") is False:
            raise WorkflowNotFoundError(workflow_id).add_details(reason="No enabled webhook trigger")

        body = await request.body()
        secret = trigger.config.get("secret")
        if secret:
            header = trigger.config.get("signature_header") or DEFAULT_SIGNATURE_HEADER
            if not verify_webhook_signature(body, request.headers.get(header), secret):
                logger.warning(f"Rejected webhook for workflow {workflow_id}: invalid signature")
                raise WebhookSignatureError().add_details(workflow_id=workflow_id)

        try:
            payload = WebhookPayload.model_validate(json.loads(body or b"{}"))
        except (ValueError, ValidationError) as e:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error": "InvalidPayload", "message": f"Invalid webhook payload: {str(e)}"}
            )

        trigger_data = payload.model_dump()
        run = execution_engine.start_background(workflow, trigger_data=trigger_data)
        delivery = workflow_registry.record_webhook(
            WebhookDelivery(workflow_id=workflow_id, event=payload.event, data=payload.data, run_id=run.id)
        )

        response.headers[RUN_ID_HEADER] = run.id
        logger.info(f"Accepted webhook {delivery.id} for workflow {workflow_id}; started run {run.id}")
        return WebhookAcceptedResponse(
            delivery_id=delivery.id,
            run_id=run.id,
            message="Webhook accepted"
        )

    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get(
    "/webhooks/{workflow_id}",
    response_model=List[WebhookDelivery],
    summary="Webhook deliveries of a workflow"
)
async def list_webhooks(
    workflow_id: str,
    workflow_registry: WorkflowRegistry = Depends(get_workflow_registry)
) -> List[WebhookDelivery]:
    try:
        workflow_registry.get_workflow(workflow_id)
    except WorkflowNotFoundError as e:
        raise _http_error(e)
    return workflow_registry.get_webhooks(workflow_id)


@router.get("/node-types", summary="List registered node types")
async def list_node_types(
    node_registry: NodeRegistry = Depends(get_node_registry)
) -> Dict[str, Any]:
    node_types = node_registry.list_node_types()
    by_category: Dict[str, int] = {category.value: 0 for category in NodeCategory}
    for node_type in node_types:
        by_category[node_type["category"]] += 1

    return {
        "node_types": node_types,
        "total_count": len(node_types),
        "by_category": by_category
    }
