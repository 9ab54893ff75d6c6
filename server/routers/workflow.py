"""Workflow definition, event ingestion and execution routes."""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from constants import WORKFLOW_TRIGGER_TYPES
from core.container import container
from core.logging import get_logger
from services.execution.errors import (
    ExecutionNotFoundError,
    WorkflowDefinitionError,
    WorkflowNotFoundError,
)
from services.workflow import WorkflowService

logger = get_logger(__name__)
router = APIRouter(prefix="/api/workflows", tags=["workflows"])


class WorkflowCreateRequest(BaseModel):
    id: Optional[str] = None
    tenant_id: str
    name: str
    description: Optional[str] = None
    trigger: Dict[str, Any]
    nodes: List[Dict[str, Any]] = Field(default_factory=list)
    edges: List[Dict[str, Any]] = Field(default_factory=list)
    run_once_per_lead: bool = True


class WorkflowUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    trigger: Optional[Dict[str, Any]] = None
    nodes: Optional[List[Dict[str, Any]]] = None
    edges: Optional[List[Dict[str, Any]]] = None
    run_once_per_lead: Optional[bool] = None


class ExecuteRequest(BaseModel):
    tenant_id: str
    lead_id: Optional[str] = None
    trigger_data: Dict[str, Any] = Field(default_factory=dict)


class EventRequest(BaseModel):
    event_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class ResumeRequest(BaseModel):
    node_id: str
    wait_id: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None


def get_workflow_service() -> WorkflowService:
    return container.workflow_service()


def _http_error(error: Exception) -> HTTPException:
    """Not-found errors map to 404, definition errors to 422."""
    if isinstance(error, WorkflowDefinitionError):
        return HTTPException(status_code=422, detail={"message": "Invalid workflow definition",
                                                      "errors": error.errors})
    return HTTPException(status_code=404, detail=str(error))


# =============================================================================
# EVENTS AND EXECUTIONS
# =============================================================================

@router.post("/events", status_code=202)
async def ingest_event(
    request: EventRequest,
    workflow_service: WorkflowService = Depends(get_workflow_service)
):
    """Trigger ingestion: start or resume the workflows matching an event."""
    if request.event_type not in WORKFLOW_TRIGGER_TYPES:
        raise HTTPException(status_code=422, detail=f"Unknown event type '{request.event_type}'")
    matches = await workflow_service.notify(request.event_type, request.payload)
    return {"accepted": True, "matches": [m.to_dict() for m in matches]}


@router.get("/executions/{execution_id}")
async def get_execution(
    execution_id: str,
    workflow_service: WorkflowService = Depends(get_workflow_service)
):
    try:
        execution = await workflow_service.get_execution(execution_id)
    except ExecutionNotFoundError as e:
        raise _http_error(e)
    return execution.to_dict(include_graph=False)


@router.post("/executions/{execution_id}/cancel")
async def cancel_execution(
    execution_id: str,
    workflow_service: WorkflowService = Depends(get_workflow_service)
):
    try:
        execution = await workflow_service.cancel(execution_id)
    except ExecutionNotFoundError as e:
        raise _http_error(e)
    return execution.to_dict(include_graph=False)


@router.post("/executions/{execution_id}/resume")
async def resume_execution(
    execution_id: str,
    request: ResumeRequest,
    workflow_service: WorkflowService = Depends(get_workflow_service)
):
    """Manually resume a suspended node (delay skip, external reply)."""
    outcome = await workflow_service.resume(execution_id, request.node_id,
                                            payload=request.payload, wait_id=request.wait_id)
    return {"execution_id": execution_id, "node_id": request.node_id, "outcome": outcome.value}


# =============================================================================
# WORKFLOW DEFINITIONS
# =============================================================================

@router.post("", status_code=201)
async def create_workflow(
    request: WorkflowCreateRequest,
    workflow_service: WorkflowService = Depends(get_workflow_service)
):
    record = await workflow_service.create_workflow(
        tenant_id=request.tenant_id,
        name=request.name,
        trigger=request.trigger,
        nodes=request.nodes,
        edges=request.edges,
        description=request.description,
        run_once_per_lead=request.run_once_per_lead,
        workflow_id=request.id,
    )
    return record.to_dict()


@router.get("")
async def list_workflows(
    tenant_id: Optional[str] = None,
    workflow_service: WorkflowService = Depends(get_workflow_service)
):
    return {"workflows": [w.to_dict() for w in await workflow_service.list_workflows(tenant_id)]}


@router.get("/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    workflow_service: WorkflowService = Depends(get_workflow_service)
):
    try:
        return (await workflow_service.get_workflow(workflow_id)).to_dict()
    except WorkflowNotFoundError as e:
        raise _http_error(e)


@router.patch("/{workflow_id}")
async def update_workflow(
    workflow_id: str,
    request: WorkflowUpdateRequest,
    workflow_service: WorkflowService = Depends(get_workflow_service)
):
    try:
        record = await workflow_service.update_workflow(
            workflow_id, **request.model_dump(exclude_unset=True)
        )
    except (WorkflowNotFoundError, WorkflowDefinitionError) as e:
        raise _http_error(e)
    return record.to_dict()


@router.delete("/{workflow_id}")
async def delete_workflow(
    workflow_id: str,
    workflow_service: WorkflowService = Depends(get_workflow_service)
):
    try:
        return await workflow_service.delete_workflow(workflow_id)
    except WorkflowNotFoundError as e:
        raise _http_error(e)


@router.post("/{workflow_id}/activate")
async def activate_workflow(
    workflow_id: str,
    workflow_service: WorkflowService = Depends(get_workflow_service)
):
    try:
        return (await workflow_service.activate(workflow_id)).to_dict()
    except (WorkflowNotFoundError, WorkflowDefinitionError) as e:
        raise _http_error(e)


@router.post("/{workflow_id}/deactivate")
async def deactivate_workflow(
    workflow_id: str,
    workflow_service: WorkflowService = Depends(get_workflow_service)
):
    try:
        return (await workflow_service.deactivate(workflow_id)).to_dict()
    except WorkflowNotFoundError as e:
        raise _http_error(e)


@router.post("/{workflow_id}/test", status_code=202)
async def test_workflow(
    workflow_id: str,
    request: ExecuteRequest,
    workflow_service: WorkflowService = Depends(get_workflow_service)
):
    """Execute entrypoint: start a run now, whatever the trigger."""
    try:
        return await workflow_service.execute(
            workflow_id, request.tenant_id,
            lead_id=request.lead_id, trigger_data=request.trigger_data,
        )
    except (WorkflowNotFoundError, WorkflowDefinitionError) as e:
        raise _http_error(e)


@router.get("/{workflow_id}/executions")
async def list_workflow_executions(
    workflow_id: str,
    lead_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 100,
    workflow_service: WorkflowService = Depends(get_workflow_service)
):
    try:
        executions = await workflow_service.list_executions(
            workflow_id=workflow_id, lead_id=lead_id, status=status, limit=limit
        )
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown status '{status}'")
    return {"executions": [e.to_dict(include_graph=False) for e in executions]}
