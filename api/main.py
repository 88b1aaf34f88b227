"""
FastAPI Service for TaskRelay

Exposes the orchestration engine over HTTP: fan-out task submission,
inbound agent notifications (webhooks), and pending-operation inspection
and cleanup.
"""

import json
import logging
import os
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from shared.config import OrchestratorSettings
from shared.errors import (
    AgentNotFoundError,
    AmbiguousCorrelationError,
    ConfigurationError,
    InvalidNotificationError,
    OrchestrationError,
    ProtocolError,
    UnknownOperationError,
)
from shared.file_logger import setup_file_logger
from shared.schemas import AgentOutcome, new_operation_id
from orchestrator.input_resolvers import FieldMapResolver
from orchestrator.main import OrchestratorService

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown"""
    load_dotenv()
    settings = OrchestratorSettings.from_env()
    setup_file_logger("api", log_level=settings.log_level, output_dir=settings.log_dir,
                      extra_loggers=["shared", "orchestrator"])

    logger.info("Starting up...")
    service = OrchestratorService(settings)
    await service.start()
    app.state.service = service

    yield

    logger.info("Shutting down...")
    await service.shutdown()


# FastAPI app
app = FastAPI(
    title="TaskRelay API",
    version=API_VERSION,
    description="Run tasks against remote agents and receive their asynchronous notifications",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify allowed origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_service(request: Request) -> OrchestratorService:
    """Dependency returning the service created at startup"""
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Service not started")
    return service


# Pydantic models
class TaskRequest(BaseModel):
    """Request model for /tasks/{operation_name}"""
    args: Dict[str, Any] = {}
    agent_ids: Optional[List[str]] = Field(None, description="Agents to target, default all")
    operation_id: Optional[str] = None
    answers: Optional[Dict[str, Any]] = Field(None, description="Answers to clarification questions by field")
    max_clarifications: Optional[int] = Field(None, ge=0)
    timeout: Optional[float] = Field(None, gt=0)


class TaskResponse(BaseModel):
    """Response model for /tasks/{operation_name}"""
    operation_id: str
    operation_name: str
    outcomes: List[AgentOutcome]


def _error_detail(error: OrchestrationError) -> Dict[str, Any]:
    return error.to_info().model_dump(mode="json")


# Endpoints
@app.get("/")
async def root():
    """Root endpoint - API info"""
    return {
        "message": "TaskRelay API",
        "version": API_VERSION,
        "endpoints": {
            "health": "/health",
            "agents": "/agents",
            "tasks": "/tasks/{operation_name}",
            "webhooks": "/webhooks/{task_type}/{agent_id}/{operation_id}",
            "operations": "/operations/{operation_id}/{agent_id}"
        }
    }


@app.get("/health")
async def health_check(service: OrchestratorService = Depends(get_service)):
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.now(UTC).isoformat(),
        "agents": len(service.orchestrator.agent_ids),
        "active_runs": len(service.executor.active_runs()),
        "rabbitmq": "connected" if service.rabbitmq and service.rabbitmq.is_connected else "disconnected"
    }


@app.get("/agents")
async def list_agents(service: OrchestratorService = Depends(get_service)):
    """Configured agents (credentials omitted)"""
    return [
        agent.model_dump(mode="json", exclude={"auth_token", "headers"})
        for agent in service.orchestrator.agents
    ]


@app.post("/tasks/{operation_name}", response_model=TaskResponse)
async def run_task(
    operation_name: str,
    request: TaskRequest,
    service: OrchestratorService = Depends(get_service)
):
    """
    Run a task against the selected agents (all agents by default).

    Returns one outcome per agent in agent order. Agents that finish
    asynchronously come back with pending=true and are resumed through
    the webhook endpoints.
    """
    operation_id = request.operation_id or new_operation_id()
    resolver = FieldMapResolver(request.answers) if request.answers else None

    logger.info(f"Received task {operation_name} ({operation_id}) for agents {request.agent_ids or 'all'}")

    try:
        outcomes = await service.orchestrator.run_task(
            operation_name,
            request.args,
            resolver=resolver,
            agent_ids=request.agent_ids,
            operation_id=operation_id,
            max_clarifications=request.max_clarifications,
            timeout=request.timeout
        )
    except AgentNotFoundError as e:
        raise HTTPException(status_code=404, detail=_error_detail(e))
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=_error_detail(e))

    return TaskResponse(operation_id=operation_id, operation_name=operation_name, outcomes=outcomes)


async def _handle_notification(
    request: Request,
    service: OrchestratorService,
    signature: Optional[str],
    timestamp: Optional[str],
    agent_id: Optional[str],
    operation_id: Optional[str]
) -> Dict[str, Any]:
    body = await request.body()
    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Notification body is not valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Notification body must be a JSON object")

    try:
        outcome = await service.notifications.handle(
            payload,
            signature,
            timestamp,
            agent_id=agent_id,
            operation_id=operation_id
        )
    except InvalidNotificationError as e:
        raise HTTPException(status_code=401, detail=_error_detail(e))
    except (UnknownOperationError, AgentNotFoundError) as e:
        raise HTTPException(status_code=404, detail=_error_detail(e))
    except AmbiguousCorrelationError as e:
        raise HTTPException(status_code=409, detail=_error_detail(e))
    except ProtocolError as e:
        raise HTTPException(status_code=400, detail=_error_detail(e))

    return {"received": True, "outcome": outcome.model_dump(mode="json")}


@app.post("/webhooks/{task_type}/{agent_id}/{operation_id}")
async def receive_notification(
    task_type: str,
    agent_id: str,
    operation_id: str,
    request: Request,
    x_taskrelay_signature: Optional[str] = Header(None),
    x_taskrelay_timestamp: Optional[str] = Header(None),
    service: OrchestratorService = Depends(get_service)
):
    """Notification endpoint with ids in the path"""
    logger.info(f"Notification for {task_type} {operation_id}/{agent_id}")
    return await _handle_notification(
        request, service, x_taskrelay_signature, x_taskrelay_timestamp, agent_id, operation_id
    )


@app.post("/webhooks")
async def receive_notification_query(
    request: Request,
    agent_id: Optional[str] = None,
    operation_id: Optional[str] = None,
    task_type: Optional[str] = None,
    x_taskrelay_signature: Optional[str] = Header(None),
    x_taskrelay_timestamp: Optional[str] = Header(None),
    service: OrchestratorService = Depends(get_service)
):
    """Notification endpoint with ids in query parameters"""
    logger.info(f"Notification for {task_type or '-'} {operation_id or '-'}/{agent_id or '-'}")
    return await _handle_notification(
        request, service, x_taskrelay_signature, x_taskrelay_timestamp, agent_id, operation_id
    )


@app.get("/operations/{operation_id}/{agent_id}")
async def get_operation(
    operation_id: str,
    agent_id: str,
    service: OrchestratorService = Depends(get_service)
):
    """Pending record of a suspended operation, including its final outcome once finished"""
    record = service.executor.get_pending(operation_id, agent_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Operation {operation_id}/{agent_id} not found")
    return record.model_dump(mode="json")


@app.delete("/operations/{operation_id}/{agent_id}")
async def close_operation(
    operation_id: str,
    agent_id: str,
    service: OrchestratorService = Depends(get_service)
):
    """Drop correlation entries and the pending record of an operation"""
    if not service.executor.close_operation(operation_id, agent_id):
        raise HTTPException(status_code=404, detail=f"Operation {operation_id}/{agent_id} not found")
    return {"closed": True, "operation_id": operation_id, "agent_id": agent_id}


@app.post("/operations/{operation_id}/{agent_id}/cancel")
async def cancel_operation(
    operation_id: str,
    agent_id: str,
    service: OrchestratorService = Depends(get_service)
):
    """Cancel a running or suspended operation"""
    if not await service.executor.cancel(operation_id, agent_id):
        raise HTTPException(status_code=404, detail=f"Operation {operation_id}/{agent_id} is not cancelable")
    return {"canceled": True, "operation_id": operation_id, "agent_id": agent_id}


def run():
    """Console entry point"""
    import uvicorn
    uvicorn.run(
        "api.main:app",
        host=os.getenv("API_HOST", "0.0.0.0"),
        port=int(os.getenv("API_PORT", "8000"))
    )


# For running with uvicorn
if __name__ == "__main__":
    run()
