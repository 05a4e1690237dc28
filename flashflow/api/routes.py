from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import APIRouter, Path, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PydanticValidationError

from flashflow.api.schemas import (
    MAX_FLOW_ID_LENGTH,
    CancelResponse,
    Envelope,
    ErrorBody,
    FlowPayload,
    FlowResponse,
    RunRequest,
    ValidateRequest,
)
from flashflow.logging import get_logger, sanitize_error_message
from flashflow.service.errors import NotFoundError, ServiceError
from flashflow.service.runtime import Runtime, get_runtime
from flashflow.service.validator import validate

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

FLOW_ID_PATTERN = r"^[A-Za-z0-9_.:-]+$"


async def _resolve_workflow(runtime: Runtime, body: RunRequest) -> Dict[str, Any]:
    if body.graph is not None:
        return body.graph.to_workflow()
    workflow = await runtime.load_flow(body.flow_id)
    if workflow is None:
        raise NotFoundError("flow not found", detail={"flow_id": body.flow_id})
    return workflow


@router.post("/workflows/validate", response_model=Envelope, tags=["workflows"])
async def validate_workflow(body: ValidateRequest):
    result = validate(body.nodes, body.edges)
    return Envelope(status="ok", data=result.to_dict())


@router.put("/flows/{flow_id}", response_model=Envelope, tags=["flows"])
async def save_flow(
    body: FlowPayload,
    flow_id: str = Path(..., max_length=MAX_FLOW_ID_LENGTH, pattern=FLOW_ID_PATTERN),
):
    runtime = get_runtime()
    workflow = body.to_workflow()
    await runtime.save_flow(flow_id, workflow)
    result = validate(body.nodes, body.edges)
    logger.info("flow_saved", flow_id=flow_id, nodes=len(body.nodes), valid=result.ok)
    return Envelope(
        status="ok",
        data={**FlowResponse(flow_id=flow_id, workflow=workflow).model_dump(), "validation": result.to_dict()},
    )


@router.get("/flows/{flow_id}", response_model=Envelope, tags=["flows"])
async def get_flow(flow_id: str = Path(..., max_length=MAX_FLOW_ID_LENGTH, pattern=FLOW_ID_PATTERN)):
    runtime = get_runtime()
    workflow = await runtime.load_flow(flow_id)
    if workflow is None:
        raise NotFoundError("flow not found", detail={"flow_id": flow_id})
    return Envelope(status="ok", data=FlowResponse(flow_id=flow_id, workflow=workflow).model_dump())


@router.post("/workflows/run", response_model=Envelope, tags=["workflows"])
async def run_workflow(body: RunRequest):
    runtime = get_runtime()
    workflow = await _resolve_workflow(runtime, body)
    result = await runtime.scheduler.run(
        workflow,
        body.input,
        flow_id=body.flow_id,
        session_id=body.session_id,
        validate=body.validate_graph,
    )
    return Envelope(status="ok", data=result.to_dict())


@router.post("/runs/{run_id}/cancel", response_model=Envelope, tags=["workflows"])
async def cancel_run(run_id: str):
    runtime = get_runtime()
    cancelled = await runtime.scheduler.cancel(run_id)
    logger.info("run_cancel_endpoint", run_id=run_id, cancelled=cancelled)
    return Envelope(status="ok", data=CancelResponse(run_id=run_id, cancelled=cancelled).model_dump())


async def _send_error(ws: WebSocket, code: str, message: str, details: Optional[Any] = None) -> None:
    envelope = Envelope(status="error", error=ErrorBody(code=code, message=message, details=details))
    await ws.send_json(envelope.model_dump())


@router.websocket("/workflows/stream")
async def stream_workflow(ws: WebSocket):
    """Stream run events; the first client message is the run request.

    While the run is streaming the client may send ``{"action": "cancel"}``
    or ``{"action": "ping"}``.
    """
    runtime = get_runtime()
    await ws.accept()
    run_id = str(uuid4())
    try:
        init = await ws.receive_json()
        body = RunRequest(**init) if isinstance(init, dict) else RunRequest()
        workflow = await _resolve_workflow(runtime, body)

        async def listen_for_cancel():
            while True:
                try:
                    msg = await asyncio.wait_for(ws.receive_json(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue
                except WebSocketDisconnect:
                    await runtime.scheduler.cancel(run_id)
                    return
                if not isinstance(msg, dict):
                    continue
                if msg.get("action") == "cancel":
                    await runtime.scheduler.cancel(run_id)
                    return
                if msg.get("action") == "ping":
                    await ws.send_json({"event": "pong", "data": None})

        cancel_listener = asyncio.create_task(listen_for_cancel())
        events = runtime.scheduler.run_streaming(
            workflow,
            body.input,
            flow_id=body.flow_id,
            session_id=body.session_id,
            validate=body.validate_graph,
            run_id=run_id,
        )
        try:
            async for event in events:
                await ws.send_json(event)
        finally:
            cancel_listener.cancel()
            # releases the flow lock even when the client went away mid-run
            await events.aclose()
        await ws.close(code=1000)
    except WebSocketDisconnect:
        await runtime.scheduler.cancel(run_id)
    except PydanticValidationError as exc:
        details = json.loads(exc.json())
        await _send_error(ws, "validation_error", "invalid run request", details)
        await ws.close(code=1003)
    except ServiceError as exc:
        logger.warning("websocket_run_rejected", run_id=run_id, error_code=exc.error_code, message=exc.message)
        await _send_error(ws, exc.error_code, exc.message, exc.detail)
        if exc.status_code == 409:
            close_code = 4409
        elif exc.status_code < 500:
            close_code = 1008
        else:
            close_code = 1011
        await ws.close(code=close_code)
    except json.JSONDecodeError:
        logger.warning("websocket_invalid_json", run_id=run_id)
        await _send_error(ws, "validation_error", "Invalid JSON in request")
        await ws.close(code=1003)
    except Exception as exc:
        logger.error("unhandled_websocket_error", run_id=run_id, error_type=type(exc).__name__)
        await _send_error(ws, "server_error", sanitize_error_message(str(exc)))
        await ws.close(code=1011)
