from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .coordinator import Coordinator
from .schemas import ProcessRequest, ProcessResult

router = APIRouter()

# The coordinator is built by the application (or a test) and bound here.
_bound_coordinator: Optional[Coordinator] = None


def bind_coordinator(c: Optional[Coordinator]):
    global _bound_coordinator
    _bound_coordinator = c


def _coordinator() -> Coordinator:
    if _bound_coordinator is None:
        raise HTTPException(status_code=503, detail="coordinator not bound")
    return _bound_coordinator


@router.post("/v1/ai", response_model=ProcessResult)
async def process_instruction(req: ProcessRequest) -> ProcessResult:
    return await _coordinator().process(req.instruction)


@router.get("/v1/entities")
async def list_entities() -> Dict[str, Any]:
    registry = _coordinator().registry
    return {"entityTypes": registry.list_types(), "schemas": registry.schema_info()}


@router.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


@router.get("/metrics")
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
