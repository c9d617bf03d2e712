import asyncio
import contextlib
import logging
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from classes import settings
from classes.data_source_validator import DataSourceValidator, ProvenanceContext
from classes.errors import (
    ConcurrencyLimitError,
    GenerationServiceError,
    OperationCancelledError,
    OperationConflictError,
    OperationTimeoutError,
    RecoveryError,
    ValidationError,
)
from classes.generation_pipeline import GenerationPipeline
from classes.llm_client import LlmClient
from classes.operation_state_manager import OperationStateManager
from classes.response_cache import GLOBAL_RESPONSE_CACHE
from classes.response_schemas import EMAIL_SEQUENCE_SHAPE

logger = logging.getLogger("draftguard_backend")

SWEEP_INTERVAL_SECONDS = 30.0

OPERATIONS = OperationStateManager()


@lru_cache(maxsize=1)
def get_pipeline() -> GenerationPipeline:
    return GenerationPipeline(
        LlmClient(),
        OPERATIONS,
        DataSourceValidator(),
        cache=GLOBAL_RESPONSE_CACHE,
    )


def get_operations() -> OperationStateManager:
    return OPERATIONS


async def _sweep_loop() -> None:
    while True:
        await asyncio.sleep(SWEEP_INTERVAL_SECONDS)
        removed = OPERATIONS.sweep()
        expired = GLOBAL_RESPONSE_CACHE.sweep_expired()
        if removed or expired:
            logger.debug(f"[SWEEP] removed {removed} operation(s), {expired} cache entr(ies)")


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    task = asyncio.create_task(_sweep_loop())
    try:
        yield
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


app = FastAPI(lifespan=lifespan)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins for dev
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -----------------------
# Error -> HTTP mapping
# -----------------------

def _error_body(kind: str, e: Exception, **extra: Any) -> Dict[str, Any]:
    body = {"error": kind, "detail": str(e)}
    body.update(extra)
    return body


@app.exception_handler(OperationConflictError)
async def _conflict_handler(request: Request, e: OperationConflictError):
    return JSONResponse(status_code=409, content=_error_body("operation_conflict", e))


@app.exception_handler(ConcurrencyLimitError)
async def _concurrency_handler(request: Request, e: ConcurrencyLimitError):
    return JSONResponse(
        status_code=429,
        content=_error_body("concurrency_limit", e, limit=e.limit),
        headers={"Retry-After": "5"},
    )


@app.exception_handler(OperationTimeoutError)
async def _timeout_handler(request: Request, e: OperationTimeoutError):
    return JSONResponse(status_code=504, content=_error_body("operation_timeout", e, operation_id=e.operation_id))


@app.exception_handler(OperationCancelledError)
async def _cancelled_handler(request: Request, e: OperationCancelledError):
    return JSONResponse(status_code=409, content=_error_body("operation_cancelled", e, operation_id=e.operation_id))


@app.exception_handler(ValidationError)
async def _validation_handler(request: Request, e: ValidationError):
    return JSONResponse(status_code=502, content=_error_body("invalid_ai_response", e, issues=e.issues))


@app.exception_handler(RecoveryError)
async def _recovery_handler(request: Request, e: RecoveryError):
    return JSONResponse(status_code=502, content=_error_body("unrecoverable_ai_response", e))


@app.exception_handler(GenerationServiceError)
async def _service_handler(request: Request, e: GenerationServiceError):
    return JSONResponse(status_code=503, content=_error_body("generation_service_unavailable", e, status=e.status))


# -----------------------
# Requests
# -----------------------

class EmailSequenceRequest(BaseModel):
    user_id: str
    business: Dict[str, str] = Field(default_factory=dict)
    interview: Dict[str, str] = Field(default_factory=dict)
    goal: Optional[str] = None


def _render(ctx: ProvenanceContext) -> str:
    return "\n".join(f"- {k}: {v}" for k, v in ctx.as_records().items()) or "- (none)"


def email_sequence_prompt(goal: Optional[str]):
    def build(owner: ProvenanceContext, interview: ProvenanceContext) -> str:
        return (
            "Write a 5-email nurture sequence for the business below.\n"
            f"Goal: {goal or 'book a discovery call'}\n\n"
            "Business (owner's own words):\n"
            f"{_render(owner)}\n\n"
            "Ideal client interview (client's words, do not attribute to the business):\n"
            f"{_render(interview)}\n\n"
            'Return only JSON: {"emails": [{"emailNumber": 1, "subject": "...", "body": "..."}, ...]} '
            "with exactly 5 emails numbered 1 to 5."
        )
    return build


# -----------------------
# Routes
# -----------------------

@app.post("/generate/email-sequence")
async def generate_email_sequence(
    body: EmailSequenceRequest,
    pipeline: GenerationPipeline = Depends(get_pipeline),
):
    result = await pipeline.generate_json(
        user_id=body.user_id,
        operation_type="email_sequence",
        prompt_builder=email_sequence_prompt(body.goal),
        schema=EMAIL_SEQUENCE_SHAPE,
        owner_records=body.business,
        interview_records=body.interview,
        cache_section="email_sequence",
    )
    return {"data": result.data.model_dump(mode="json"), "metadata": result.metadata()}


@app.get("/operations/user/{user_id}")
async def list_user_operations(user_id: str, operations: OperationStateManager = Depends(get_operations)):
    ops: List[Dict[str, Any]] = [op.to_dict() for op in operations.get_user_operations(user_id)]
    return {"user_id": user_id, "operations": ops}


@app.get("/operations/{operation_id}")
async def get_operation(operation_id: str, operations: OperationStateManager = Depends(get_operations)):
    op = operations.get_operation(operation_id)
    if op is None:
        raise HTTPException(status_code=404, detail=f"Operation not found: {operation_id}")
    return op.to_dict()


@app.post("/operations/{operation_id}/cancel")
async def cancel_operation(operation_id: str, operations: OperationStateManager = Depends(get_operations)):
    op = operations.get_operation(operation_id)
    if op is None:
        raise HTTPException(status_code=404, detail=f"Operation not found: {operation_id}")
    if not operations.cancel(operation_id):
        raise HTTPException(status_code=409, detail=f"Operation {operation_id} is already {op.status.value}")
    return {"status": "cancelled", "id": operation_id}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(settings.PORT))
