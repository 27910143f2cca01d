from __future__ import annotations

from fastapi import FastAPI, HTTPException, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from flashdeck.api.routes import flashcards, tasks
from flashdeck.config import get_settings
from flashdeck.core.exceptions import global_exception_handler, http_exception_handler, pipeline_exception_handler, request_validation_exception_handler, submission_validation_exception_handler
from flashdeck.core.json import FlashdeckJSONResponse
from flashdeck.core.lifespan import lifespan
from flashdeck.core.metrics import render_metrics
from flashdeck.core.middleware import RequestLoggingMiddleware
from flashdeck.pipeline.errors import PipelineError
from flashdeck.services.request_validation import SubmissionValidationError

settings = get_settings()

app = FastAPI(title="Flashdeck Engine", default_response_class=FlashdeckJSONResponse, lifespan=lifespan, docs_url=None, redoc_url=None)

app.add_middleware(CORSMiddleware, allow_origins=list(settings.allowed_origins), allow_credentials=True, allow_methods=["GET", "POST", "OPTIONS"], allow_headers=["content-type", "authorization"], expose_headers=["content-length", "x-request-id"])

app.add_exception_handler(Exception, global_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
app.add_exception_handler(SubmissionValidationError, submission_validation_exception_handler)
app.add_exception_handler(PipelineError, pipeline_exception_handler)

app.add_middleware(RequestLoggingMiddleware)


@app.get("/health", include_in_schema=False)
async def health_check() -> dict[str, str]:
  """Return a simple health status."""
  return {"status": "ok", "version": "0.1.0"}


@app.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
  """Expose job counters in the Prometheus text format."""
  payload, content_type = render_metrics()
  return Response(content=payload, media_type=content_type)


app.include_router(flashcards.router, prefix="/v1/flashcards", tags=["flashcards"])
app.include_router(tasks.router, prefix="/internal", tags=["tasks"])
