from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from docsmith import __version__
from docsmith.api.routes import generate, jobs
from docsmith.config import get_settings
from docsmith.core.errors import DocsmithError
from docsmith.core.exceptions import docsmith_exception_handler, global_exception_handler, http_exception_handler, request_validation_exception_handler
from docsmith.core.lifespan import lifespan
from docsmith.core.middleware import RequestLoggingMiddleware

settings = get_settings()

app = FastAPI(title="Docsmith", version=__version__, lifespan=lifespan)

app.add_middleware(CORSMiddleware, allow_origins=list(settings.allowed_origins), allow_credentials=False, allow_methods=["GET", "POST", "DELETE", "OPTIONS"], allow_headers=["content-type", "authorization"], expose_headers=["content-length", "x-request-id"])


# Add exception handlers
app.add_exception_handler(Exception, global_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(DocsmithError, docsmith_exception_handler)
app.add_exception_handler(RequestValidationError, request_validation_exception_handler)

# Add middleware
app.add_middleware(RequestLoggingMiddleware)


@app.get("/health", include_in_schema=False)
async def health_check() -> dict[str, str]:
  """Return a simple health status."""
  return {"status": "ok", "version": __version__}


app.include_router(generate.router, prefix="/v1/generate", tags=["generate"])
app.include_router(jobs.router, prefix="/v1/jobs", tags=["jobs"])
