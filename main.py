import json
import logging
import traceback
import uuid
from urllib.parse import quote

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

# Local imports
import config
import ppt_generator
from config import get_settings
from errors import (
    ElementRenderError, InputValidationError, PayloadTooLargeError, PresentationError, UpstreamFetchError,
)
from models import PresentationRequest


# Logging configuration
logging.basicConfig(level=config.LOG_LEVEL)

# Kinds each single-element route accepts after normalization
ELEMENT_ROUTE_KINDS = {
    "text": ("text", "rich_text"),
    "image": ("image",),
    "chart": ("chart",),
    "table": ("table",),
    "shape": ("shape", "rect"),
}

# --- FastAPI App ---
app = FastAPI(
    title="Slide Rendering Service",
    description="Renders JSON slide descriptions into PowerPoint presentations.",
    version="1.0.0",
)


@app.exception_handler(PresentationError)
async def presentation_error_handler(request: Request, exc: PresentationError):
    body = {"error": exc.kind, "details": exc.message}
    cause = exc.__cause__
    if get_settings().debug and cause is not None:
        body["traceback"] = "".join(traceback.format_exception(type(cause), cause, cause.__traceback__))
    return JSONResponse(status_code=exc.status_code, content=body)


# --- Helper Functions ---
async def read_json_body(request: Request, settings):
    """Reads the size-capped request body and parses it as JSON."""
    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > settings.max_body_bytes:
        raise PayloadTooLargeError(f"Request body exceeds {settings.max_body_bytes} bytes")
    chunks = []
    received = 0
    async for chunk in request.stream():
        received += len(chunk)
        if received > settings.max_body_bytes:
            raise PayloadTooLargeError(f"Request body exceeds {settings.max_body_bytes} bytes")
        chunks.append(chunk)
    body = b"".join(chunks)
    if not body.strip():
        raise InputValidationError("Request body is empty")
    try:
        return json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InputValidationError(f"Malformed JSON: {e}") from e


def validate_presentation(payload) -> PresentationRequest:
    if not isinstance(payload, dict):
        raise InputValidationError("Request body must be a JSON object")
    if "slides" in payload and not isinstance(payload["slides"], list):
        raise InputValidationError("Missing or invalid slides array")
    try:
        return PresentationRequest(**payload)
    except ValidationError as e:
        issues = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise InputValidationError(issues) from e


def content_disposition(filename: str, default: str) -> str:
    """Attachment header with an ASCII fallback name and the UTF-8 original."""
    stem = filename[:-len(".pptx")] if filename.endswith(".pptx") else filename
    ascii_stem = stem.encode("ascii", "ignore").decode("ascii").strip("_")
    ascii_name = f"{ascii_stem}.pptx" if ascii_stem else default
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(filename)}"


def artifact_response(artifact, settings) -> Response:
    return Response(
        content=artifact.content,
        media_type=artifact.media_type,
        headers={"Content-Disposition": content_disposition(artifact.filename, settings.default_filename)},
    )


def element_from_body(route_kind: str, body: dict) -> dict:
    """Wraps flat options into the keyed form unless the body is already keyed."""
    element = {k: v for k, v in body.items() if k != "layout"}
    if route_kind == "text":
        return element
    if any(kind in element for kind in ELEMENT_ROUTE_KINDS[route_kind]):
        return element
    return {route_kind: element}


async def single_element_response(request: Request, route_kind: str) -> Response:
    settings = get_settings()
    request_id = uuid.uuid4().hex[:8]
    body = await read_json_body(request, settings)
    if not isinstance(body, dict):
        raise InputValidationError("Request body must be a JSON object")

    element = element_from_body(route_kind, body)
    presentation = validate_presentation({"layout": body.get("layout"), "slides": [{"objects": [element]}]})

    logging.info(f"[{request_id}] Rendering single {route_kind} element")
    try:
        artifact = await run_in_threadpool(
            ppt_generator.render_presentation, presentation, settings, request_id, ELEMENT_ROUTE_KINDS[route_kind]
        )
    except UpstreamFetchError:
        raise
    except ElementRenderError as e:
        raise InputValidationError(f"Body does not describe a valid {route_kind} element: {e}") from e
    return artifact_response(artifact, settings)


# --- Endpoints ---
@app.get("/")
@app.get("/health")
async def health():
    return {"status": "ok", "service": app.title, "version": app.version}


@app.post("/generate", summary="Generate a PowerPoint from a slide description")
async def generate_endpoint(request: Request):
    """Receives a PresentationRequest and returns the rendered .pptx file."""
    settings = get_settings()
    request_id = uuid.uuid4().hex[:8]
    payload = await read_json_body(request, settings)
    presentation = validate_presentation(payload)

    logging.info(f"[{request_id}] Generating presentation with title: {presentation.title}")
    artifact = await run_in_threadpool(ppt_generator.render_presentation, presentation, settings, request_id)
    return artifact_response(artifact, settings)


@app.post("/api/slide/add-text", summary="Render a single text element")
async def add_text_endpoint(request: Request):
    return await single_element_response(request, "text")


@app.post("/api/slide/add-image", summary="Render a single image element")
async def add_image_endpoint(request: Request):
    return await single_element_response(request, "image")


@app.post("/api/slide/add-chart", summary="Render a single chart element")
async def add_chart_endpoint(request: Request):
    return await single_element_response(request, "chart")


@app.post("/api/slide/add-table", summary="Render a single table element")
async def add_table_endpoint(request: Request):
    return await single_element_response(request, "table")


@app.post("/api/slide/add-shape", summary="Render a single shape element")
async def add_shape_endpoint(request: Request):
    return await single_element_response(request, "shape")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=config.HOST, port=config.PORT)
