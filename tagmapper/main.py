from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import quote

from fastapi import Depends, FastAPI, Form, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from jinja2 import Environment, FileSystemLoader, select_autoescape
from pydantic import BaseModel

from tagmapper.core.categories import parse_category, parse_location
from tagmapper.core.hashtags import extract_hashtags
from tagmapper.core.session import clear_token_cookie, get_token, set_token_cookie, verify
from tagmapper.core.settings import Settings
from tagmapper.core.tag_review import TagReview, review_document, select_only, selected_tags
from tagmapper.providers.content_types import CATEGORIES, LOCATIONS, Document, UpdatePayload
from tagmapper.providers.readwise import (
    ReadwiseAuthError,
    ReadwiseClient,
    ReadwiseError,
    ReadwiseMissingFieldError,
    ReadwiseMissingTokenError,
    ReadwiseRateLimitError,
)

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
TEMPLATES_DIR = BASE_DIR / "templates"

jinja = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html", "xml"]),
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    s = Settings.from_env()
    logging.basicConfig(level=s.log_level)
    yield


app = FastAPI(title="readwise-tags-mapper", lifespan=lifespan)

ClientFactory = Callable[[str], ReadwiseClient]


def render(template_name: str, **ctx) -> HTMLResponse:
    template = jinja.get_template(template_name)
    return HTMLResponse(template.render(**ctx))


# ==================== Dependencies ====================


def get_settings() -> Settings:
    return Settings.from_env()


def get_client_factory(settings: Settings = Depends(get_settings)) -> ClientFactory:
    """Build Readwise clients per request. Overridden in tests."""

    def factory(token: str) -> ReadwiseClient:
        return ReadwiseClient.from_settings(token, settings)

    return factory


def require_token(request: Request) -> str:
    token = get_token(request)
    if not token:
        raise ReadwiseMissingTokenError("Missing Readwise access token cookie")
    return token


# ==================== Error Handling ====================


def _status_for(exc: ReadwiseError) -> int:
    if isinstance(exc, (ReadwiseMissingTokenError, ReadwiseAuthError)):
        return 401
    if isinstance(exc, ReadwiseMissingFieldError):
        return 400
    if isinstance(exc, ReadwiseRateLimitError):
        return 429
    return 502


@app.exception_handler(ReadwiseError)
async def _readwise_error_handler(request: Request, exc: ReadwiseError) -> JSONResponse:
    status = _status_for(exc)
    if status >= 500:
        logger.warning(f"Readwise call failed for {request.method} {request.url.path}: {exc}")
    return JSONResponse({"error": str(exc)}, status_code=status)


@app.exception_handler(RequestValidationError)
async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
    return JSONResponse({"error": f"Invalid request: {fields}"}, status_code=400)


# ==================== Request Bodies ====================


class TokenBody(BaseModel):
    token: Optional[str] = None


class TagsBody(BaseModel):
    tags: list[str]


class MultiFetchBody(BaseModel):
    locations: list[str]
    categories: list[str]
    cursor: Optional[str] = None


def _with_tags(doc: Document | None) -> dict:
    return {
        "doc": doc.model_dump(mode="json") if doc else None,
        "tags": extract_hashtags(doc.summary if doc else None),
    }


# ==================== Document API ====================


@app.get("/api/fetch/{doc_id}")
def api_fetch_document(
    doc_id: str,
    token: str = Depends(require_token),
    client_factory: ClientFactory = Depends(get_client_factory),
):
    """Fetch one document plus the hashtags found in its summary."""
    with client_factory(token) as client:
        doc = client.get_document(doc_id)
    return _with_tags(doc)


@app.patch("/api/fetch/{doc_id}")
def api_update_document(
    doc_id: str,
    body: TagsBody,
    token: str = Depends(require_token),
    client_factory: ClientFactory = Depends(get_client_factory),
):
    """Replace a document's tags. Returns the echoed {id, url}."""
    with client_factory(token) as client:
        updated = client.update_document(doc_id, UpdatePayload(tags=body.tags))
    return updated.model_dump()


@app.post("/api/multi-fetch")
def api_multi_fetch(
    body: MultiFetchBody,
    token: str = Depends(require_token),
    client_factory: ClientFactory = Depends(get_client_factory),
):
    """Fetch every document for each location x category pair.

    `cursor`, when given, is used as the starting cursor of every pair.
    """
    try:
        locations = [parse_location(loc) for loc in body.locations]
        categories = [parse_category(cat) for cat in body.categories]
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)

    with client_factory(token) as client:
        docs = client.get_documents(locations, categories, body.cursor)
    return [_with_tags(doc) for doc in docs]


# ==================== Session API ====================


@app.get("/api/session")
def api_session_status(request: Request):
    return {"authenticated": get_token(request) is not None}


@app.post("/api/session")
def api_session_create(
    body: Optional[TokenBody] = None,
    settings: Settings = Depends(get_settings),
    client_factory: ClientFactory = Depends(get_client_factory),
):
    """Validate a token against Readwise and store it in the session cookie."""
    token = (body.token or "").strip() if body else ""
    if not token:
        return JSONResponse({"error": "The 'token' field is required"}, status_code=400)

    try:
        verify(token, client_factory)
    except ReadwiseError as e:
        return JSONResponse({"error": str(e)}, status_code=401)

    response = Response(status_code=204)
    set_token_cookie(response, token, secure=settings.cookie_secure)
    return response


@app.delete("/api/session")
def api_session_clear(settings: Settings = Depends(get_settings)):
    response = Response(status_code=204)
    clear_token_cookie(response, secure=settings.cookie_secure)
    return response


@app.post("/api/session/test")
def api_session_test(
    request: Request,
    body: Optional[TokenBody] = None,
    client_factory: ClientFactory = Depends(get_client_factory),
):
    """Validate the supplied token, or the stored one when none is supplied."""
    supplied = (body.token or "").strip() if body else ""
    token = supplied or get_token(request)
    if not token:
        return JSONResponse({"error": "No token supplied or stored"}, status_code=400)

    try:
        verify(token, client_factory)
    except ReadwiseError as e:
        return JSONResponse({"error": str(e)}, status_code=401)
    return Response(status_code=204)


# ==================== Pages ====================


NO_TOKEN_ERROR = "Please set a valid Readwise access token before fetching documents."


def _home(request: Request, *, error: str | None = None, message: str | None = None) -> HTMLResponse:
    return render(
        "home.html",
        request=request,
        authenticated=get_token(request) is not None,
        error=error,
        message=message,
    )


def _review(
    request: Request,
    review: TagReview | None,
    *,
    error: str | None = None,
    message: str | None = None,
) -> HTMLResponse:
    return render(
        "review.html",
        request=request,
        review=review.to_dict() if review else None,
        error=error,
        message=message,
    )


@app.get("/", response_class=HTMLResponse)
def home(request: Request):
    return _home(request)


@app.post("/token")
def token_save(
    request: Request,
    token: str = Form(...),
    settings: Settings = Depends(get_settings),
    client_factory: ClientFactory = Depends(get_client_factory),
):
    token = token.strip()
    try:
        verify(token, client_factory)
    except ReadwiseError as e:
        return _home(request, error=str(e))

    response = RedirectResponse(url="/", status_code=303)
    set_token_cookie(response, token, secure=settings.cookie_secure)
    return response


@app.post("/logout")
def logout(settings: Settings = Depends(get_settings)):
    response = RedirectResponse(url="/", status_code=303)
    clear_token_cookie(response, secure=settings.cookie_secure)
    return response


@app.get("/documents", response_class=HTMLResponse)
def documents_page(
    request: Request,
    location: list[str] = Query(default=[]),
    category: list[str] = Query(default=[]),
    cursor: str = "",
    client_factory: ClientFactory = Depends(get_client_factory),
):
    """Batch fetch by location x category, listing each document for review."""
    ctx = dict(
        request=request,
        locations=LOCATIONS,
        categories=CATEGORIES,
        chosen_locations=location,
        chosen_categories=category,
        cursor=cursor,
        documents=None,
        error=None,
    )
    if not location and not category:
        return render("documents.html", **ctx)

    token = get_token(request)
    if not token:
        return _home(request, error=NO_TOKEN_ERROR)

    if not location or not category:
        ctx["error"] = "Choose at least one location and one category."
        return render("documents.html", **ctx)

    try:
        locations = [parse_location(loc) for loc in location]
        categories = [parse_category(cat) for cat in category]
        with client_factory(token) as client:
            docs = client.get_documents(locations, categories, cursor.strip() or None)
    except (ValueError, ReadwiseError) as e:
        ctx["error"] = str(e)
        return render("documents.html", **ctx)

    ctx["documents"] = [(doc, extract_hashtags(doc.summary)) for doc in docs]
    return render("documents.html", **ctx)


@app.get("/review")
def review_lookup(request: Request, id: str = ""):
    """Form target of the document id box on the home page."""
    doc_id = id.strip()
    if not doc_id:
        return _home(request, error="Enter a document ID before fetching.")
    return RedirectResponse(url=f"/review/{quote(doc_id, safe='')}", status_code=303)


@app.get("/review/{doc_id}", response_class=HTMLResponse)
def review_page(
    request: Request,
    doc_id: str,
    saved: bool = False,
    client_factory: ClientFactory = Depends(get_client_factory),
):
    """Show a document's summary with stored and extracted tags side by side."""
    token = get_token(request)
    if not token:
        return _home(request, error=NO_TOKEN_ERROR)

    try:
        with client_factory(token) as client:
            doc = client.get_document(doc_id)
    except ReadwiseError as e:
        return _review(request, None, error=str(e))

    if not doc:
        return _review(request, None, error="Document not found")

    review = review_document(doc, extract_hashtags(doc.summary))
    return _review(request, review, message="Tags saved to Readwise." if saved else None)


@app.post("/review/{doc_id}")
def review_apply(
    request: Request,
    doc_id: str,
    tags: list[str] = Form(default=[]),
    action: str = Form(default="apply"),
    client_factory: ClientFactory = Depends(get_client_factory),
):
    """Write the checked tags back to Readwise, replacing the stored set.

    With `action=preview` the page is re-rendered with the pending changes
    and nothing is written.
    """
    token = get_token(request)
    if not token:
        return _home(request, error="Please set a valid Readwise access token before updating tags.")

    try:
        with client_factory(token) as client:
            doc = client.get_document(doc_id)
            if not doc:
                return _review(request, None, error="Document not found")
            review = select_only(review_document(doc, extract_hashtags(doc.summary)), tags)
            if action == "preview":
                return _review(request, review)
            client.update_document(doc.id, UpdatePayload(tags=selected_tags(review)))
    except ReadwiseError as e:
        return _review(request, None, error=str(e))

    return RedirectResponse(url=f"/review/{quote(doc_id, safe='')}?saved=1", status_code=303)
