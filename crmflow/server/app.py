"""FastAPI app creation, global state, and auth dependencies."""

import hmac
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, Security
from fastapi.security import APIKeyHeader

from ..app import CrmFlow

logger = logging.getLogger(__name__)

_config_path = os.getenv("CRMFLOW_CONFIG", "config.yaml")

_app: Optional[CrmFlow] = None


def _try_load_app():
    """Attempt to load CrmFlow from config. Silent if config missing."""
    global _app
    try:
        if os.path.exists(_config_path):
            _app = CrmFlow.from_file(_config_path)
            logger.info(f"CrmFlow loaded from {_config_path}")
        else:
            logger.warning(f"Config not found: {_config_path}")
    except Exception as e:
        logger.warning(f"Failed to load config: {e}")
        _app = None


def require_app() -> CrmFlow:
    """Raise 503 if the app is not configured. Lazy-loads on first call."""
    global _app
    if _app is None:
        _try_load_app()
    if _app is None:
        raise HTTPException(503, "Not configured. Set CRMFLOW_CONFIG to a valid config file.")
    return _app


def set_app(new_app: Optional[CrmFlow]):
    """Set the global _app instance."""
    global _app
    _app = new_app


def get_app_instance() -> Optional[CrmFlow]:
    """Get the current global _app instance (may be None)."""
    return _app


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:]
    return ""


def verify_cron_secret(request: Request):
    """Require ``Authorization: Bearer <cron_secret>`` on cron endpoints.

    An unset secret is a server misconfiguration (500), never open access.
    """
    secret = require_app().config.cron_secret
    if not secret:
        raise HTTPException(500, "cron_secret is not configured")
    if not hmac.compare_digest(_bearer_token(request).encode(), secret.encode()):
        raise HTTPException(401, "Unauthorized")


_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(
    request: Request,
    api_key_header_value: Optional[str] = Security(_api_key_header),
):
    """Verify API key from Authorization: Bearer <key> or X-API-Key header.

    When ``api_key`` is not configured, all requests are allowed (dev mode).
    """
    expected = require_app().config.api_key
    if not expected:
        return None

    for candidate in (api_key_header_value or "", _bearer_token(request)):
        if candidate and hmac.compare_digest(candidate.encode(), expected.encode()):
            return candidate

    raise HTTPException(401, "Invalid or missing API key")


async def require_project(slug: str) -> str:
    """Resolve a project slug to its id, or 404."""
    project_id = await require_app().resolve_project(slug)
    if project_id is None:
        raise HTTPException(404, f"Project '{slug}' not found")
    return project_id


# --- FastAPI app creation (after all helpers are defined to avoid circular imports) ---

@asynccontextmanager
async def _lifespan(_api: FastAPI):
    yield
    if _app is not None:
        await _app.shutdown()


def create_api() -> FastAPI:
    """Create and configure the FastAPI app with routes."""
    _api = FastAPI(title="CrmFlow", version="0.1.0", lifespan=_lifespan)

    from .routes import register_routes
    register_routes(_api)
    return _api


api = create_api()
