"""Control page plus /api/ping and /api/diagnostic."""
from pathlib import Path

from fastapi import APIRouter, Request
from fastapi.responses import FileResponse

router = APIRouter()

STATIC_DIR = Path(__file__).resolve().parent.parent / "static"


@router.get("/")
async def index():
    """Serve the control page."""
    return FileResponse(STATIC_DIR / "index.html")


@router.get("/api/ping")
async def api_ping():
    """Simple connectivity check."""
    return {"ok": True}


@router.get("/api/diagnostic")
async def api_diagnostic(request: Request):
    """Session snapshot: group, clients, clips and fetches."""
    return request.app.state.session.diagnostics()
