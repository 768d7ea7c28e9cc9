from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health(request: Request):
    """Liveness plus a snapshot of the installation session."""
    session = request.app.state.session
    return {"status": "ok", "session": session.get_status()}
