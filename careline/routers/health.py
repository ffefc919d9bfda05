import os
from fastapi import APIRouter

router = APIRouter()


@router.get("/")
async def root():
    return {
        "status": "CareLine Triage Server is Running",
        "features": ["triage", "tier_routing", "urgent_escalation"],
        "endpoints": {
            "submit_utterance": "/api/triage/utterances",
            "session_state": "/api/triage/sessions/{session_id}",
            "handoff_reply": "/api/triage/sessions/{session_id}/handoff",
            "appointment": "/api/triage/sessions/{session_id}/appointment",
            "acknowledge": "/api/triage/sessions/{session_id}/acknowledge",
            "status": "/api/triage/status",
        }
    }


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    from careline.triage.setup import get_engine

    return {
        "status": "healthy",
        "service": "careline-triage",
        "engine_ready": get_engine() is not None,
        "port": os.environ.get("PORT", 8080)
    }
