from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from api.deps import get_plank_sessions, get_store
from auth.utils import get_current_identity
from services.attempt_session import CANCELLED, AttemptSession
from services.calendar_reconciler import reconcile
from services.identity import Identity
from services.plank_session_registry import PlankSessionRegistry
from services.store import ChallengeStore

router = APIRouter(prefix="/plank", tags=["plank"])


class StartRequest(BaseModel):
    enrollment_id: int


def _session_or_404(registry: PlankSessionRegistry, identity: Identity, store: ChallengeStore) -> AttemptSession:
    session = registry.get(identity.user_id, store)
    if session is None:
        raise HTTPException(status_code=404, detail="No plank session in progress")
    return session


@router.post("/start", status_code=201)
def start_session(
    req: StartRequest,
    identity: Identity = Depends(get_current_identity),
    store: ChallengeStore = Depends(get_store),
    registry: PlankSessionRegistry = Depends(get_plank_sessions),
):
    enrollment = store.find_enrollment_by_id(req.enrollment_id)
    if not enrollment or enrollment.user_id != identity.user_id:
        raise HTTPException(status_code=404, detail="Enrollment not found")
    challenge = store.find_challenge(enrollment.challenge_id)
    if not challenge:
        raise HTTPException(status_code=404, detail="Challenge not found")
    reconcile(store, enrollment, challenge)
    session = registry.start(store, enrollment=enrollment, challenge=challenge, identity=identity)
    session.tick()
    return session.snapshot()


@router.get("/session")
def current_session(
    identity: Identity = Depends(get_current_identity),
    store: ChallengeStore = Depends(get_store),
    registry: PlankSessionRegistry = Depends(get_plank_sessions),
):
    session = _session_or_404(registry, identity, store)
    session.tick()
    return session.snapshot()


ACTIONS = {
    "pause": AttemptSession.pause,
    "resume": AttemptSession.resume,
    "done": AttemptSession.done,
    "still-going": AttemptSession.acknowledge_still_going,
    "keep": AttemptSession.keep,
    "redo": AttemptSession.redo,
    "cancel": AttemptSession.cancel,
    "retry": AttemptSession.tick,
}


@router.post("/{action}")
def session_action(
    action: str,
    identity: Identity = Depends(get_current_identity),
    store: ChallengeStore = Depends(get_store),
    registry: PlankSessionRegistry = Depends(get_plank_sessions),
):
    handler = ACTIONS.get(action)
    if handler is None:
        raise HTTPException(status_code=404, detail=f"Unknown plank action '{action}'")
    session = _session_or_404(registry, identity, store)
    handler(session)
    snapshot = session.snapshot()
    if session.stage == CANCELLED:
        registry.discard(identity.user_id)
    return snapshot
