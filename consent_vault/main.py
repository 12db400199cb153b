# consent_vault/main.py
# Run: uvicorn consent_vault.main:create_app --factory
from __future__ import annotations

from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import crud
from .config import Settings, load_settings
from .consent import ConsentLedger, Viewer
from .db import Base, make_engine, make_session_factory
from .encryption_utils import build_cipher
from .errors import ConsentStateError, ConsentVaultError
from .ip_lookup import IpLookup
from .logging_config import configure_logging
from .profile_codec import decrypt_profile_fields, encrypt_profile_fields
from .schemas import (
    BatchConsentIn,
    ConsentHistory,
    ConsentOut,
    ConsentPage,
    ConsentStats,
    ConsentStatus,
    GiveConsentIn,
    ProfileIn,
    ProfileOut,
    ProfilePatch,
    WithdrawConsentIn,
)

# Next.js / Vite dev servers
origins = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]

_STATUS_BY_CODE = {
    "CONSENT_STATE_ERROR": 409,
    "CONFIG_ERROR": 503,
    "PERSISTENCE_ERROR": 503,
}


# ---------------- DEPENDENCIES ----------------
def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_ledger(request: Request) -> ConsentLedger:
    return request.app.state.ledger


def get_viewer(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Viewer:
    # identity comes from the surrounding app's session layer
    return Viewer(user_id=x_user_id or "", role=(x_user_role or "anonymous").lower())


def require_staff(viewer: Viewer = Depends(get_viewer)) -> Viewer:
    if not viewer.is_staff:
        raise HTTPException(status_code=403, detail="Admin access required")
    return viewer


def create_app(settings: Optional[Settings] = None, ip_resolver=None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level, settings.log_json)

    # fails loudly when ENCRYPTION_KEY is missing
    cipher = build_cipher(settings)
    engine = make_engine(settings)
    # Create tables if they don't exist (dev only; use migrations in prod)
    Base.metadata.create_all(bind=engine)
    session_factory = make_session_factory(engine)

    if ip_resolver is None and settings.ip_lookup_url:
        ip_resolver = IpLookup(settings.ip_lookup_url, settings.ip_lookup_timeout)

    app = FastAPI(title="Consent Vault", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.cipher = cipher
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.ledger = ConsentLedger(session_factory, cipher, ip_resolver=ip_resolver)

    @app.exception_handler(ConsentVaultError)
    async def vault_error_handler(request: Request, exc: ConsentVaultError):
        return JSONResponse(status_code=_STATUS_BY_CODE.get(exc.code, 500), content=exc.to_dict())

    # ---------------- HEALTH ----------------
    @app.get("/api/health")
    def health(request: Request):
        return {
            "ok": True,
            "encryption": request.app.state.cipher.is_configured,
            "environment": request.app.state.settings.environment,
        }

    @app.get("/api/health/db")
    def health_db(db: Session = Depends(get_db)):
        try:
            val = db.execute(text("SELECT 1")).scalar_one()
            return {"db": "ok", "result": val}
        except SQLAlchemyError as e:
            raise HTTPException(status_code=503, detail=f"db error: {e.__class__.__name__}")

    # ---------------- PROFILES ----------------
    def _profile_out(row) -> ProfileOut:
        return ProfileOut(**decrypt_profile_fields(row, cipher))

    @app.post("/api/profiles", response_model=ProfileOut, status_code=201)
    def create_profile(payload: ProfileIn, db: Session = Depends(get_db)):
        row = encrypt_profile_fields(payload.model_dump(), cipher)
        try:
            profile = crud.insert_profile(db, row)
        except IntegrityError:
            db.rollback()
            raise HTTPException(status_code=409, detail="Profile with this email already exists")
        return _profile_out(profile)

    @app.patch("/api/profiles/{profile_id}", response_model=ProfileOut)
    def update_profile(profile_id: str, payload: ProfilePatch, db: Session = Depends(get_db)):
        profile = crud.get_profile(db, profile_id)
        if not profile:
            raise HTTPException(status_code=404, detail="Profile not found")
        patch = encrypt_profile_fields(payload.model_dump(exclude_unset=True), cipher)
        return _profile_out(crud.update_profile(db, profile, patch))

    @app.get("/api/profiles/{profile_id}", response_model=ProfileOut)
    def get_profile(profile_id: str, db: Session = Depends(get_db)):
        profile = crud.get_profile(db, profile_id)
        if not profile:
            raise HTTPException(status_code=404, detail="Profile not found")
        return _profile_out(profile)

    # ---------------- CONSENT ----------------
    @app.get("/api/consent/{student_id}", response_model=ConsentOut)
    def get_consent(
        student_id: str,
        ledger: ConsentLedger = Depends(get_ledger),
        viewer: Viewer = Depends(get_viewer),
    ):
        record = ledger.get_student_consent(student_id, viewer=viewer)
        if record is None:
            raise HTTPException(status_code=404, detail="No consent record")
        return record

    @app.post("/api/consent", response_model=ConsentOut)
    def give_consent(
        payload: GiveConsentIn,
        request: Request,
        ledger: ConsentLedger = Depends(get_ledger),
        viewer: Viewer = Depends(get_viewer),
    ):
        if not ledger.can_act_for(payload.student_id, viewer):
            raise HTTPException(status_code=404, detail="Student not found")
        record = ledger.give_consent(
            payload.student_id,
            payload.consented_by,
            ip_address=payload.ip_address or (request.client.host if request.client else None),
            user_agent=payload.user_agent or request.headers.get("user-agent"),
            viewer=viewer,
        )
        if record is None:
            raise HTTPException(status_code=500, detail="Failed to record consent")
        return record

    @app.post("/api/consent/{student_id}/withdraw", response_model=ConsentOut)
    def withdraw_consent(
        student_id: str,
        payload: WithdrawConsentIn,
        ledger: ConsentLedger = Depends(get_ledger),
        viewer: Viewer = Depends(get_viewer),
    ):
        if not ledger.can_act_for(student_id, viewer):
            raise HTTPException(status_code=404, detail="No consent record")
        if ledger.get_student_consent(student_id) is None:
            raise ConsentStateError(student_id, "Cannot withdraw consent that was never given")
        record = ledger.withdraw_consent(
            student_id, payload.reason, withdrawn_by=viewer.user_id or None, viewer=viewer
        )
        if record is None:
            raise HTTPException(status_code=500, detail="Failed to withdraw consent")
        return record

    @app.get("/api/consent/{student_id}/history", response_model=ConsentHistory)
    def consent_history(
        student_id: str,
        ledger: ConsentLedger = Depends(get_ledger),
        viewer: Viewer = Depends(get_viewer),
    ):
        history = ledger.get_consent_history(student_id, viewer=viewer)
        if history is None:
            raise HTTPException(status_code=404, detail="No consent history")
        return history

    @app.post("/api/consent/batch", response_model=List[ConsentOut])
    def batch_consent(
        payload: BatchConsentIn,
        ledger: ConsentLedger = Depends(get_ledger),
        viewer: Viewer = Depends(get_viewer),
    ):
        return ledger.get_students_consent(payload.student_ids, viewer=viewer)

    # ---------------- ADMIN ----------------
    @app.get("/api/admin/consents", response_model=ConsentPage)
    def all_consents(
        limit: Optional[int] = Query(default=None, ge=1, le=500),
        offset: int = Query(default=0, ge=0),
        consent_status: ConsentStatus = Query(default="all"),
        ledger: ConsentLedger = Depends(get_ledger),
        _: Viewer = Depends(require_staff),
    ):
        return ledger.get_all_consents(limit=limit, offset=offset, consent_status=consent_status)

    @app.get("/api/admin/consents/stats", response_model=ConsentStats)
    def consent_stats(
        ledger: ConsentLedger = Depends(get_ledger),
        _: Viewer = Depends(require_staff),
    ):
        return ledger.get_consent_stats()

    return app
