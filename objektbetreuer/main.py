import asyncio
import logging
import sys
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, File, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from starlette.concurrency import run_in_threadpool

from . import accounts, legacy
from .auth import get_ctx, get_current_user, oauth2_scheme, require_company
from .config import Settings, configure_logging
from .context import build_context
from .crud import AppointmentRepository, EmployeeRepository, JobRepository, PropertyRepository, Scope
from .errors import NotAuthorizedError, NotFoundError, PermissionDeniedError, PortalError
from .invitations import InvitationRepository, InvitationWorkflow, expire_overdue
from .models import (
    AppointmentCreate,
    AppUser,
    CompanyRegistration,
    EmployeeUpdate,
    InvitationAccept,
    InvitationCreate,
    JobCreate,
    JobStatus,
    NoteCreate,
    PasswordResetConfirm,
    PasswordResetRequest,
    PropertyCreate,
    PropertyStatus,
    StatusChange,
)

logger = logging.getLogger("portal")

LIVE_REPOSITORIES = {
    "properties": PropertyRepository,
    "jobs": JobRepository,
    "appointments": AppointmentRepository,
    "employees": EmployeeRepository,
    "invitations": InvitationRepository,
}


def _repo(cls, request: Request, user: AppUser):
    return cls(get_ctx(request), Scope.for_user(user))


def _found(obj):
    if obj is None:
        raise NotFoundError()
    return obj


async def _invitation_sweeper(ctx, interval_seconds: int):
    while True:
        try:
            await asyncio.to_thread(expire_overdue, ctx)
        except Exception:
            logger.exception("Exception in invitation sweeper")
        await asyncio.sleep(interval_seconds)


def create_app(ctx=None) -> FastAPI:
    settings = ctx.settings if ctx is not None else Settings.from_env()
    app = FastAPI(title="Objektbetreuer Portal")
    if ctx is not None:
        app.state.ctx = ctx

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def _configure_on_startup():
        if getattr(app.state, "ctx", None) is None:
            app.state.ctx = build_context(settings)
        logger.info("Starting application, database=%s", app.state.ctx.engine.url.render_as_string(hide_password=True))

        def _excepthook(exc_type, exc, tb):
            logger.exception("Uncaught exception", exc_info=(exc_type, exc, tb))
        sys.excepthook = _excepthook

        interval = app.state.ctx.settings.invitation_sweep_interval
        if interval > 0:
            app.state.sweeper = asyncio.create_task(_invitation_sweeper(app.state.ctx, interval))

    @app.on_event("shutdown")
    async def _shutdown():
        sweeper = getattr(app.state, "sweeper", None)
        if sweeper:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
        ctx_ = getattr(app.state, "ctx", None)
        if ctx_ is not None:
            ctx_.live.close()

    @app.exception_handler(PortalError)
    async def _portal_error(request: Request, exc: PortalError):
        headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, NotAuthorizedError) else None
        if exc.status_code >= 500:
            logger.warning("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.detail)
        return JSONResponse(
            status_code=exc.status_code,
            content={"code": exc.code, "detail": exc.detail},
            headers=headers,
        )

    # Auth endpoints

    @app.post("/api/auth/register")
    def register(payload: CompanyRegistration, request: Request):
        user, token = accounts.register_company(get_ctx(request), payload)
        return {"access_token": token, "token_type": "bearer", "user": user}

    @app.post("/api/auth/login")
    def login(request: Request, form_data: OAuth2PasswordRequestForm = Depends()):
        user, token = accounts.login(get_ctx(request), form_data.username, form_data.password)
        return {"access_token": token, "token_type": "bearer", "user": user}

    @app.post("/api/auth/logout")
    def logout(request: Request, token: str = Depends(oauth2_scheme)):
        get_ctx(request).auth.sign_out(token)
        return {"status": "ok"}

    @app.post("/api/auth/password-reset")
    def password_reset(payload: PasswordResetRequest, request: Request):
        get_ctx(request).auth.send_password_reset(payload.email)
        return {"status": "ok"}

    @app.post("/api/auth/password-reset/confirm")
    def password_reset_confirm(payload: PasswordResetConfirm, request: Request):
        get_ctx(request).auth.confirm_password_reset(payload.token, payload.password)
        return {"status": "ok"}

    @app.get("/api/auth/me")
    def me(user: AppUser = Depends(get_current_user)):
        return user

    @app.get("/api/auth/cached-profile")
    def cached_profile(request: Request, token: str = Depends(oauth2_scheme)):
        """Last known profile for the token's principal, without a fresh lookup."""
        ctx = get_ctx(request)
        principal_id, _ = ctx.auth.authenticate_token(token)
        return _found(ctx.identity.cached(principal_id))

    # Properties

    @app.get("/api/properties")
    def list_properties(request: Request, status: Optional[PropertyStatus] = None, user: AppUser = Depends(get_current_user)):
        return _repo(PropertyRepository, request, user).list(status=status)

    @app.post("/api/properties")
    def create_property(payload: PropertyCreate, request: Request, user: AppUser = Depends(get_current_user)):
        repo = _repo(PropertyRepository, request, user)
        return repo.get(repo.create(payload))

    @app.get("/api/properties/{property_id}")
    def get_property(property_id: str, request: Request, user: AppUser = Depends(get_current_user)):
        return _found(_repo(PropertyRepository, request, user).get(property_id))

    @app.patch("/api/properties/{property_id}")
    def update_property(property_id: str, payload: dict, request: Request, user: AppUser = Depends(get_current_user)):
        repo = _repo(PropertyRepository, request, user)
        repo.update(property_id, payload)
        return repo.get(property_id)

    @app.delete("/api/properties/{property_id}")
    def delete_property(property_id: str, request: Request, user: AppUser = Depends(get_current_user)):
        _repo(PropertyRepository, request, user).delete(property_id)
        return {"status": "ok", "deleted_property_id": property_id}

    # Reports

    @app.get("/api/reports/balance")
    def report_balance(request: Request, user: AppUser = Depends(get_current_user)):
        return _repo(PropertyRepository, request, user).balance()

    # Jobs

    @app.get("/api/jobs")
    def list_jobs(
        request: Request,
        property_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
        assigned_to: Optional[str] = None,
        mine: bool = False,
        user: AppUser = Depends(get_current_user),
    ):
        repo = _repo(JobRepository, request, user)
        if mine:
            return repo.mine(property_id=property_id, status=status)
        return repo.list(property_id=property_id, status=status, assigned_to=assigned_to)

    @app.post("/api/jobs")
    def create_job(payload: JobCreate, request: Request, user: AppUser = Depends(get_current_user)):
        repo = _repo(JobRepository, request, user)
        return repo.get(repo.create(payload))

    @app.post("/api/jobs/import")
    async def import_legacy_jobs(request: Request, file: UploadFile = File(...), user: AppUser = Depends(require_company)):
        # CSV or JSON export of the old job collection
        content = await file.read()
        fmt = "json" if (file.filename or "").lower().endswith(".json") else "csv"
        frame = legacy.read_export(content, fmt)
        return await run_in_threadpool(legacy.import_jobs, get_ctx(request), user.id, frame)

    @app.get("/api/jobs/{job_id}")
    def get_job(job_id: str, request: Request, user: AppUser = Depends(get_current_user)):
        return _found(_repo(JobRepository, request, user).get(job_id))

    @app.patch("/api/jobs/{job_id}")
    def update_job(job_id: str, payload: dict, request: Request, user: AppUser = Depends(get_current_user)):
        repo = _repo(JobRepository, request, user)
        repo.update(job_id, payload)
        return repo.get(job_id)

    @app.delete("/api/jobs/{job_id}")
    def delete_job(job_id: str, request: Request, user: AppUser = Depends(get_current_user)):
        _repo(JobRepository, request, user).delete(job_id)
        return {"status": "ok", "deleted_job_id": job_id}

    @app.post("/api/jobs/{job_id}/status")
    def change_job_status(job_id: str, payload: StatusChange, request: Request, user: AppUser = Depends(get_current_user)):
        return _repo(JobRepository, request, user).change_status(job_id, payload.status)

    @app.post("/api/jobs/{job_id}/notes")
    def add_job_note(job_id: str, payload: NoteCreate, request: Request, user: AppUser = Depends(get_current_user)):
        return _repo(JobRepository, request, user).add_note(job_id, payload.text)

    # Appointments

    @app.get("/api/appointments")
    def list_appointments(
        request: Request,
        property_id: Optional[str] = None,
        job_id: Optional[str] = None,
        assigned_to: Optional[str] = None,
        mine: bool = False,
        user: AppUser = Depends(get_current_user),
    ):
        repo = _repo(AppointmentRepository, request, user)
        if mine:
            return repo.mine(property_id=property_id, job_id=job_id)
        return repo.list(property_id=property_id, job_id=job_id, assigned_to=assigned_to)

    @app.post("/api/appointments")
    def create_appointment(payload: AppointmentCreate, request: Request, user: AppUser = Depends(get_current_user)):
        repo = _repo(AppointmentRepository, request, user)
        return repo.get(repo.create(payload))

    @app.get("/api/appointments/{appointment_id}")
    def get_appointment(appointment_id: str, request: Request, user: AppUser = Depends(get_current_user)):
        return _found(_repo(AppointmentRepository, request, user).get(appointment_id))

    @app.patch("/api/appointments/{appointment_id}")
    def update_appointment(appointment_id: str, payload: dict, request: Request, user: AppUser = Depends(get_current_user)):
        repo = _repo(AppointmentRepository, request, user)
        repo.update(appointment_id, payload)
        return repo.get(appointment_id)

    @app.delete("/api/appointments/{appointment_id}")
    def delete_appointment(appointment_id: str, request: Request, user: AppUser = Depends(get_current_user)):
        _repo(AppointmentRepository, request, user).delete(appointment_id)
        return {"status": "ok", "deleted_appointment_id": appointment_id}

    # Employees (company only)

    @app.get("/api/employees")
    def list_employees(request: Request, user: AppUser = Depends(require_company)):
        return _repo(EmployeeRepository, request, user).list()

    @app.get("/api/employees/{employee_id}")
    def get_employee(employee_id: str, request: Request, user: AppUser = Depends(require_company)):
        return _found(_repo(EmployeeRepository, request, user).get(employee_id))

    @app.patch("/api/employees/{employee_id}")
    def update_employee(employee_id: str, payload: EmployeeUpdate, request: Request, user: AppUser = Depends(require_company)):
        repo = _repo(EmployeeRepository, request, user)
        repo.update(employee_id, payload)
        return repo.get(employee_id)

    @app.delete("/api/employees/{employee_id}")
    def deactivate_employee(employee_id: str, request: Request, user: AppUser = Depends(require_company)):
        _repo(EmployeeRepository, request, user).deactivate(employee_id)
        return {"status": "ok", "deactivated_employee_id": employee_id}

    # Invitations

    @app.get("/api/invitations")
    def list_invitations(request: Request, status: Optional[str] = None, user: AppUser = Depends(require_company)):
        return _repo(InvitationRepository, request, user).list(status=status)

    @app.post("/api/invitations")
    def create_invitation(payload: InvitationCreate, request: Request, user: AppUser = Depends(require_company)):
        repo = _repo(InvitationRepository, request, user)
        return repo.get(repo.create(payload))

    @app.post("/api/invitations/expire")
    def expire_invitations(request: Request, user: AppUser = Depends(require_company)):
        return {"expired": _repo(InvitationRepository, request, user).expire_stale()}

    @app.post("/api/invitations/{invitation_id}/resend")
    def resend_invitation(invitation_id: str, request: Request, user: AppUser = Depends(require_company)):
        return _repo(InvitationRepository, request, user).resend(invitation_id)

    @app.delete("/api/invitations/{invitation_id}")
    def revoke_invitation(invitation_id: str, request: Request, user: AppUser = Depends(require_company)):
        _repo(InvitationRepository, request, user).revoke(invitation_id)
        return {"status": "ok", "revoked_invitation_id": invitation_id}

    @app.get("/api/invitations/token/{token}")
    def resolve_invitation(token: str, request: Request):
        inv = InvitationWorkflow(get_ctx(request)).resolve(token)
        # the token link only needs to show who is invited and what they may do
        return {
            "email": inv.email,
            "status": inv.status,
            "expires_at": inv.expires_at,
            "permissions": {k: v for k, v in inv.model_dump().items() if k.startswith("can_")},
        }

    @app.post("/api/invitations/token/{token}/accept")
    def accept_invitation(token: str, payload: InvitationAccept, request: Request):
        ctx = get_ctx(request)
        user = InvitationWorkflow(ctx).accept(token, payload.password, payload.display_name)
        access_token = ctx.auth.create_access_token(user.id)
        return {"access_token": access_token, "token_type": "bearer", "user": user}

    # Live queries

    @app.websocket("/api/live/{entity}")
    async def live_feed(websocket: WebSocket, entity: str):
        ctx = websocket.app.state.ctx
        token = websocket.query_params.get("token") or ""
        filters = {k: v for k, v in websocket.query_params.items() if k != "token"}
        repo_cls = LIVE_REPOSITORIES.get(entity)
        try:
            principal_id, _ = await run_in_threadpool(ctx.auth.authenticate_token, token)
            user = await run_in_threadpool(ctx.identity.resolve, principal_id)
        except PortalError:
            user = None
        if user is None:
            await websocket.close(code=4401)
            return
        if repo_cls is None:
            await websocket.close(code=4404)
            return
        await websocket.accept()

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()

        def on_data(items):
            frame = {"type": "snapshot", "entity": entity, "items": jsonable_encoder(items)}
            loop.call_soon_threadsafe(queue.put_nowait, frame)

        def on_error(err: PortalError):
            frame = {"type": "error", "code": err.code, "message": err.user_message}
            loop.call_soon_threadsafe(queue.put_nowait, frame)

        try:
            repo = repo_cls(ctx, Scope.for_user(user))
            sub = await run_in_threadpool(repo.subscribe, on_data, on_error, **filters)
        except PortalError as e:
            await websocket.send_json({"type": "error", "code": e.code, "message": e.user_message})
            await websocket.close(code=4400)
            return

        async def pump():
            while True:
                frame = await queue.get()
                await websocket.send_json(frame)
                if frame["type"] == "error" and frame["code"] == PermissionDeniedError.code:
                    await websocket.close(code=4403)
                    return

        async def drain():
            try:
                while True:
                    await websocket.receive_text()
            except WebSocketDisconnect:
                pass

        tasks = [asyncio.ensure_future(pump()), asyncio.ensure_future(drain())]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for t in tasks:
                t.cancel()
            sub.unsubscribe()

    return app


configure_logging()
app = create_app()


def run():
    settings = Settings.from_env()
    logger.info("Starting server on %s:%s", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
