import mimetypes
from typing import Any

import uvicorn
from fastapi import Depends, FastAPI, File, Form, Header, Request, UploadFile
from fastapi.responses import JSONResponse, RedirectResponse, Response

from invoice_pipeline.bootstrap import Services, build_services
from invoice_pipeline.config.settings import Settings
from invoice_pipeline.credits.exceptions import UserNotFoundError
from invoice_pipeline.database.connection import close_pool, init_pool
from invoice_pipeline.lifecycle.error_codes import ErrorCode
from invoice_pipeline.logging.logger import Log
from invoice_pipeline.sessions.exceptions import SessionError
from invoice_pipeline.sessions.models import SessionView, UploadedFile
from invoice_pipeline.storage.exceptions import StorageError, StorageNotFoundError
from invoice_pipeline.storage.local_adapter import LocalStorageAdapter

STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.UNSUPPORTED_MEDIA_TYPE: 415,
    ErrorCode.PAGE_TOO_LARGE: 413,
    ErrorCode.EMPTY_UPLOAD: 400,
    ErrorCode.TOO_MANY_FILES: 400,
    ErrorCode.UNREADABLE_DOCUMENT: 400,
    ErrorCode.SESSION_NOT_FOUND: 404,
    ErrorCode.SESSION_NOT_READY: 409,
    ErrorCode.SESSION_EXPIRED: 409,
    ErrorCode.STORAGE_ERROR: 502,
    ErrorCode.MISSING_USER_ID: 401,
    ErrorCode.USER_NOT_FOUND: 404,
    ErrorCode.INVALID_SIGNATURE: 403,
}


class ApiError(Exception):
    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code


def error_response(code: ErrorCode, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=STATUS_BY_CODE.get(code, 500),
        content={"error": {"code": code.value, "message": message}},
    )


def current_user(x_user_id: str | None = Header(default=None)) -> int:
    """Caller identity from the X-User-Id header; authentication happens upstream."""
    if x_user_id is None or not x_user_id.strip().isdigit():
        raise ApiError(ErrorCode.MISSING_USER_ID, "X-User-Id header with a numeric id is required")
    return int(x_user_id)


def session_body(view: SessionView) -> dict[str, Any]:
    jobs = []
    for job in view.jobs:
        item: dict[str, Any] = {
            "id": job.id,
            "status": job.status,
            "pageNumber": job.page_number,
            "fileName": job.file_name,
            "outputFileName": job.output_file_name,
            "unbilled": job.unbilled,
        }
        if job.error_code:
            item["error"] = {"code": job.error_code, "message": job.error_message}
        jobs.append(item)
    body: dict[str, Any] = {
        "sessionId": view.session_id,
        "status": view.status,
        "processedPages": view.processed_pages,
        "totalPages": view.total_pages,
        "percentComplete": view.percent_complete,
        "expiresAt": view.expires_at.isoformat(),
        "jobs": jobs,
    }
    if view.error_code:
        body["error"] = {"code": view.error_code, "message": view.error_message}
    return body


def create_app(services: Services) -> FastAPI:
    """HTTP adapters over the session manager and the credit ledger.

    Handlers are plain functions so FastAPI runs them in its thread pool;
    every service below is blocking.
    """
    app = FastAPI(title="Invoice Pipeline")
    manager = services.session_manager

    @app.exception_handler(ApiError)
    def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
        return error_response(exc.code, str(exc))

    @app.exception_handler(SessionError)
    def session_error_handler(request: Request, exc: SessionError) -> JSONResponse:
        return error_response(exc.code, str(exc))

    @app.exception_handler(UserNotFoundError)
    def user_not_found_handler(request: Request, exc: UserNotFoundError) -> JSONResponse:
        return error_response(ErrorCode.USER_NOT_FOUND, str(exc))

    @app.post("/sessions", status_code=201)
    def create_session(
        files: list[UploadFile] = File(default=[]),
        model_id: str | None = Form(default=None),
        user_id: int = Depends(current_user),
    ) -> dict[str, Any]:
        # Unknown users are rejected before anything is validated or stored.
        services.ledger.balance(user_id)
        uploads = [
            UploadedFile(
                filename=upload.filename or "upload",
                content_type=upload.content_type or "",
                data=upload.file.read(),
            )
            for upload in files
        ]
        created = manager.create_session(user_id, uploads, model_id=model_id or None)
        return {
            "sessionId": created.session_id,
            "totalFiles": created.total_files,
            "totalPages": created.total_pages,
            "expiresAt": created.expires_at.isoformat(),
        }

    @app.get("/sessions/{session_id}")
    def get_session(session_id: str, user_id: int = Depends(current_user)) -> dict[str, Any]:
        return session_body(manager.get_status(session_id, user_id))

    @app.get("/sessions/{session_id}/download")
    def download(session_id: str, user_id: int = Depends(current_user)) -> RedirectResponse:
        return RedirectResponse(manager.download_url(session_id, user_id), status_code=307)

    @app.post("/sessions/{session_id}/cancel")
    def cancel(session_id: str, user_id: int = Depends(current_user)) -> dict[str, Any]:
        session = manager.cancel_session(session_id, user_id)
        return {"sessionId": session.id, "status": session.status.value}

    @app.get("/credits")
    def credits(user_id: int = Depends(current_user), limit: int = 50) -> dict[str, Any]:
        balance = services.ledger.balance(user_id)
        history = services.ledger.history(user_id, limit=min(max(limit, 1), 500))
        return {
            "balance": balance,
            "transactions": [
                {
                    "id": item.id,
                    "type": item.type,
                    "credits": item.credits,
                    "status": item.status,
                    "description": item.description,
                    "jobId": item.job_id,
                    "sessionId": item.session_id,
                    "createdAt": item.created_at.isoformat() if item.created_at else None,
                }
                for item in history
            ],
        }

    @app.get("/files/{key:path}")
    def serve_file(key: str, expires: int = 0, signature: str = "") -> Response:
        storage = services.storage
        if not isinstance(storage, LocalStorageAdapter):
            raise ApiError(
                ErrorCode.SESSION_NOT_FOUND, "File serving is only available for local storage"
            )
        if not storage.verify(key, expires, signature):
            raise ApiError(ErrorCode.INVALID_SIGNATURE, "Link is invalid or has expired")
        try:
            data = storage.get(key)
        except StorageNotFoundError:
            raise ApiError(ErrorCode.SESSION_NOT_FOUND, "File not found") from None
        except StorageError as exc:
            raise ApiError(ErrorCode.STORAGE_ERROR, str(exc)) from exc
        media_type, _ = mimetypes.guess_type(key)
        filename = key.rsplit("/", 1)[-1]
        return Response(
            content=data,
            media_type=media_type or "application/octet-stream",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    return app


def serve() -> None:
    """Entry point for the HTTP API."""
    settings = Settings()
    Log.configure(settings.log_level)
    init_pool(settings)
    try:
        app = create_app(build_services(settings))
        uvicorn.run(app, host=settings.api_host, port=settings.api_port)
    finally:
        close_pool()


if __name__ == "__main__":
    serve()
