"""REST API consumed by the container dashboard.

Routes translate HTTP calls into reconciler, status-cache and log-streamer
operations. Errors map to status codes in one place (see the exception
handlers below).
"""
from __future__ import annotations

import os
from dataclasses import asdict
from typing import Any, Literal

from fastapi import FastAPI, File, Query, Request, Response, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.concurrency import run_in_threadpool

from dcr import db
from dcr.api_models import ApplySummaryOut, ContainerOut, LifecycleOut, LogsOut, ManifestOut
from dcr.docker_ops import DockerRuntime, RuntimeAdapter
from dcr.errors import (
    ContainerRuntimeError,
    NotFound,
    ParseError,
    PartialApplyFailure,
    RuntimeUnavailable,
    ValidationError,
)
from dcr.logstream import LogStreamer
from dcr.reconciler import Reconciler
from dcr.runtime import StatusCache
from dcr.settings import settings


STALE_HEADER = "X-DCR-Stale"
YAML_EXTENSIONS = {".yaml", ".yml"}


def create_app(
    adapter: RuntimeAdapter | None = None,
    *,
    start_background: bool = True,
    reconciler_options: dict[str, Any] | None = None,
    streamer_options: dict[str, Any] | None = None,
) -> FastAPI:
    app = FastAPI(title="Desired Container Reconciler")

    cache = StatusCache()
    reconciler = Reconciler(adapter or DockerRuntime(), cache, **(reconciler_options or {}))
    streamer = LogStreamer(reconciler, **(streamer_options or {}))
    app.state.cache = cache
    app.state.reconciler = reconciler
    app.state.streamer = streamer

    @app.on_event("startup")
    def startup() -> None:
        db.init_db()
        reconciler.load()
        try:
            reconciler.refresh()
        except (RuntimeUnavailable, ContainerRuntimeError) as e:
            db.log_event("WARN", f"Initial status refresh failed: {e}")
        if start_background:
            reconciler.start()

    @app.on_event("shutdown")
    def shutdown() -> None:
        reconciler.stop()
        streamer.close_all()

    @app.exception_handler(ValidationError)
    def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": str(exc), "field": exc.field, "reason": exc.reason})

    @app.exception_handler(ParseError)
    def _parse_error(request: Request, exc: ParseError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(NotFound)
    def _not_found(request: Request, exc: NotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": str(exc), "name": exc.ref, "action": exc.action})

    @app.exception_handler(RuntimeUnavailable)
    def _unavailable(request: Request, exc: RuntimeUnavailable) -> JSONResponse:
        return JSONResponse(
            status_code=503,
            content={"error": str(exc)},
            headers={STALE_HEADER: "true"},
        )

    @app.exception_handler(ContainerRuntimeError)
    def _runtime_error(request: Request, exc: ContainerRuntimeError) -> JSONResponse:
        return JSONResponse(
            status_code=500,
            content={"error": str(exc), "cause": exc.cause, "name": exc.name, "action": exc.action},
        )

    @app.exception_handler(PartialApplyFailure)
    def _partial(request: Request, exc: PartialApplyFailure) -> JSONResponse:
        content = ApplySummaryOut.from_summary(exc.summary).model_dump()
        content["error"] = str(exc)
        return JSONResponse(status_code=207, content=content)

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"status": "ok", "stale": cache.stale, "applying": reconciler.applying}

    @app.get("/api/containers", response_model=list[ContainerOut])
    def list_containers(response: Response) -> list[ContainerOut]:
        if cache.stale:
            response.headers[STALE_HEADER] = "true"
        return [ContainerOut.from_observed(o) for o in cache.list()]

    @app.get("/api/containers/{ref}", response_model=ContainerOut)
    def get_container(ref: str) -> ContainerOut:
        return ContainerOut.from_observed(reconciler.resolve(ref))

    @app.delete("/api/containers/{ref}", response_model=LifecycleOut)
    def delete_container(ref: str) -> LifecycleOut:
        reconciler.lifecycle(ref, "remove")
        return LifecycleOut(message="Container deleted successfully")

    @app.post("/api/containers/{ref}/{action}", response_model=LifecycleOut)
    def container_action(ref: str, action: Literal["start", "stop", "restart"]) -> LifecycleOut:
        after = reconciler.lifecycle(ref, action)
        past = {"start": "started", "stop": "stopped", "restart": "restarted"}[action]
        return LifecycleOut(
            message=f"Container {past} successfully",
            container=ContainerOut.from_observed(after) if after else None,
        )

    @app.get("/api/containers/{ref}/logs", response_model=LogsOut)
    def container_logs(ref: str) -> LogsOut:
        target, text = streamer.snapshot(ref)
        return LogsOut(logs=text, container=ContainerOut.from_observed(target))

    @app.get("/api/containers/{ref}/logs/stream")
    async def container_logs_stream(ref: str, request: Request) -> StreamingResponse:
        # Unknown refs fail here, before the response starts.
        await run_in_threadpool(reconciler.resolve, ref, "logs")

        async def lines():
            sub = await run_in_threadpool(streamer.open, ref, True)
            try:
                while not sub.done:
                    if await request.is_disconnected():
                        break
                    line = await run_in_threadpool(sub.poll, 1.0)
                    if line is not None:
                        yield line + "\n"
            finally:
                sub.close()

        return StreamingResponse(lines(), media_type="text/plain; charset=utf-8")

    @app.post("/upload", response_model=ApplySummaryOut)
    def upload(yamlFile: UploadFile = File(...)) -> ApplySummaryOut:
        ext = os.path.splitext(yamlFile.filename or "")[1].lower()
        if ext not in YAML_EXTENSIONS:
            raise ValidationError("yamlFile", "invalid", "File must be a YAML file (.yaml or .yml)")
        data = yamlFile.file.read(settings.max_manifest_bytes + 1)
        if len(data) > settings.max_manifest_bytes:
            raise ValidationError("yamlFile", "invalid", f"larger than {settings.max_manifest_bytes} bytes")
        summary = reconciler.submit(data)
        summary.raise_for_failures()
        return ApplySummaryOut.from_summary(summary)

    @app.get("/api/manifest", response_model=ManifestOut)
    def current_manifest() -> Any:
        m = reconciler.manifest
        if m is None:
            return JSONResponse(status_code=404, content={"error": "No manifest has been accepted yet."})
        accepted_at = None
        for row in db.list_manifests(limit=5):
            if row.generation == m.generation:
                accepted_at = row.accepted_at
        return ManifestOut(generation=m.generation, digest=m.digest, accepted_at=accepted_at, containers=m.names())

    @app.post("/api/reconcile", response_model=ApplySummaryOut)
    def reconcile() -> Any:
        summary = reconciler.reconcile_now()
        if summary is None:
            return JSONResponse(status_code=409, content={"error": "No manifest has been accepted yet."})
        summary.raise_for_failures()
        return ApplySummaryOut.from_summary(summary)

    @app.get("/api/applies")
    def applies(limit: int = Query(20, ge=1, le=500)) -> list[dict[str, Any]]:
        return [asdict(row) for row in db.latest_applies(limit)]

    @app.get("/api/events")
    def events(limit: int = Query(100, ge=1, le=1000)) -> list[dict[str, Any]]:
        return db.latest_events(limit)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)
