from __future__ import annotations

import logging
import secrets
from dataclasses import asdict
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from rrc import db
from rrc.alerts import alert_sink
from rrc.api_models import ArtifactResponse, RolloutRequest
from rrc.artifacts import ArtifactResolver, BuildCatalog, HttpRegistryClient, RegistryClient
from rrc.docker_ops import DockerRegistryClient, DockerWorkload, validate_target
from rrc.errors import InvalidTransition, NotFound, RegistryUnavailable, RolloutInProgress
from rrc.events import EventBus, db_sink, log_sink
from rrc.rollouts import RolloutManager
from rrc.settings import settings

security = HTTPBasic()


def build_registry_client() -> RegistryClient:
    if settings.registry_url == "docker":
        return DockerRegistryClient()
    return HttpRegistryClient(
        base_url=settings.registry_url,
        username=settings.registry_user,
        password=settings.registry_password,
        timeout_s=settings.registry_timeout_s,
    )


def build_manager() -> RolloutManager:
    resolver = ArtifactResolver(
        BuildCatalog(settings.image_repository, settings.tag_template),
        build_registry_client(),
    )
    return RolloutManager(
        resolver=resolver,
        workload_factory=lambda target: DockerWorkload(
            target,
            internal_port=settings.internal_port,
            health_path=settings.health_path,
            network=settings.docker_network,
        ),
        events=EventBus([db_sink, log_sink, alert_sink]),
    )


def get_current_username(credentials: HTTPBasicCredentials = Depends(security)) -> str:
    ok_user = secrets.compare_digest(credentials.username, settings.admin_user)
    ok_pass = secrets.compare_digest(credentials.password, settings.admin_password)
    if not (ok_user and ok_pass):
        raise HTTPException(status_code=401, detail="Invalid credentials", headers={"WWW-Authenticate": "Basic"})
    return credentials.username


def create_app(manager: RolloutManager | None = None) -> FastAPI:
    app = FastAPI(title="Release Rollout Controller")
    app.state.manager = manager

    def get_manager() -> RolloutManager:
        if app.state.manager is None:
            app.state.manager = build_manager()
        return app.state.manager

    @app.on_event("startup")
    def startup() -> None:
        logging.basicConfig(level=settings.log_level.upper())
        db.init_db()

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.post("/rollouts", status_code=status.HTTP_202_ACCEPTED)
    def create_rollout(
        req: RolloutRequest,
        username: str = Depends(get_current_username),
        mgr: RolloutManager = Depends(get_manager),
    ) -> dict[str, Any]:
        try:
            validate_target(req.target)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        try:
            controller = mgr.start_rollout(
                target=req.target,
                source_revision=req.source_revision,
                desired_replicas=req.desired_replicas,
                max_unavailable=req.max_unavailable,
                max_surge=req.max_surge,
                auto_rollback=req.auto_rollback,
                health_timeout_s=req.health_timeout_s,
            )
        except RolloutInProgress as e:
            raise HTTPException(status_code=409, detail=e.message)
        return controller.status.to_dict()

    @app.get("/rollouts")
    def list_rollouts(
        username: str = Depends(get_current_username),
        mgr: RolloutManager = Depends(get_manager),
    ) -> list[dict[str, Any]]:
        return [st.to_dict() for st in mgr.list()]

    @app.get("/rollouts/history")
    def rollout_history(
        target: str | None = None,
        limit: int = Query(100, ge=1, le=1000),
        username: str = Depends(get_current_username),
    ) -> list[dict[str, Any]]:
        return [asdict(row) for row in db.list_rollouts(target=target, limit=limit)]

    @app.get("/rollouts/{rollout_id}")
    def get_rollout(
        rollout_id: str,
        username: str = Depends(get_current_username),
        mgr: RolloutManager = Depends(get_manager),
    ) -> dict[str, Any]:
        try:
            return mgr.status(rollout_id).to_dict()
        except KeyError:
            pass
        # Rollouts from a previous process only survive as records.
        row = db.get_rollout(rollout_id)
        if row is None:
            raise HTTPException(status_code=404, detail="unknown rollout")
        return asdict(row)

    @app.post("/rollouts/{rollout_id}/{command}")
    def command_rollout(
        rollout_id: str,
        command: str,
        username: str = Depends(get_current_username),
        mgr: RolloutManager = Depends(get_manager),
    ) -> dict[str, Any]:
        handlers = {"pause": mgr.pause, "resume": mgr.resume, "cancel": mgr.cancel}
        handler = handlers.get(command)
        if handler is None:
            raise HTTPException(status_code=404, detail=f"unknown command '{command}'")
        try:
            return handler(rollout_id).to_dict()
        except KeyError:
            raise HTTPException(status_code=404, detail="unknown rollout")
        except InvalidTransition as e:
            raise HTTPException(status_code=409, detail=e.message)

    @app.get("/rollouts/{rollout_id}/events")
    def rollout_events(
        rollout_id: str,
        limit: int = Query(100, ge=1, le=1000),
        username: str = Depends(get_current_username),
    ) -> list[dict[str, Any]]:
        return db.latest_events(limit=limit, rollout_id=rollout_id)

    @app.get("/artifacts/{source_revision}", response_model=ArtifactResponse)
    def resolve_artifact(
        source_revision: str,
        username: str = Depends(get_current_username),
        mgr: RolloutManager = Depends(get_manager),
    ) -> ArtifactResponse:
        try:
            artifact = mgr.resolver.resolve(source_revision)
        except NotFound as e:
            raise HTTPException(status_code=404, detail=e.message)
        except RegistryUnavailable as e:
            raise HTTPException(status_code=503, detail=e.message)
        return ArtifactResponse(
            source_revision=artifact.source_revision,
            image_reference=artifact.image_reference,
            digest=artifact.digest,
            pinned_reference=artifact.pinned_reference,
        )

    @app.get("/events")
    def events(
        limit: int = Query(100, ge=1, le=1000),
        username: str = Depends(get_current_username),
    ) -> list[dict[str, Any]]:
        return db.latest_events(limit=limit)

    return app


app = create_app()
