from __future__ import annotations

from pydantic import BaseModel, Field


class RolloutRequest(BaseModel):
    target: str = Field(..., description="Deployable target name (dns-safe)")
    source_revision: str = Field(..., min_length=1, description="Source revision whose build to deploy")
    desired_replicas: int = Field(..., ge=0, le=100)
    max_unavailable: int = Field(0, ge=0, le=100)
    max_surge: int = Field(1, ge=0, le=100)
    auto_rollback: bool | None = Field(None, description="Defaults to RRC_AUTO_ROLLBACK")
    health_timeout_s: float | None = Field(None, gt=0, le=3600)


class ArtifactResponse(BaseModel):
    source_revision: str
    image_reference: str
    digest: str
    pinned_reference: str
