from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from .docker_ops import ObservedContainer
from .reconciler import ApplySummary


class ContainerOut(BaseModel):
    """Container record as the dashboard expects it (Go-style field names)."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., alias="ID", description="Runtime-assigned container id")
    name: str = Field(..., alias="Name")
    image: str = Field(..., alias="Image")
    status: str = Field(..., alias="Status", description="created|running|paused|stopped|removing|removed|error")
    ports: str = Field("", alias="Ports", description="Comma separated host:container/proto bindings")
    created_at: str = Field("", alias="CreatedAt")

    @classmethod
    def from_observed(cls, o: ObservedContainer) -> "ContainerOut":
        return cls(
            ID=o.id,
            Name=o.name,
            Image=o.image,
            Status=o.state,
            Ports=",".join(o.ports),
            CreatedAt=o.created_at,
        )


class ActionFailureOut(BaseModel):
    name: str
    action: str = Field(..., description="create|start|stop|restart|remove")
    cause: str


class ApplySummaryOut(BaseModel):
    generation: int
    trigger: str = Field(..., description="upload|drift|manual")
    created: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    started: list[str] = Field(default_factory=list)
    failed: list[ActionFailureOut] = Field(default_factory=list)
    superseded: bool = Field(False, description="A newer manifest was applied in place of this one")

    @classmethod
    def from_summary(cls, s: ApplySummary) -> "ApplySummaryOut":
        return cls(**s.to_dict())


class LogsOut(BaseModel):
    logs: str
    container: ContainerOut


class LifecycleOut(BaseModel):
    message: str
    container: ContainerOut | None = None


class ManifestOut(BaseModel):
    generation: int
    digest: str
    accepted_at: str | None = None
    containers: list[str] = Field(default_factory=list)
