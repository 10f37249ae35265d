from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, Any, Dict, List, Literal


def _as_str(v: Any) -> Any:
    # providers send numeric ids as often as string ids
    return str(v) if isinstance(v, int) and not isinstance(v, bool) else v


class ProviderResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    asset_id: str = Field(..., description="Capture asset the output belongs to")
    processed_url: str = Field(..., description="Merged/processed image location")
    thumbnail_url: Optional[str] = Field(None, description="Preview image location")

    @field_validator("asset_id", mode="before")
    @classmethod
    def coerce_asset_id(cls, v: Any) -> Any:
        return _as_str(v)


class ProviderCallback(BaseModel):
    """Inbound provider callback; extra provider fields are tolerated."""
    model_config = ConfigDict(extra="allow")

    job_id: str
    status: Literal["completed", "failed"]
    results: List[ProviderResult] = Field(default_factory=list)
    error: Optional[str] = None
    metrics: Optional[Dict[str, Any]] = None

    @field_validator("job_id", mode="before")
    @classmethod
    def coerce_job_id(cls, v: Any) -> Any:
        return _as_str(v)


class ProgressUpdate(BaseModel):
    model_config = ConfigDict(extra="allow")

    job_id: str
    stage: str
    percent: float = Field(0.0, ge=0.0, le=100.0)

    @field_validator("job_id", mode="before")
    @classmethod
    def coerce_job_id(cls, v: Any) -> Any:
        return _as_str(v)
