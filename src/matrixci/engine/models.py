# engine/models.py
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# -------------------- Schemas --------------------
# Read-only views of the CI engine's build history. Unknown fields are ignored.


class ArtifactRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    path: str
    size: int = 0
    download_url: Optional[str] = None


class JobRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    passed: bool = False
    group_uuid: Optional[str] = None
    group_identifier: Optional[str] = None
    step_key: Optional[str] = None
    name: Optional[str] = None
    type: Optional[str] = None

    @field_validator("passed", mode="before")
    @classmethod
    def _null_is_not_passed(cls, v):
        return False if v is None else v

    @property
    def display_name(self) -> str:
        return self.step_key or self.name or self.id

    def in_group(self, group_id: Optional[str], group_key: Optional[str]) -> bool:
        """True if this job ran under the caller's group uuid or group key."""
        if group_id and self.group_uuid == group_id:
            return True
        if group_key and self.group_identifier == group_key:
            return True
        return False


class BuildRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    number: Optional[int] = None
    state: Optional[str] = None
    branch: Optional[str] = None
    jobs: list[JobRecord] = Field(default_factory=list)

    @field_validator("jobs", mode="before")
    @classmethod
    def _drop_non_command_jobs(cls, v):
        # wait/block entries have no id
        if v is None:
            return []
        if not isinstance(v, list):
            return v
        return [j for j in v if isinstance(j, dict) and j.get("id")]

    @property
    def passed(self) -> bool:
        return self.state == "passed"
