from .agent_cli import AgentCli
from .client import EngineClient
from .models import ArtifactRecord, BuildRecord, JobRecord

__all__ = ["AgentCli", "EngineClient", "ArtifactRecord", "BuildRecord", "JobRecord"]
