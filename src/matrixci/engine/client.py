# engine/client.py
from __future__ import annotations

import json
import shutil
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any, Callable, Optional
from urllib.parse import quote, urlencode

from pydantic import ValidationError

from ..config import Settings
from ..errors import APIError
from .models import ArtifactRecord, BuildRecord

DEFAULT_TIMEOUT = 15.0


class EngineClient:
    """HTTP client for the CI engine's build/job/artifact history."""

    def __init__(
        self,
        base_url: str,
        organization: str,
        pipeline: str,
        token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        urlopen: Optional[Callable[..., Any]] = None,
    ):
        """
        Initialize API client.

        Args:
            base_url: Base URL of the CI engine (e.g., "https://buildkite.com")
            organization: Organization slug
            pipeline: Pipeline slug
            token: Optional API token, sent as a Bearer header
            timeout: Per-request timeout in seconds
            urlopen: Replacement for urllib.request.urlopen (tests)
        """
        # Ensure base_url doesn't end with /
        self.base_url = base_url.rstrip("/")
        self.organization = organization
        self.pipeline = pipeline
        self.token = token
        self.timeout = timeout
        self._urlopen = urlopen or urllib.request.urlopen

    @classmethod
    def from_settings(cls, settings: Settings) -> "EngineClient":
        return cls(
            settings.api_url,
            settings.organization_slug,
            settings.pipeline_slug,
            token=settings.api_token,
        )

    # ---- low level ----

    def _headers(self, accept: str = "application/json") -> dict:
        headers = {"Accept": accept}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _open(self, url: str, accept: str = "application/json"):
        req = urllib.request.Request(url, headers=self._headers(accept), method="GET")
        try:
            return self._urlopen(req, timeout=self.timeout)
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8", "replace") if e.fp else ""
            raise APIError(f"API request failed: {e.code} {e.reason}. {error_body}".strip()) from e
        except urllib.error.URLError as e:
            raise APIError(f"Network error: {e.reason}") from e
        except OSError as e:
            raise APIError(f"Network error: {e}") from e

    def _get_json(self, url: str) -> Any:
        """
        GET a JSON document.

        Raises:
            APIError: If the request fails or the body is not JSON
        """
        with self._open(url) as response:
            body = response.read().decode("utf-8")
        if not body:
            return None
        try:
            return json.loads(body)
        except json.JSONDecodeError as e:
            raise APIError(f"Invalid JSON response: {e}") from e

    # ---- urls ----

    def build_url(self, build_id: str) -> str:
        return f"{self.base_url}/{self.organization}/{self.pipeline}/builds/{quote(str(build_id))}"

    def builds_url(self, **query: str) -> str:
        url = f"{self.base_url}/{self.organization}/{self.pipeline}/builds"
        params = {k: v for k, v in query.items() if v}
        return f"{url}?{urlencode(params)}" if params else url

    def artifacts_url(self, build_uuid: str, job_id: str) -> str:
        return (
            f"{self.base_url}/organizations/{self.organization}/pipelines/{self.pipeline}"
            f"/builds/{quote(build_uuid)}/jobs/{quote(job_id)}/artifacts"
        )

    # ---- queries ----

    def get_build(self, build_id: str) -> BuildRecord:
        data = self._get_json(self.build_url(build_id))
        if not isinstance(data, dict):
            raise APIError(f"build {build_id} response is not an object")
        try:
            return BuildRecord.model_validate(data)
        except ValidationError as e:
            raise APIError(f"malformed build {build_id}: {e.error_count()} validation errors") from e

    def list_builds(self, branch: Optional[str] = None, state: Optional[str] = None) -> list[BuildRecord]:
        data = self._get_json(self.builds_url(branch=branch or "", state=state or ""))
        if not isinstance(data, list):
            raise APIError("builds response is not a list")
        builds: list[BuildRecord] = []
        for item in data:
            try:
                builds.append(BuildRecord.model_validate(item))
            except ValidationError:
                continue
        return builds

    def get_job_artifacts(self, build_uuid: str, job_id: str) -> list[ArtifactRecord]:
        data = self._get_json(self.artifacts_url(build_uuid, job_id))
        if data is None:
            return []
        if not isinstance(data, list):
            raise APIError(f"artifacts response for job {job_id} is not a list")
        try:
            return [ArtifactRecord.model_validate(a) for a in data]
        except ValidationError as e:
            raise APIError(f"malformed artifacts for job {job_id}") from e

    def download_artifact(self, build_uuid: str, job_id: str, artifact: ArtifactRecord, dest: Path) -> Path:
        """
        Stream one artifact to `dest` (a directory); returns the written file.

        The artifact URL answers with a redirect to the stored file, which urlopen follows.
        """
        url = artifact.download_url or f"{self.artifacts_url(build_uuid, job_id)}/{quote(artifact.id)}"
        dest = Path(dest)
        dest.mkdir(parents=True, exist_ok=True)
        out = dest / Path(artifact.path).name
        with self._open(url, accept="*/*") as response, out.open("wb") as f:
            shutil.copyfileobj(response, f)
        return out

    def last_successful_build(
        self,
        branch: Optional[str],
        exclude_build_id: Optional[str] = None,
    ) -> Optional[BuildRecord]:
        """Most recent passed build on `branch`, never the build that is asking."""
        for build in self.list_builds(branch=branch, state="passed"):
            if exclude_build_id and build.id == exclude_build_id:
                continue
            if build.passed or build.state is None:
                return build
        return None
