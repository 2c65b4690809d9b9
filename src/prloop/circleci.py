"""CircleCI log correlation for failed checks.

Maps a failed check's detail URL to a CircleCI job, reads the job's step
metadata from the v1.1 API and pulls raw stdout/stderr only for failed steps.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import BaseModel, Field

from prloop.checks import CheckStatus
from prloop.errors import FetchError

if TYPE_CHECKING:
    from prloop.checks import Check

logger = logging.getLogger(__name__)

_CIRCLECI_HOST = "circleci.com"
_APP_HOST = "app.circleci.com"
_API_V1_URL = "https://circleci.com/api/v1.1/project"
_RAW_OUTPUT_URL = "https://circleci.com/api/private/output/raw"
_REQUEST_TIMEOUT = 30.0

_VCS_ALIASES = {"github": "gh", "bitbucket": "bb"}


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class CircleCiJobInfo(BaseModel):
    """A CircleCI job identified from a check URL."""

    vcs: str = Field(description="VCS slug segment, e.g. 'gh'")
    owner: str = Field(description="Repository owner")
    repo: str = Field(description="Repository name")
    job_number: int = Field(description="Job number within the project")

    @property
    def project_slug(self) -> str:
        return f"{self.vcs}/{self.owner}/{self.repo}"


class StepAction(BaseModel):
    """One parallel run of a job step."""

    index: int = Field(description="Parallel task index")
    step: int = Field(description="Step number within the job")
    failed: bool = Field(default=False, description="Whether this action failed")


class JobStep(BaseModel):
    """A named step and its actions, in execution order."""

    name: str = Field(description="Step name")
    actions: list[StepAction] = Field(default_factory=list, description="Actions of the step")


class JobDetails(BaseModel):
    """Step metadata of a CircleCI job."""

    job_name: str = Field(description="Workflow job name")
    steps: list[JobStep] = Field(default_factory=list, description="Steps in job order")


class StepOutput(BaseModel):
    """Raw output streams of a step action."""

    output: str = Field(default="", description="stdout")
    error: str = Field(default="", description="stderr")


class FailedStepLog(BaseModel):
    """Logs of one failed step."""

    job_name: str = Field(description="Workflow job name")
    step_name: str = Field(description="Name of the failed step")
    output: str = Field(default="", description="stdout of the failed action")
    error: str = Field(default="", description="stderr of the failed action")


# ---------------------------------------------------------------------------
# URL parsing
# ---------------------------------------------------------------------------


def is_circleci_url(url: str) -> bool:
    return _CIRCLECI_HOST in url


def _parse_job_number(text: str) -> int | None:
    if text.isascii() and text.isdigit():
        return int(text)
    return None


def _parse_app_url(url: str) -> CircleCiJobInfo | None:
    """Parse ``https://app.circleci.com/pipelines/{vcs}/{owner}/{repo}/.../jobs/{n}``."""
    url = url.split("?", 1)[0]
    if _APP_HOST not in url:
        return None

    _, sep, after_jobs = url.partition("/jobs/")
    if not sep:
        return None
    job_number = _parse_job_number(after_jobs.split("/", 1)[0])
    if job_number is None:
        return None

    _, sep, after_pipelines = url.partition("/pipelines/")
    if not sep:
        return None
    parts = after_pipelines.split("/")
    if len(parts) < 3:  # noqa: PLR2004
        return None

    return CircleCiJobInfo(
        vcs=_VCS_ALIASES.get(parts[0], parts[0]),
        owner=parts[1],
        repo=parts[2],
        job_number=job_number,
    )


def _parse_classic_url(url: str) -> CircleCiJobInfo | None:
    """Parse ``https://circleci.com/{vcs}/{owner}/{repo}/{n}``."""
    url = url.split("?", 1)[0].rstrip("/")
    parts = url.split("/")
    try:
        idx = parts.index(_CIRCLECI_HOST)
    except ValueError:
        return None

    if len(parts) < idx + 5:
        return None
    job_number = _parse_job_number(parts[idx + 4])
    if job_number is None:
        return None

    return CircleCiJobInfo(
        vcs=parts[idx + 1],
        owner=parts[idx + 2],
        repo=parts[idx + 3],
        job_number=job_number,
    )


def parse_circleci_url(url: str) -> CircleCiJobInfo | None:
    """Extract job info from a CircleCI check URL, or None if it is not a job URL."""
    return _parse_app_url(url) or _parse_classic_url(url)


# ---------------------------------------------------------------------------
# Fetchers
# ---------------------------------------------------------------------------


class CircleCiError(FetchError):
    """Raised when a CircleCI API call fails."""

    def __init__(self, message: str, status_code: int = 0) -> None:
        super().__init__(message)
        self.status_code = status_code


class CiJobFetcher(ABC):
    """Source of CircleCI job metadata and step output."""

    @abstractmethod
    def fetch_job_details(self, job_info: CircleCiJobInfo) -> JobDetails:
        """Return the job's steps and actions.

        Raises:
            CircleCiError: If the job could not be retrieved.
        """

    @abstractmethod
    def fetch_step_output(self, job_info: CircleCiJobInfo, task_index: int, step_id: int) -> StepOutput:
        """Return stdout and stderr of one action; unavailable streams are empty."""


_HTTP_NOT_FOUND = 404
_HTTP_TOO_MANY_REQUESTS = 429


def _raise_for_status(response: httpx.Response, job_info: CircleCiJobInfo) -> None:
    """Raise :exc:`CircleCiError` for non-2xx job-detail responses."""
    if response.is_success:
        return
    if response.status_code == _HTTP_NOT_FOUND:
        msg = f"Job not found: {job_info.job_number}"
    elif response.status_code == _HTTP_TOO_MANY_REQUESTS:
        msg = "CircleCI API rate limited"
    else:
        msg = f"CircleCI API error: {response.status_code}"
    raise CircleCiError(msg, status_code=response.status_code)


class CircleCiClient(CiJobFetcher):
    """CircleCI API client authenticated with a personal API token."""

    def __init__(self, token: str, client: httpx.Client | None = None) -> None:
        self._token = token
        self._client = client or httpx.Client(timeout=_REQUEST_TIMEOUT)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> CircleCiClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def fetch_job_details(self, job_info: CircleCiJobInfo) -> JobDetails:
        url = f"{_API_V1_URL}/{job_info.project_slug}/{job_info.job_number}"
        logger.debug("GET %s", url)
        try:
            response = self._client.get(
                url,
                headers={"Circle-Token": self._token, "Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            msg = f"Failed to send request to CircleCI API: {exc}"
            raise CircleCiError(msg) from exc

        _raise_for_status(response, job_info)

        try:
            data: dict[str, Any] = response.json()
            return JobDetails(
                job_name=data["workflows"]["job_name"],
                steps=[
                    JobStep(
                        name=step["name"],
                        actions=[
                            StepAction(index=a["index"], step=a["step"], failed=bool(a.get("failed")))
                            for a in step.get("actions") or []
                        ],
                    )
                    for step in data.get("steps") or []
                ],
            )
        except (ValueError, KeyError, TypeError) as exc:
            msg = f"Failed to parse CircleCI job details: {exc}"
            raise CircleCiError(msg) from exc

    def _fetch_stream(self, url: str) -> str:
        try:
            response = self._client.get(url, headers={"Circle-Token": self._token})
        except httpx.HTTPError as exc:
            logger.warning("Failed to fetch CircleCI output %s: %s", url, exc)
            return ""
        if not response.is_success:
            logger.warning("CircleCI output %s returned %d", url, response.status_code)
            return ""
        return response.text

    def fetch_step_output(self, job_info: CircleCiJobInfo, task_index: int, step_id: int) -> StepOutput:
        base = f"{_RAW_OUTPUT_URL}/{job_info.project_slug}/{job_info.job_number}"
        return StepOutput(
            output=self._fetch_stream(f"{base}/output/{task_index}/{step_id}"),
            error=self._fetch_stream(f"{base}/error/{task_index}/{step_id}"),
        )


class InMemoryCiJobFetcher(CiJobFetcher):
    """Serve job details and step output from dictionaries keyed by job number."""

    def __init__(
        self,
        jobs: dict[int, JobDetails] | None = None,
        outputs: dict[tuple[int, int, int], StepOutput] | None = None,
    ) -> None:
        self.jobs = jobs or {}
        self.outputs = outputs or {}

    def fetch_job_details(self, job_info: CircleCiJobInfo) -> JobDetails:
        try:
            return self.jobs[job_info.job_number]
        except KeyError:
            msg = f"Job not found: {job_info.job_number}"
            raise CircleCiError(msg, status_code=_HTTP_NOT_FOUND) from None

    def fetch_step_output(self, job_info: CircleCiJobInfo, task_index: int, step_id: int) -> StepOutput:
        return self.outputs.get((job_info.job_number, task_index, step_id), StepOutput())


# ---------------------------------------------------------------------------
# Correlation
# ---------------------------------------------------------------------------


def get_failed_step_logs(fetcher: CiJobFetcher, job_info: CircleCiJobInfo) -> list[FailedStepLog]:
    """Fetch logs for every failed action of a job, in job-step order."""
    details = fetcher.fetch_job_details(job_info)
    logs: list[FailedStepLog] = []
    for step in details.steps:
        for action in step.actions:
            if not action.failed:
                continue
            output = fetcher.fetch_step_output(job_info, action.index, action.step)
            logs.append(
                FailedStepLog(
                    job_name=details.job_name,
                    step_name=step.name,
                    output=output.output,
                    error=output.error,
                )
            )
    return logs


def correlate_failure_logs(fetcher: CiJobFetcher, checks: list[Check]) -> list[FailedStepLog]:
    """Collect CircleCI logs for failed checks whose URL points at a CircleCI job.

    Unparseable URLs and per-job fetch failures are logged and skipped.
    """
    logs: list[FailedStepLog] = []
    for check in checks:
        if check.status != CheckStatus.FAIL or not check.url or not is_circleci_url(check.url):
            continue
        job_info = parse_circleci_url(check.url)
        if job_info is None:
            logger.debug("Could not parse CircleCI URL for %s: %s", check.name, check.url)
            continue
        try:
            logs.extend(get_failed_step_logs(fetcher, job_info))
        except FetchError as exc:
            logger.warning("Failed to fetch CircleCI logs for %s: %s", check.name, exc)
    return logs
