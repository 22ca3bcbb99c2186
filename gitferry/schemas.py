"""Pydantic schemas for pipeline I/O contracts.

These schemas define the contracts between:
- API endpoints and clients (submission, run records, stats)
- Hosting provider clients and the pipeline steps
- The git process runner and the synchronizer
- The progress channel and its subscribers
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from urllib.parse import urlsplit

from pydantic import (
    BaseModel,
    Field,
    ValidationInfo,
    computed_field,
    field_validator,
    model_validator,
)

from gitferry.errors import ValidationError
from gitferry.tools.sanitize import (
    sanitize_branch_name,
    sanitize_commit_message,
    validate_url,
)


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def _repository_path_segments(url: str) -> list[str]:
    path = urlsplit(url).path.strip("/")
    if path.endswith(".git"):
        path = path[:-4]
    return [part for part in path.split("/") if part]


# =============================================================================
# Enums
# =============================================================================

class RunStatus(str, Enum):
    """Status of a pipeline run."""
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"


class StepStatus(str, Enum):
    """Status of a single pipeline step."""
    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"


TERMINAL_RUN_STATUSES = (RunStatus.SUCCESS, RunStatus.FAILED)
TERMINAL_STEP_STATUSES = (StepStatus.SUCCESS, StepStatus.FAILED)


class StepName(str, Enum):
    """Pipeline steps, in execution order."""
    CLONE_GITHUB = "clone-github"
    CREATE_GITLAB_BRANCH = "create-gitlab-branch"
    COPY_FILES = "copy-files"
    COMMIT_CHANGES = "commit-changes"
    CREATE_MERGE_REQUEST = "create-merge-request"


STEP_ORDER: tuple[StepName, ...] = tuple(StepName)

# Reported as the failing step when the orchestrator itself breaks.
PIPELINE_EXECUTION_STEP = "pipeline-execution"


class CopyMode(str, Enum):
    """Which entries of the request drive file selection."""
    FILES = "files"
    FOLDERS = "folders"
    MIXED = "mixed"


class ProgressEventType(str, Enum):
    PROGRESS = "progress"
    STATUS = "status"
    COMPLETE = "complete"
    ERROR = "error"


class ProgressPhase(str, Enum):
    INITIALIZING = "initializing"
    CLONING = "cloning"
    RECEIVING = "receiving"
    RESOLVING = "resolving"
    COMPLETE = "complete"


class CancelReason(str, Enum):
    USER = "user"
    TIMEOUT = "timeout"


class PushStrategy(str, Enum):
    """How the commit finally reached the remote branch."""
    FAST_FORWARD = "fast-forward"
    MERGE = "merge"
    FORCE_WITH_LEASE = "force-with-lease"
    FORCE = "force"


# =============================================================================
# Input Schemas
# =============================================================================

class MergeRequestConfig(BaseModel):
    """Merge request and commit settings for a run."""
    source_branch: str | None = Field(
        default=None, description="Defaults to the run's GitLab branch"
    )
    target_branch: str = Field(..., description="Branch the merge request targets")
    title: str = Field(..., min_length=1)
    description: str = Field(default="")
    commit_message: str = Field(..., description="Message for the pipeline commit")
    changes_description: str | None = Field(
        default=None, description="Appended to the description as a 'Changes Made' section"
    )

    @field_validator("target_branch", "source_branch")
    @classmethod
    def _check_branch(cls, value: str | None) -> str | None:
        if value is None:
            return value
        return sanitize_branch_name(value)

    @field_validator("title")
    @classmethod
    def _check_title(cls, value: str) -> str:
        if not value.strip():
            raise ValidationError("Merge request title is required")
        return value.strip()

    @field_validator("commit_message")
    @classmethod
    def _check_commit_message(cls, value: str) -> str:
        return sanitize_commit_message(value)

    def full_description(self) -> str:
        if self.changes_description:
            return f"{self.description}\n\n## Changes Made\n{self.changes_description}"
        return self.description


class PipelineRequest(BaseModel):
    """Everything a client submits to start a run."""
    github_repo_url: str
    github_access_token: str = Field(..., repr=False)
    github_download_location: str
    github_target_commit_id: str | None = None

    gitlab_repo_url: str
    gitlab_access_token: str = Field(..., repr=False)
    gitlab_branch_name: str
    gitlab_base_branch: str = Field(default="main")
    gitlab_checkout_location: str

    source_path: str = Field(default="", description="Relative to the GitHub clone unless absolute")
    destination_path: str = Field(default="", description="Relative to the GitLab checkout unless absolute")
    files: list[str] = Field(default_factory=list)
    copy_mode: CopyMode = CopyMode.FILES
    include_folders: list[str] = Field(default_factory=list)
    exclude_patterns: list[str] = Field(default_factory=list)
    preserve_folder_structure: bool = True

    merge_request: MergeRequestConfig
    operation_id: str | None = Field(
        default=None, description="Progress channel id for the fetch step; defaults to the run id"
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "github_repo_url": "https://github.com/acme/widgets",
                "github_access_token": "ghp_...",
                "github_download_location": "/var/lib/gitferry/github",
                "gitlab_repo_url": "https://gitlab.example.com/acme/widgets.git",
                "gitlab_access_token": "glpat-...",
                "gitlab_branch_name": "sync/widgets",
                "gitlab_base_branch": "main",
                "gitlab_checkout_location": "/var/lib/gitferry/gitlab/widgets",
                "source_path": "src",
                "destination_path": "vendor/widgets",
                "files": ["core", "README.md"],
                "copy_mode": "mixed",
                "merge_request": {
                    "target_branch": "main",
                    "title": "Sync widgets",
                    "commit_message": "Sync widgets from GitHub",
                },
            }
        }
    }

    @field_validator("github_repo_url", "gitlab_repo_url")
    @classmethod
    def _check_url(cls, value: str, info: ValidationInfo) -> str:
        value = value.strip()
        if not validate_url(value):
            raise ValidationError("Repository URL must be a valid http(s) URL")

        segments = _repository_path_segments(value)
        if info.field_name == "github_repo_url" and len(segments) != 2:
            raise ValidationError("GitHub repository URL must look like https://github.com/owner/repo")
        if info.field_name == "gitlab_repo_url" and len(segments) < 2:
            raise ValidationError("GitLab repository URL must contain at least namespace/project")
        return value

    @field_validator("github_access_token", "gitlab_access_token")
    @classmethod
    def _check_token(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValidationError("Access token is required")
        return value.strip()

    @field_validator("github_download_location", "gitlab_checkout_location")
    @classmethod
    def _check_location(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValidationError("Working directory location is required")
        return value.strip()

    @field_validator("gitlab_branch_name", "gitlab_base_branch")
    @classmethod
    def _check_branch(cls, value: str) -> str:
        return sanitize_branch_name(value)

    @field_validator("github_target_commit_id")
    @classmethod
    def _check_commit_id(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        value = value.strip()
        if not all(c in "0123456789abcdefABCDEF" for c in value) or not 4 <= len(value) <= 64:
            raise ValidationError("Target commit id must be a hexadecimal commit hash")
        return value

    @model_validator(mode="after")
    def _default_source_branch(self) -> "PipelineRequest":
        if self.merge_request.source_branch is None:
            self.merge_request.source_branch = self.gitlab_branch_name
        return self

    def snapshot(self) -> "ConfigurationSnapshot":
        """Copy of the request without credentials."""
        return ConfigurationSnapshot.model_validate(
            self.model_dump(exclude={"github_access_token", "gitlab_access_token"})
        )


class ConfigurationSnapshot(BaseModel):
    """Non-secret copy of the submitted configuration, stored with the run."""
    github_repo_url: str
    github_download_location: str
    github_target_commit_id: str | None = None
    gitlab_repo_url: str
    gitlab_branch_name: str
    gitlab_base_branch: str = "main"
    gitlab_checkout_location: str
    source_path: str = ""
    destination_path: str = ""
    files: list[str] = Field(default_factory=list)
    copy_mode: CopyMode = CopyMode.FILES
    include_folders: list[str] = Field(default_factory=list)
    exclude_patterns: list[str] = Field(default_factory=list)
    preserve_folder_structure: bool = True
    merge_request: MergeRequestConfig
    operation_id: str | None = None


# =============================================================================
# Run Records
# =============================================================================

class StepRecord(BaseModel):
    """State of one step inside a run."""
    name: StepName
    order: int
    status: StepStatus = StepStatus.IDLE
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration_ms: int | None = None
    message: str | None = None
    error_message: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class ErrorDetail(BaseModel):
    """Why a run failed and in which step."""
    step: str
    message: str
    error_code: str | None = None


class PipelineResult(BaseModel):
    """Written once, when a run succeeds."""
    files_processed: int = 0
    directories_copied: int = 0
    merge_request_id: int | None = None
    merge_request_iid: int | None = None
    merge_request_url: str | None = None
    commit_sha: str | None = None
    push_strategy: PushStrategy | None = None


class PipelineRun(BaseModel):
    """A single execution of the pipeline."""
    id: str
    owner_id: str
    status: RunStatus
    start_time: datetime
    end_time: datetime | None = None
    duration_ms: int | None = None
    configuration: ConfigurationSnapshot
    steps: list[StepRecord]
    result: PipelineResult | None = None
    error_detail: ErrorDetail | None = None
    created_at: datetime
    updated_at: datetime

    @computed_field  # type: ignore[misc]
    @property
    def completion_percentage(self) -> int:
        if not self.steps:
            return 0
        done = sum(1 for step in self.steps if step.status == StepStatus.SUCCESS)
        return round(done / len(self.steps) * 100)

    def step(self, name: StepName) -> StepRecord:
        for record in self.steps:
            if record.name == name:
                return record
        raise KeyError(name)


class PipelineStats(BaseModel):
    """Aggregate counts over runs, per owner or global."""
    total: int = 0
    success_count: int = 0
    failed_count: int = 0
    in_progress_count: int = 0
    average_duration_ms: int = 0
    success_rate: float = 0.0
    recent_runs: list[PipelineRun] = Field(default_factory=list)
    total_owners: int | None = None


# =============================================================================
# Progress
# =============================================================================

class ProgressEvent(BaseModel):
    """Transient progress message for the source fetch."""
    operation_id: str
    type: ProgressEventType
    message: str
    percentage: int | None = Field(default=None, ge=0, le=100)
    phase: ProgressPhase | None = None
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.type in (ProgressEventType.COMPLETE, ProgressEventType.ERROR)


# =============================================================================
# Tool Results
# =============================================================================

class CommandResult(BaseModel):
    """Result of one git invocation."""
    args: list[str] = Field(description="Argument list, credentials redacted")
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    latency_ms: int = 0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


class PushOutcome(BaseModel):
    """What the synchronizer had to do to get a branch onto the remote."""
    strategy: PushStrategy
    commit_sha: str | None = None
    attempts: int = 1
    overwrote_remote: bool = False


class ProjectInfo(BaseModel):
    """Remote project as reported by a hosting provider."""
    id: int | str
    path: str
    name: str
    default_branch: str
    web_url: str | None = None
    http_url: str | None = None
    private: bool | None = None


class BranchInfo(BaseModel):
    name: str
    commit_sha: str | None = None
    protected: bool = False


class MergeRequestInfo(BaseModel):
    id: int
    iid: int | None = None
    web_url: str
    title: str
    state: str | None = None
    source_branch: str | None = None
    target_branch: str | None = None


# =============================================================================
# API Schemas
# =============================================================================

class RunSubmitResponse(BaseModel):
    run_id: str
    operation_id: str
    status: RunStatus = RunStatus.IN_PROGRESS
    message: str = "Pipeline execution started"


class RunListResponse(BaseModel):
    runs: list[PipelineRun]
    total: int
    total_pages: int
    page: int
    page_size: int


class CleanupRequest(BaseModel):
    days_old: int | None = Field(default=None, ge=1, description="Defaults to the retention setting")


class CleanupResponse(BaseModel):
    deleted_count: int
    days_old: int


class CancelResponse(BaseModel):
    operation_id: str
    cancelled: bool
