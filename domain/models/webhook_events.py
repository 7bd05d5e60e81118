# domain/models/webhook_events.py
"""Wire models for inbound webhooks.

Payloads are validated into these closed variants before any business logic
sees them; nothing downstream branches on raw dictionaries.
"""
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from enum import Enum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from domain.models.task_session import SessionError, SessionResult

class IssueEventType(str, Enum):
    ISSUE = "Issue"
    COMMENT = "Comment"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            for member in cls:
                if member.value.lower() == value.lower():
                    return member
        return None

class IssueEventData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = Field(..., min_length=1, max_length=200)
    identifier: Optional[str] = Field(None, max_length=50)
    title: Optional[str] = Field(None, max_length=500)
    description: Optional[str] = Field(None, max_length=50000)
    labels: List[str] = Field(default_factory=list)
    assignee: Optional[str] = None
    priority: Optional[Union[int, str]] = None
    issue_id: Optional[str] = Field(None, alias="issueId")
    body: Optional[str] = Field(None, max_length=50000)

    @field_validator("labels", mode="before")
    @classmethod
    def _normalize_labels(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, dict) and "nodes" in value:
            value = value["nodes"]
        if not isinstance(value, list):
            raise ValueError("labels must be a list")
        names = []
        for label in value:
            if isinstance(label, str):
                names.append(label)
            elif isinstance(label, dict) and isinstance(label.get("name"), str):
                names.append(label["name"])
            else:
                raise ValueError("label entries must be strings or objects with a name")
        return names

    @field_validator("assignee", mode="before")
    @classmethod
    def _normalize_assignee(cls, value: Any) -> Optional[str]:
        if isinstance(value, dict):
            return value.get("name") or value.get("id")
        return value

class IssueWebhookEnvelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: IssueEventType
    action: Literal["create", "update", "remove"] = "create"
    data: IssueEventData
    organization_id: Optional[str] = Field(None, alias="organizationId")

    @model_validator(mode="after")
    def _check_variant_fields(self) -> "IssueWebhookEnvelope":
        if self.action == "remove":
            return self
        if self.type == IssueEventType.ISSUE and not self.data.title:
            raise ValueError("Issue events require data.title")
        if self.type == IssueEventType.COMMENT and not (self.data.issue_id and self.data.body):
            raise ValueError("Comment events require data.issueId and data.body")
        return self

class DelegateEventType(str, Enum):
    TASK_STARTED = "task.started"
    TASK_PROGRESS = "task.progress"
    TASK_COMPLETED = "task.completed"
    TASK_FAILED = "task.failed"

class CallbackResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    artifact_url: Optional[str] = Field(
        None, validation_alias=AliasChoices("artifactUrl", "prUrl", "artifact_url"))
    files_changed: int = Field(
        0, ge=0, validation_alias=AliasChoices("filesChanged", "files_changed"))
    summary: Optional[str] = Field(None, max_length=10000)

    @field_validator("files_changed", mode="before")
    @classmethod
    def _count_files(cls, value: Any) -> Any:
        if isinstance(value, list):
            return len(value)
        return 0 if value is None else value

    def to_domain(self) -> SessionResult:
        return SessionResult(
            artifact_url=self.artifact_url,
            files_changed=self.files_changed,
            summary=self.summary
        )

class CallbackError(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    message: str = Field(..., min_length=1, max_length=10000)
    error_class: Optional[str] = Field(
        None, validation_alias=AliasChoices("errorClass", "class", "code", "error_class"))

    def to_domain(self) -> SessionError:
        return SessionError(message=self.message, error_class=self.error_class)

class _DelegateCallbackBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    task_id: str = Field(..., min_length=1, max_length=200, alias="taskId")
    step: Optional[str] = Field(None, max_length=500)

class TaskStartedCallback(_DelegateCallbackBase):
    type: Literal["task.started"]

class TaskProgressCallback(_DelegateCallbackBase):
    type: Literal["task.progress"]
    progress: int = Field(..., ge=0, le=100)

class TaskCompletedCallback(_DelegateCallbackBase):
    type: Literal["task.completed"]
    result: CallbackResult = Field(default_factory=CallbackResult)

class TaskFailedCallback(_DelegateCallbackBase):
    type: Literal["task.failed"]
    error: CallbackError

DelegateCallback = Annotated[
    Union[TaskStartedCallback, TaskProgressCallback, TaskCompletedCallback, TaskFailedCallback],
    Field(discriminator="type"),
]

delegate_callback_adapter: TypeAdapter = TypeAdapter(DelegateCallback)
issue_envelope_adapter: TypeAdapter = TypeAdapter(IssueWebhookEnvelope)

def parse_delegate_callback(payload: Dict[str, Any]):
    """Narrow a decoded delegate payload to its tagged variant"""
    return delegate_callback_adapter.validate_python(payload)

def parse_issue_envelope(payload: Dict[str, Any]) -> IssueWebhookEnvelope:
    return issue_envelope_adapter.validate_python(payload)
