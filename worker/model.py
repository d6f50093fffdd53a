# worker/model.py
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .errors import TaskDecodeError, TaskValidationError

# Các loại control message trên kênh websocket
MSG_AUTH = "auth"
MSG_AUTH_SUCCESS = "auth_success"
MSG_MODELS_UPDATE = "models_update"
MSG_GET_MODELS = "get_models"
MSG_TASK = "task"
MSG_TASK_UPDATE = "task_update"

NIL_UUID = UUID(int=0)


class TaskType(str, Enum):
    TTI = "TTI"  # Text to Image
    LLM = "LLM"  # Language Model
    RECON = "RECON"  # Recognition


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Task(BaseModel):
    """
    Một task server giao cho worker.
    Trên wire dùng key cũ: uuid / type / model; enum được encode bằng tên (TTI, PENDING...).
    """

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    id: UUID = Field(alias="uuid")
    kind: TaskType = Field(default=TaskType.TTI, alias="type")
    prompt: str = ""
    model_selector: int = Field(default=0, alias="model", strict=True)
    metadata: Optional[Dict[str, Any]] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    status: TaskStatus = TaskStatus.PENDING

    @classmethod
    def new(cls, kind: TaskType, prompt: str, model_selector: int) -> "Task":
        return cls(
            id=uuid4(),
            kind=kind,
            prompt=prompt,
            model_selector=model_selector,
            metadata={},
            created_at=_utcnow(),
            status=TaskStatus.PENDING,
        )

    def update_status(self, status: TaskStatus) -> None:
        self.status = status

    def add_metadata(self, key: str, value: Any) -> None:
        if self.metadata is None:
            self.metadata = {}
        self.metadata[key] = value

    def get_metadata(self, key: str) -> Tuple[Any, bool]:
        if self.metadata is None or key not in self.metadata:
            return None, False
        return self.metadata[key], True

    def ensure_valid(self) -> None:
        if self.id == NIL_UUID:
            raise TaskValidationError("invalid UUID")

    # --- wire encoding ---

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_payload(cls, payload: Any) -> "Task":
        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            raise TaskDecodeError(f"cannot decode task: {e}") from e

    @classmethod
    def from_json(cls, data: str | bytes) -> "Task":
        try:
            return cls.model_validate_json(data)
        except ValidationError as e:
            raise TaskDecodeError(f"cannot decode task: {e}") from e


class ControlMessage(BaseModel):
    type: str = ""
    payload: Any = None


class AuthRequest(BaseModel):
    password: str


class AuthSuccess(BaseModel):
    token: str


class AdvertisedModel(BaseModel):
    id: int
    name: str


advertised_models_adapter = TypeAdapter(List[AdvertisedModel])
