import os
from pathlib import Path
from typing import Annotated, Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field, ValidationError

from worker.errors import ConfigError

# Load biến môi trường trong .env
BASE_DIR = Path(__file__).resolve().parent
load_dotenv(BASE_DIR / ".env")


class Settings:
    CONFIG_PATH: str = os.getenv("WORKER_CONFIG", "./config.yaml")

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Nếu có thì ghi đè server.passcode trong file config
    SERVER_PASSCODE: str | None = os.getenv("WORKER_PASSCODE")


settings = Settings()


def _port_to_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


Port = Annotated[str, BeforeValidator(_port_to_str)]


class ServerConfig(BaseModel):
    """Orchestration server: ws endpoint, passcode và các mốc thời gian (giây)."""

    model_config = ConfigDict(frozen=True)

    host: str
    port: Port = ""
    passcode: str = ""
    path: str = "/ws"
    secure: bool = True
    verify_tls: bool = False

    dial_timeout: float = 10.0
    write_timeout: float = 10.0
    ping_interval: float = 10.0
    reconnect_delay: float = 5.0

    request_models_on_connect: bool = False

    @property
    def ws_url(self) -> str:
        scheme = "wss" if self.secure else "ws"
        netloc = f"{self.host}:{self.port}" if self.port else self.host
        return f"{scheme}://{netloc}/{self.path.lstrip('/')}"


class ApiConfig(BaseModel):
    """Local image-generation API (SwarmUI-style /API/* endpoints)."""

    model_config = ConfigDict(frozen=True)

    host: str = "127.0.0.1"
    port: Port = "7801"
    timeout_seconds: float = Field(
        default=60.0,
        validation_alias=AliasChoices("timeout_seconds", "timeout"),
    )

    @property
    def base_url(self) -> str:
        netloc = f"{self.host}:{self.port}" if self.port else self.host
        return f"http://{netloc}"


class ModelConfig(BaseModel):
    """
    Một model được cấu hình ở máy local.
    Các key không khai báo ở đây được giữ nguyên và gửi thẳng sang API (options).
    """

    model_config = ConfigDict(extra="allow", frozen=True, protected_namespaces=())

    name: str
    string_id: str = Field(validation_alias=AliasChoices("string_id", "string"))
    width: int = 512
    height: int = 512
    steps: int = 20
    cfgscale: float = 7.0
    loras: Optional[str] = None
    loraweights: float = 0.0
    prompt_suffix: Optional[str] = None

    @property
    def options(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


class WorkerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    server: ServerConfig
    api: ApiConfig = Field(default_factory=ApiConfig)
    models: List[ModelConfig] = Field(default_factory=list)


def load_config(path: str | Path, passcode: Optional[str] = None) -> WorkerConfig:
    """
    Đọc file YAML config và validate.
    Mọi lỗi (thiếu file, YAML hỏng, sai schema) đều ném ConfigError.
    """
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"config file {path} must contain a mapping at top level")

    try:
        config = WorkerConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"invalid config in {path}: {e}") from e

    if passcode:
        server = config.server.model_copy(update={"passcode": passcode})
        config = config.model_copy(update={"server": server})
    return config
