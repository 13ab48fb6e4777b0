from pydantic import BaseModel, Field, ValidationError

from .errors import AppConfigError
from .models import DEFAULTS
from .storage import config_get


class Settings(BaseModel):
    backoff_max_tries: int = Field(ge=1)
    running_lease_seconds: int = Field(ge=1)
    fetch_timeout: float = Field(gt=0)
    max_response_bytes: int = Field(gt=0)
    poll_interval: float = Field(gt=0)
    user_agent: str = Field(min_length=1)


def load_settings() -> Settings:
    """Read the config table; unusable values raise AppConfigError."""
    raw = {key: config_get(key, str(default)) for key, default in DEFAULTS.items()}
    try:
        return Settings(**raw)
    except ValidationError as e:
        raise AppConfigError(f"invalid configuration: {e}") from e
