from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator


class AlarmSettings(BaseModel):
    """The user's daily alarm and the apps it locks."""

    model_config = ConfigDict(frozen=True)

    is_enabled: bool = False
    alarm_hour: int = Field(default=7, ge=0, le=23)
    alarm_minute: int = Field(default=0, ge=0, le=59)
    lockout_duration_minutes: int = Field(default=30, gt=0)
    selected_apps: frozenset[str] = Field(default_factory=frozenset)


class LockState(BaseModel):
    """A lockout window. Inactive by default."""

    model_config = ConfigDict(frozen=True)

    is_active: bool = False
    start_time: datetime | None = None
    end_time: datetime | None = None
    locked_apps: frozenset[str] = Field(default_factory=frozenset)

    @model_validator(mode="after")
    def _check_window(self):
        if self.is_active:
            if self.start_time is None or self.end_time is None:
                raise ValueError("an active lock needs start_time and end_time")
            if self.end_time <= self.start_time:
                raise ValueError("end_time must be after start_time")
        return self
