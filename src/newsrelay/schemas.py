from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .cron import CronError, resolve_timezone, validate_cron

SourceType = Literal["website", "rss", "application"]
Channel = Literal["email", "telegram"]


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


def _check_cron(value: str | None) -> str | None:
    if value is None:
        return value
    try:
        return validate_cron(value)
    except CronError as exc:
        raise ValueError(str(exc)) from exc


def _check_timezone(value: str | None) -> str | None:
    if value is None:
        return value
    try:
        return resolve_timezone(value).key
    except CronError as exc:
        raise ValueError(str(exc)) from exc


def _clean_tags(value: list[str] | None) -> list[str] | None:
    if value is None:
        return value
    tags: list[str] = []
    for tag in value:
        tag = tag.strip()
        if tag and tag not in tags:
            tags.append(tag)
    return tags


class SourceCreate(_Request):
    name: str = Field(min_length=1)
    url: str = Field(min_length=1)
    type: SourceType = "website"
    tags: list[str] = Field(default_factory=list)
    enabled: bool = True

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, value: list[str] | None) -> list[str] | None:
        return _clean_tags(value)


class SourceUpdate(_Request):
    name: str | None = Field(default=None, min_length=1)
    url: str | None = Field(default=None, min_length=1)
    type: SourceType | None = None
    tags: list[str] | None = None
    enabled: bool | None = None

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, value: list[str] | None) -> list[str] | None:
        return _clean_tags(value)


class ScheduleCreate(_Request):
    name: str = Field(min_length=1)
    cron: str
    timezone: str = "UTC"
    enabled: bool = True

    @field_validator("cron")
    @classmethod
    def check_cron(cls, value: str | None) -> str | None:
        return _check_cron(value)

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, value: str | None) -> str | None:
        return _check_timezone(value)


class ScheduleUpdate(_Request):
    name: str | None = Field(default=None, min_length=1)
    cron: str | None = None
    timezone: str | None = None
    enabled: bool | None = None

    @field_validator("cron")
    @classmethod
    def check_cron(cls, value: str | None) -> str | None:
        return _check_cron(value)

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, value: str | None) -> str | None:
        return _check_timezone(value)


class DeliveryCreate(_Request):
    channel: Channel
    address: str = Field(min_length=3)
    schedule_id: int | None = Field(default=None, alias="scheduleId")
    metadata: dict[str, Any] = Field(default_factory=dict)


class DeliveryUpdate(_Request):
    channel: Channel | None = None
    address: str | None = Field(default=None, min_length=3)
    schedule_id: int | None = Field(default=None, alias="scheduleId")
    metadata: dict[str, Any] | None = None


class RunRequest(_Request):
    source_ids: list[int] | None = Field(default=None, alias="sourceIds")
    force: bool = False


class RuntimeConfigRequest(BaseModel):
    config: dict


class ChannelSecretRequest(_Request):
    secret: str = Field(min_length=1)
