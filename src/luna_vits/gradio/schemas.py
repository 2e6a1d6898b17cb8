"""Pydantic models for the app config document served at ``/config``."""

from __future__ import annotations

from typing import Any, Optional, Union

from packaging.version import InvalidVersion, Version
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)


class DependencyTypes(BaseModel):
    model_config = ConfigDict(extra="allow")

    generator: bool = False
    cancel: bool = False


class Dependency(BaseModel):
    """One endpoint node of the app's dependency graph."""

    model_config = ConfigDict(extra="allow")

    id: Optional[int] = None
    inputs: list[int] = Field(default_factory=list)
    outputs: list[int] = Field(default_factory=list)
    api_name: Union[str, bool, None] = None
    queue: Optional[bool] = None
    types: DependencyTypes = Field(default_factory=DependencyTypes)

    @field_validator("inputs", "outputs", "types", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any, info: ValidationInfo) -> Any:
        if v is None:
            return cls.model_fields[info.field_name].get_default(call_default_factory=True)
        return v

    @property
    def named(self) -> Optional[str]:
        """The API name without a leading slash, or None for unnamed endpoints."""
        if isinstance(self.api_name, str) and self.api_name:
            return self.api_name.lstrip("/")
        return None


class ComponentMeta(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int
    type: str = ""
    props: dict[str, Any] = Field(default_factory=dict)


class AppConfig(BaseModel):
    """Normalised app config.

    ``root`` is the base URL the config was fetched from; every request
    URL is built from it.  Dependencies without an ``id`` get their
    array position.
    """

    model_config = ConfigDict(extra="allow")

    root: str = ""
    path: str = ""
    version: str = "2.0.0"
    protocol: str = "ws"
    enable_queue: bool = False
    auth_required: bool = False
    space_id: Optional[str] = None
    components: list[ComponentMeta] = Field(default_factory=list)
    dependencies: list[Dependency] = Field(default_factory=list)

    @field_validator("path", "version", "protocol", mode="before")
    @classmethod
    def _none_to_default(cls, v: Any, info: ValidationInfo) -> Any:
        if v is None:
            return cls.model_fields[info.field_name].default
        return v

    @model_validator(mode="after")
    def _assign_dependency_ids(self) -> "AppConfig":
        for i, dep in enumerate(self.dependencies):
            if dep.id is None:
                dep.id = i
        return self

    def dependency(self, fn_index: int) -> Optional[Dependency]:
        for dep in self.dependencies:
            if dep.id == fn_index:
                return dep
        return None

    def component(self, component_id: int) -> Optional[ComponentMeta]:
        for comp in self.components:
            if comp.id == component_id:
                return comp
        return None

    def component_type(self, component_id: int) -> Optional[str]:
        comp = self.component(component_id)
        return comp.type if comp else None

    @property
    def semver(self) -> Version:
        """Parsed ``version``; unparseable strings count as 2.0.0."""
        try:
            return Version(self.version)
        except InvalidVersion:
            return Version("2.0.0")
