"""
Interfaces of the services the engine depends on but does not implement.

Implementations raise `CollaboratorError` (or a subclass) on failure. The
engine never holds process-wide state of its own: everything it needs about
the caller arrives through an `OwnerContext`.
"""

from typing import Any, Protocol

from pydantic import BaseModel, Field


class CollaboratorError(Exception):
    "Raised by a collaborator implementation when a call fails."


class OwnerContext(BaseModel):
    "The owner on whose behalf a canvas is duplicated or exported."

    owner_id: str = Field(description="The id of the owner, used by the quota collaborator.", min_length=1)
    owner_key: str | None = Field(
        default=None,
        description="The key the owner's canvases are stored under. Defaults to the owner id.",
    )
    source_canvas_id: str | None = Field(
        default=None, description="The id of the canvas being duplicated, if known."
    )

    @property
    def storage_key(self) -> str:
        return self.owner_key or self.owner_id


class ExternalContainer(BaseModel):
    "A container object created by the external creation collaborator."

    external_id: str
    url: str | None = None


class ExternalPropertyRef(BaseModel):
    "A property created by the external creation collaborator."

    container_id: str = Field(description="The external id of the container holding the property.")
    external_id: str = Field(description="The external id of the property.")
    name: str


class Persistence(Protocol):
    "Stores serialized canvas documents."

    async def get(self, owner_key: str, canvas_id: str) -> str | None: ...

    async def put(self, owner_key: str, canvas_id: str, serialized_graph: str) -> None: ...

    async def delete(self, owner_key: str, canvas_id: str) -> None: ...


class Quota(Protocol):
    "Tracks how many canvases an owner has and whether their plan limits them."

    async def get_owner_canvas_count(self, owner_id: str) -> int: ...

    async def is_unlimited(self, owner_id: str) -> bool: ...

    async def increment_owner_canvas_count(self, owner_id: str) -> None: ...


class ExternalCreation(Protocol):
    "Materializes containers and properties in an external system that assigns its own ids."

    async def create_container(self, parent_ref: str, name: str) -> ExternalContainer: ...

    async def create_property(
        self, container_id: str, definition: dict[str, Any]
    ) -> ExternalPropertyRef: ...

    async def link_properties(
        self, property_a: ExternalPropertyRef, property_b: ExternalPropertyRef
    ) -> None: ...
