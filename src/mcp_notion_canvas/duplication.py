import logging
from typing import Literal, Union

from pydantic import Field

from .collaborators import OwnerContext, Persistence, Quota
from .data_model import CamelModel, SchemaGraph
from .remapper import clone

logger = logging.getLogger(__name__)

DEFAULT_CANVAS_LIMIT = 3


class DuplicateSuccess(CamelModel):
    new_graph: SchemaGraph = Field(description="The stored copy of the canvas.")
    new_canvas_id: str = Field(description="The id the copy is stored under.")


class DuplicateFailure(CamelModel):
    error: Literal["limit-reached", "write-failed"] = Field(
        description="`limit-reached` when the owner's plan allows no more canvases, `write-failed` when storing the copy failed."
    )
    message: str = ""


DuplicateOutcome = Union[DuplicateSuccess, DuplicateFailure]


async def duplicate(
    graph: SchemaGraph,
    owner_context: OwnerContext,
    persistence: Persistence,
    quota: Quota,
    canvas_limit: int = DEFAULT_CANVAS_LIMIT,
    new_canvas_name: str | None = None,
) -> DuplicateOutcome:
    """
    Duplicate a canvas for an owner.

    The owner's quota is checked before anything is written. After the copy is
    stored the owner's canvas count is incremented; if that fails, the stored
    copy is deleted again so the count and the stored canvases agree.

    Errors raised while reading the quota are not caught.
    """
    owner_id = owner_context.owner_id

    if not await quota.is_unlimited(owner_id):
        count = await quota.get_owner_canvas_count(owner_id)
        if count >= canvas_limit:
            logger.info(
                f"Owner {owner_id} has {count} canvases, the limit is {canvas_limit}. Not duplicating."
            )
            return DuplicateFailure(
                error="limit-reached",
                message=f"The plan limit of {canvas_limit} canvases has been reached.",
            )

    cloned = clone(graph, owner_context, new_canvas_name=new_canvas_name)
    key = owner_context.storage_key

    try:
        await persistence.put(key, cloned.canvas_id, cloned.graph.to_document_json())
        logger.info(f"Stored canvas copy {cloned.canvas_id} for owner {owner_id}")
    except Exception as e:
        logger.error(f"Error storing canvas copy {cloned.canvas_id}: {e}")
        return DuplicateFailure(error="write-failed", message=f"Error storing canvas copy: {e}")

    try:
        await quota.increment_owner_canvas_count(owner_id)
    except Exception as e:
        logger.error(f"Error incrementing canvas count of owner {owner_id}: {e}")
        try:
            await persistence.delete(key, cloned.canvas_id)
            logger.info(f"Deleted canvas copy {cloned.canvas_id} after failed count update")
        except Exception as delete_error:
            logger.error(
                f"Error deleting canvas copy {cloned.canvas_id} after failed count update: {delete_error}"
            )
        return DuplicateFailure(
            error="write-failed", message=f"Error updating canvas count: {e}"
        )

    return DuplicateSuccess(new_graph=cloned.graph, new_canvas_id=cloned.canvas_id)
