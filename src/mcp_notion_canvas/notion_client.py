import logging
from typing import Any

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .collaborators import CollaboratorError, ExternalContainer, ExternalPropertyRef

logger = logging.getLogger(__name__)

NOTION_API_URL = "https://api.notion.com/v1"
NOTION_VERSION = "2022-06-28"
# title property every new database starts with
DEFAULT_TITLE_PROPERTY = "Name"


class NotionAPIError(CollaboratorError):
    "Raised when the Notion API rejects a request or cannot be reached."

    def __init__(self, message: str, status_code: int | None = None, code: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class NotionRetryableError(NotionAPIError):
    "A rate limit, server error or transport failure. Retried before giving up."


class NotionClient:
    """
    Notion implementation of the external creation collaborator.

    Databases are created under a page, properties are added to a database by
    updating its schema, and dual relations are linked by replacing the one-way
    relations of a pair with a single `dual_property` relation on the parent side.
    """

    def __init__(
        self,
        token: str,
        base_url: str = NOTION_API_URL,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {token}",
                "Notion-Version": NOTION_VERSION,
                "Content-Type": "application/json",
            },
        )

    async def __aenter__(self) -> "NotionClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=10),
        retry=retry_if_exception_type((NotionRetryableError,)),
        reraise=True,
    )
    async def _request(
        self, method: str, path: str, payload: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        try:
            response = await self.client.request(method, path, json=payload)
        except httpx.TransportError as e:
            logger.warning(f"Notion request {method} {path} failed: {e}")
            raise NotionRetryableError(f"Error connecting to Notion: {e}")

        if response.status_code == 429 or response.status_code >= 500:
            logger.warning(f"Notion request {method} {path} returned {response.status_code}")
            raise NotionRetryableError(
                f"Notion returned {response.status_code}", status_code=response.status_code
            )
        if response.is_error:
            try:
                body = response.json()
            except ValueError:
                body = {}
            message = body.get("message") or response.text
            raise NotionAPIError(
                f"Notion returned {response.status_code}: {message}",
                status_code=response.status_code,
                code=body.get("code"),
            )
        return response.json()

    async def create_container(self, parent_ref: str, name: str) -> ExternalContainer:
        "Create an empty database under the Notion page `parent_ref`."
        payload = {
            "parent": {"type": "page_id", "page_id": parent_ref},
            "title": [{"type": "text", "text": {"content": name}}],
            "properties": {DEFAULT_TITLE_PROPERTY: {"title": {}}},
        }
        logger.debug(f"Creating Notion database {name}")
        body = await self._request("POST", "/databases", payload)
        return ExternalContainer(external_id=body["id"], url=body.get("url"))

    async def create_property(
        self, container_id: str, definition: dict[str, Any]
    ) -> ExternalPropertyRef:
        """
        Add a property to a Notion database.

        A `title` definition renames the title property the database was created
        with, since a Notion database has exactly one.
        """
        name = definition["name"]
        notion_type = definition["type"]
        if notion_type == "title":
            properties = {DEFAULT_TITLE_PROPERTY: {"name": name}}
        else:
            properties = {name: {notion_type: definition[notion_type]}}

        logger.debug(f"Creating Notion property {name} ({notion_type}) in {container_id}")
        body = await self._request(
            "PATCH", f"/databases/{container_id}", {"properties": properties}
        )
        created = body.get("properties", {}).get(name)
        if created is None:
            raise NotionAPIError(f"Notion did not return property {name} after creating it")
        return ExternalPropertyRef(
            container_id=container_id, external_id=created["id"], name=name
        )

    async def link_properties(
        self, property_a: ExternalPropertyRef, property_b: ExternalPropertyRef
    ) -> None:
        """
        Make the relation `property_a` a dual relation synced with `property_b`.

        Notion creates the synced side of a dual relation itself, so the one-way
        relation `property_b` is removed first and recreated by Notion under the
        same name.
        """
        logger.debug(f"Removing one-way Notion relation {property_b.name} from {property_b.container_id}")
        await self._request(
            "PATCH",
            f"/databases/{property_b.container_id}",
            {"properties": {property_b.name: None}},
        )

        payload = {
            "properties": {
                property_a.name: {
                    "relation": {
                        "database_id": property_b.container_id,
                        "type": "dual_property",
                        "dual_property": {"synced_property_name": property_b.name},
                    }
                }
            }
        }
        logger.debug(f"Linking Notion relation {property_a.name} with {property_b.name}")
        await self._request("PATCH", f"/databases/{property_a.container_id}", payload)

    async def test_connection(self) -> dict[str, Any]:
        "Return the bot user of the token, raising `NotionAPIError` if the token is rejected."
        return await self._request("GET", "/users/me")
