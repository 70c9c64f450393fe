from __future__ import annotations

import logging

import httpx

from mediapulse.targets.base import BackendError, path_in_locations, raise_for_backend_status

logger = logging.getLogger(__name__)


class JellyfinTarget:
    """Jellyfin and Emby share the item API, the media-updated endpoint and the token header.

    A path the server already knows as an item gets a full metadata refresh of that item.
    Anything else is reported through ``/Library/Media/Updated`` so the server scans it.
    """

    def __init__(
        self,
        *,
        url: str,
        token: str,
        timeout_seconds: float,
        transport: httpx.BaseTransport | None = None,
    ):
        self._base_url = url.rstrip("/")
        self._token = token
        self._timeout = timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self._base_url,
            headers={"X-Emby-Token": self._token, "Accept": "application/json"},
            timeout=self._timeout,
            transport=self._transport,
        )

    def _json(self, response: httpx.Response, action: str):
        raise_for_backend_status(response, action)
        try:
            return response.json()
        except ValueError as exc:
            raise BackendError(f"{action} response was not JSON: {exc}") from exc

    def _library_locations(self, client: httpx.Client) -> list[str]:
        libraries = self._json(client.get("/Library/VirtualFolders"), "Listing libraries")
        locations: list[str] = []
        for library in libraries or []:
            locations.extend(str(location) for location in library.get("Locations") or [])
        return locations

    def _find_item_id(self, client: httpx.Client, canonical_path: str) -> str | None:
        payload = self._json(
            client.get("/Items", params={"Recursive": "true", "Fields": "Path", "EnableImages": "false"}),
            "Item lookup",
        )
        for item in (payload or {}).get("Items") or []:
            if item.get("Path") == canonical_path and item.get("Id"):
                return str(item["Id"])
        return None

    def trigger_rescan(self, canonical_path: str) -> None:
        try:
            with self._client() as client:
                if not path_in_locations(canonical_path, self._library_locations(client)):
                    raise BackendError(f"{canonical_path} is not inside any library", permanent=True)

                item_id = self._find_item_id(client, canonical_path)
                if item_id is not None:
                    logger.debug("Refreshing item %s for %s", item_id, canonical_path)
                    response = client.post(
                        f"/Items/{item_id}/Refresh",
                        params={"metadataRefreshMode": "FullRefresh"},
                    )
                    raise_for_backend_status(response, "Item refresh")
                    return

                logger.debug("No item for %s, requesting a scan", canonical_path)
                response = client.post(
                    "/Library/Media/Updated",
                    json={"Updates": [{"Path": canonical_path, "UpdateType": "Modified"}]},
                )
                raise_for_backend_status(response, "Media update")
        except httpx.HTTPError as exc:
            raise BackendError(f"Request to {self._base_url} failed: {exc}") from exc
