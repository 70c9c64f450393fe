from __future__ import annotations

import posixpath

import httpx

from mediapulse.targets.base import BackendError, path_in_locations, raise_for_backend_status


class PlexTarget:
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
            headers={"X-Plex-Token": self._token, "Accept": "application/json"},
            timeout=self._timeout,
            transport=self._transport,
        )

    def _section_for(self, client: httpx.Client, canonical_path: str) -> str | None:
        response = client.get("/library/sections")
        raise_for_backend_status(response, "Listing library sections")
        try:
            sections = response.json()["MediaContainer"].get("Directory") or []
        except (ValueError, KeyError, AttributeError) as exc:
            raise BackendError(f"Unexpected library sections response: {exc}") from exc

        best_key: str | None = None
        best_length = -1
        for section in sections:
            locations = [str(item.get("path", "")) for item in section.get("Location") or []]
            for location in locations:
                if path_in_locations(canonical_path, [location]) and len(location) > best_length:
                    best_key = str(section.get("key"))
                    best_length = len(location)
        return best_key

    def trigger_rescan(self, canonical_path: str) -> None:
        try:
            with self._client() as client:
                section_key = self._section_for(client, canonical_path)
                if section_key is None:
                    raise BackendError(f"{canonical_path} is not inside any library section", permanent=True)
                # Plex only scans directories; a file path refreshes its parent folder
                scan_path = canonical_path
                if posixpath.splitext(canonical_path)[1]:
                    scan_path = posixpath.dirname(canonical_path)
                response = client.get(f"/library/sections/{section_key}/refresh", params={"path": scan_path})
                raise_for_backend_status(response, "Section refresh")
        except httpx.HTTPError as exc:
            raise BackendError(f"Request to {self._base_url} failed: {exc}") from exc
