from __future__ import annotations

from typing import Protocol, runtime_checkable

import httpx


class BackendError(RuntimeError):
    """A rescan request that did not succeed.

    ``permanent`` marks an explicit rejection that no retry can fix, such as a path
    the backend has no library for.
    """

    def __init__(self, message: str, *, permanent: bool = False):
        super().__init__(message)
        self.permanent = permanent


@runtime_checkable
class RescanTarget(Protocol):
    def trigger_rescan(self, canonical_path: str) -> None: ...


_TRANSIENT_CLIENT_STATUSES = {401, 403, 408, 425, 429}


def raise_for_backend_status(response: httpx.Response, action: str) -> None:
    if response.is_success:
        return
    detail = response.text.strip()[:500] or response.reason_phrase
    message = f"{action} failed with HTTP {response.status_code}: {detail}"
    permanent = 400 <= response.status_code < 500 and response.status_code not in _TRANSIENT_CLIENT_STATUSES
    raise BackendError(message, permanent=permanent)


def path_in_locations(canonical_path: str, locations: list[str]) -> bool:
    for location in locations:
        root = location.replace("\\", "/").rstrip("/")
        if not root:
            return True
        if canonical_path == root or canonical_path.startswith(root + "/"):
            return True
    return False
