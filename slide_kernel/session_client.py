"""
Session Protocol Client
=======================

The handful of Jupyter Server REST calls the lifecycle manager needs once the
background server is healthy:

- GET    /api/status
- GET    /api/kernelspecs
- POST   /api/sessions
- PATCH  /api/sessions/{id}
- DELETE /api/sessions/{id}
- POST   /api/kernels/{id}/restart

Sessions are created with direct REST calls rather than through a higher-level
client library. Every call sends `Authorization: token <T>`; a non-success
status reads the body and raises a descriptive error carrying status and body.
Nothing here retries.
"""

from typing import Any, Callable, Dict, Optional, Type, TypeVar

import httpx
import pydantic
import structlog

from .errors import (
    ServerRequestError,
    NoKernelsAvailable,
    SessionCreateFailed,
    SwitchKernelFailed,
    RestartFailed,
)
from .models import KernelSpec, ServerEndpoint, SessionHandle

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class SessionClient:
    """REST client for one background server, using an injected httpx client."""

    def __init__(self, endpoint: ServerEndpoint, http_client: httpx.AsyncClient):
        self.endpoint = endpoint
        self.http = http_client
        self.default_kernel_name: Optional[str] = None

    async def _request(
        self,
        method: str,
        path: str,
        action: str,
        error_cls: Type[ServerRequestError] = ServerRequestError,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        headers = dict(self.endpoint.auth_headers)
        if json is not None:
            headers["Content-Type"] = "application/json"

        try:
            response = await self.http.request(
                method, self.endpoint.url(path), headers=headers, json=json
            )
        except httpx.HTTPError as e:
            raise error_cls(f"Failed to {action}. Error: {e}") from e

        if not response.is_success:
            body = response.text
            logger.warning(
                f"[SESSION] {method} {path} failed",
                status=response.status_code,
                body=body[:500],
            )
            raise error_cls(
                f"Failed to {action}. Status: {response.status_code}, Body: {body}",
                status=response.status_code,
                body=body,
            )
        return response

    def _parse(
        self,
        response: httpx.Response,
        action: str,
        error_cls: Type[ServerRequestError],
        parse: Callable[[Any], T],
    ) -> T:
        """Decode a 2xx body; anything that is not the expected JSON raises error_cls."""
        try:
            return parse(response.json())
        except (ValueError, KeyError, TypeError, AttributeError, pydantic.ValidationError) as e:
            body = response.text
            raise error_cls(
                f"Failed to {action}. Unexpected response (status {response.status_code}): {e}",
                status=response.status_code,
                body=body,
            ) from e

    async def get_status(self) -> Dict[str, Any]:
        response = await self._request("GET", "api/status", "query server status")
        return self._parse(response, "query server status", ServerRequestError, dict)

    async def list_kernel_specs(self) -> Dict[str, KernelSpec]:
        """
        Fetch the kernelspec catalog.

        A reachable server that reports no kernels is a failure: the caller
        needs at least one launchable kernel.
        """
        response = await self._request(
            "GET", "api/kernelspecs", "list kernel specs", error_cls=NoKernelsAvailable
        )

        def parse(payload):
            specs = {
                name: KernelSpec.from_api(name, model)
                for name, model in (payload.get("kernelspecs") or {}).items()
            }
            return specs, payload.get("default")

        specs, default = self._parse(response, "list kernel specs", NoKernelsAvailable, parse)
        if not specs:
            raise NoKernelsAvailable(
                "The Jupyter server reported no available kernels.",
                status=response.status_code,
                body=response.text,
            )
        self.default_kernel_name = default
        logger.info(f"[SESSION] Found {len(specs)} kernel specs", default=self.default_kernel_name)
        return specs

    async def create_session(self, path: str, name: str, kernel_name: str) -> SessionHandle:
        payload = {
            "path": path,
            "name": name,
            "type": "notebook",
            "kernel": {"name": kernel_name},
        }
        response = await self._request(
            "POST", "api/sessions", "create session directly",
            error_cls=SessionCreateFailed, json=payload,
        )
        handle = self._parse(response, "create session directly", SessionCreateFailed, SessionHandle.from_api)
        logger.info(f"[SESSION] Created session {handle.id}", kernel=handle.kernel_name)
        return handle

    async def patch_session(self, session_id: str, kernel_name: str) -> SessionHandle:
        """Point an existing session at a different kernel."""
        response = await self._request(
            "PATCH", f"api/sessions/{session_id}", f"switch kernel to '{kernel_name}'",
            error_cls=SwitchKernelFailed, json={"kernel": {"name": kernel_name}},
        )
        handle = self._parse(
            response, f"switch kernel to '{kernel_name}'", SwitchKernelFailed, SessionHandle.from_api
        )
        logger.info(f"[SESSION] Session {session_id} now on kernel {handle.kernel_name}")
        return handle

    async def delete_session(self, session_id: str) -> None:
        await self._request("DELETE", f"api/sessions/{session_id}", "shut down session")
        logger.info(f"[SESSION] Deleted session {session_id}")

    async def restart_kernel(self, kernel_id: str) -> None:
        await self._request(
            "POST", f"api/kernels/{kernel_id}/restart", "restart kernel",
            error_cls=RestartFailed, json={},
        )
        logger.info(f"[KERNEL] Restarted {kernel_id}")

    def channel_url(self, handle: SessionHandle, client_session_id: str) -> str:
        return self.endpoint.ws_url(
            f"api/kernels/{handle.kernel_id}/channels", session_id=client_session_id
        )
