"""
Pydantic models for the kernel session lifecycle.

These mirror the small subset of the Jupyter Server REST payloads the
lifecycle manager consumes (kernelspecs and sessions), plus the endpoint the
background server is bound to.
"""

from typing import Any, Dict, List, Optional
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict, Field


class ServerEndpoint(BaseModel):
    """Network endpoint and bearer token of the background server."""

    model_config = ConfigDict(frozen=True)

    host: str = "localhost"
    port: int = Field(..., ge=1, le=65535)
    token: str

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}/"

    @property
    def ws_base_url(self) -> str:
        return f"ws://{self.host}:{self.port}/"

    @property
    def auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"token {self.token}"}

    def url(self, path: str) -> str:
        return self.base_url + path.lstrip("/")

    def ws_url(self, path: str, **query: str) -> str:
        params = dict(query)
        params["token"] = self.token
        qs = "&".join(f"{k}={quote(str(v), safe='')}" for k, v in params.items())
        return f"{self.ws_base_url}{path.lstrip('/')}?{qs}"


class KernelSpec(BaseModel):
    """A launchable kernel from the server's kernelspec catalog."""

    model_config = ConfigDict(frozen=True)

    name: str
    argv: List[str] = Field(default_factory=list)
    display_name: str = ""
    language: str = ""

    @property
    def interpreter_path(self) -> Optional[str]:
        return self.argv[0] if self.argv else None

    @classmethod
    def from_api(cls, name: str, model: Dict[str, Any]) -> "KernelSpec":
        """Build from one entry of GET /api/kernelspecs -> kernelspecs."""
        spec = (model or {}).get("spec") or {}
        return cls(
            name=model.get("name") or name,
            argv=list(spec.get("argv") or []),
            display_name=spec.get("display_name") or "Unnamed Kernel",
            language=spec.get("language") or "",
        )


class SessionHandle(BaseModel):
    """One kernel session bound to one document."""

    model_config = ConfigDict(frozen=True)

    id: str
    kernel_id: str
    kernel_name: str
    path: str = ""
    name: str = ""

    @classmethod
    def from_api(cls, model: Dict[str, Any]) -> "SessionHandle":
        """Build from a session model returned by POST/PATCH /api/sessions."""
        kernel = model.get("kernel") or {}
        return cls(
            id=model["id"],
            kernel_id=kernel.get("id", ""),
            kernel_name=kernel.get("name", ""),
            path=model.get("path") or "",
            name=model.get("name") or "",
        )


class ExecutionRequest(BaseModel):
    code: str
    store_history: bool = True


class ExecutionSummary(BaseModel):
    """Stored under cell.metadata.slide_show_editor.execution."""

    success: bool
    duration: str
