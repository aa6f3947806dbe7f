"""Transport-neutral request and response views used by the security pipeline."""
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from starlette.datastructures import Headers, MutableHeaders
from starlette.requests import Request
from starlette.responses import Response

FORM_URLENCODED = "application/x-www-form-urlencoded"


def media_type_of(content_type: Optional[str]) -> str:
    """Return the bare, lowercased media type of a Content-Type value."""
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


@dataclass
class GuardRequest:
    """The parts of an incoming request the security checks look at."""
    method: str
    path: str = "/"
    client_host: str = "unknown"
    headers: Headers = field(default_factory=Headers)
    params: Dict[str, str] = field(default_factory=dict)
    content_type: str = ""
    request_id: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.headers, Headers):
            self.headers = Headers(headers=dict(self.headers))
        if not self.content_type:
            self.content_type = self.headers.get("content-type", "")

    def param(self, name: str) -> str:
        return self.params.get(name, "")

    @property
    def is_form_urlencoded(self) -> bool:
        return media_type_of(self.content_type) == FORM_URLENCODED

    @classmethod
    async def from_starlette(cls, request: Request) -> "GuardRequest":
        """
        Build a view of a Starlette request.

        Query parameters and url-encoded form fields are merged into
        ``params``; form fields win on conflict. The form is only parsed for
        url-encoded requests. The request ID set by the logging middleware is
        carried along for denial logs.
        """
        params = dict(request.query_params)
        content_type = request.headers.get("content-type", "")

        if media_type_of(content_type) == FORM_URLENCODED:
            # Reading the body first caches it for replay downstream
            await request.body()
            form = await request.form()
            params.update(
                (key, value) for key, value in form.items() if isinstance(value, str)
            )

        return cls(
            method=request.method,
            path=request.url.path,
            client_host=request.client.host if request.client else "unknown",
            headers=request.headers,
            params=params,
            content_type=content_type,
            request_id=getattr(request.state, "request_id", None),
        )


@dataclass
class GuardResponse:
    """A mutable response the security checks populate before the app runs."""
    status_code: int = 200
    headers: MutableHeaders = field(default_factory=MutableHeaders)
    body: str = ""
    media_type: Optional[str] = None

    def deny(
        self,
        status_code: int,
        error: str,
        headers: Optional[Mapping[str, str]] = None
    ) -> None:
        """Turn this response into a JSON error payload."""
        self.status_code = status_code
        self.media_type = "application/json"
        self.headers["Content-Type"] = "application/json"
        self.body = error_payload(error)
        for name, value in (headers or {}).items():
            self.headers[name] = value

    def copy_headers_to(self, response: Response) -> None:
        for name, value in self.headers.items():
            response.headers[name] = value

    def to_response(self) -> Response:
        response = Response(
            content=self.body,
            status_code=self.status_code,
            media_type=self.media_type,
        )
        self.copy_headers_to(response)
        return response


def error_payload(error: str) -> str:
    """Serialize the stable ``{"success": false, "error": ...}`` shape."""
    payload: Dict[str, Any] = {"success": False, "error": error}
    return json.dumps(payload, separators=(",", ":"))
