"""
Transport - the boundary to the remote RESTful API.

The engine hands a Request to a Transport. The transport performs
the network call and must invoke exactly one terminal callback
(on_success xor on_error) exactly once, optionally preceded by any
number of on_progress calls. Calling both terminal callbacks for one
request is undefined behaviour.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request as UrllibRequest, urlopen

from .models import NetworkError

logger = logging.getLogger(__name__)

SuccessCallback = Callable[[Any], None]
ErrorCallback = Callable[[Optional[int], Any], None]
ProgressCallback = Callable[[int, Optional[int]], None]


def _ignore_progress(loaded: int, total: Optional[int]) -> None:
    pass


@dataclass
class Request:
    """
    A request issued by the engine.

    on_success takes the payload only. Anything the settlement needs
    from issue time (e.g. an update's previous values) is bound into the
    callback by the engine, so transports never see it.

    Attributes:
        url: Fully built request URL
        method: HTTP method
        body: Serialized JSON body (None for GET/DELETE)
        on_success: Called with the decoded response payload
        on_error: Called with (http_code, error_detail)
        on_progress: Called with (loaded, total) while transferring
    """
    url: str
    method: str
    body: Optional[str]
    on_success: SuccessCallback
    on_error: ErrorCallback
    on_progress: ProgressCallback = _ignore_progress


def item_url(base_url: str, key: str) -> str:
    """URL of a single item: <base>/<key>."""
    return f"{base_url.rstrip('/')}/{quote(str(key), safe='')}"


def collection_url(base_url: str, params: Any = None) -> str:
    """URL of a collection: <base>?<params>."""
    base_url = base_url.rstrip("/")
    if isinstance(params, Mapping) and params:
        return f"{base_url}?{urlencode(sorted((str(k), v) for k, v in params.items()))}"
    if params not in (None, ""):
        return item_url(base_url, params)
    return base_url


class Transport(ABC):
    """
    Base class for transports.

    Implement send() to connect the engine to a remote API.
    """

    @abstractmethod
    def send(self, request: Request) -> None:
        """
        Perform a request and settle it through its callbacks.

        Args:
            request: The request to perform
        """
        pass


@dataclass
class HttpConfig:
    """
    Configuration for the HTTP transport.

    Attributes:
        token: Bearer token sent with every request
        timeout: Socket timeout in seconds
        chunk_size: Bytes read per progress notification
        headers: Extra headers sent with every request
    """
    token: Optional[str] = None
    timeout: float = 30
    chunk_size: int = 64 * 1024
    headers: Dict[str, str] = field(default_factory=dict)


class HttpTransport(Transport):
    """
    JSON-over-HTTP transport built on urllib.

    Requests run synchronously in send(). Response bodies are read in
    chunks so progress can be reported when Content-Length is known.

    Example:
        transport = HttpTransport(HttpConfig(token="..."))
        engine = ResourceEngine(configs, transport=transport)
    """

    def __init__(self, config: Optional[HttpConfig] = None):
        """
        Initialize transport.

        Args:
            config: HTTP configuration (defaults if None)
        """
        self.config = config or HttpConfig()

    def send(self, request: Request) -> None:
        try:
            payload = self._request(request)
        except NetworkError as e:
            logger.warning("%s %s failed: %s", request.method, request.url, e)
            request.on_error(e.http_code, e.detail)
            return
        request.on_success(payload)

    def _request(self, request: Request) -> Any:
        """
        Make HTTP request to server.

        Returns:
            Decoded response JSON (None for empty bodies)

        Raises:
            NetworkError: On request failure
        """
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            **self.config.headers,
        }
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"

        body = request.body.encode("utf-8") if request.body is not None else None
        http_request = UrllibRequest(request.url, data=body, headers=headers, method=request.method)

        try:
            with urlopen(http_request, timeout=self.config.timeout) as response:
                raw = self._read(response, request.on_progress)
        except HTTPError as e:
            raise NetworkError(f"Request failed ({e.code})", http_code=e.code, detail=self._error_detail(e))
        except URLError as e:
            raise NetworkError(f"Connection failed: {e.reason}")
        except OSError as e:
            # Timeouts and resets while reading the body
            raise NetworkError(f"Connection failed: {e}")

        if not raw:
            return None
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise NetworkError(f"Invalid JSON response: {e}")

    def _error_detail(self, error: HTTPError) -> Any:
        """Decoded body of an HTTP error response."""
        try:
            error_body = error.read().decode("utf-8", errors="replace")
        except OSError:
            error_body = ""
        try:
            return json.loads(error_body)
        except json.JSONDecodeError:
            return {"message": error_body or str(error.reason)}

    def _read(self, response: Any, on_progress: ProgressCallback) -> bytes:
        length = response.headers.get("Content-Length") if response.headers else None
        total = int(length) if length else None

        chunks: List[bytes] = []
        loaded = 0
        while True:
            chunk = response.read(self.config.chunk_size)
            if not chunk:
                break
            chunks.append(chunk)
            loaded += len(chunk)
            if total:
                on_progress(loaded, total)
        return b"".join(chunks)
