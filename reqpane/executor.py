"""reqpane executor - HTTP dispatch and response classification."""

import http
import json
import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace

import requests

from reqpane.core import (
    ClientConfig,
    OutboundRequest,
    RequestSpec,
    build_request,
    ensure_sendable,
    prettify_json,
)

logger = logging.getLogger(__name__)

BINARY_CONTENT_TYPES = (
    "image/",
    "application/pdf",
    "application/octet-stream",
    "video/",
    "audio/",
)

DEFAULT_FILENAME = "download"


@dataclass(frozen=True)
class ResponseResult:
    """Display-ready result of one dispatch.

    When is_binary is set, body_bytes holds the payload and body_text is a
    short summary. Otherwise body_bytes is empty and body_text is the body.
    """

    status: str = ""
    headers: str = ""
    body_text: str = ""
    is_binary: bool = False
    body_bytes: bytes = b""
    filename: str = ""
    content_type: str = ""
    status_code: int = 0
    elapsed_ms: float = 0
    warnings: tuple[str, ...] = ()

    @property
    def failed(self) -> bool:
        return self.status == "Error"


@dataclass
class TransportOutcome:
    """Raw result of one exchange: a response, or the error that prevented one."""

    url: str
    response: requests.Response | None = None
    error: BaseException | None = None
    elapsed_ms: float = 0


# ── Classification ───────────────────────────────────────────────────────


def status_line(status_code: int) -> str:
    try:
        reason = http.HTTPStatus(status_code).phrase
    except ValueError:
        reason = ""
    return f"{status_code} {reason}"


def render_headers(headers) -> str:
    """Debug-style rendering of a header mapping."""
    if not headers:
        return "{}"
    lines = ["{"]
    for key, value in headers.items():
        lines.append(f"    {json.dumps(key.lower())}: {json.dumps(value)},")
    lines.append("}")
    return "\n".join(lines)


def is_binary_content_type(content_type: str) -> bool:
    return content_type.startswith(BINARY_CONTENT_TYPES)


def suggest_filename(content_disposition: str | None, url: str) -> str:
    """Filename from Content-Disposition, else the URL's last path segment."""
    if content_disposition and "filename=" in content_disposition:
        value = content_disposition.split("filename=", 1)[1]
        return value.splitlines()[0].strip("\"'") if value else ""
    return url.split("/")[-1] or DEFAULT_FILENAME


def _text_encoding(content_type: str) -> str:
    for param in content_type.split(";")[1:]:
        key, _, value = param.partition("=")
        if key.strip().lower() == "charset" and value.strip():
            return value.strip().strip("\"'")
    return "utf-8"


def classify_failure(error: BaseException) -> ResponseResult:
    return ResponseResult(status="Error", body_text=f"Request failed: {error}")


def classify_response(
    response: requests.Response,
    url: str,
    elapsed_ms: float = 0,
) -> ResponseResult:
    """Classify a received response; body read errors end up in body_text."""
    content_type = response.headers.get("content-type", "")
    is_binary = is_binary_content_type(content_type)
    body_bytes = b""

    if is_binary:
        try:
            body_bytes = response.content
            body_text = f"Binary file ({len(body_bytes)} bytes)\n\nContent-Type: {content_type}"
        except requests.exceptions.RequestException as e:
            body_bytes = b""
            body_text = f"Error reading binary data: {e}"
    else:
        response.encoding = _text_encoding(content_type)
        try:
            body_text = prettify_json(response.text)
        except requests.exceptions.RequestException as e:
            body_text = f"Error reading body: {e}"

    return ResponseResult(
        status=status_line(response.status_code),
        headers=render_headers(response.headers),
        body_text=body_text,
        is_binary=is_binary,
        body_bytes=body_bytes,
        filename=suggest_filename(response.headers.get("content-disposition"), url),
        content_type=content_type,
        status_code=response.status_code,
        elapsed_ms=elapsed_ms,
    )


def classify(outcome: TransportOutcome) -> ResponseResult:
    if outcome.response is None:
        return classify_failure(outcome.error)
    return classify_response(outcome.response, outcome.url, outcome.elapsed_ms)


# ── Transport ────────────────────────────────────────────────────────────


def execute_request(request: OutboundRequest, timeout: float | None = None) -> ResponseResult:
    """Send one prepared request and classify whatever comes back.

    Never raises for transport problems - they come back as an "Error"
    result.
    """
    outcome = TransportOutcome(url=request.target_url or request.url)
    with requests.Session() as session:
        start = time.monotonic()
        try:
            settings = session.merge_environment_settings(request.url, {}, True, None, None)
            outcome.response = session.send(
                request.prepared,
                timeout=timeout,
                allow_redirects=True,
                **settings,
            )
        except requests.exceptions.RequestException as e:
            outcome.error = e
        outcome.elapsed_ms = (time.monotonic() - start) * 1000

        try:
            result = classify(outcome)
        finally:
            if outcome.response is not None:
                outcome.response.close()

    if request.warnings:
        result = replace(result, warnings=result.warnings + tuple(request.warnings))
    return result


# ── Dispatch ─────────────────────────────────────────────────────────────


class ResponseChannel:
    """Many-producer, single-consumer delivery of ResponseResults."""

    def __init__(self):
        self._queue: queue.Queue[ResponseResult] = queue.Queue()

    def send(self, result: ResponseResult) -> None:
        self._queue.put(result)

    def poll(self) -> ResponseResult | None:
        """Return the next pending result without blocking, or None."""
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    def wait(self, timeout: float | None = None) -> ResponseResult | None:
        """Block up to timeout seconds for the next result."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def __len__(self) -> int:
        return self._queue.qsize()


class Dispatcher:
    """Runs request dispatches on a long-lived worker pool.

    Each dispatch builds the request (including any form file reads),
    sends it, classifies the outcome and delivers exactly one result to the
    channel. Dispatches are independent: there is no locking between them,
    no cancellation and no retry.
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        channel: ResponseChannel | None = None,
        max_workers: int | None = None,
    ):
        self.config = config or ClientConfig()
        self.channel = channel if channel is not None else ResponseChannel()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="reqpane")
        self._in_flight = 0
        self._lock = threading.Lock()

    @property
    def loading(self) -> bool:
        """Advisory flag: True while any dispatch has not delivered yet."""
        with self._lock:
            return self._in_flight > 0

    def dispatch(self, spec: RequestSpec, channel: ResponseChannel | None = None):
        """Queue spec for sending; raises ConfigurationError before queueing."""
        ensure_sendable(spec)
        sink = channel if channel is not None else self.channel
        with self._lock:
            self._in_flight += 1
        logger.debug("Dispatching %s %s", spec.method.value, spec.url)
        try:
            return self._pool.submit(self._run, spec, sink)
        except RuntimeError:
            # pool already shut down, nothing will deliver
            with self._lock:
                self._in_flight -= 1
            raise

    def _run(self, spec: RequestSpec, sink: ResponseChannel) -> None:
        try:
            try:
                request = build_request(spec, self.config)
                result = execute_request(request, timeout=self.config.timeout)
            except requests.exceptions.RequestException as e:
                # invalid URL or header, raised while preparing
                result = classify_failure(e)
            except Exception as e:
                logger.exception("Dispatch of %s %s failed", spec.method.value, spec.url)
                result = classify_failure(e)
            logger.debug("Delivering %r for %s %s", result.status, spec.method.value, spec.url)
            sink.send(result)
        finally:
            with self._lock:
                self._in_flight -= 1

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.shutdown()
