"""reqpane core - config loading, request model, header parsing, request building."""

import enum
import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

import requests
import yaml
from dotenv import dotenv_values
from requests.structures import CaseInsensitiveDict

logger = logging.getLogger(__name__)

GLOBAL_DIR = Path.home() / ".reqpane"
GLOBAL_CONFIG = GLOBAL_DIR / "config.yaml"

CWD_CONFIG_CANDIDATES = [
    ".reqpane.yaml",
    ".reqpane.yml",
    "reqpane.yaml",
    "reqpane.yml",
]

# RFC 7230 token characters
_HEADER_NAME_RE = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")
_HEADER_VALUE_FORBIDDEN_RE = re.compile(r"[\x00-\x08\x0a-\x1f\x7f]")


class ConfigurationError(ValueError):
    """Raised when a request cannot be sent as configured (e.g. empty URL)."""


class HttpMethod(enum.Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"
    PATCH = "PATCH"

    @property
    def allows_body(self) -> bool:
        return self in (HttpMethod.POST, HttpMethod.PUT, HttpMethod.PATCH)


class BodyEncoding(enum.Enum):
    JSON = "json"
    FORM_DATA = "form-data"


class FieldKind(enum.Enum):
    TEXT = "text"
    FILE = "file"


@dataclass(frozen=True)
class FormField:
    key: str
    kind: FieldKind = FieldKind.TEXT
    value: str = ""
    file_paths: tuple[str, ...] = ()


@dataclass(frozen=True)
class BearerAuth:
    token: str


@dataclass(frozen=True)
class RequestSpec:
    """Snapshot of everything the user configured for one request."""

    url: str
    method: HttpMethod = HttpMethod.GET
    raw_headers: str = ""
    body_encoding: BodyEncoding = BodyEncoding.JSON
    json_body: str = ""
    form_fields: tuple[FormField, ...] = ()
    auth: BearerAuth | None = None


@dataclass(frozen=True)
class ClientConfig:
    """Ambient defaults applied to every request built with this config."""

    base_url: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float | None = None
    bearer_token: str = ""


@dataclass
class MultipartBody:
    parts: list[tuple[str, tuple[str | None, str | bytes]]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class OutboundRequest:
    """A prepared request ready for transport, plus anything worth telling the user."""

    prepared: requests.PreparedRequest
    warnings: list[str] = field(default_factory=list)
    # URL as the user resolved it, before requests normalizes it
    target_url: str = ""

    @property
    def method(self) -> str:
        return self.prepared.method

    @property
    def url(self) -> str:
        return self.prepared.url

    @property
    def headers(self) -> CaseInsensitiveDict:
        return self.prepared.headers

    @property
    def body(self) -> bytes | str | None:
        return self.prepared.body


# ── Configuration ────────────────────────────────────────────────────────

_ENV_REF_RE = re.compile(r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


def find_config(config_file: str | None = None) -> Path | None:
    """Locate the config file for this invocation.

    An explicit path is used as-is and never falls through to the other
    locations. Otherwise the CWD candidates are tried in order, then the
    global config.
    """
    if config_file:
        candidates = [Path(config_file)]
    else:
        candidates = [Path(name) for name in CWD_CONFIG_CANDIDATES] + [GLOBAL_CONFIG]
    return next((p.resolve() for p in candidates if p.is_file()), None)


def expand_env(value, env: dict[str, str]):
    """Substitute $VAR / ${VAR} references; unknown names stay literal."""
    if not isinstance(value, str):
        return value
    return _ENV_REF_RE.sub(lambda m: env.get(m.group(1) or m.group(2), m.group(0)), value)


def build_client_config(defaults: dict, env: dict[str, str]) -> ClientConfig:
    """Turn a `defaults:` mapping into a ClientConfig, expanding env references."""
    headers = {
        str(name): str(expand_env(str(value), env))
        for name, value in (defaults.get("headers") or {}).items()
    }

    token = ""
    auth = defaults.get("auth") or {}
    if str(auth.get("type", "")).lower() == "bearer":
        token = expand_env(auth.get("token") or "", env)
    elif auth:
        logger.warning("Ignoring unsupported auth type %r in config", auth.get("type"))

    timeout = defaults.get("timeout")
    return ClientConfig(
        base_url=expand_env(defaults.get("base_url") or "", env),
        headers=headers,
        timeout=float(timeout) if timeout else None,
        bearer_token=token,
    )


def load_client_config(config_file: str | None = None) -> ClientConfig:
    """Find, read and interpret the config file.

    No config file at all gives an empty ClientConfig. `env_file` is read
    relative to the config file's directory and its values take precedence
    over the process environment.
    """
    path = find_config(config_file)
    if path is None:
        return ClientConfig()

    with open(path) as f:
        defaults = (yaml.safe_load(f) or {}).get("defaults") or {}

    env = dict(os.environ)
    env_file = defaults.get("env_file")
    if env_file:
        dotenv_path = path.parent / env_file
        if dotenv_path.is_file():
            env.update({k: v for k, v in dotenv_values(dotenv_path).items() if v is not None})
        else:
            logger.debug("env_file %s not found, using the process environment", dotenv_path)

    return build_client_config(defaults, env)


# ── Header parsing ───────────────────────────────────────────────────────


def is_valid_header(name: str, value: str) -> bool:
    """Token name, no control characters, and a value http.client can encode."""
    if not _HEADER_NAME_RE.match(name) or _HEADER_VALUE_FORBIDDEN_RE.search(value):
        return False
    try:
        value.encode("latin-1")
    except UnicodeEncodeError:
        return False
    return True


def parse_headers(raw_headers: str) -> CaseInsensitiveDict:
    """Parse 'Key: Value' lines into a case-insensitive header mapping.

    Blank lines and lines starting with '#' are comments. Lines without a
    colon, or whose name/value is not a legal header, are dropped. The last
    occurrence of a header wins.
    """
    headers = CaseInsensitiveDict()
    for line in (raw_headers or "").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition(":")
        key, value = key.strip(), value.strip()
        if not sep or not is_valid_header(key, value):
            logger.debug("Dropping malformed header line: %r", line)
            continue
        headers[key] = value
    return headers


def format_headers(headers) -> str:
    """Render a header mapping back into 'Key: Value' lines."""
    return "\n".join(f"{k}: {v}" for k, v in headers.items())


# ── Form encoding ────────────────────────────────────────────────────────


def encode_form(fields) -> MultipartBody:
    """Encode form fields into ordered multipart parts.

    Files that cannot be read are left out of the body; a warning is
    recorded for each one instead of failing the request.
    """
    body = MultipartBody()
    for form_field in fields:
        if not form_field.key:
            continue
        if form_field.kind is FieldKind.TEXT:
            body.parts.append((form_field.key, (None, form_field.value)))
            continue
        for path in form_field.file_paths:
            try:
                content = Path(path).read_bytes()
            except OSError as e:
                message = f"Skipped file '{path}' for field '{form_field.key}': {e}"
                logger.warning("%s", message)
                body.warnings.append(message)
                continue
            filename = Path(path).name or "file"
            body.parts.append((form_field.key, (filename, content)))
    return body


# ── Request building ─────────────────────────────────────────────────────


def ensure_sendable(spec: RequestSpec) -> None:
    """Reject specs that must never reach the dispatcher."""
    if not spec.url or not spec.url.strip():
        raise ConfigurationError("URL is required.")


def resolve_url(url: str, config: ClientConfig | None = None) -> str:
    url = url.strip()
    if config and config.base_url and not url.startswith(("http://", "https://")):
        base_url = config.base_url.rstrip("/")
        if not url.startswith("/"):
            url = "/" + url
        return base_url + url
    return url


def prettify_json(text: str) -> str:
    """Re-indent text that parses as JSON; anything else is returned unchanged."""
    try:
        return json.dumps(json.loads(text), indent=2, ensure_ascii=False)
    except (ValueError, TypeError, RecursionError):
        return text


def build_request(spec: RequestSpec, config: ClientConfig | None = None) -> OutboundRequest:
    """Assemble the outbound request for a spec.

    Header precedence, lowest to highest: config defaults, the JSON
    content type, raw user headers, bearer auth.
    """
    config = config or ClientConfig()
    warnings: list[str] = []

    headers = CaseInsensitiveDict(config.headers)
    data = None
    files = None

    if spec.method.allows_body:
        if spec.body_encoding is BodyEncoding.JSON:
            headers["Content-Type"] = "application/json"
            if spec.json_body:
                data = spec.json_body.encode("utf-8")
        else:
            form = encode_form(spec.form_fields)
            files = form.parts
            warnings.extend(form.warnings)

    headers.update(parse_headers(spec.raw_headers))

    if files is not None:
        # requests must generate the multipart boundary itself
        headers.pop("Content-Type", None)

    if spec.auth is not None and spec.auth.token:
        headers["Authorization"] = f"Bearer {spec.auth.token}"

    url = resolve_url(spec.url, config)
    request = requests.Request(
        method=spec.method.value,
        url=url,
        headers=dict(headers),
        data=data,
        files=files,
    )
    return OutboundRequest(prepared=request.prepare(), warnings=warnings, target_url=url)
