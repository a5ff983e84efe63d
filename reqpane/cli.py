"""reqpane CLI - fire one REST request and inspect the response."""

import logging
import sys
import time
from dataclasses import replace
from pathlib import Path

import click

POLL_INTERVAL = 0.05

# Project marker file -> port its dev server usually listens on
DEV_SERVER_PORTS = (
    ("package.json", 3000),
    ("pyproject.toml", 8000),
    ("requirements.txt", 8000),
    ("manage.py", 8000),
    ("go.mod", 8080),
    ("Cargo.toml", 8080),
    ("pom.xml", 8080),
    ("Gemfile", 3000),
)
DEFAULT_DEV_PORT = 3000

TOOL_HELP = """\
reqpane - interactive REST client.

Assembles a request from structured fields, sends it in the background
and prints the classified response.

\b
EXAMPLES
────────
  reqpane GET https://jsonplaceholder.typicode.com/posts/1
  reqpane POST http://localhost:3000/api/users -b '{"name":"test"}'
  reqpane PUT /api/users/1 -b '{"name":"x"}' -H 'X-Trace: 1'
  reqpane POST /upload -F title=Report -F file=@report.pdf -F file=@cover.png
  reqpane GET /api/report.pdf --save --open

\b
HEADERS
───────
  -H 'Name: Value' is repeatable. --headers-file reads the same
  'Name: Value' lines from a file; lines starting with # and blank
  lines are ignored, malformed lines are dropped, the last duplicate wins.

\b
BODY
────
  POST, PUT and PATCH carry a body, GET and DELETE never do.
  -b sends JSON (Content-Type: application/json).
  -F sends multipart/form-data: KEY=VALUE for text, KEY=@PATH for files.
  Files that cannot be read are skipped with a warning.

\b
AUTH
────
  --bearer TOKEN sets 'Authorization: Bearer TOKEN' and overrides any
  Authorization header given with -H.

\b
OUTPUT FORMAT
─────────────
    STATUS: 200 OK
    TIME: 45ms
    BODY:
    {
      "id": 1
    }

  JSON bodies are pretty-printed. Binary responses (images, PDF, audio,
  video, octet-stream) print a summary; use -o/--save to write them out.

\b
CONFIG FILE FORMAT (.reqpane.yaml)
──────────────────────────────────
  Config resolution order:
    1. -c/--config flag (explicit path)
    2. .reqpane.yaml / .reqpane.yml / reqpane.yaml / reqpane.yml in CWD
    3. ~/.reqpane/config.yaml (global)

  \b
  defaults:
    base_url: ${API_BASE_URL}       # env var resolved at runtime
    env_file: .env                  # load .env file
    timeout: 30                     # seconds, no timeout if unset
    headers:
      Accept: application/json
    auth:
      type: bearer                  # bearer only
      token: ${API_TOKEN}
"""


@click.command(
    cls=click.Command,
    help=TOOL_HELP,
    context_settings={"max_content_width": 88},
)
@click.argument("method", required=False)
@click.argument("url", required=False)
@click.option(
    "-c",
    "--config",
    "config_file",
    default=None,
    help="Config file path. Default: .reqpane.yaml in CWD, then ~/.reqpane/config.yaml.",
)
@click.option(
    "-H",
    "--header",
    multiple=True,
    help="HTTP header as 'Name: Value'. Repeatable.",
)
@click.option(
    "--headers-file",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="File with one 'Name: Value' header per line.",
)
@click.option("-b", "--body", default=None, help="Request body as JSON string.")
@click.option(
    "-F",
    "--form",
    "form_fields",
    multiple=True,
    help="Form field as KEY=VALUE or KEY=@FILE for file upload. "
    "Sends multipart/form-data. Repeatable. "
    "Mutually exclusive with --body.",
)
@click.option("--bearer", "bearer_token", default=None, help="Bearer token for Authorization.")
@click.option(
    "--timeout",
    type=float,
    default=None,
    help="Request timeout in seconds. Default: from config, else none.",
)
@click.option(
    "--prettify-body",
    is_flag=True,
    default=False,
    help="Re-indent the JSON request body before sending.",
)
@click.option(
    "--verbose",
    is_flag=True,
    default=False,
    help="Include response headers in output.",
)
@click.option(
    "--raw",
    is_flag=True,
    default=False,
    help="Output the response body only.",
)
@click.option(
    "-o",
    "--output",
    "output_path",
    default=None,
    help="Save the response body to this path.",
)
@click.option(
    "--save",
    is_flag=True,
    default=False,
    help="Save the response body under its suggested filename.",
)
@click.option(
    "--open",
    "open_after",
    is_flag=True,
    default=False,
    help="Open the saved response with the system default application.",
)
@click.option("--debug", is_flag=True, default=False, help="Enable debug logging.")
@click.option(
    "--init",
    "do_init",
    is_flag=True,
    default=False,
    help="Scaffold .reqpane.yaml in CWD.",
)
def main(
    method,
    url,
    config_file,
    header,
    headers_file,
    body,
    form_fields,
    bearer_token,
    timeout,
    prettify_body,
    verbose,
    raw,
    output_path,
    save,
    open_after,
    debug,
    do_init,
):
    """Send a REST request and print the classified response."""
    from reqpane.core import ConfigurationError, HttpMethod, load_client_config

    if debug:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

    if form_fields and body:
        click.echo("ERROR: --form and --body are mutually exclusive.", err=True)
        sys.exit(1)

    if do_init:
        _cmd_init()
        return

    if method is None or url is None:
        ctx = click.get_current_context()
        click.echo(ctx.get_help())
        ctx.exit(1)

    try:
        http_method = HttpMethod(method.upper())
    except ValueError:
        allowed = ", ".join(m.value for m in HttpMethod)
        click.echo(f"ERROR: Unsupported method '{method}'. Use one of: {allowed}.", err=True)
        sys.exit(1)

    config = load_client_config(config_file)
    if timeout is not None:
        config = replace(config, timeout=timeout)

    raw_headers = _collect_raw_headers(header, headers_file)
    spec = _build_spec(
        http_method,
        url,
        raw_headers,
        body,
        form_fields,
        bearer_token if bearer_token is not None else config.bearer_token,
        prettify_body,
    )

    try:
        result = _send(spec, config)
    except ConfigurationError as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(1)

    for warning in result.warnings:
        click.echo(f"WARNING: {warning}", err=True)

    if result.failed:
        click.echo(f"ERROR: {result.body_text}", err=True)
        sys.exit(1)

    from reqpane.output import format_output

    click.echo(format_output(result, verbose=verbose, raw=raw))
    _handle_save(result, output_path, save, open_after)


# ── Helpers ──────────────────────────────────────────────────────────────


def _send(spec, config):
    """Dispatch in the background and poll the channel until the result lands."""
    from reqpane.executor import Dispatcher

    with Dispatcher(config=config) as dispatcher:
        dispatcher.dispatch(spec)
        return _await_result(dispatcher.channel)


def _await_result(channel, interval=POLL_INTERVAL):
    while True:
        result = channel.poll()
        if result is not None:
            return result
        time.sleep(interval)


def _collect_raw_headers(header_lines, headers_file):
    """Join --headers-file contents and -H values into one raw header text."""
    parts = []
    if headers_file:
        parts.append(Path(headers_file).read_text())
    parts.extend(header_lines)
    return "\n".join(parts)


def _parse_form_fields(form_specs):
    """Parse KEY=VALUE and KEY=@FILE specs into FormFields, keeping order."""
    from reqpane.core import FieldKind, FormField

    fields = []
    for spec in form_specs:
        if "=" not in spec:
            continue
        key, value = spec.split("=", 1)
        key = key.strip()
        if value.startswith("@"):
            fields.append(FormField(key=key, kind=FieldKind.FILE, file_paths=(value[1:],)))
        else:
            fields.append(FormField(key=key, kind=FieldKind.TEXT, value=value))
    return tuple(fields)


def _build_spec(method, url, raw_headers, body, form_specs, token, prettify_body=False):
    from reqpane.core import BearerAuth, BodyEncoding, RequestSpec, prettify_json

    json_body = body or ""
    if prettify_body and json_body:
        json_body = prettify_json(json_body)

    return RequestSpec(
        url=url,
        method=method,
        raw_headers=raw_headers,
        body_encoding=BodyEncoding.FORM_DATA if form_specs else BodyEncoding.JSON,
        json_body=json_body,
        form_fields=_parse_form_fields(form_specs),
        auth=BearerAuth(token) if token else None,
    )


def _handle_save(result, output_path, save, open_after):
    """Handle -o/--output, --save and --open."""
    if not (output_path or save or open_after):
        return

    from reqpane.output import open_saved, save_response

    try:
        path = save_response(result, output_path)
    except OSError as e:
        click.echo(f"ERROR: Could not save response: {e}", err=True)
        sys.exit(1)
    click.echo(f"Saved: {path}", err=True)

    if open_after:
        open_saved(path)


def _cmd_init():
    """Scaffold .reqpane.yaml in CWD."""
    config_file = Path(".reqpane.yaml")

    if config_file.exists():
        click.echo(f"  {config_file} (skipped, already exists)")
    else:
        base_url = _detect_base_url()
        config_file.write_text(_generate_config(base_url))
        click.echo(f"  {config_file} (created)")

    click.echo("\nProject initialized. Run 'reqpane --help' to get started.")


def _detect_base_url(project_dir: Path = Path(".")) -> str:
    """Guess a localhost base URL from the project files in project_dir."""
    port = next(
        (port for marker, port in DEV_SERVER_PORTS if (project_dir / marker).exists()),
        DEFAULT_DEV_PORT,
    )
    return f"http://localhost:{port}"


def _generate_config(base_url: str) -> str:
    """Return .reqpane.yaml content string."""
    return f"""\
# reqpane configuration
# See: reqpane --help

defaults:
  base_url: {base_url}
  # env_file: .env
  # timeout: 30
  headers:
    Accept: application/json
  # auth:
  #   type: bearer
  #   token: ${{API_TOKEN}}
"""
