"""Tests for Dispatcher + ResponseChannel: one result per dispatch, failures as results."""

import threading
from unittest.mock import patch

import pytest
import requests

from reqpane.core import (
    BodyEncoding,
    ClientConfig,
    ConfigurationError,
    FieldKind,
    FormField,
    HttpMethod,
    RequestSpec,
    build_request,
)
from reqpane.executor import Dispatcher, ResponseChannel, ResponseResult, execute_request
from tests.conftest import make_response

WAIT = 5


@pytest.fixture
def dispatcher():
    d = Dispatcher()
    yield d
    d.shutdown()


# ── ResponseChannel ──────────────────────────────────────────────────────


class TestResponseChannel:
    def test_poll_empty_returns_none(self):
        assert ResponseChannel().poll() is None

    def test_poll_returns_one_result_at_a_time(self):
        channel = ResponseChannel()
        first, second = ResponseResult(status="200 OK"), ResponseResult(status="201 Created")
        channel.send(first)
        channel.send(second)
        assert len(channel) == 2
        assert channel.poll() is first
        assert channel.poll() is second
        assert channel.poll() is None

    def test_wait_times_out(self):
        assert ResponseChannel().wait(timeout=0.01) is None


# ── Successful dispatch ──────────────────────────────────────────────────


class TestDispatchSuccess:
    @patch("reqpane.executor.requests.Session.send")
    def test_single_result_delivered(self, mock_send, dispatcher):
        mock_send.return_value = make_response(
            body=b'{"ok":true}',
            headers={"content-type": "application/json"},
        )
        dispatcher.dispatch(RequestSpec(url="http://localhost:3000/health"))

        result = dispatcher.channel.wait(timeout=WAIT)
        assert result.status == "200 OK"
        assert '"ok": true' in result.body_text
        assert dispatcher.channel.wait(timeout=0.05) is None

    @patch("reqpane.executor.requests.Session.send")
    def test_prepared_request_sent(self, mock_send, dispatcher):
        mock_send.return_value = make_response()
        spec = RequestSpec(
            url="http://localhost:3000/api",
            method=HttpMethod.POST,
            json_body='{"a":1}',
            raw_headers="X-Trace: 7",
        )
        dispatcher.dispatch(spec)
        dispatcher.channel.wait(timeout=WAIT)

        prepared = mock_send.call_args[0][0]
        assert prepared.method == "POST"
        assert prepared.url == "http://localhost:3000/api"
        assert prepared.body == b'{"a":1}'
        assert prepared.headers["X-Trace"] == "7"
        assert mock_send.call_args[1]["allow_redirects"] is True

    @patch("reqpane.executor.requests.Session.send")
    def test_config_timeout_and_base_url_used(self, mock_send):
        mock_send.return_value = make_response()
        config = ClientConfig(base_url="http://localhost:8000", timeout=5)
        with Dispatcher(config=config) as d:
            d.dispatch(RequestSpec(url="/health"))
            d.channel.wait(timeout=WAIT)

        assert mock_send.call_args[0][0].url == "http://localhost:8000/health"
        assert mock_send.call_args[1]["timeout"] == 5

    @patch("reqpane.executor.requests.Session.send")
    def test_explicit_channel(self, mock_send, dispatcher):
        mock_send.return_value = make_response(status_code=204)
        own = ResponseChannel()
        dispatcher.dispatch(RequestSpec(url="http://localhost:3000/x"), channel=own)

        assert own.wait(timeout=WAIT).status == "204 No Content"
        assert dispatcher.channel.poll() is None

    @patch("reqpane.executor.requests.Session.send")
    def test_constructor_channel_kept(self, mock_send):
        mock_send.return_value = make_response(status_code=201)
        own = ResponseChannel()
        with Dispatcher(channel=own) as d:
            assert d.channel is own
            d.dispatch(RequestSpec(url="http://localhost:3000/x"))
            assert own.wait(timeout=WAIT).status == "201 Created"

    @patch("reqpane.executor.requests.Session.send")
    def test_non_latin1_header_dropped_request_still_sent(self, mock_send, dispatcher):
        mock_send.return_value = make_response()
        dispatcher.dispatch(
            RequestSpec(url="http://localhost:3000/x", raw_headers="X-Emoji: \U0001f600\nX-Ok: 1")
        )
        result = dispatcher.channel.wait(timeout=WAIT)
        assert result.status == "200 OK"
        headers = mock_send.call_args[0][0].headers
        assert headers["X-Ok"] == "1"
        assert "X-Emoji" not in headers

    @patch("reqpane.executor.requests.Session.send")
    def test_filename_from_url_as_typed(self, mock_send, dispatcher):
        mock_send.return_value = make_response(body=b"hi", headers={"Content-Type": "text/plain"})
        dispatcher.dispatch(RequestSpec(url="https://x.test"))
        assert dispatcher.channel.wait(timeout=WAIT).filename == "x.test"

    @patch("reqpane.executor.requests.Session.send")
    def test_concurrent_dispatches_deliver_independently(self, mock_send):
        release = threading.Event()

        def _send(prepared, **kwargs):
            if prepared.url.endswith("/slow"):
                release.wait(WAIT)
                return make_response(status_code=202)
            return make_response(status_code=201)

        mock_send.side_effect = _send
        with Dispatcher(max_workers=2) as d:
            d.dispatch(RequestSpec(url="http://localhost:3000/slow"))
            d.dispatch(RequestSpec(url="http://localhost:3000/fast"))

            first = d.channel.wait(timeout=WAIT)
            assert first.status == "201 Created"
            assert d.loading is True

            release.set()
            second = d.channel.wait(timeout=WAIT)
            assert second.status == "202 Accepted"

        assert d.loading is False

    @patch("reqpane.executor.requests.Session.send")
    def test_form_warnings_reach_result(self, mock_send, dispatcher, tmp_path):
        mock_send.return_value = make_response()
        spec = RequestSpec(
            url="http://localhost:3000/upload",
            method=HttpMethod.POST,
            body_encoding=BodyEncoding.FORM_DATA,
            form_fields=(
                FormField(key="doc", kind=FieldKind.FILE, file_paths=(str(tmp_path / "nope.pdf"),)),
            ),
        )
        dispatcher.dispatch(spec)
        result = dispatcher.channel.wait(timeout=WAIT)
        assert result.status == "200 OK"
        assert len(result.warnings) == 1
        assert "nope.pdf" in result.warnings[0]


# ── Failure paths ────────────────────────────────────────────────────────


class TestDispatchFailure:
    @patch("reqpane.executor.requests.Session.send")
    def test_connection_error_becomes_result(self, mock_send, dispatcher):
        mock_send.side_effect = requests.exceptions.ConnectionError("Connection refused")
        dispatcher.dispatch(RequestSpec(url="http://localhost:9999/health"))

        result = dispatcher.channel.wait(timeout=WAIT)
        assert result.status == "Error"
        assert result.body_text == "Request failed: Connection refused"
        assert dispatcher.channel.wait(timeout=0.05) is None

    @patch("reqpane.executor.requests.Session.send")
    def test_timeout_becomes_result(self, mock_send, dispatcher):
        mock_send.side_effect = requests.exceptions.ReadTimeout("read timed out")
        dispatcher.dispatch(RequestSpec(url="http://localhost:3000/slow"))
        assert dispatcher.channel.wait(timeout=WAIT).body_text == "Request failed: read timed out"

    @patch("reqpane.executor.requests.Session.send")
    def test_unexpected_exception_becomes_result(self, mock_send, dispatcher):
        mock_send.side_effect = RuntimeError("boom")
        dispatcher.dispatch(RequestSpec(url="http://localhost:3000/x"))

        result = dispatcher.channel.wait(timeout=WAIT)
        assert result.status == "Error"
        assert result.body_text == "Request failed: boom"

    def test_url_without_scheme_becomes_result(self, dispatcher):
        dispatcher.dispatch(RequestSpec(url="/api/health"))
        result = dispatcher.channel.wait(timeout=WAIT)
        assert result.status == "Error"
        assert result.body_text.startswith("Request failed: Invalid URL")

    def test_blank_url_rejected_synchronously(self, dispatcher):
        with pytest.raises(ConfigurationError):
            dispatcher.dispatch(RequestSpec(url="   "))
        assert dispatcher.loading is False
        assert dispatcher.channel.poll() is None

    def test_dispatch_after_shutdown_does_not_stick_loading(self):
        d = Dispatcher()
        d.shutdown()
        with pytest.raises(RuntimeError):
            d.dispatch(RequestSpec(url="http://localhost:3000/x"))
        assert d.loading is False


# ── execute_request ──────────────────────────────────────────────────────


class TestExecuteRequest:
    @patch("reqpane.executor.requests.Session.send")
    def test_elapsed_recorded(self, mock_send):
        mock_send.return_value = make_response()
        result = execute_request(build_request(RequestSpec(url="http://localhost:3000/")))
        assert result.elapsed_ms >= 0
        assert result.status == "200 OK"

    @patch("reqpane.executor.requests.Session.send")
    def test_response_streamed_then_closed(self, mock_send):
        resp = make_response(body=b"done")
        mock_send.return_value = resp
        result = execute_request(build_request(RequestSpec(url="http://localhost:3000/")))
        assert result.body_text == "done"
        assert mock_send.call_args[1]["stream"] is True
        assert resp.raw.closed or resp._content_consumed
