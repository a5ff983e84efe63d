"""Shared fixtures for reqpane scenario tests."""

import io

import pytest
import requests
from click.testing import CliRunner
from requests.structures import CaseInsensitiveDict

from reqpane import core


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def global_reqpane_dir(tmp_path, monkeypatch):
    """Override the global ~/.reqpane directory to a temp location."""
    fake_global = tmp_path / "fake_home" / ".reqpane"
    fake_global.mkdir(parents=True)
    monkeypatch.setattr(core, "GLOBAL_DIR", fake_global)
    monkeypatch.setattr(core, "GLOBAL_CONFIG", fake_global / "config.yaml")
    return fake_global


@pytest.fixture
def tmp_project(tmp_path, monkeypatch, global_reqpane_dir):
    """Run inside an empty project directory with no global config."""
    project = tmp_path / "project"
    project.mkdir()
    monkeypatch.chdir(project)
    return project


class BrokenRaw(io.RawIOBase):
    """Response stream that dies while the body is being read."""

    def read(self, size=-1):
        raise requests.exceptions.ChunkedEncodingError("connection dropped mid-body")


def make_response(status_code=200, body=b"", headers=None, raw=None):
    """Factory for real requests.Response objects with an unread body."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    resp = requests.Response()
    resp.status_code = status_code
    resp.headers = CaseInsensitiveDict(headers or {})
    resp.raw = raw if raw is not None else io.BytesIO(body)
    return resp
