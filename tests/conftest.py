"""Shared fakes for the generation pipeline tests."""

from unittest.mock import MagicMock

import pytest

from store import ProjectStore, User

SAMPLE_HTML = "<!DOCTYPE html><html><head><title>t</title></head><body><p>hi</p></body></html>"


@pytest.fixture
def store(tmp_path):
    return ProjectStore(tmp_path / "data")


@pytest.fixture
def user():
    return User(id="u1", api_key="sk-user")


@pytest.fixture
def refiner():
    agent = MagicMock()
    agent.expand.return_value = "expanded spec"
    return agent


@pytest.fixture
def builder():
    agent = MagicMock()
    agent.generate.return_value = SAMPLE_HTML
    return agent
