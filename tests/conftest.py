"""Shared fixtures for the Spexus test-suite."""

from __future__ import annotations

import os

import pytest

from spexus.service import RequirementsService


@pytest.fixture()
def service(tmp_path):
    """Service backed by a throw-away SQLite file and a missing config file."""

    return RequirementsService(
        config_path=os.path.join(tmp_path, "config.yml"),
        db_path=os.path.join(tmp_path, "spexus.sqlite"),
    )


@pytest.fixture()
def editor(service):
    user, _token = service.create_user("alice", email="alice@example.com")
    return user


@pytest.fixture()
def admin(service):
    user, _token = service.create_user("root", role="administrator")
    return user


@pytest.fixture()
def commenter(service):
    user, _token = service.create_user("carol", role="commenter")
    return user


@pytest.fixture()
def functional_type(service):
    return next(
        row for row in service.list_requirement_types() if row["name"] == "Functional"
    )
