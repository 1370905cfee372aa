"""Tests for the error taxonomy."""

import json

import pytest
from kubernetes.client.rest import ApiException

from gitops_controller.exceptions import (
    ApplicationNotFoundError,
    ApplyFatalError,
    ApplyTransientError,
    ClusterAccessError,
    ConfigurationError,
    InvalidResourceSpec,
    ObservationError,
    RenderError,
    SourceUnavailable,
    StateTransitionError,
    ValidationError,
    classify_api_exception,
)


@pytest.mark.parametrize("error,exit_code,retryable", [
    (SourceUnavailable("https://git.example.com/repo.git"), 3, True),
    (RenderError("bad yaml"), 4, False),
    (ObservationError("timeout"), 5, True),
    (InvalidResourceSpec("no name"), 6, False),
    (ApplyTransientError("throttled"), 7, True),
    (ApplyFatalError("denied"), 8, False),
    (ClusterAccessError(), 9, False),
    (ConfigurationError("bad config"), 2, False),
    (StateTransitionError("web", "Degraded", "Synced"), 2, False),
])
def test_exit_codes(error, exit_code, retryable):
    assert error.exit_code == exit_code
    assert error.retryable is retryable


def test_messages_include_context():
    assert str(SourceUnavailable("https://git.example.com/repo.git", "timed out")) == (
        "Manifest source unavailable: https://git.example.com/repo.git - timed out"
    )
    assert RenderError("line 3: mapping expected", "app/deploy.yaml").message == "app/deploy.yaml: line 3: mapping expected"
    assert InvalidResourceSpec("dependency cycle", "ConfigMap/web/a").message == "ConfigMap/web/a: dependency cycle"


def test_troubleshooting_text():
    error = ApplicationNotFoundError("guestbook")
    text = error.get_troubleshooting_text()

    assert text.startswith("Troubleshooting:")
    assert "• List registered applications: gitops-controller app list" in text


def test_troubleshooting_mentions_resource():
    error = ApplyFatalError("denied", "Deployment/web/api")
    assert error.troubleshooting[0] == "Describe the resource: kubectl describe Deployment/web/api"


def test_validation_error_has_its_own_guidance():
    error = ValidationError("bad name", field="name")
    assert isinstance(error, ConfigurationError)
    assert error.field == "name"
    assert any("DNS-1123" in step for step in error.troubleshooting)


def test_no_troubleshooting_text_when_empty():
    error = ApplicationNotFoundError("x")
    error.troubleshooting = []
    assert error.get_troubleshooting_text() == ""


@pytest.mark.parametrize("status,error_type", [
    (409, ApplyTransientError),
    (429, ApplyTransientError),
    (503, ApplyTransientError),
    (400, ApplyFatalError),
    (403, ApplyFatalError),
    (404, ApplyFatalError),
    (422, ApplyFatalError),
])
def test_classify_api_exception(status, error_type):
    error = classify_api_exception(ApiException(status=status, reason="reason"), "patch ConfigMap/web/a", "ConfigMap/web/a")

    assert isinstance(error, error_type)
    assert error.status == status
    assert error.resource == "ConfigMap/web/a"


def test_classify_api_exception_prefers_body_message():
    e = ApiException(status=403, reason="Forbidden")
    e.body = json.dumps({"message": 'configmaps "a" is forbidden: User "ci" cannot patch'})

    error = classify_api_exception(e, "patch ConfigMap/web/a")

    assert error.message == 'Forbidden during patch ConfigMap/web/a: configmaps "a" is forbidden: User "ci" cannot patch'


def test_classify_non_api_exception_is_transient():
    error = classify_api_exception(ConnectionRefusedError("refused"), "create ConfigMap/web/a")

    assert isinstance(error, ApplyTransientError)
    assert "refused" in error.message
