"""
Unit Tests for dispatch gating and the operation catalog
"""

import pytest

from braindrive_installer.core.catalog.gating import authorize
from braindrive_installer.core.catalog.operations import CATALOG, Classification, get_operation
from braindrive_installer.core.catalog.schemas import CloneRepoInput, PullModelInput
from braindrive_installer.core.domain.errors import (
    InputValidationError,
    LinkDownError,
    PreconditionError,
)


class TestCatalog:
    """Tests for the catalog declaration."""

    def test_catalog_contains_every_operation(self):
        assert set(CATALOG) == {
            "detect_system",
            "check_port",
            "install_conda",
            "clone_repo",
            "create_conda_env",
            "install_conda_env",
            "install_backend_deps",
            "install_frontend_deps",
            "install_all_deps",
            "setup_env_file",
            "install_ollama",
            "pull_ollama_model",
            "start_braindrive",
            "stop_braindrive",
            "restart_braindrive",
            "get_braindrive_status",
        }

    def test_mutating_installs_need_confirmation(self):
        for name in ("install_conda", "clone_repo", "create_conda_env", "start_braindrive"):
            assert CATALOG[name].classification == Classification.REQUIRES_CONFIRMATION

    def test_optional_runtime_needs_completed_install(self):
        assert CATALOG["install_ollama"].classification == Classification.REQUIRES_INSTALL_COMPLETE
        assert CATALOG["pull_ollama_model"].classification == Classification.REQUIRES_INSTALL_COMPLETE

    def test_parameters_schema_has_no_title(self):
        schema = CATALOG["check_port"].parameters_schema
        assert "title" not in schema
        assert schema["required"] == ["port"]

    def test_get_operation_unknown(self):
        assert get_operation("rm_rf") is None


class TestAuthorize:
    """Tests for authorize."""

    def test_safe_operation_passes(self, session):
        params = authorize(CATALOG["check_port"], {"port": 8005}, session, link_up=True)
        assert params.port == 8005

    def test_link_down_checked_first(self, session):
        with pytest.raises(LinkDownError):
            authorize(CATALOG["check_port"], {"port": "not a port"}, session, link_up=False)

    def test_schema_violation(self, session):
        with pytest.raises(InputValidationError) as exc_info:
            authorize(CATALOG["check_port"], {"port": 70000}, session, link_up=True)
        assert "port" in exc_info.value.message
        assert exc_info.value.to_payload()["error_kind"] == "validation"

    def test_unknown_fields_rejected(self, session):
        with pytest.raises(InputValidationError):
            authorize(CATALOG["detect_system"], {"shell": "ls"}, session, link_up=True)

    def test_schema_checked_before_confirmation(self, session):
        with pytest.raises(InputValidationError):
            authorize(
                CATALOG["create_conda_env"],
                {"env_name": "bad name; rm -rf"},
                session,
                link_up=True,
            )

    def test_unconfirmed_mutation_rejected(self, session):
        with pytest.raises(PreconditionError) as exc_info:
            authorize(CATALOG["install_conda"], {}, session, link_up=True)
        assert exc_info.value.to_payload()["error_kind"] == "precondition_not_met"

    def test_confirmed_mutation_passes(self, session):
        params = authorize(CATALOG["install_conda"], {"user_confirmed": True}, session, link_up=True)
        assert params.user_confirmed

    def test_install_complete_gate(self, session):
        with pytest.raises(PreconditionError):
            authorize(CATALOG["pull_ollama_model"], {"model": "llama3.2:3b"}, session, link_up=True)
        session.mark_install_completed()
        params = authorize(
            CATALOG["pull_ollama_model"], {"model": "llama3.2:3b"}, session, link_up=True
        )
        assert params.model == "llama3.2:3b"


class TestInputSchemas:
    """Allow-list validation of identifiers and paths."""

    @pytest.mark.parametrize(
        "target_path", ["../../etc", "BrainDrive/../..", "a;rm -rf /", "$(whoami)"]
    )
    def test_clone_target_rejects_unsafe_paths(self, target_path):
        with pytest.raises(ValueError):
            CloneRepoInput(target_path=target_path)

    @pytest.mark.parametrize("repo_url", ["file:///etc", "http://example.com/x.git", "https://x/y.git;ls"])
    def test_clone_rejects_unsafe_urls(self, repo_url):
        with pytest.raises(ValueError):
            CloneRepoInput(repo_url=repo_url)

    def test_clone_defaults(self):
        params = CloneRepoInput()
        assert params.repo_url.startswith("https://")
        assert params.target_path is None

    @pytest.mark.parametrize("model", ["llama3.2:3b", "library/mistral:7b-instruct", "qwen2.5"])
    def test_model_names_accepted(self, model):
        assert PullModelInput(model=model).model == model

    @pytest.mark.parametrize("model", ["llama; rm", "model name", ""])
    def test_model_names_rejected(self, model):
        with pytest.raises(ValueError):
            PullModelInput(model=model)
