"""Unit tests for the CLI module."""

import pytest
from click.testing import CliRunner
from unittest.mock import MagicMock, patch

from bookflow.cli import cli
from bookflow.error_handling import NotFoundError


@pytest.fixture
def runner():
    return CliRunner()


class TestTransitionCommand:
    """The offline transition checker."""

    def test_batch_with_failures(self, runner):
        result = runner.invoke(cli, [
            "transition", "character_generation", "batch-completed", "--succeeded", "2", "--failed", "1",
        ])
        assert result.exit_code == 0
        assert "character_generation_failed" in result.output

    def test_legacy_alias_is_reported(self, runner):
        result = runner.invoke(cli, ["transition", "trial_review", "customer-approved", "--phase", "illustration"])
        assert result.exit_code == 0
        assert "sketches_review" in result.output
        assert "illustration_approved" in result.output

    def test_missing_images_win(self, runner):
        result = runner.invoke(cli, [
            "transition", "character_review", "review-submitted", "--missing-images", "--unresolved",
        ])
        assert result.output.strip().endswith("character_generation")

    def test_rejected_event(self, runner):
        result = runner.invoke(cli, ["transition", "completed", "material-sent"])
        assert result.exit_code == 1
        assert "Rejected" in result.output


class TestStatusCommand:
    def test_status_prints_tables(self, runner, store, project, main_character, pages):
        service = MagicMock()
        service.get_project_overview.side_effect = lambda pid: {
            "project": project.model_dump(mode="json"),
            "canonical_status": "character_review",
            "characters": [main_character.model_dump(mode="json")],
            "pages": [p.model_dump(mode="json") for p in pages],
        }
        with patch("bookflow.cli._build_service", return_value=service):
            result = runner.invoke(cli, ["status", project.id])

        assert result.exit_code == 0
        assert "Zara's Big Day" in result.output
        assert "Characters" in result.output

    def test_missing_project_raises(self, runner):
        service = MagicMock()
        service.get_project_overview.side_effect = NotFoundError("Project nope not found")
        with patch("bookflow.cli._build_service", return_value=service):
            result = runner.invoke(cli, ["status", "nope"])

        assert result.exit_code != 0
        assert isinstance(result.exception, NotFoundError)
