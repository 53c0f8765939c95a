"""
Unit Tests for CLI Commands

Dispatch is tested with the handlers patched out; the handlers themselves
run against a real cache in tmp_path with the mock embedding provider.
"""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from gaql_context.cli import commands
from gaql_context.config import reset_config
from gaql_context.core.errors import ProviderFailure
from gaql_context.retrieval.corpus import FieldMetadataCache
from gaql_context.retrieval.enrichment import FieldMetadata


COOKBOOK = '''
[campaigns_by_cost]
description = "Campaigns ranked by cost last month"
query = "SELECT campaign.name, metrics.cost_micros FROM campaign"

[keywords_by_clicks]
description = "Keywords with the most clicks"
query = "SELECT ad_group_criterion.keyword.text, metrics.clicks FROM keyword_view"
'''


@pytest.fixture
def env(tmp_path, monkeypatch):
    """Point configuration at a temporary cache and corpus."""
    cookbook = tmp_path / "cookbook.toml"
    cookbook.write_text(COOKBOOK)
    fields = tmp_path / "fields.json"
    FieldMetadataCache(
        last_updated=datetime.now(timezone.utc),
        fields={"metrics.clicks": FieldMetadata(name="metrics.clicks", category="METRIC", data_type="INT64")},
    ).save(fields)

    monkeypatch.setenv("GAQL_CONTEXT_CACHE_DIR", str(tmp_path / "cache"))
    monkeypatch.setenv("GAQL_CONTEXT_EMBEDDING_PROVIDER", "mock")
    monkeypatch.setenv("GAQL_CONTEXT_EMBEDDING_DIMENSIONS", "256")
    monkeypatch.setenv("GAQL_CONTEXT_COOKBOOK_PATH", str(cookbook))
    monkeypatch.setenv("GAQL_CONTEXT_FIELD_CACHE_PATH", str(fields))
    monkeypatch.setenv("GAQL_CONTEXT_TRACING_ENABLED", "false")
    reset_config()
    yield tmp_path
    reset_config()


# ---------------------------------------------------------------------------
# MAIN CLI DISPATCH TESTS
# ---------------------------------------------------------------------------


class TestMainCliDispatch:
    @pytest.mark.parametrize(
        "command, handler",
        [
            ("status", "run_status_cli"),
            ("clear", "run_clear_cli"),
            ("build", "run_build_cli"),
            ("retrieve", "run_retrieve_cli"),
        ],
    )
    def test_dispatch(self, command, handler):
        with patch.object(commands, handler, return_value=0) as mock_handler:
            result = commands.main([command, "extra-arg"])

        assert result == 0
        mock_handler.assert_called_once_with(["extra-arg"])

    def test_unknown_command_exits(self):
        with pytest.raises(SystemExit):
            commands.main(["explode"])

    def test_keyboard_interrupt_returns_130(self):
        with patch.object(commands, "run_build_cli", side_effect=KeyboardInterrupt):
            assert commands.main(["build"]) == 130

    def test_handler_exit_code_propagates(self):
        with patch.object(commands, "run_status_cli", return_value=1):
            assert commands.main(["status"]) == 1


# ---------------------------------------------------------------------------
# COMMAND TESTS
# ---------------------------------------------------------------------------


class TestCommands:
    def test_status_before_build(self, env, capsys):
        assert commands.main(["status", "--json"]) == 0
        payload = json.loads(capsys.readouterr().out)

        assert set(payload) == {"field_metadata", "query_cookbook"}
        assert payload["query_cookbook"]["state"] == "missing"
        assert payload["query_cookbook"]["live_document_count"] == 2

    def test_build_then_status_valid(self, env, capsys):
        assert commands.main(["build"]) == 0
        out = capsys.readouterr().out
        assert "query_cookbook" in out
        assert "valid" in out

        assert commands.main(["status", "query_cookbook", "--json"]) == 0
        payload = json.loads(capsys.readouterr().out)
        assert payload["query_cookbook"]["state"] == "valid"
        assert payload["query_cookbook"]["document_count"] == 2

    def test_retrieve_prints_ranked_results(self, env, capsys):
        assert commands.main(["retrieve", "query_cookbook", "keywords with most clicks", "-k", "1"]) == 0
        out = capsys.readouterr().out
        assert "keywords_by_clicks" in out
        assert "SELECT ad_group_criterion.keyword.text" in out
        assert "campaigns_by_cost" not in out

    def test_retrieve_json(self, env, capsys):
        assert commands.main(["retrieve", "field_metadata", "clicks", "--json"]) == 0
        results = json.loads(capsys.readouterr().out)
        assert results[0]["id"] == "metrics.clicks"
        assert "score" in results[0]

    def test_retrieve_unknown_collection_fails(self, env, capsys):
        assert commands.main(["retrieve", "nope", "anything"]) == 1
        assert "Unknown collection" in capsys.readouterr().err

    def test_retrieve_provider_failure_fails(self, env, capsys):
        service = MagicMock()
        service.retrieve.side_effect = ProviderFailure("timed out")
        with patch.object(commands, "_build_service", return_value=service):
            assert commands.main(["retrieve", "query_cookbook", "x"]) == 1
        assert "timed out" in capsys.readouterr().err

    def test_clear_all(self, env, capsys):
        commands.main(["build"])
        capsys.readouterr()

        assert commands.main(["clear", "all"]) == 0
        out = capsys.readouterr().out
        assert "query_cookbook: cleared" in out
        assert "field_metadata: cleared" in out

        commands.main(["status", "--json"])
        payload = json.loads(capsys.readouterr().out)
        assert payload["field_metadata"]["state"] == "missing"

    def test_clear_nothing_cached(self, env, capsys):
        assert commands.main(["clear", "query_cookbook"]) == 0
        assert "nothing cached" in capsys.readouterr().out

    def test_clear_unknown_collection(self, env, capsys):
        assert commands.main(["clear", "nope"]) == 1

    def test_no_collections_configured(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv("GAQL_CONTEXT_CACHE_DIR", str(tmp_path))
        monkeypatch.setenv("GAQL_CONTEXT_EMBEDDING_PROVIDER", "mock")
        monkeypatch.delenv("GAQL_CONTEXT_COOKBOOK_PATH", raising=False)
        monkeypatch.delenv("GAQL_CONTEXT_FIELD_CACHE_PATH", raising=False)
        reset_config()
        try:
            assert commands.main(["status"]) == 0
            assert "No collections configured" in capsys.readouterr().out
        finally:
            reset_config()
