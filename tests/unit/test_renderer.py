"""Tests for the terminal renderer."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from folio.cli import renderer
from folio.models import ActionOutcome, ActionStatus, CitationEntry, CitationMetadata, StreamWarning, ToolCall


def _printed(mock_console) -> str:
    return " ".join(str(c) for c in mock_console.print.call_args_list)


@pytest.fixture(autouse=True)
def _reset_renderer():
    renderer.reset()
    yield
    renderer.reset()


class TestResponseBuffer:
    def test_tokens_rendered_once_at_end(self) -> None:
        with (
            patch("folio.cli.renderer.console"),
            patch("folio.cli.renderer._stdout_console") as mock_stdout,
        ):
            renderer.render_token("Hello ")
            renderer.render_token("world")
            assert renderer.buffered_text() == "Hello world"
            mock_stdout.print.assert_not_called()

            renderer.render_response_end()
            mock_stdout.print.assert_called_once()
            assert renderer.buffered_text() == ""

    def test_blank_response_prints_nothing(self) -> None:
        with patch("folio.cli.renderer._stdout_console") as mock_stdout:
            renderer.render_token("   ")
            renderer.render_response_end()
            mock_stdout.print.assert_not_called()

    def test_reasoning_header_printed_once(self) -> None:
        with patch("folio.cli.renderer.console") as mock_console:
            renderer.render_reasoning("first ")
            renderer.render_reasoning("second")
            renderer.render_reasoning("")
            headers = [c for c in mock_console.print.call_args_list if "Thinking" in str(c)]
            assert len(headers) == 1


class TestToolcalls:
    def test_completed_toolcall_shows_query(self) -> None:
        toolcall = ToolCall(id="tc-1", function_name="search", arguments='{"query": "transformers"}', status="completed")
        with patch("folio.cli.renderer.console") as mock_console:
            renderer.render_toolcall(toolcall)
            output = _printed(mock_console)
            assert "â" in output
            assert "search: transformers" in output

    def test_failed_toolcall(self) -> None:
        with patch("folio.cli.renderer.console") as mock_console:
            renderer.render_toolcall(ToolCall(id="tc-1", function_name="lookup", status="error"))
            assert "â" in _printed(mock_console)

    def test_long_argument_truncated(self) -> None:
        toolcall = ToolCall(id="tc-1", function_name="search", arguments={"query": "x" * 100}, status="completed")
        assert renderer._toolcall_summary(toolcall).endswith("...")


class TestCitationsAndWarnings:
    def test_citations_deduplicated_by_marker(self) -> None:
        entries = [
            CitationEntry(
                citation_id=cid,
                key="1-ABC",
                marker=1,
                kind="item",
                name="Vaswani et al., 2017",
                metadata=CitationMetadata(citation_id=cid, library_id=1, item_key="ABC"),
            )
            for cid in ("c1", "c2")
        ]
        with patch("folio.cli.renderer.console") as mock_console:
            renderer.render_citations(entries)
            output = _printed(mock_console)
            assert "Sources" in output
            assert output.count("Vaswani et al., 2017") == 1

    def test_no_citations(self) -> None:
        with patch("folio.cli.renderer.console") as mock_console:
            renderer.render_citations([])
            mock_console.print.assert_not_called()

    def test_warning_lists_attachments(self) -> None:
        warning = StreamWarning(
            type="attachments_unavailable", message="Some PDFs could not be read", attachments=[{"name": "paper.pdf"}]
        )
        with patch("folio.cli.renderer.console") as mock_console:
            renderer.render_warning(warning)
            output = _printed(mock_console)
            assert "Some PDFs could not be read" in output
            assert "paper.pdf" in output


class TestActions:
    def test_actions_table(self, make_action) -> None:
        actions = [make_action("create_item", "a1"), make_action("highlight", "h1")]
        with patch("folio.cli.renderer.console") as mock_console:
            renderer.render_actions(actions)
            mock_console.print.assert_called_once()

    def test_action_labels(self, make_action) -> None:
        assert renderer._action_label(make_action("create_item", "a1")) == "Attention Is All You Need"
        assert renderer._action_label(make_action("highlight", "h1")).startswith("p.1 ")
        assert renderer._action_label(make_action("item_note", "z1")) == "note: Reading notes"
        assert renderer._action_label(make_action("edit_metadata", "e1", title="Final")) == "title → Final"

    def test_outcomes(self) -> None:
        outcomes = {
            "a1": ActionOutcome(action_id="a1", status=ActionStatus.APPLIED, result_data={"key": "K1"}),
            "a2": ActionOutcome(action_id="a2", status=ActionStatus.ERROR, error_message="Viewer not ready"),
        }
        with patch("folio.cli.renderer.console") as mock_console:
            renderer.render_outcomes(outcomes)
            output = _printed(mock_console)
            assert "K1" in output
            assert "Viewer not ready" in output

    def test_error_with_kind(self) -> None:
        with patch("folio.cli.renderer.console") as mock_console:
            renderer.render_error("Invalid API key", "auth")
            assert "Error (auth)" in _printed(mock_console)
