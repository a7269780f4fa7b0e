"""
Tests for extract-and-validate helpers.
"""

from __future__ import annotations

from lcr.extraction import (
    extract_json_array,
    extract_json_object,
    fallback_report,
    fallback_topic_chains,
    find_balanced_span,
    iter_balanced_spans,
    parse_findings,
    parse_report,
    parse_topic_chains,
)
from lcr.types import Language

from conftest import make_plan_json, make_report_json


class TestFindBalancedSpan:
    """Test the string-aware bracket scanner."""

    def test_object_inside_prose(self) -> None:
        """Test the first balanced object is found inside surrounding text."""
        text = 'Here is the plan: {"a": {"b": 1}} and more {"c": 2}'
        assert find_balanced_span(text) == '{"a": {"b": 1}}'

    def test_braces_inside_strings_ignored(self) -> None:
        """Test braces in string literals don't affect depth."""
        text = '{"text": "use } carefully", "n": 1}'
        assert find_balanced_span(text) == text

    def test_unclosed_first_bracket_resumes(self) -> None:
        """Test scanning resumes after an opening bracket that never closes."""
        text = "[ dangling\n[\"fact one\"]"
        assert find_balanced_span(text, "[", "]") == '["fact one"]'

    def test_no_bracket(self) -> None:
        """Test None when there is nothing to match."""
        assert find_balanced_span("no json here") is None

    def test_iter_spans_in_order(self) -> None:
        """Test every top-level span is yielded, nested ones stay inside."""
        text = 'see [1] and [2, [3]] then ["a"]'
        assert list(iter_balanced_spans(text, "[", "]")) == ["[1]", "[2, [3]]", '["a"]']


class TestExtractJson:
    """Test JSON extraction returning tagged results."""

    def test_object_in_markdown_fence(self) -> None:
        """Test object extraction from a fenced code block."""
        parsed = extract_json_object('```json\n{"verdict": "ok"}\n```')
        assert parsed.ok
        assert parsed.value == {"verdict": "ok"}

    def test_empty_text_fails(self) -> None:
        """Test empty text is a failure, not an exception."""
        parsed = extract_json_object("")
        assert not parsed.ok
        assert parsed.error == "empty response"

    def test_malformed_object_fails(self) -> None:
        """Test malformed JSON yields an error result."""
        parsed = extract_json_object("{not: valid}")
        assert not parsed.ok
        assert parsed.unwrap_or({"default": True}) == {"default": True}

    def test_array_extraction(self) -> None:
        """Test array extraction ignores surrounding prose."""
        parsed = extract_json_array('Facts:\n["a", "b"]\nDone.')
        assert parsed.ok
        assert parsed.value == ["a", "b"]

    def test_array_accept_skips_rejected(self) -> None:
        """Test a rejected array falls through to the next candidate."""
        parsed = extract_json_array('[1] then ["x"]', accept=lambda items: "x" in items)
        assert parsed.value == ["x"]

    def test_array_accept_rejects_all(self) -> None:
        """Test rejecting every candidate is a failure result."""
        parsed = extract_json_array("[1]", accept=lambda items: False)
        assert not parsed.ok
        assert "rejected" in parsed.error


class TestParseTopicChains:
    """Test planner output parsing."""

    def test_assigns_positional_node_ids(self) -> None:
        """Test node ids follow topic-i-node-j numbering."""
        parsed = parse_topic_chains(make_plan_json(topics=2, nodes=2))

        assert parsed.ok
        chains = parsed.value
        assert [c.topic for c in chains] == ["Topic 1", "Topic 2"]
        assert [n.id for n in chains[1].nodes] == ["topic-2-node-1", "topic-2-node-2"]
        assert chains[0].nodes[0].questions == ["question 1.1.1"]
        assert chains[0].nodes[0].next_logic_step == "Continue"

    def test_nodes_start_empty(self) -> None:
        """Test planned nodes have no findings and are not completed."""
        chains = parse_topic_chains(make_plan_json()).value
        assert all(not n.findings and not n.completed for c in chains for n in c.nodes)

    def test_camel_case_keys_accepted(self) -> None:
        """Test stepName/nextLogicStep are accepted as well."""
        text = '{"topics": [{"topic": "T", "chain": [{"stepName": "S", "intent": "I", "questions": ["q"], "nextLogicStep": "N"}]}]}'
        node = parse_topic_chains(text).value[0].nodes[0]
        assert node.step_name == "S"
        assert node.next_logic_step == "N"

    def test_missing_names_get_defaults(self) -> None:
        """Test missing topic and step names fall back to positional labels."""
        text = '{"topics": [{"chain": [{"intent": "I", "questions": []}]}]}'
        chain = parse_topic_chains(text).value[0]
        assert chain.topic == "Topic 1"
        assert chain.nodes[0].step_name == "Step 1"

    def test_topics_without_steps_dropped(self) -> None:
        """Test a topic with an empty chain is skipped."""
        text = '{"topics": [{"topic": "Empty", "chain": []}, {"topic": "Real", "chain": [{"step_name": "S"}]}]}'
        chains = parse_topic_chains(text).value
        assert [c.topic for c in chains] == ["Real"]

    def test_non_json_fails(self) -> None:
        """Test prose output is a failure result."""
        assert not parse_topic_chains("I cannot help with that.").ok

    def test_missing_topics_fails(self) -> None:
        """Test an object without a topics list is a failure."""
        parsed = parse_topic_chains('{"plan": []}')
        assert not parsed.ok
        assert "topics" in parsed.error

    def test_fallback_chain(self) -> None:
        """Test the fallback chain has one competitive-analysis node."""
        chains = fallback_topic_chains("TSLA")
        assert len(chains) == 1
        assert chains[0].topic == "Competitive Analysis"
        node = chains[0].nodes[0]
        assert node.id == "topic-1-node-1"
        assert node.questions == ["TSLA competitors", "TSLA market share"]


class TestParseFindings:
    """Test fact extraction parsing."""

    def test_strings_kept(self) -> None:
        """Test string facts are kept in order."""
        parsed = parse_findings('["Fact A", "Fact B"]')
        assert parsed.value == ["Fact A", "Fact B"]

    def test_blanks_numbers_and_objects_dropped(self) -> None:
        """Test blank strings, numbers and nested items are dropped."""
        parsed = parse_findings('["Fact A", "  ", {"x": 1}, 42]')
        assert parsed.value == ["Fact A"]

    def test_citation_marker_before_facts(self) -> None:
        """Test a bracketed citation in prose is not mistaken for the fact list."""
        parsed = parse_findings('Per source [1], the facts are: ["Apple Q3 revenue was $90B", "Margin 46%"]')

        assert parsed.ok
        assert parsed.value == ["Apple Q3 revenue was $90B", "Margin 46%"]

    def test_several_citations_then_facts(self) -> None:
        """Test later arrays are tried when earlier ones hold no strings."""
        text = 'Sources [1][2] and [3, 4] agree:\n```json\n["Fact A"]\n```'
        assert parse_findings(text).value == ["Fact A"]

    def test_citation_only_fails(self) -> None:
        """Test prose whose only brackets are citations yields no facts."""
        parsed = parse_findings("Nothing new beyond what [1] reported.")

        assert not parsed.ok
        assert parsed.unwrap_or([]) == []

    def test_empty_array_is_no_facts(self) -> None:
        """Test an explicit empty array parses as zero findings."""
        parsed = parse_findings("No relevant facts: []")

        assert parsed.ok
        assert parsed.value == []

    def test_non_array_fails(self) -> None:
        """Test non-array output is a failure."""
        assert not parse_findings("No facts found.").ok


class TestParseReport:
    """Test report validation."""

    def test_snake_case_report(self) -> None:
        """Test model snake_case output maps onto the Report."""
        parsed = parse_report(make_report_json("Buy."))

        assert parsed.ok
        report = parsed.value
        assert report.verdict == "Buy."
        assert report.competitor_matrix[0].name == "Samsung"
        assert report.competitor_matrix[0].market_cap == "$300B"
        assert report.financial_reality.revenue_trend == "Q3 revenue $90B"

    def test_camel_case_report(self) -> None:
        """Test camelCase keys are accepted."""
        text = (
            '{"narrativeArc": "n", "competitorMatrix": [], '
            '"financialReality": {"cashBurnRate": 12}, "marginalChanges": "m", "verdict": "v"}'
        )
        report = parse_report(text).value
        assert report.narrative_arc == "n"
        assert report.financial_reality.cash_burn_rate == "12"

    def test_missing_field_fails(self) -> None:
        """Test a report without a verdict fails validation."""
        parsed = parse_report('{"narrative_arc": "n"}')
        assert not parsed.ok
        assert "validation" in parsed.error

    def test_fallback_report_mentions_ticker_and_counts(self) -> None:
        """Test the fallback verdict carries ticker and fact count."""
        report = fallback_report("AAPL", 7, 3, Language.EN)
        assert report.verdict == "Analysis for AAPL: Found 7 facts across 3 research topics."
        assert report.competitor_matrix == ()

    def test_fallback_report_chinese(self) -> None:
        """Test the Chinese fallback verdict."""
        report = fallback_report("600519", 4, 2, Language.CN)
        assert "600519" in report.verdict
        assert "4" in report.verdict
