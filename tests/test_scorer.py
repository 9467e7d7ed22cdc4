"""Tests for the Relevance Scorer."""

import pytest

from mcpexec.core.models import RelevanceScore, Tool, ToolParameter
from mcpexec.discovery.scorer import RelevanceScorer


@pytest.fixture
def scorer():
    return RelevanceScorer()


class TestTokenize:
    def test_snake_and_camel_case(self, scorer):
        assert scorer.tokenize("read_file") == ["read", "file"]
        assert scorer.tokenize("createEvent") == ["create", "event"]

    def test_stop_words_and_plurals(self, scorer):
        assert scorer.tokenize("List the files in a directory") == ["list", "file", "directory"]
        assert scorer.tokenize("dependencies") == ["dependency"]

    def test_empty(self, scorer):
        assert scorer.tokenize("") == []
        assert scorer.tokenize("the a of") == []


class TestScore:
    def test_exact_name_match(self, scorer, sample_tools):
        assert scorer.score(sample_tools[0], "read file") == 1.0

    def test_bounded(self, scorer, sample_tools):
        for tool in sample_tools:
            for query in ("read package.json", "search the web", "zzz", "file file file"):
                assert 0.0 <= scorer.score(tool, query) <= 1.0

    def test_no_overlap_is_zero(self, scorer, sample_tools):
        assert scorer.score(sample_tools[0], "quantum chromodynamics") == 0.0

    def test_empty_query(self, scorer, sample_tools):
        assert scorer.score(sample_tools[0], "") == 0.0

    def test_name_outweighs_description(self, scorer):
        by_name = Tool(name="search_web", description="Find pages")
        by_description = Tool(name="lookup", description="Search the web")
        assert scorer.score(by_name, "search web") > scorer.score(by_description, "search web")

    def test_parameters_contribute(self, scorer):
        plain = Tool(name="fetch_page", description="Download a page")
        with_param = Tool(name="fetch_page", description="Download a page", parameters=(ToolParameter(name="url"),))
        assert scorer.score(with_param, "fetch url") > scorer.score(plain, "fetch url")

    def test_prefix_match(self, scorer):
        tool = Tool(name="analyzer", description="Analyze data")
        assert scorer.score(tool, "analyze the logs") > 0.0
        assert scorer.score(tool, "analyzers") == scorer.score(tool, "analyzer")


class TestRanking:
    def test_read_intent_prefers_read_file(self, scorer, sample_tools):
        ranked = scorer.score_tools(sample_tools, "read package.json and analyze dependencies")
        assert ranked[0].tool.name == "read_file"
        assert all(isinstance(s, RelevanceScore) for s in ranked)

    def test_sorted_descending(self, scorer, sample_tools):
        ranked = scorer.score_tools(sample_tools, "search the web for pages")
        scores = [s.score for s in ranked]
        assert scores == sorted(scores, reverse=True)

    def test_ties_keep_input_order(self, scorer):
        tools = [Tool(name=f"tool_{c}") for c in "abc"]
        assert [s.tool.name for s in scorer.score_tools(tools, "unrelated")] == ["tool_a", "tool_b", "tool_c"]

    def test_top_n_zero(self, scorer, sample_tools):
        assert scorer.get_top_n_tools(sample_tools, "read a file", 0) == []

    def test_top_n_larger_than_tool_count(self, scorer, sample_tools):
        top = scorer.get_top_n_tools(sample_tools, "read a file", len(sample_tools) + 3)
        assert len(top) == len(sample_tools)
        assert top == [s.tool for s in scorer.score_tools(sample_tools, "read a file")]

    def test_top_n(self, scorer, sample_tools):
        top = scorer.get_top_n_tools(sample_tools, "write content to a file", 2)
        assert [t.name for t in top][0] == "write_file"
        assert len(top) == 2

    def test_filter_by_threshold(self, scorer, sample_tools):
        ranked = scorer.score_tools(sample_tools, "read file")
        kept = scorer.filter_by_threshold(ranked, 0.5)
        assert all(s.score >= 0.5 for s in kept)
        assert kept[0].tool.name == "read_file"


class TestSimilarity:
    def test_identical(self, scorer):
        assert scorer.calculate_similarity("read file", "read file") == 1.0

    def test_symmetric(self, scorer):
        a, b = "read the file", "file reader tool"
        assert scorer.calculate_similarity(a, b) == scorer.calculate_similarity(b, a)

    def test_disjoint(self, scorer):
        assert scorer.calculate_similarity("alpha beta", "gamma delta") == 0.0

    def test_partial(self, scorer):
        assert scorer.calculate_similarity("read file", "write file") == pytest.approx(1 / 3)


class TestWeights:
    def test_all_zero_rejected(self):
        with pytest.raises(ValueError):
            RelevanceScorer(0, 0, 0)
